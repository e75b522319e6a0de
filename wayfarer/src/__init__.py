"""Wayfarer package root exposing the exploration engine."""

from wayfarer.src.exploration.engine import ExplorationEngine
from wayfarer.src.exploration.liveness import SessionRegistry
from wayfarer.src.exploration.models import ExplorationConfig
from wayfarer.src.storage.session_store import JsonSessionStore

__all__ = [
    "ExplorationConfig",
    "ExplorationEngine",
    "JsonSessionStore",
    "SessionRegistry",
]
