"""
Exploration engine: page queue, step loop, tool dispatch, chat pause/resume
and background graph generation.
"""
from .engine import ExplorationEngine
from .errors import ExplorationStopped, InputAbandonedError, InputTimeoutError, StorageError, WayfarerError
from .events import EventEmitter, EventType, ExplorationEvent
from .identity import normalize_url, session_id_for, url_hash
from .input_broker import UserInputBroker
from .liveness import LivenessGate, SessionRegistry
from .models import (
    ExplorationCheckpoint,
    ExplorationConfig,
    ExplorationSession,
    PageRecord,
    PageStatus,
    UserInputResponse,
    parse_tool_decision,
)

__all__ = [
    "EventEmitter",
    "EventType",
    "ExplorationCheckpoint",
    "ExplorationConfig",
    "ExplorationEngine",
    "ExplorationEvent",
    "ExplorationSession",
    "ExplorationStopped",
    "InputAbandonedError",
    "InputTimeoutError",
    "LivenessGate",
    "PageRecord",
    "PageStatus",
    "SessionRegistry",
    "StorageError",
    "UserInputBroker",
    "UserInputResponse",
    "WayfarerError",
    "normalize_url",
    "parse_tool_decision",
    "session_id_for",
    "url_hash",
]
