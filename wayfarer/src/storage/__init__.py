"""Session persistence."""
from wayfarer.src.storage.session_store import JsonSessionStore

__all__ = ["JsonSessionStore"]
