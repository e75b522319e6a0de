"""Exceptions raised inside the exploration engine."""
from __future__ import annotations


class WayfarerError(Exception):
    """Base class for engine errors."""


class InputTimeoutError(WayfarerError):
    """No user input response arrived within the allowed window."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"User input timeout ({timeout_seconds:g} seconds)")
        self.timeout_seconds = timeout_seconds


class InputAbandonedError(WayfarerError):
    """A pending input request was dropped because the session went away."""


class ExplorationStopped(WayfarerError):
    """The session went inactive while a tool was waiting."""


class StorageError(WayfarerError):
    """Session files could not be read or written."""
