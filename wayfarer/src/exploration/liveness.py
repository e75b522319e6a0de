"""Session liveness and the cooperative pause token."""
from __future__ import annotations

import logging
from typing import Set

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Users with a running exploration. The transport owns membership."""

    def __init__(self) -> None:
        self._active: Set[str] = set()

    def activate(self, user_name: str) -> None:
        self._active.add(user_name)

    def deactivate(self, user_name: str) -> None:
        self._active.discard(user_name)

    def is_active(self, user_name: str) -> bool:
        return user_name in self._active

    def __len__(self) -> int:
        return len(self._active)


class LivenessGate:
    """
    Single stop/pause token shared by every component of one session.

    ``should_stop()`` is true while a chat message holds the session
    (interrupted) or once the user's session left the registry.
    """

    def __init__(self, user_name: str, registry: SessionRegistry):
        self.user_name = user_name
        self.registry = registry
        self._interrupted = False

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def interrupt(self) -> None:
        if not self._interrupted:
            logger.info("⏸️ exploration paused for %s", self.user_name)
        self._interrupted = True

    def clear_interrupt(self) -> None:
        self._interrupted = False

    def is_live(self) -> bool:
        return self.registry.is_active(self.user_name)

    def should_stop(self) -> bool:
        return self._interrupted or not self.is_live()
