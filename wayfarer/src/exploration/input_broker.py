"""Rendezvous between a request_input step and the operator's reply."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import InputAbandonedError, InputTimeoutError
from .models import UserInputResponse

logger = logging.getLogger(__name__)


class UserInputBroker:
    """At most one outstanding request per session."""

    def __init__(self) -> None:
        self._pending: Optional[asyncio.Future] = None

    @property
    def waiting(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def wait(self, timeout: float) -> UserInputResponse:
        if self.waiting:
            # a stale request loses to the new one
            self._pending.set_exception(InputAbandonedError("superseded by a newer input request"))
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending = future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("⏰ no user input within %gs", timeout)
            raise InputTimeoutError(timeout) from None
        finally:
            if self._pending is future:
                self._pending = None

    def submit(self, response: UserInputResponse) -> bool:
        if not self.waiting:
            logger.warning("⚠️ user input arrived with no pending request")
            return False
        self._pending.set_result(response)
        return True

    def abandon(self, reason: str = "session stopped") -> None:
        if self.waiting:
            self._pending.set_exception(InputAbandonedError(reason))
