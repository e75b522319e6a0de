"""
Outbound exploration events.

Every event is an envelope ``{type, timestamp, data}`` where ``data`` always
carries ``userName`` and, for page-scoped events, ``url``/``urlHash``/``stepNumber``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .collaborators import EventSink

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PAGE_STARTED = "page_started"
    PAGE_COMPLETED = "page_completed"
    DECISION_MADE = "decision_made"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    ACT_RESULT = "act_result"
    INPUT_REQUESTED = "input_requested"
    INPUT_RECEIVED = "input_received"
    STANDBY_COMPLETED = "standby_completed"
    URL_DISCOVERED = "url_discovered"
    SESSION_COMPLETED = "session_completed"
    ENRICHMENT_STARTED = "enrichment_started"
    ENRICHMENT_UPDATED = "enrichment_updated"
    CHAT_MESSAGE = "chat_message"
    CHAT_NAVIGATED = "chat_navigated"
    CHAT_ERROR = "chat_error"


class ExplorationEvent(BaseModel):
    type: EventType
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.type.value, "timestamp": self.timestamp, "data": self.data}


class EventEmitter:
    """Builds envelopes for one user and hands them to the sink."""

    def __init__(self, user_name: str, sink: Optional[EventSink] = None):
        self.user_name = user_name
        self.sink = sink

    async def emit(
        self,
        event_type: EventType,
        *,
        url: Optional[str] = None,
        url_hash: Optional[str] = None,
        step_number: Optional[int] = None,
        **fields: Any,
    ) -> None:
        data: Dict[str, Any] = {"userName": self.user_name}
        if url is not None:
            data["url"] = url
        if url_hash is not None:
            data["urlHash"] = url_hash
        if step_number is not None:
            data["stepNumber"] = step_number
        data.update(fields)

        event = ExplorationEvent(type=event_type, data=data)
        if self.sink is None:
            return
        try:
            await self.sink.publish(event)
        except Exception as exc:
            logger.warning("⚠️ event %s not delivered: %s", event_type.value, exc)
