"""Tracks authentication-like flows during which URL changes are not discoveries."""
from __future__ import annotations

import logging
from enum import Enum

from .collaborators import Decision
from .models import FlowContext

logger = logging.getLogger(__name__)


class FlowTransition(str, Enum):
    NONE = "none"
    STARTED = "started"
    CONTINUING = "continuing"
    ENDED = "ended"


class FlowGuard:
    def __init__(self, flow_context: FlowContext):
        self.flow_context = flow_context

    @property
    def active(self) -> bool:
        return self.flow_context.is_in_sensitive_flow

    def apply(self, decision: Decision, current_url: str, step_number: int) -> FlowTransition:
        was_in_flow = self.flow_context.is_in_sensitive_flow
        now_in_flow = bool(decision.is_in_sensitive_flow)
        self.flow_context.is_in_sensitive_flow = now_in_flow

        if now_in_flow and not was_in_flow:
            self.flow_context.flow_type = "login"
            self.flow_context.start_url = current_url
            self.flow_context.flow_start_step = step_number
            logger.info("🔐 sensitive flow started at %s (step %d)", current_url, step_number)
            return FlowTransition.STARTED
        if was_in_flow and not now_in_flow:
            logger.info("🔓 sensitive flow ended (started at %s)", self.flow_context.start_url)
            return FlowTransition.ENDED
        return FlowTransition.CONTINUING if now_in_flow else FlowTransition.NONE
