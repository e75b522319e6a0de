"""Parsing helpers for LLM responses."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from wayfarer.src.exploration.collaborators import Decision
from wayfarer.src.exploration.models import ChatDecision, ChatRequestType, parse_tool_decision

logger = logging.getLogger(__name__)


def strip_code_fences(text: Optional[str]) -> str:
    response_text = (text or "").strip()
    if response_text.startswith("```json"):
        response_text = response_text[7:]
    elif response_text.startswith("```"):
        response_text = response_text[3:]
    if response_text.endswith("```"):
        response_text = response_text[:-3]
    return response_text.strip()


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """First JSON object in ``text``, tolerating code fences and surrounding prose."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def parse_decision_text(text: Optional[str]) -> Optional[Decision]:
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("LLM decision was not JSON: %s", (text or "")[:200])
        return None
    decision = parse_tool_decision(payload)
    if decision is None:
        logger.warning("LLM decision rejected: %s", json.dumps(payload, ensure_ascii=False)[:200])
    return decision


def fallback_chat_decision(reason: str) -> ChatDecision:
    return ChatDecision(
        reasoning=reason,
        request_type=ChatRequestType.QUESTION,
        response="I couldn't process that message. Could you rephrase it?",
    )


def parse_chat_decision_text(text: Optional[str]) -> ChatDecision:
    payload = extract_json_object(text)
    if payload is None:
        return fallback_chat_decision("chat response was not JSON")
    try:
        return ChatDecision.model_validate(payload)
    except ValidationError as exc:
        return fallback_chat_decision(f"invalid chat decision: {exc.error_count()} errors")


def parse_objective_achieved(text: Optional[str]) -> bool:
    payload = extract_json_object(text)
    if payload is None:
        return False
    value = payload.get("objectiveAchieved", payload.get("objective_achieved", False))
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)
