"""
OpenAI-backed collaborators for the exploration engine.

One client serves three roles: the per-step tool decision (with the page
screenshot), the chat classifier and the interaction graph generator. The
sync OpenAI SDK is called from a worker thread so the event loop stays free.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import openai

from wayfarer.src.exploration.collaborators import Decision, DecisionContext
from wayfarer.src.exploration.models import ChatDecision, ChatMessage, ExecutedStep, ExplorationCheckpoint, PageRecord
from wayfarer.src.exploration.page_store import PageEntry
from wayfarer.src.llm.parsing import (
    extract_json_object,
    fallback_chat_decision,
    parse_chat_decision_text,
    parse_decision_text,
    parse_objective_achieved,
)
from wayfarer.src.utils.config import CONFIG, LLMConfig

logger = logging.getLogger(__name__)

DECISION_SYSTEM_PROMPT = """You drive a web browser to reach an objective.
Each turn you get a screenshot of the current page and choose exactly one tool:

- "act": one concrete interaction described in plain words
  ("click the Pricing link in the header", "type hello into the search box").
  "navigate to <absolute url>" opens a URL directly.
- "request_input": ask the operator for values you cannot know (credentials,
  one-time codes). Put every needed field in "inputs".
- "standby": wait for a loading state to finish.

Rules:
- Use values from USER INPUTS when they exist instead of asking again.
- Set isInSensitiveFlow=true while you are inside a login/sign-up/verification
  flow and false once it is over.
- Set isCurrentPageExecutionCompleted=true when nothing useful is left on this page.
- In exploration mode, open links and controls that reveal new pages or features.

Respond with JSON only:
{
  "reasoning": "...",
  "tool": "act" | "request_input" | "standby",
  "instruction": "...",
  "inputs": [{"key": "...", "type": "text|email|password|url|otp|phone|boolean", "prompt": "..."}],
  "waitSeconds": 5,
  "isCurrentPageExecutionCompleted": false,
  "isInSensitiveFlow": false
}"""

ASSESS_PROMPT = """Objective: {objective}
Page: {url}
Action just executed: {instruction}
Result: {result}

Looking at the screenshot taken before the action and the result above, is the
objective now achieved? Respond with JSON only: {{"objectiveAchieved": true|false, "reasoning": "..."}}"""

CHAT_SYSTEM_PROMPT = """You are the chat assistant of a running web exploration.
Classify the operator's message:
- "task_specific": a concrete task on a specific page (give targetUrl if known)
- "exploration": explore a specific page or area (give targetUrl if known)
- "question": a question about what was explored so far

Respond with JSON only:
{"reasoning": "...", "requestType": "...", "targetPage": "...", "targetUrl": "...",
 "needsUserInput": false, "userInputPrompt": "...", "response": "message to the operator"}"""

GRAPH_SYSTEM_PROMPT = """You build an interaction graph for one web page.
Nodes are UI states identified by imageName; edges are the actions that move
between them. Group related edges into flows.

Respond with JSON only:
{"nodes": [{"id": "...", "imageName": "...", "instruction": "...", "stepNumber": 1,
            "metadata": {"visibleElements": [], "clickableElements": [], "dialogsOpen": []}}],
 "edges": [{"from": "...", "to": "...", "action": "...", "instruction": "...", "description": "..."}],
 "flows": [{"id": "...", "name": "...", "description": "...", "startImageName": "...",
            "endImageNames": [], "imageNodes": [], "flowType": "linear"}],
 "description": "...", "pageSummary": "..."}"""

PLANNER_PROMPT = """Pick the element and action that carry out this instruction on {url}.

Instruction: {instruction}

Interactive elements (index: tag | text | attributes):
{elements}

Respond with JSON only:
{{"index": <element index or -1 if none fits>, "action": "click" | "fill" | "select" | "press" | "hover",
  "value": "text for fill/select, key for press", "reasoning": "..."}}"""


def _image_part(screenshot: bytes) -> Dict[str, Any]:
    encoded = base64.b64encode(screenshot).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}}


def _describe_context(context: DecisionContext) -> str:
    lines = [
        f"OBJECTIVE: {context.objective}",
        f"MODE: {'exploration' if context.is_exploration else 'task'}",
        f"CURRENT URL: {context.url}",
        f"STEP: {context.step_number}",
        f"MAX PAGES REACHED: {context.max_pages_reached}",
        f"LOGIN ALLOWED: {context.can_login}",
    ]
    if context.additional_context:
        lines.append(f"ADDITIONAL CONTEXT: {context.additional_context}")
    if context.user_inputs:
        inputs = {key: record.value for key, record in context.user_inputs.items()}
        lines.append(f"USER INPUTS: {json.dumps(inputs, ensure_ascii=False)}")
    flow = context.flow_context
    if flow.is_in_sensitive_flow:
        lines.append(f"SENSITIVE FLOW: {flow.flow_type} since step {flow.flow_start_step} at {flow.start_url}")
    if context.page_queue:
        queued = ", ".join(item["url"] for item in context.page_queue[:10])
        lines.append(f"QUEUED PAGES: {queued}")
    if context.action_history:
        recent = [
            f"- step {entry.step_number}: {entry.instruction} ({'ok' if entry.success else 'failed'}"
            + (f", went to {entry.target_url}" if entry.url_changed else "")
            + ")"
            for entry in context.action_history[-15:]
        ]
        lines.append("RECENT ACTIONS:\n" + "\n".join(recent))
    return "\n".join(lines)


class OpenAIExplorationClient:
    """DecisionMaker, ChatDecider and GraphEnricher backed by the OpenAI chat API."""

    def __init__(self, config: Optional[LLMConfig] = None, client: Optional[Any] = None) -> None:
        self.config = config or CONFIG.llm
        self.client = client or openai.OpenAI(api_key=self.config.api_key, timeout=self.config.request_timeout)
        self.model = self.config.model
        self.planner_model = self.config.planner_model

    # --- raw call ------------------------------------------------------------

    async def _complete(self, messages: List[Dict[str, Any]], model: Optional[str] = None) -> str:
        kwargs: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if self.config.max_completion_tokens:
            kwargs["max_completion_tokens"] = self.config.max_completion_tokens
        response = await asyncio.to_thread(self.client.chat.completions.create, **kwargs)
        return response.choices[0].message.content or ""

    # --- DecisionMaker -------------------------------------------------------

    async def decide(self, context: DecisionContext) -> Optional[Decision]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": DECISION_SYSTEM_PROMPT}]
        for turn in context.conversation_history[-20:]:
            messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append(
            {
                "role": "user",
                "content": [_image_part(context.screenshot), {"type": "text", "text": _describe_context(context)}],
            }
        )
        try:
            text = await self._complete(messages)
        except openai.OpenAIError as exc:
            logger.error("❌ decision request failed: %s", exc)
            return None
        return parse_decision_text(text)

    async def assess_action(self, context: DecisionContext, step: ExecutedStep) -> bool:
        prompt = ASSESS_PROMPT.format(
            objective=context.objective,
            url=context.url,
            instruction=step.instruction,
            result=step.result,
        )
        messages = [{"role": "user", "content": [_image_part(context.screenshot), {"type": "text", "text": prompt}]}]
        try:
            text = await self._complete(messages)
        except openai.OpenAIError as exc:
            logger.error("❌ objective assessment failed: %s", exc)
            return False
        return parse_objective_achieved(text)

    # --- ChatDecider ---------------------------------------------------------

    async def decide_chat(
        self,
        message: str,
        checkpoint: ExplorationCheckpoint,
        pages: List[PageRecord],
        chat_history: List[ChatMessage],
    ) -> ChatDecision:
        explored = "\n".join(f"- {page.url} [{page.status.value}] {len(page.executed_steps)} steps" for page in pages)
        state = (
            f"CURRENT PAGE: {checkpoint.current_page_url or 'none'}\n"
            f"QUEUED: {len(checkpoint.remaining_queue)} pages\n"
            f"PHASE: {checkpoint.exploration_phase.value}\n"
            f"PAGES:\n{explored or '- none yet'}"
        )
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": CHAT_SYSTEM_PROMPT},
            {"role": "system", "content": state},
        ]
        for item in chat_history[-10:]:
            messages.append({"role": item.role, "content": item.content})
        if not chat_history or chat_history[-1].content != message:
            messages.append({"role": "user", "content": message})
        try:
            text = await self._complete(messages)
        except openai.OpenAIError as exc:
            logger.error("❌ chat request failed: %s", exc)
            return fallback_chat_decision(f"chat request failed: {exc}")
        return parse_chat_decision_text(text)

    # --- GraphEnricher -------------------------------------------------------

    async def enrich(self, page: PageEntry, previous_graph: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not page.action_history:
            return previous_graph
        actions = [
            {
                "imageName": action.image_name,
                "stepNumber": action.step_number,
                "instruction": action.instruction,
                "urlChanged": action.url_changed,
                "targetUrl": action.target_url,
            }
            for action in page.action_history
        ]
        payload = {
            "url": page.url,
            "actions": actions,
            "previousGraph": previous_graph,
        }
        messages = [
            {"role": "system", "content": GRAPH_SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]
        try:
            text = await self._complete(messages)
        except openai.OpenAIError as exc:
            logger.error("❌ graph request failed for %s: %s", page.url_hash, exc)
            return None
        return extract_json_object(text)

    # --- action planning (used by the Playwright driver) ---------------------

    async def plan_action(self, instruction: str, url: str, elements: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        listing = "\n".join(
            f"{index}: {element.get('tag', '')} | {element.get('text', '')[:80]} | "
            + json.dumps(element.get("attributes", {}), ensure_ascii=False)[:160]
            for index, element in enumerate(elements)
        )
        prompt = PLANNER_PROMPT.format(url=url, instruction=instruction, elements=listing or "(none)")
        try:
            text = await self._complete([{"role": "user", "content": prompt}], model=self.planner_model)
        except openai.OpenAIError as exc:
            logger.error("❌ action planning failed: %s", exc)
            return None
        return extract_json_object(text)
