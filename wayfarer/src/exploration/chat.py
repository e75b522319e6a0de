"""
Live chat during an exploration.

A chat message pauses the running session at its next suspension point,
gets classified by the chat model, optionally steers the browser to a
target page, and then resumes the session from the checkpoint taken when
the message arrived.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, List, Optional

from .collaborators import ChatDecider
from .events import EventType
from .identity import normalize_url
from .models import ChatDecision, ChatMessage, ChatRequestType, ExplorationCheckpoint, ExplorationPhase
from .page_queue import START_PRIORITY

if TYPE_CHECKING:
    from .engine import ExplorationEngine

logger = logging.getLogger(__name__)

MAX_CHAT_HISTORY = 50


class ChatInterruptManager:
    def __init__(self, engine: "ExplorationEngine", decider: ChatDecider):
        self.engine = engine
        self.decider = decider
        self.history: List[ChatMessage] = []
        self._lock = asyncio.Lock()

    async def handle_message(self, text: str) -> Optional[ChatDecision]:
        """Pause, answer, optionally steer, resume. Messages are handled one at a time."""
        async with self._lock:
            engine = self.engine
            checkpoint = engine.checkpoint()
            engine.gate.interrupt()
            logger.info("💬 chat message received, exploration paused: %s", text[:80])

            decision: Optional[ChatDecision] = None
            front: List[str] = []
            try:
                await self._record("user", text)
                decision = await self.decider.decide_chat(
                    text,
                    checkpoint,
                    list(engine.session.pages.values()),
                    list(self.history),
                )
                await self._record("assistant", decision.response, decision)
                front = await self._apply(decision)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("❌ chat handling failed: %s", exc)
                await engine.emitter.emit(EventType.CHAT_ERROR, error=str(exc), message=text)

            await self._resume(checkpoint, front)
            return decision

    async def _record(self, role: str, content: str, decision: Optional[ChatDecision] = None) -> None:
        message = ChatMessage(id=uuid.uuid4().hex, role=role, content=content)
        self.history.append(message)
        del self.history[:-MAX_CHAT_HISTORY]

        fields = {"messageId": message.id, "role": role, "content": content}
        if decision is not None:
            fields.update(
                requestType=decision.request_type.value,
                targetUrl=decision.target_url,
                needsUserInput=decision.needs_user_input,
                userInputPrompt=decision.user_input_prompt,
            )
        await self.engine.emitter.emit(EventType.CHAT_MESSAGE, **fields)

    async def _apply(self, decision: ChatDecision) -> List[str]:
        """Carry out the chat decision. Returns hashes to put at the front of the resumed queue."""
        if decision.request_type == ChatRequestType.QUESTION or not decision.target_url:
            return []

        engine = self.engine
        target = normalize_url(decision.target_url)

        if engine.input_broker.waiting:
            # the pending request_input step is dropped; its page resumes after the target
            engine.input_broker.abandon("superseded by a chat navigation request")
        # the browser belongs to the spine until it has suspended
        await engine.wait_suspended()
        await engine.browser.goto(target)
        await engine.emitter.emit(
            EventType.CHAT_NAVIGATED,
            url=target,
            requestType=decision.request_type.value,
            targetPage=decision.target_page,
        )
        logger.info("🧭 chat navigated to %s (%s)", target, decision.request_type.value)

        page = await engine.page_queue.register(target, START_PRIORITY, source_url=None)
        if decision.request_type == ChatRequestType.EXPLORATION:
            return [page.url_hash]
        return []

    async def _resume(self, checkpoint: ExplorationCheckpoint, front: List[str]) -> None:
        engine = self.engine
        task = engine.run_task
        if not front and task is not None and not task.done() and engine.input_broker.waiting:
            # nothing to steer; the spine keeps waiting for the operator's input
            engine.gate.clear_interrupt()
            logger.info("▶️ chat handled while waiting for user input, exploration continues")
            return

        await engine.wait_suspended()
        engine.gate.clear_interrupt()

        if checkpoint.exploration_phase == ExplorationPhase.COMPLETED and not front:
            engine.session.metadata.phase = ExplorationPhase.COMPLETED
            engine.storage.save_metadata(engine.session_id, engine.session.metadata)
            engine.storage.delete_checkpoint(engine.session_id)
            logger.info("💤 exploration already completed, staying parked")
            return

        engine.restore(checkpoint, front)
        engine.start_run()
        logger.info("▶️ exploration resumed (%d pages queued)", len(engine.page_queue))
