"""
Step loop for one page.

Each iteration takes a screenshot, asks the decision model for a tool call,
runs it, and records the result. The loop leaves the page when the model
says it is done, the objective is achieved, the per-page step budget runs out,
or a sensitive flow ends. When the gate trips (chat pause or stop) the page is
left without being completed so that a resume can pick it up again.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .collaborators import BrowserDriver, Decision, DecisionContext, DecisionMaker, SessionStorage
from .dispatcher import ToolDispatcher
from .enrichment import EnrichmentCoordinator
from .events import EventEmitter, EventType
from .identity import normalize_url
from .liveness import LivenessGate
from .models import (
    ExecutedStep,
    ExplorationConfig,
    ExplorationSession,
    PageRecord,
    PageStatus,
    Screenshot,
    StandbyDecision,
    ToolName,
)
from .page_queue import FLOW_END_PRIORITY, PageQueue
from .page_store import PageStore
from .sensitive_flow import FlowGuard, FlowTransition

logger = logging.getLogger(__name__)

SKIPPED_INPUT_MESSAGE = "User skipped the input prompt, so skip this step and do something else."


def counts_toward_budget(decision: Decision, step: ExecutedStep) -> bool:
    """Standby, sensitive-flow and URL-changing steps are free."""
    if isinstance(decision, StandbyDecision):
        return False
    if decision.is_in_sensitive_flow:
        return False
    return not step.new_url


class PageLoop:
    def __init__(
        self,
        session: ExplorationSession,
        config: ExplorationConfig,
        browser: BrowserDriver,
        decision_maker: DecisionMaker,
        storage: SessionStorage,
        page_queue: PageQueue,
        page_store: PageStore,
        enrichment: EnrichmentCoordinator,
        flow_guard: FlowGuard,
        dispatcher: ToolDispatcher,
        gate: LivenessGate,
        emitter: EventEmitter,
        decision_history: Optional[List[Dict[str, Any]]] = None,
    ):
        self.session = session
        self.config = config
        self.browser = browser
        self.decision_maker = decision_maker
        self.storage = storage
        self.page_queue = page_queue
        self.page_store = page_store
        self.enrichment = enrichment
        self.flow_guard = flow_guard
        self.dispatcher = dispatcher
        self.gate = gate
        self.emitter = emitter
        self.decision_history = decision_history if decision_history is not None else []

    @property
    def session_id(self) -> str:
        return self.session.metadata.session_id

    async def process(self, page: PageRecord) -> bool:
        """Run the page. Returns False when the gate tripped before the page finished."""
        self.session.current_page = page.url_hash
        await self.emitter.emit(
            EventType.PAGE_STARTED,
            url=page.url,
            url_hash=page.url_hash,
            step_number=self.session.global_step_counter,
            priority=page.priority,
            queueLength=len(self.page_queue),
        )
        logger.info("📄 processing %s", page.url)

        try:
            await self.browser.goto(page.url)
            page.status = PageStatus.IN_PROGRESS
            self.storage.save_page(self.session_id, page)

            initial = await self.browser.screenshot(full_page=True)
            initial_path = self.storage.save_screenshot(
                self.session_id, page.url_hash, self.session.global_step_counter, "initial", initial
            )
            page.screenshots.append(
                Screenshot(step_number=self.session.global_step_counter, kind="initial", file_path=initial_path)
            )
            self.page_store.initialize_page(page.url, page.url_hash, initial_path)

            finished = await self._run_steps(page)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("❌ error while processing %s: %s", page.url, exc)
            self._close(page)
            await self.emitter.emit(
                EventType.PAGE_COMPLETED,
                url=page.url,
                url_hash=page.url_hash,
                step_number=self.session.global_step_counter,
                stepsExecuted=len(page.executed_steps),
                objectiveAchieved=page.objective_achieved,
                error=str(exc),
            )
            return True

        if not finished:
            self.storage.save_page(self.session_id, page)
            return False

        self._close(page)
        await self.enrichment.complete(page.url_hash)
        await self.emitter.emit(
            EventType.PAGE_COMPLETED,
            url=page.url,
            url_hash=page.url_hash,
            step_number=self.session.global_step_counter,
            stepsExecuted=len(page.executed_steps),
            objectiveAchieved=page.objective_achieved,
        )
        logger.info("✅ page completed: %s (%d steps)", page.url, len(page.executed_steps))
        return True

    async def _run_steps(self, page: PageRecord) -> bool:
        steps_on_page = 0
        metadata = self.session.metadata

        while not metadata.objective_achieved:
            self.session.global_step_counter += 1
            step_number = self.session.global_step_counter
            screenshot = await self.browser.screenshot()

            if self.gate.should_stop():
                logger.info("⏸️ leaving %s before decision (step %d)", page.url, step_number)
                return False

            current_url = normalize_url(await self.browser.current_url())
            context = self._context(page, screenshot, step_number)
            decision = await self.decision_maker.decide(context)

            if self.gate.should_stop():
                logger.info("⏸️ leaving %s after decision (step %d)", page.url, step_number)
                return False
            if decision is None:
                logger.warning("❌ no usable decision for %s, moving to next page", page.url)
                break

            self._record_decision(page, step_number, decision)

            if self.flow_guard.apply(decision, current_url, step_number) is FlowTransition.ENDED:
                live_url = normalize_url(await self.browser.current_url())
                logger.info("🚫 sensitive flow ended, re-entering at %s", live_url)
                await self.page_queue.force_enqueue(live_url, FLOW_END_PRIORITY, source_url=page.url)
                break

            await self.emitter.emit(
                EventType.DECISION_MADE,
                url=page.url,
                url_hash=page.url_hash,
                step_number=step_number,
                tool=decision.tool,
                instruction=decision.instruction,
                reasoning=decision.reasoning,
                isPageCompleted=decision.is_current_page_execution_completed,
                isInSensitiveFlow=decision.is_in_sensitive_flow,
                maxPagesReached=context.max_pages_reached,
            )
            await self.emitter.emit(
                EventType.TOOL_STARTED,
                url=page.url,
                url_hash=page.url_hash,
                step_number=step_number,
                tool=decision.tool,
                instruction=decision.instruction,
            )

            step = await self.dispatcher.dispatch(decision, page, screenshot, context)
            if step is None:
                logger.info("🛑 tool stopped on %s (step %d)", page.url, step_number)
                return False

            page.executed_steps.append(step)
            page.last_step_number = step_number
            metadata.total_actions_executed += 1
            self._record_result(page, step)

            await self.emitter.emit(
                EventType.TOOL_COMPLETED,
                url=page.url,
                url_hash=page.url_hash,
                step_number=step_number,
                tool=step.tool.value,
                instruction=step.instruction,
                success=step.success,
                result=step.result,
                urlChanged=step.url_changed,
                newUrl=step.new_url,
                objectiveAchieved=step.objective_achieved,
            )

            if step.objective_achieved and not self.config.is_exploration:
                logger.info("🎯 objective achieved on %s", page.url)
                page.objective_achieved = True
                metadata.objective_achieved = True
                break

            if decision.is_current_page_execution_completed:
                logger.info("🏁 page marked complete by decision")
                break

            if counts_toward_budget(decision, step):
                steps_on_page += 1
            if self.config.max_steps_per_page and steps_on_page >= self.config.max_steps_per_page:
                logger.info("📊 step budget of %d reached on %s", self.config.max_steps_per_page, page.url)
                break

            self.storage.save_metadata(self.session_id, metadata)

            if self.gate.should_stop():
                logger.info("⏸️ leaving %s after step %d", page.url, step_number)
                return False

        return True

    def _close(self, page: PageRecord) -> None:
        # a page re-queued when a sensitive flow ended on it stays queued
        if page.url_hash not in self.page_queue:
            page.status = PageStatus.COMPLETED
        self.storage.save_page(self.session_id, page)

    def _context(self, page: PageRecord, screenshot: bytes, step_number: int) -> DecisionContext:
        return DecisionContext(
            screenshot=screenshot,
            url=page.url,
            objective=self.session.metadata.objective,
            step_number=step_number,
            is_exploration=self.config.is_exploration,
            max_pages_reached=self.page_queue.max_pages_reached(),
            conversation_history=self.page_store.conversation(page.url_hash),
            page_queue=self.page_queue.describe(),
            user_inputs=dict(self.session.user_inputs),
            flow_context=self.session.flow_context.model_copy(),
            action_history=list(self.session.action_history),
            additional_context=self.config.additional_context,
            can_login=self.config.can_login,
        )

    def _record_decision(self, page: PageRecord, step_number: int, decision: Decision) -> None:
        payload = decision.model_dump(mode="json")
        self.page_store.add_message(page.url_hash, "assistant", json.dumps(payload, ensure_ascii=False))
        self.decision_history.append(
            {
                "stepNumber": step_number,
                "timestamp": datetime.now().isoformat(),
                "url": page.url,
                "urlHash": page.url_hash,
                "objective": self.session.metadata.objective,
                "decision": payload,
            }
        )
        logger.info("🤖 decision: %s | %s", decision.tool, decision.instruction[:80])

    def _record_result(self, page: PageRecord, step: ExecutedStep) -> None:
        if step.tool == ToolName.REQUEST_INPUT and "USER_INPUT_SKIPPED=true" in step.result:
            message = SKIPPED_INPUT_MESSAGE
        else:
            message = f"Tool result: {step.model_dump_json(exclude={'input_values'})}"
        self.page_store.add_message(page.url_hash, "user", message)
