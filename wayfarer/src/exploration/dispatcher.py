"""
Tool dispatch for a single step: act, request_input or standby.

``dispatch`` returns the ExecutedStep, or None when the session went away
while the tool was running. Any other failure inside a tool becomes a
failed step so the page loop can keep going.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from .collaborators import BrowserDriver, DecisionContext, DecisionMaker, Decision, SessionStorage
from .enrichment import EnrichmentCoordinator
from .errors import ExplorationStopped, InputAbandonedError, InputTimeoutError
from .events import EventEmitter, EventType
from .identity import normalize_url
from .input_broker import UserInputBroker
from .liveness import LivenessGate
from .models import (
    ActDecision,
    ActionHistoryEntry,
    ActOutcome,
    ExecutedStep,
    ExplorationConfig,
    ExplorationSession,
    PageRecord,
    RequestInputDecision,
    Screenshot,
    StandbyDecision,
    ToolName,
    UserInputRecord,
)
from .page_queue import DISCOVERED_PRIORITY, PageQueue
from .page_store import PageStore
from .sensitive_flow import FlowGuard

logger = logging.getLogger(__name__)

_NAVIGATE = re.compile(r"^\s*navigate\s+to\s+[\"']?(https?://[^\s\"']+)", re.IGNORECASE)


def navigation_target(instruction: str) -> Optional[str]:
    """URL of a ``navigate to <url>`` instruction, else None."""
    match = _NAVIGATE.match(instruction or "")
    if not match:
        return None
    return match.group(1).rstrip(".,;)")


class ToolDispatcher:
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
        input_broker: UserInputBroker,
        gate: LivenessGate,
        emitter: EventEmitter,
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
        self.input_broker = input_broker
        self.gate = gate
        self.emitter = emitter

    @property
    def step_number(self) -> int:
        return self.session.global_step_counter

    async def dispatch(
        self,
        decision: Decision,
        page: PageRecord,
        screenshot: bytes,
        context: Optional[DecisionContext] = None,
    ) -> Optional[ExecutedStep]:
        if not self.gate.is_live():
            logger.info("🛑 session inactive, skipping %s", decision.tool)
            return None

        try:
            if isinstance(decision, ActDecision):
                return await self._act(decision, page, context)
            if isinstance(decision, RequestInputDecision):
                return await self._request_input(decision, page)
            if isinstance(decision, StandbyDecision):
                return await self._standby(decision, page)
        except (InputAbandonedError, ExplorationStopped) as exc:
            logger.info("🛑 %s interrupted: %s", decision.tool, exc)
            return None
        except InputTimeoutError as exc:
            return self._failed(decision, f"User input failed: {exc}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("❌ %s failed on %s: %s", decision.tool, page.url, exc)
            return self._failed(decision, f"PREVIOUS_ACTION_RESULT: ACTION_RESULT=FAILED, ERROR={exc}")

        logger.warning("⚠️ unknown tool %r", getattr(decision, "tool", None))
        return None

    # --- act ---------------------------------------------------------------

    async def _act(
        self,
        decision: ActDecision,
        page: PageRecord,
        context: Optional[DecisionContext],
    ) -> Optional[ExecutedStep]:
        instruction = decision.instruction
        before_url = normalize_url(await self.browser.current_url())

        target = navigation_target(instruction)
        if target:
            logger.info("🧭 direct navigation to %s", target)
            await self.browser.goto(target)
            outcome = ActOutcome(success=True, detail={"navigated": target})
        else:
            outcome = await self.browser.act(instruction)

        if not self.gate.is_live():
            raise ExplorationStopped("session stopped during act")

        if not outcome.success:
            self.session.action_history.append(
                ActionHistoryEntry(
                    instruction=instruction,
                    source_url=page.url,
                    step_number=self.step_number,
                    success=False,
                )
            )
            step = ExecutedStep(
                step_number=self.step_number,
                tool=ToolName.ACT,
                instruction=instruction,
                success=False,
                url_changed=False,
                result=(
                    "PREVIOUS_ACTION_RESULT: URL_CHANGED=false, STAYED_ON_SAME_PAGE=true, ACTION_RESULT=FAILED"
                    + (f", ERROR={outcome.error}" if outcome.error else "")
                ),
            )
            await self._emit_act_result(page, step)
            return step

        after_url = normalize_url(await self.browser.current_url())
        after_shot = await self.browser.screenshot()
        after_path = self._save_screenshot(page, "after_act", after_shot)

        url_changed = after_url != before_url
        new_url: Optional[str] = None
        if not url_changed:
            result = "PREVIOUS_ACTION_RESULT: URL_CHANGED=false, STAYED_ON_SAME_PAGE=true, ACTION_RESULT=SUCCESS"
        elif self.flow_guard.active:
            new_url = after_url
            logger.info("🔒 sensitive flow, staying on %s without queueing", after_url)
            result = (
                f"PREVIOUS_ACTION_RESULT: URL_CHANGED=true, NEW_URL={after_url}, "
                "QUEUED=false (sensitive flow - stayed on new page)"
            )
        else:
            new_url = after_url
            logger.info("🆕 new URL discovered: %s", after_url)
            await self.page_queue.enqueue(after_url, DISCOVERED_PRIORITY, source_url=page.url)
            await self.browser.goto(page.url)
            result = (
                f"PREVIOUS_ACTION_RESULT: URL_CHANGED=true, NEW_URL={after_url}, "
                "QUEUED=true (navigated back to original page)"
            )

        self.page_store.add_action(
            page.url_hash,
            instruction,
            after_path,
            self.step_number,
            source_url=page.url,
            target_url=new_url,
            url_changed=url_changed,
        )
        self.session.action_history.append(
            ActionHistoryEntry(
                instruction=instruction,
                source_url=page.url,
                target_url=new_url,
                url_changed=url_changed,
                step_number=self.step_number,
                success=True,
            )
        )
        self.enrichment.trigger(page.url_hash)

        step = ExecutedStep(
            step_number=self.step_number,
            tool=ToolName.ACT,
            instruction=instruction,
            success=True,
            result=result,
            url_changed=url_changed,
            new_url=new_url,
            after_screenshot=after_path,
        )
        await self._emit_act_result(page, step)

        if not self.config.is_exploration and context is not None:
            objective_achieved = await self.decision_maker.assess_action(context, step)
            if not self.gate.is_live():
                raise ExplorationStopped("session stopped during assessment")
            step = step.model_copy(update={"objective_achieved": objective_achieved})
        return step

    async def _emit_act_result(self, page: PageRecord, step: ExecutedStep) -> None:
        await self.emitter.emit(
            EventType.ACT_RESULT,
            url=page.url,
            url_hash=page.url_hash,
            step_number=step.step_number,
            instruction=step.instruction,
            actionSuccess=step.success,
            urlChanged=bool(step.url_changed),
            newUrl=step.new_url,
            result=step.result,
        )

    # --- request_input -----------------------------------------------------

    async def _request_input(self, decision: RequestInputDecision, page: PageRecord) -> Optional[ExecutedStep]:
        requests = decision.inputs
        if not requests:
            return self._failed(decision, "User input failed: no input fields requested")

        keys = [request.key for request in requests]
        await self.emitter.emit(
            EventType.INPUT_REQUESTED,
            url=page.url,
            url_hash=page.url_hash,
            step_number=self.step_number,
            inputs=[{"key": r.key, "type": r.type.value, "prompt": r.prompt} for r in requests],
            reasoning=decision.reasoning,
        )
        logger.info("🔔 waiting for user input: %s", ", ".join(keys))

        response = await self.input_broker.wait(self.config.input_timeout_seconds)

        if not self.gate.is_live():
            raise ExplorationStopped("session stopped while waiting for user input")

        if response.skipped:
            logger.info("⏭️ user skipped input for %s", ", ".join(keys))
            return ExecutedStep(
                step_number=self.step_number,
                tool=ToolName.REQUEST_INPUT,
                instruction=decision.instruction,
                success=True,
                input_keys=keys,
                result=(
                    f"PREVIOUS_ACTION_RESULT: USER_INPUT_SKIPPED=true, user declined to provide "
                    f"{', '.join(keys)}. Continue without these values."
                ),
            )

        values = {}
        for request in requests:
            value = response.values.get(request.key)
            if value is None:
                continue
            values[request.key] = value
            self.session.user_inputs[request.key] = UserInputRecord(
                key=request.key,
                value=value,
                type=request.type.value,
            )

        await self.emitter.emit(
            EventType.INPUT_RECEIVED,
            url=page.url,
            url_hash=page.url_hash,
            step_number=self.step_number,
            inputKeys=list(values),
        )
        missing = [key for key in keys if key not in values]
        result = f"User input received for keys: {', '.join(values) or 'none'}"
        if missing:
            result += f" (missing: {', '.join(missing)})"
        return ExecutedStep(
            step_number=self.step_number,
            tool=ToolName.REQUEST_INPUT,
            instruction=decision.instruction,
            success=bool(values),
            input_keys=keys,
            input_values=values,
            result=result,
        )

    # --- standby -----------------------------------------------------------

    async def _standby(self, decision: StandbyDecision, page: PageRecord) -> Optional[ExecutedStep]:
        requested = decision.wait_seconds or self.config.default_standby_seconds
        wait_seconds = min(requested, self.config.max_standby_seconds)
        before_path = self._save_screenshot(page, "before_standby", await self.browser.screenshot())
        logger.info("⏳ standby %gs: %s", wait_seconds, decision.instruction)
        await asyncio.sleep(wait_seconds)

        if not self.gate.is_live():
            raise ExplorationStopped("session stopped during standby")

        after_path = self._save_screenshot(page, "after_standby", await self.browser.screenshot())
        step = ExecutedStep(
            step_number=self.step_number,
            tool=ToolName.STANDBY,
            instruction=decision.instruction,
            success=True,
            wait_seconds=wait_seconds,
            before_screenshot=before_path,
            after_screenshot=after_path,
            result=f"Waited {wait_seconds:g} seconds for: {decision.instruction}",
        )
        await self.emitter.emit(
            EventType.STANDBY_COMPLETED,
            url=page.url,
            url_hash=page.url_hash,
            step_number=self.step_number,
            waitSeconds=wait_seconds,
            beforeScreenshot=before_path,
            afterScreenshot=after_path,
        )
        return step

    # --- helpers -----------------------------------------------------------

    def _save_screenshot(self, page: PageRecord, kind: str, data: bytes) -> str:
        path = self.storage.save_screenshot(
            self.session.metadata.session_id, page.url_hash, self.step_number, kind, data
        )
        page.screenshots.append(Screenshot(step_number=self.step_number, kind=kind, file_path=path))
        return path

    def _failed(self, decision: Decision, result: str) -> ExecutedStep:
        return ExecutedStep(
            step_number=self.step_number,
            tool=ToolName(decision.tool),
            instruction=decision.instruction,
            success=False,
            result=result,
        )
