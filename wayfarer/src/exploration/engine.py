"""
Exploration Engine

Owns one exploration session: the page queue, the per-page step loop, the
background graph generation and the chat pause/resume cycle.

    engine = ExplorationEngine(config, browser, decision_maker, storage, registry, sink=sink)
    achieved = await engine.run_to_end()
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .chat import ChatInterruptManager
from .collaborators import BrowserDriver, ChatDecider, DecisionMaker, EventSink, GraphEnricher, SessionStorage
from .dispatcher import ToolDispatcher
from .enrichment import EnrichmentCoordinator
from .events import EventEmitter, EventType
from .identity import session_id_for
from .input_broker import UserInputBroker
from .liveness import LivenessGate, SessionRegistry
from .models import (
    ExplorationCheckpoint,
    ExplorationConfig,
    ExplorationPhase,
    ExplorationSession,
    PageStatus,
    SessionMetadata,
)
from .page_loop import PageLoop
from .page_queue import START_PRIORITY, PageQueue
from .page_store import PageStore
from .sensitive_flow import FlowGuard

logger = logging.getLogger(__name__)


class ExplorationEngine:
    def __init__(
        self,
        config: ExplorationConfig,
        browser: BrowserDriver,
        decision_maker: DecisionMaker,
        storage: SessionStorage,
        registry: SessionRegistry,
        *,
        sink: Optional[EventSink] = None,
        chat_decider: Optional[ChatDecider] = None,
        enricher: Optional[GraphEnricher] = None,
        input_broker: Optional[UserInputBroker] = None,
    ):
        self.config = config
        self.browser = browser
        self.decision_maker = decision_maker
        self.storage = storage
        self.registry = registry

        self.session = self._open_session()
        self.emitter = EventEmitter(config.user_name, sink)
        self.gate = LivenessGate(config.user_name, registry)
        self.input_broker = input_broker or UserInputBroker()
        self.decision_history: List[Dict[str, Any]] = []

        self.page_queue = PageQueue(self.session, storage, self.emitter, config.max_pages_to_explore)
        self.page_store = PageStore(storage, self.session_id)
        self.enrichment = EnrichmentCoordinator(enricher, self.page_store, self.emitter)
        self.flow_guard = FlowGuard(self.session.flow_context)
        self.dispatcher = ToolDispatcher(
            self.session,
            config,
            browser,
            decision_maker,
            storage,
            self.page_queue,
            self.page_store,
            self.enrichment,
            self.flow_guard,
            self.input_broker,
            self.gate,
            self.emitter,
        )
        self.page_loop = PageLoop(
            self.session,
            config,
            browser,
            decision_maker,
            storage,
            self.page_queue,
            self.page_store,
            self.enrichment,
            self.flow_guard,
            self.dispatcher,
            self.gate,
            self.emitter,
            self.decision_history,
        )
        self.chat = ChatInterruptManager(self, chat_decider) if chat_decider is not None else None

        self._run_task: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()
        self._result = False

        if config.resume_session_id and self.session_id == config.resume_session_id:
            self.page_store.load()
            self.decision_history.extend(storage.load_decision_history(self.session_id))

    @property
    def session_id(self) -> str:
        return self.session.metadata.session_id

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def run_task(self) -> Optional[asyncio.Task]:
        return self._run_task

    # --- session setup -------------------------------------------------------

    def _open_session(self) -> ExplorationSession:
        resume_id = self.config.resume_session_id
        if resume_id:
            metadata = self.storage.load_metadata(resume_id)
            if metadata is not None:
                pages = self.storage.load_pages(resume_id)
                session = ExplorationSession(metadata=metadata, pages=pages)
                session.global_step_counter = max(
                    (page.last_step_number or 0 for page in pages.values()),
                    default=0,
                )
                logger.info("♻️ resuming session %s (%d pages on disk)", resume_id, len(pages))
                return session
            logger.warning("⚠️ session %s not found, starting fresh", resume_id)

        metadata = SessionMetadata(
            session_id=session_id_for(self.config.start_url),
            objective=self.config.objective,
            start_url=self.config.start_url,
        )
        return ExplorationSession(metadata=metadata)

    # --- lifecycle -----------------------------------------------------------

    async def explore(self) -> bool:
        """Start (or resume) the session and run it until it finishes or pauses."""
        if self.session.metadata.phase == ExplorationPhase.COMPLETED:
            logger.info("💤 session %s already completed, nothing to resume", self.session_id)
            self._result = self.session.metadata.objective_achieved
            self._finished.set()
            return self._result

        checkpoint = self.storage.load_checkpoint(self.session_id)
        if checkpoint is not None and checkpoint.exploration_phase != ExplorationPhase.COMPLETED:
            logger.info("♻️ restoring checkpoint from %s", checkpoint.timestamp)
            self.session.global_step_counter = max(self.session.global_step_counter, checkpoint.last_step_number)
            self.restore(checkpoint)
            # pages discovered after the checkpoint was written
            self._requeue_unfinished()
        elif self.session.pages:
            self._requeue_unfinished()
        else:
            await self.page_queue.enqueue(self.config.start_url, START_PRIORITY)

        self.session.metadata.phase = ExplorationPhase.ACTIVE
        self.storage.save_metadata(self.session_id, self.session.metadata)
        logger.info("🚀 exploring %s (objective: %s)", self.config.start_url, self.config.objective)
        return await self.run()

    async def run(self) -> bool:
        metadata = self.session.metadata
        while True:
            if self.gate.interrupted:
                metadata.phase = ExplorationPhase.PAUSED
                self.storage.save_metadata(self.session_id, metadata)
                self.storage.save_decision_history(self.session_id, self.decision_history)
                logger.info("⏸️ exploration paused at step %d", self.session.global_step_counter)
                return metadata.objective_achieved
            if not self.gate.is_live():
                logger.info("🛑 session for %s is no longer active", self.config.user_name)
                return await self._finalize(False)
            if metadata.objective_achieved:
                return await self._finalize(True)

            page = self.page_queue.pop()
            if page is None:
                logger.info("📭 page queue exhausted")
                return await self._finalize(False)

            await self.page_loop.process(page)

    def start(self) -> asyncio.Task:
        """Run ``explore`` in a supervised task."""
        return self._spawn(self.explore())

    def start_run(self) -> asyncio.Task:
        """Run ``run`` in a supervised task (used after a chat resume)."""
        return self._spawn(self.run())

    async def run_to_end(self) -> bool:
        """Explore and keep waiting across chat pauses until the session is finalized."""
        self.start()
        await self._finished.wait()
        return self._result

    async def wait_suspended(self) -> None:
        """Wait until the current run task has returned."""
        task = self._run_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def stop(self) -> None:
        """Release anything blocking the spine. The transport drops the user from the registry."""
        self.input_broker.abandon("exploration stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"explore:{self.config.user_name}")
        self._run_task = task
        task.add_done_callback(self._on_run_done)
        return task

    def _on_run_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._result = False
            self._finished.set()
            return
        exc = task.exception()
        if exc is not None:
            logger.error("❌ exploration failed: %s", exc, exc_info=exc)
            self._result = False
            self._finished.set()

    async def _finalize(self, success: bool) -> bool:
        await self.enrichment.drain()
        metadata = self.session.metadata
        metadata.end_time = datetime.now().isoformat()
        metadata.phase = ExplorationPhase.COMPLETED
        if success:
            metadata.objective_achieved = True
        self.storage.save_metadata(self.session_id, metadata)
        self.storage.save_decision_history(self.session_id, self.decision_history)
        self.checkpoint()

        duration = (
            datetime.fromisoformat(metadata.end_time) - datetime.fromisoformat(metadata.start_time)
        ).total_seconds()
        await self.emitter.emit(
            EventType.SESSION_COMPLETED,
            sessionId=self.session_id,
            success=success,
            objectiveAchieved=metadata.objective_achieved,
            totalPagesDiscovered=metadata.total_pages_discovered,
            totalActionsExecuted=metadata.total_actions_executed,
            durationSeconds=round(duration, 3),
        )
        logger.info(
            "🎉 session %s finished (pages=%d, actions=%d, achieved=%s)",
            self.session_id,
            metadata.total_pages_discovered,
            metadata.total_actions_executed,
            metadata.objective_achieved,
        )
        self._result = success
        self._finished.set()
        return success

    # --- checkpoints ---------------------------------------------------------

    def checkpoint(self) -> ExplorationCheckpoint:
        """Snapshot the queue position and persist it."""
        current_hash = self.session.current_page or ""
        current = self.session.pages.get(current_hash)
        phase = (
            ExplorationPhase.COMPLETED
            if self.session.metadata.phase == ExplorationPhase.COMPLETED
            else ExplorationPhase.ACTIVE
        )
        checkpoint = ExplorationCheckpoint(
            current_page_url=current.url if current else "",
            current_page_hash=current_hash,
            queue_position=sum(1 for page in self.session.pages.values() if page.status == PageStatus.COMPLETED),
            remaining_queue=self.page_queue.snapshot(),
            exploration_phase=phase,
            last_step_number=self.session.global_step_counter,
        )
        self.storage.save_checkpoint(self.session_id, checkpoint)
        return checkpoint

    def restore(self, checkpoint: ExplorationCheckpoint, front: Optional[List[str]] = None) -> None:
        """
        Rebuild the queue from ``checkpoint``.

        Pages queued after the checkpoint was taken are kept behind it; the
        interrupted page goes back to the front, and ``front`` ahead of that.
        Pages completed since the checkpoint are left out.
        """
        remaining = list(checkpoint.remaining_queue)
        remaining += [key for key in self.page_queue.snapshot() if key not in remaining]
        self.page_queue.restore([key for key in remaining if not self._completed(key)])

        interrupted = self.session.pages.get(checkpoint.current_page_hash)
        if interrupted is not None and interrupted.status == PageStatus.IN_PROGRESS:
            self.page_queue.push_front(interrupted.url_hash)
        for key in reversed(front or []):
            self.page_queue.push_front(key)

        self.session.metadata.phase = ExplorationPhase.ACTIVE
        self.storage.save_metadata(self.session_id, self.session.metadata)

    def _completed(self, key: str) -> bool:
        page = self.session.pages.get(key)
        return page is not None and page.status == PageStatus.COMPLETED

    def _requeue_unfinished(self) -> None:
        """Append unfinished pages that are not queued yet, interrupted ones first."""
        queued = self.page_queue.snapshot()
        unfinished = [
            page
            for page in self.session.pages.values()
            if page.status != PageStatus.COMPLETED and page.url_hash not in queued
        ]
        unfinished.sort(key=lambda page: (page.status != PageStatus.IN_PROGRESS, page.priority))
        self.page_queue.restore(queued + [page.url_hash for page in unfinished])
        for key in self.page_queue.snapshot():
            self.session.pages[key].status = PageStatus.QUEUED
