"""
Background interaction-graph generation.

One supervised task per page. While a task for a page is alive, further
triggers for that page are ignored; ``complete`` waits for it and then runs
one final pass so the graph reflects every recorded action.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .collaborators import GraphEnricher
from .events import EventEmitter, EventType
from .page_store import PageStore

logger = logging.getLogger(__name__)


class EnrichmentCoordinator:
    def __init__(self, enricher: Optional[GraphEnricher], page_store: PageStore, emitter: EventEmitter):
        self.enricher = enricher
        self.page_store = page_store
        self.emitter = emitter
        self._tasks: Dict[str, asyncio.Task] = {}

    def in_progress(self, url_hash: str) -> bool:
        task = self._tasks.get(url_hash)
        return task is not None and not task.done()

    def trigger(self, url_hash: str) -> Optional[asyncio.Task]:
        """Start a background pass unless one is already running for the page."""
        if self.enricher is None:
            return None
        if self.in_progress(url_hash):
            logger.debug("graph generation already running for %s", url_hash)
            return None
        task = asyncio.create_task(self._run(url_hash, blocking=False), name=f"enrich:{url_hash}")
        self._tasks[url_hash] = task
        task.add_done_callback(lambda done, key=url_hash: self._forget(key, done))
        return task

    async def complete(self, url_hash: str) -> None:
        """Wait for any running pass, then run a final one."""
        if self.enricher is None:
            return
        running = self._tasks.get(url_hash)
        if running is not None and not running.done():
            logger.info("⏳ waiting for background graph generation on %s", url_hash)
            await asyncio.gather(running, return_exceptions=True)
        task = asyncio.create_task(self._run(url_hash, blocking=True), name=f"enrich-final:{url_hash}")
        self._tasks[url_hash] = task
        task.add_done_callback(lambda done, key=url_hash: self._forget(key, done))
        await asyncio.gather(task, return_exceptions=True)

    async def drain(self) -> None:
        live = [task for task in self._tasks.values() if not task.done()]
        if live:
            await asyncio.gather(*live, return_exceptions=True)

    def _forget(self, url_hash: str, task: asyncio.Task) -> None:
        if self._tasks.get(url_hash) is task:
            del self._tasks[url_hash]

    async def _run(self, url_hash: str, blocking: bool) -> None:
        entry = self.page_store.get(url_hash)
        if entry is None:
            logger.warning("⚠️ no page store entry for %s, skipping graph generation", url_hash)
            return
        await self.emitter.emit(
            EventType.ENRICHMENT_STARTED,
            url=entry.url,
            url_hash=url_hash,
            blocking=blocking,
            actionCount=len(entry.action_history),
        )
        try:
            graph = await self.enricher.enrich(entry, self.page_store.get_graph(url_hash))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("❌ graph generation failed for %s: %s", url_hash, exc)
            return
        if not graph:
            return
        self.page_store.set_graph(url_hash, graph)
        await self.emitter.emit(
            EventType.ENRICHMENT_UPDATED,
            url=entry.url,
            url_hash=url_hash,
            blocking=blocking,
            graph=graph,
        )
        logger.info("🕸️ interaction graph updated for %s", url_hash)
