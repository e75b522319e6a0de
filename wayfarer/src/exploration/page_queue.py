"""Prioritized page queue over the session's page records."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .collaborators import SessionStorage
from .events import EventEmitter, EventType
from .identity import normalize_url, url_hash
from .models import ExplorationSession, PageRecord, PageStatus

logger = logging.getLogger(__name__)

START_PRIORITY = 1
DISCOVERED_PRIORITY = 2
FLOW_END_PRIORITY = 0


class PageQueue:
    """
    Queue of url hashes kept sorted by ascending priority.

    Ties keep insertion order. A hash is never present twice, and every
    queued hash has a PageRecord in ``session.pages``.
    """

    def __init__(
        self,
        session: ExplorationSession,
        storage: SessionStorage,
        emitter: EventEmitter,
        max_pages: int,
    ):
        self.session = session
        self.storage = storage
        self.emitter = emitter
        self.max_pages = max_pages

    @property
    def session_id(self) -> str:
        return self.session.metadata.session_id

    def __len__(self) -> int:
        return len(self.session.page_queue)

    def __contains__(self, key: str) -> bool:
        return key in self.session.page_queue

    def max_pages_reached(self) -> bool:
        return self.session.metadata.total_pages_discovered >= self.max_pages

    async def enqueue(self, url: str, priority: int = DISCOVERED_PRIORITY, source_url: Optional[str] = None) -> bool:
        normalized = normalize_url(url)
        key = url_hash(normalized)

        if key in self.session.pages:
            return False
        if self.max_pages_reached():
            logger.info("📊 page limit %d reached, not queueing %s", self.max_pages, normalized)
            return False

        page = self._register(normalized, key, priority, source_url)
        self._insert(key)
        await self.emitter.emit(
            EventType.URL_DISCOVERED,
            url=page.url,
            url_hash=key,
            priority=priority,
            sourceUrl=source_url,
            queueLength=len(self.session.page_queue),
            totalPagesDiscovered=self.session.metadata.total_pages_discovered,
        )
        logger.info("🔗 queued %s (priority %d, %d in queue)", normalized, priority, len(self))
        return True

    async def force_enqueue(self, url: str, priority: int = FLOW_END_PRIORITY, source_url: Optional[str] = None) -> str:
        """Queue ``url`` regardless of the page cap or a previous visit."""
        normalized = normalize_url(url)
        key = url_hash(normalized)

        page = self.session.pages.get(key)
        is_new = page is None
        if page is None:
            page = self._register(normalized, key, priority, source_url)
        else:
            page.status = PageStatus.QUEUED
            page.priority = priority
            self.storage.save_page(self.session_id, page)

        if key in self.session.page_queue:
            self.session.page_queue.remove(key)
        self._insert(key)

        if is_new:
            await self.emitter.emit(
                EventType.URL_DISCOVERED,
                url=page.url,
                url_hash=key,
                priority=priority,
                sourceUrl=source_url,
                queueLength=len(self.session.page_queue),
                totalPagesDiscovered=self.session.metadata.total_pages_discovered,
            )
        logger.info("↩️ re-queued %s at priority %d", normalized, priority)
        return key

    async def register(self, url: str, priority: int = DISCOVERED_PRIORITY, source_url: Optional[str] = None) -> PageRecord:
        """Record ``url`` as a known page without queueing it."""
        normalized = normalize_url(url)
        key = url_hash(normalized)
        page = self.session.pages.get(key)
        if page is not None:
            return page
        page = self._register(normalized, key, priority, source_url)
        await self.emitter.emit(
            EventType.URL_DISCOVERED,
            url=page.url,
            url_hash=key,
            priority=priority,
            sourceUrl=source_url,
            queueLength=len(self.session.page_queue),
            totalPagesDiscovered=self.session.metadata.total_pages_discovered,
        )
        return page

    def pop(self) -> Optional[PageRecord]:
        while self.session.page_queue:
            key = self.session.page_queue.pop(0)
            page = self.session.pages.get(key)
            if page is not None:
                return page
        return None

    def snapshot(self) -> List[str]:
        return list(self.session.page_queue)

    def describe(self) -> List[Dict[str, Any]]:
        """Queue as the decision model sees it."""
        described = []
        for key in self.session.page_queue:
            page = self.session.pages.get(key)
            if page is not None:
                described.append({"url": page.url, "urlHash": key, "priority": page.priority, "status": page.status.value})
        return described

    def restore(self, hashes: List[str]) -> None:
        """Replace the queue with ``hashes``, skipping unknown and duplicate entries."""
        restored: List[str] = []
        for key in hashes:
            if key in self.session.pages and key not in restored:
                restored.append(key)
        self.session.page_queue = restored

    def push_front(self, key: str) -> None:
        if key not in self.session.pages:
            return
        if key in self.session.page_queue:
            self.session.page_queue.remove(key)
        self.session.pages[key].status = PageStatus.QUEUED
        self.session.page_queue.insert(0, key)

    def _register(self, url: str, key: str, priority: int, source_url: Optional[str]) -> PageRecord:
        page = PageRecord(url=url, url_hash=key, priority=priority, source_url=source_url)
        self.session.pages[key] = page
        self.session.metadata.total_pages_discovered += 1
        self.storage.save_page(self.session_id, page)
        return page

    def _insert(self, key: str) -> None:
        self.session.page_queue.append(key)
        # list.sort is stable, so equal priorities keep FIFO order
        self.session.page_queue.sort(key=lambda h: self.session.pages[h].priority)
