"""
Per-page knowledge store.

Holds what the agent learned on each page: the initial screenshot, one
snapshot per in-page action, the decision conversation for that page and
the latest interaction graph. The whole store is written to
``page_store.json`` after every change.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from .collaborators import SessionStorage

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now().isoformat()


class ActionSnapshot(BaseModel):
    instruction: str
    after_act: str = Field(..., description="screenshot file path")
    image_name: str
    step_number: int
    source_url: Optional[str] = None
    target_url: Optional[str] = None
    url_changed: bool = False
    timestamp: str = Field(default_factory=_now_iso)


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PageEntry(BaseModel):
    url: str
    url_hash: str
    initial_screenshot: str = ""
    action_history: List[ActionSnapshot] = Field(default_factory=list)
    conversation_history: List[ConversationTurn] = Field(default_factory=list)
    graph: Optional[Dict[str, Any]] = None
    last_updated: str = Field(default_factory=_now_iso)


def image_name_for(step_number: int, image_ref: str) -> str:
    """``step_<n>_<8 hex>`` node name for a snapshot."""
    digest = hashlib.md5(image_ref.encode("utf-8")).hexdigest()[:8]
    return f"step_{step_number}_{digest}"


class PageStore:
    def __init__(self, storage: SessionStorage, session_id: str):
        self.storage = storage
        self.session_id = session_id
        self._pages: Dict[str, PageEntry] = {}

    def load(self) -> None:
        payload = self.storage.load_page_store(self.session_id) or {}
        for url_hash, raw in payload.items():
            try:
                self._pages[url_hash] = PageEntry.model_validate(raw)
            except ValidationError as exc:
                logger.warning("⚠️ dropping unreadable page store entry %s: %s", url_hash, exc)

    def save(self) -> None:
        self.storage.save_page_store(
            self.session_id,
            {url_hash: entry.model_dump(mode="json") for url_hash, entry in self._pages.items()},
        )

    def get(self, url_hash: str) -> Optional[PageEntry]:
        return self._pages.get(url_hash)

    def __contains__(self, url_hash: str) -> bool:
        return url_hash in self._pages

    def initialize_page(self, url: str, url_hash: str, initial_screenshot: str) -> PageEntry:
        entry = self._pages.get(url_hash)
        if entry is None:
            entry = PageEntry(url=url, url_hash=url_hash, initial_screenshot=initial_screenshot)
            self._pages[url_hash] = entry
            self.save()
            logger.info("📦 page store initialized for %s (%d pages)", url, len(self._pages))
        return entry

    def add_action(
        self,
        url_hash: str,
        instruction: str,
        after_act: str,
        step_number: int,
        *,
        source_url: Optional[str] = None,
        target_url: Optional[str] = None,
        url_changed: bool = False,
    ) -> Optional[ActionSnapshot]:
        entry = self._pages.get(url_hash)
        if entry is None:
            logger.warning("⚠️ page store entry missing for %s", url_hash)
            return None
        snapshot = ActionSnapshot(
            instruction=instruction,
            after_act=after_act,
            image_name=image_name_for(step_number, after_act),
            step_number=step_number,
            source_url=source_url,
            target_url=target_url,
            url_changed=url_changed,
        )
        entry.action_history.append(snapshot)
        entry.last_updated = _now_iso()
        self.save()
        return snapshot

    def add_message(self, url_hash: str, role: str, content: str) -> None:
        entry = self._pages.get(url_hash)
        if entry is None:
            logger.warning("⚠️ page store entry missing for %s", url_hash)
            return
        entry.conversation_history.append(ConversationTurn(role=role, content=content))
        entry.last_updated = _now_iso()
        self.save()

    def conversation(self, url_hash: str) -> List[Dict[str, str]]:
        entry = self._pages.get(url_hash)
        if entry is None:
            return []
        return [turn.model_dump() for turn in entry.conversation_history]

    def set_graph(self, url_hash: str, graph: Dict[str, Any]) -> None:
        entry = self._pages.get(url_hash)
        if entry is None:
            return
        entry.graph = graph
        entry.last_updated = _now_iso()
        self.save()

    def get_graph(self, url_hash: str) -> Optional[Dict[str, Any]]:
        entry = self._pages.get(url_hash)
        return entry.graph if entry else None
