"""
JSON file storage for exploration sessions.

Layout::

    <root>/<user>/<session_id>/
        session_metadata.json
        exploration_checkpoint.json
        conversation_history.json
        page_store.json
        urls/<url_hash>/page_data.json
        urls/<url_hash>/screenshots/step_001_initial.png
"""
from __future__ import annotations

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from wayfarer.src.exploration.errors import StorageError
from wayfarer.src.exploration.models import ExplorationCheckpoint, PageRecord, SessionMetadata
from wayfarer.src.utils.config import CONFIG

logger = logging.getLogger(__name__)

DEFAULT_USER_DIR = "exploration_sessions"

METADATA_FILE = "session_metadata.json"
CHECKPOINT_FILE = "exploration_checkpoint.json"
HISTORY_FILE = "conversation_history.json"
PAGE_STORE_FILE = "page_store.json"
PAGE_FILE = "page_data.json"


def _safe_key(key: Optional[str], default: str = DEFAULT_USER_DIR) -> str:
    value = (key or default).strip()
    if not value:
        value = default
    return re.sub(r"[^a-zA-Z0-9_.-]+", "_", value)


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("⚠️ could not read %s: %s", path, exc)
        return None


def _write_json(path: Path, payload: Any) -> Path:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"could not write {path}: {exc}") from exc
    return path


class JsonSessionStore:
    """File-backed session storage scoped to one user directory."""

    def __init__(self, root: Union[str, Path, None] = None, user_name: Optional[str] = None):
        self.root = Path(root or CONFIG.storage.root_dir)
        self.user_dir = self.root / _safe_key(user_name)

    def session_dir(self, session_id: str) -> Path:
        return self.user_dir / _safe_key(session_id, "session")

    def page_dir(self, session_id: str, url_hash: str) -> Path:
        return self.session_dir(session_id) / "urls" / _safe_key(url_hash, "page")

    def cleanup_user(self) -> None:
        """Remove every stored session for this user."""
        if self.user_dir.exists():
            shutil.rmtree(self.user_dir, ignore_errors=True)
            logger.info("🧹 removed previous sessions in %s", self.user_dir)

    def list_sessions(self) -> List[str]:
        if not self.user_dir.exists():
            return []
        return sorted(p.name for p in self.user_dir.iterdir() if (p / METADATA_FILE).exists())

    # --- metadata ------------------------------------------------------------

    def save_metadata(self, session_id: str, metadata: SessionMetadata) -> None:
        _write_json(self.session_dir(session_id) / METADATA_FILE, metadata.model_dump(mode="json"))

    def load_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        data = _read_json(self.session_dir(session_id) / METADATA_FILE)
        if not isinstance(data, dict):
            return None
        try:
            return SessionMetadata.model_validate(data)
        except ValidationError as exc:
            logger.warning("⚠️ invalid metadata for %s: %s", session_id, exc)
            return None

    # --- pages ---------------------------------------------------------------

    def save_page(self, session_id: str, page: PageRecord) -> None:
        _write_json(self.page_dir(session_id, page.url_hash) / PAGE_FILE, page.model_dump(mode="json"))

    def load_pages(self, session_id: str) -> Dict[str, PageRecord]:
        urls_dir = self.session_dir(session_id) / "urls"
        pages: Dict[str, PageRecord] = {}
        if not urls_dir.exists():
            return pages
        for page_file in sorted(urls_dir.glob(f"*/{PAGE_FILE}")):
            data = _read_json(page_file)
            if not isinstance(data, dict):
                continue
            try:
                page = PageRecord.model_validate(data)
            except ValidationError as exc:
                logger.warning("⚠️ skipping %s: %s", page_file, exc)
                continue
            pages[page.url_hash] = page
        return pages

    def save_screenshot(self, session_id: str, url_hash: str, step_number: int, label: str, data: bytes) -> str:
        path = self.page_dir(session_id, url_hash) / "screenshots" / f"step_{step_number:03d}_{_safe_key(label, 'shot')}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"could not write {path}: {exc}") from exc
        return str(path)

    # --- checkpoint ----------------------------------------------------------

    def save_checkpoint(self, session_id: str, checkpoint: ExplorationCheckpoint) -> None:
        _write_json(self.session_dir(session_id) / CHECKPOINT_FILE, checkpoint.model_dump(mode="json"))

    def load_checkpoint(self, session_id: str) -> Optional[ExplorationCheckpoint]:
        data = _read_json(self.session_dir(session_id) / CHECKPOINT_FILE)
        if not isinstance(data, dict):
            return None
        try:
            return ExplorationCheckpoint.model_validate(data)
        except ValidationError as exc:
            logger.warning("⚠️ invalid checkpoint for %s: %s", session_id, exc)
            return None

    def delete_checkpoint(self, session_id: str) -> None:
        path = self.session_dir(session_id) / CHECKPOINT_FILE
        if path.exists():
            path.unlink()

    # --- page store / history ------------------------------------------------

    def save_page_store(self, session_id: str, payload: Dict[str, Any]) -> None:
        _write_json(self.session_dir(session_id) / PAGE_STORE_FILE, payload)

    def load_page_store(self, session_id: str) -> Dict[str, Any]:
        data = _read_json(self.session_dir(session_id) / PAGE_STORE_FILE)
        return data if isinstance(data, dict) else {}

    def save_decision_history(self, session_id: str, history: List[Dict[str, Any]]) -> None:
        _write_json(
            self.session_dir(session_id) / HISTORY_FILE,
            {"sessionId": session_id, "totalDecisions": len(history), "decisions": history},
        )

    def load_decision_history(self, session_id: str) -> List[Dict[str, Any]]:
        data = _read_json(self.session_dir(session_id) / HISTORY_FILE)
        if isinstance(data, dict) and isinstance(data.get("decisions"), list):
            return data["decisions"]
        return []
