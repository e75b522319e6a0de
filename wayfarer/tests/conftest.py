import asyncio
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from wayfarer.src.exploration.engine import ExplorationEngine
from wayfarer.src.exploration.events import EventEmitter, EventType, ExplorationEvent
from wayfarer.src.exploration.identity import normalize_url
from wayfarer.src.exploration.liveness import SessionRegistry
from wayfarer.src.exploration.models import (
    ActOutcome,
    ChatDecision,
    ExplorationConfig,
    ExplorationSession,
    SessionMetadata,
    parse_tool_decision,
)
from wayfarer.src.exploration.page_queue import PageQueue
from wayfarer.src.storage.session_store import JsonSessionStore

START_URL = "https://example.com"


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[ExplorationEvent] = []

    async def publish(self, event: ExplorationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[ExplorationEvent]:
        return [event for event in self.events if event.type == event_type]

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


class FakeBrowser:
    """Browser whose acts move to scripted URLs."""

    def __init__(self, transitions=None, failing=None, broken_urls=None):
        self.url = "about:blank"
        self.transitions: Dict[str, str] = dict(transitions or {})
        self.failing = set(failing or [])
        self.broken_urls = {normalize_url(url) for url in (broken_urls or [])}
        self.visits: List[str] = []
        self.acts: List[str] = []
        self.shots = 0

    async def current_url(self) -> str:
        return self.url

    async def goto(self, url: str) -> None:
        self.visits.append(url)
        if normalize_url(url) in self.broken_urls:
            raise RuntimeError(f"net::ERR_CONNECTION_REFUSED at {url}")
        self.url = url

    async def screenshot(self, full_page: bool = False) -> bytes:
        self.shots += 1
        return f"png-{self.shots}".encode()

    async def act(self, instruction: str) -> ActOutcome:
        self.acts.append(instruction)
        if instruction in self.failing:
            return ActOutcome(success=False, error="element not found")
        target = self.transitions.get(instruction)
        if target:
            self.url = target
        return ActOutcome(success=True)


class ScriptedDecisions:
    """Hands out decisions per page URL in order; None once a page's script runs out."""

    def __init__(self, script=None, achieving=()):
        self.script: Dict[str, List[Any]] = {normalize_url(url): list(items) for url, items in (script or {}).items()}
        self.achieving = set(achieving)
        self.contexts = []
        self.assessed: List[str] = []
        self.before_decide: Optional[Callable] = None

    async def decide(self, context):
        self.contexts.append(context)
        if self.before_decide is not None:
            await self.before_decide(context)
            await asyncio.sleep(0)
        items = self.script.get(normalize_url(context.url))
        if not items:
            return None
        item = items.pop(0)
        return parse_tool_decision(item) if isinstance(item, dict) else item

    async def assess_action(self, context, step) -> bool:
        self.assessed.append(step.instruction)
        return step.instruction in self.achieving


class FakeChat:
    def __init__(self, decision: Optional[ChatDecision] = None, error: Optional[Exception] = None):
        self.decision = decision or ChatDecision(response="Nothing new yet.")
        self.error = error
        self.calls = []

    async def decide_chat(self, message, checkpoint, pages, chat_history):
        self.calls.append((message, checkpoint, len(pages), len(chat_history)))
        if self.error is not None:
            raise self.error
        return self.decision


class FakeEnricher:
    """Counts calls; each call blocks until ``release`` is set when ``hold`` is on."""

    def __init__(self, hold: bool = False):
        self.calls: List[str] = []
        self.hold = hold
        self.release: Optional[asyncio.Event] = None

    async def enrich(self, page, previous_graph):
        self.calls.append(page.url_hash)
        if self.hold:
            if self.release is None:
                self.release = asyncio.Event()
            await self.release.wait()
        return {"nodes": [a.image_name for a in page.action_history], "version": len(self.calls)}


@pytest.fixture
def make_engine(tmp_path):
    def _make(
        script=None,
        *,
        browser=None,
        achieving=(),
        enricher=None,
        chat=None,
        **overrides,
    ):
        options = dict(
            user_name="tester",
            objective="find pricing",
            start_url=START_URL,
            max_pages_to_explore=6,
            input_timeout_seconds=1,
            max_standby_seconds=0.05,
        )
        options.update(overrides)
        config = ExplorationConfig(**options)
        registry = SessionRegistry()
        registry.activate(config.user_name)
        sink = RecordingSink()
        decisions = ScriptedDecisions(script, achieving)
        browser = browser or FakeBrowser()
        storage = JsonSessionStore(tmp_path, config.user_name)
        engine = ExplorationEngine(
            config,
            browser,
            decisions,
            storage,
            registry,
            sink=sink,
            chat_decider=chat,
            enricher=enricher,
        )
        return SimpleNamespace(
            engine=engine,
            browser=browser,
            decisions=decisions,
            sink=sink,
            registry=registry,
            storage=storage,
            config=config,
        )

    return _make


@pytest.fixture
def make_queue(tmp_path):
    def _make(max_pages: int = 6):
        session = ExplorationSession(
            metadata=SessionMetadata(session_id="example-com_test", objective="explore", start_url=START_URL)
        )
        sink = RecordingSink()
        storage = JsonSessionStore(tmp_path, "tester")
        queue = PageQueue(session, storage, EventEmitter("tester", sink), max_pages)
        return SimpleNamespace(queue=queue, session=session, sink=sink, storage=storage)

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], attempts: int = 500) -> None:
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(0.001)
        raise AssertionError("condition never became true")

    return _wait
