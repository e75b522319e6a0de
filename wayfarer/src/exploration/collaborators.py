"""
Contracts for everything the engine talks to.

The engine never imports Playwright, OpenAI or the file store directly; it
receives objects that satisfy these protocols.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Union

from .models import (
    ActDecision,
    ActionHistoryEntry,
    ActOutcome,
    ChatDecision,
    ChatMessage,
    ExecutedStep,
    ExplorationCheckpoint,
    FlowContext,
    PageRecord,
    RequestInputDecision,
    SessionMetadata,
    StandbyDecision,
    UserInputRecord,
)

if TYPE_CHECKING:
    from .events import ExplorationEvent
    from .page_store import PageEntry

Decision = Union[ActDecision, RequestInputDecision, StandbyDecision]


@dataclass
class DecisionContext:
    """Everything the decision model sees for one step."""

    screenshot: bytes
    url: str
    objective: str
    step_number: int
    is_exploration: bool
    max_pages_reached: bool
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    page_queue: List[Dict[str, Any]] = field(default_factory=list)
    user_inputs: Dict[str, UserInputRecord] = field(default_factory=dict)
    flow_context: FlowContext = field(default_factory=FlowContext)
    action_history: List[ActionHistoryEntry] = field(default_factory=list)
    additional_context: Optional[str] = None
    can_login: bool = False


class BrowserDriver(Protocol):
    async def current_url(self) -> str: ...

    async def goto(self, url: str) -> None: ...

    async def screenshot(self, full_page: bool = False) -> bytes: ...

    async def act(self, instruction: str) -> ActOutcome: ...


class DecisionMaker(Protocol):
    async def decide(self, context: DecisionContext) -> Optional[Decision]:
        """Next tool call for the page, or None when the model gave nothing usable."""
        ...

    async def assess_action(self, context: DecisionContext, step: ExecutedStep) -> bool:
        """Whether the objective is achieved after ``step``."""
        ...


class ChatDecider(Protocol):
    async def decide_chat(
        self,
        message: str,
        checkpoint: ExplorationCheckpoint,
        pages: List[PageRecord],
        chat_history: List[ChatMessage],
    ) -> ChatDecision: ...


class GraphEnricher(Protocol):
    async def enrich(self, page: "PageEntry", previous_graph: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]: ...


class SessionStorage(Protocol):
    def save_metadata(self, session_id: str, metadata: SessionMetadata) -> None: ...

    def load_metadata(self, session_id: str) -> Optional[SessionMetadata]: ...

    def save_page(self, session_id: str, page: PageRecord) -> None: ...

    def load_pages(self, session_id: str) -> Dict[str, PageRecord]: ...

    def save_screenshot(self, session_id: str, url_hash: str, step_number: int, label: str, data: bytes) -> str: ...

    def save_checkpoint(self, session_id: str, checkpoint: ExplorationCheckpoint) -> None: ...

    def load_checkpoint(self, session_id: str) -> Optional[ExplorationCheckpoint]: ...

    def delete_checkpoint(self, session_id: str) -> None: ...

    def save_page_store(self, session_id: str, payload: Dict[str, Any]) -> None: ...

    def load_page_store(self, session_id: str) -> Dict[str, Any]: ...

    def save_decision_history(self, session_id: str, history: List[Dict[str, Any]]) -> None: ...

    def load_decision_history(self, session_id: str) -> List[Dict[str, Any]]: ...


class EventSink(Protocol):
    async def publish(self, event: "ExplorationEvent") -> None: ...
