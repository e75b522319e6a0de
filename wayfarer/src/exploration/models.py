"""
Exploration Models

Session state, page records and the tool decision union exchanged with the
decision collaborator.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def _now_iso() -> str:
    return datetime.now().isoformat()


class PageStatus(str, Enum):
    """Page lifecycle: queued → in_progress → completed"""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ToolName(str, Enum):
    ACT = "act"
    REQUEST_INPUT = "request_input"
    STANDBY = "standby"


class InputType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PASSWORD = "password"
    URL = "url"
    OTP = "otp"
    PHONE = "phone"
    BOOLEAN = "boolean"


class ExplorationPhase(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ChatRequestType(str, Enum):
    TASK_SPECIFIC = "task_specific"
    EXPLORATION = "exploration"
    QUESTION = "question"


class Screenshot(BaseModel):
    """Reference to a screenshot persisted by the storage collaborator"""

    step_number: int
    timestamp: str = Field(default_factory=_now_iso)
    kind: str = Field(..., description="initial, after_act, before_standby, after_standby")
    file_path: Optional[str] = None


class ExecutedStep(BaseModel):
    """Immutable record of one dispatched tool call"""

    model_config = ConfigDict(frozen=True)

    step_number: int
    tool: ToolName
    instruction: str = ""
    success: bool = False
    result: str = ""
    timestamp: str = Field(default_factory=_now_iso)

    url_changed: Optional[bool] = None
    new_url: Optional[str] = None
    objective_achieved: Optional[bool] = None

    # request_input
    input_keys: List[str] = Field(default_factory=list)
    input_values: Dict[str, str] = Field(default_factory=dict)

    # standby
    wait_seconds: Optional[float] = None
    before_screenshot: Optional[str] = None
    after_screenshot: Optional[str] = None


class PageRecord(BaseModel):
    """One discovered page and everything executed on it"""

    url: str
    url_hash: str
    status: PageStatus = PageStatus.QUEUED
    priority: int = Field(default=2, description="lower = sooner")
    discovered_at: str = Field(default_factory=_now_iso)
    source_url: Optional[str] = None

    executed_steps: List[ExecutedStep] = Field(default_factory=list)
    screenshots: List[Screenshot] = Field(default_factory=list)
    last_step_number: Optional[int] = None
    objective_achieved: bool = False


class UserInputRecord(BaseModel):
    key: str
    value: str
    type: str = InputType.TEXT.value
    timestamp: str = Field(default_factory=_now_iso)


class FlowContext(BaseModel):
    """Tracks an authentication-like flow during which URL changes are not discoveries"""

    is_in_sensitive_flow: bool = False
    flow_type: Optional[str] = None
    start_url: Optional[str] = None
    flow_start_step: Optional[int] = None


class ActionHistoryEntry(BaseModel):
    instruction: str
    source_url: str
    target_url: Optional[str] = None
    url_changed: bool = False
    step_number: int
    timestamp: str = Field(default_factory=_now_iso)
    success: bool = False


class SessionMetadata(BaseModel):
    session_id: str
    objective: str
    start_url: str
    start_time: str = Field(default_factory=_now_iso)
    end_time: Optional[str] = None

    total_pages_discovered: int = 0
    total_actions_executed: int = 0
    objective_achieved: bool = False
    phase: ExplorationPhase = ExplorationPhase.ACTIVE


class ExplorationSession(BaseModel):
    """Aggregate state of one exploration run"""

    metadata: SessionMetadata
    pages: Dict[str, PageRecord] = Field(default_factory=dict)
    page_queue: List[str] = Field(default_factory=list, description="url hashes, priority-sorted")
    current_page: Optional[str] = None
    global_step_counter: int = 0
    user_inputs: Dict[str, UserInputRecord] = Field(default_factory=dict)
    flow_context: FlowContext = Field(default_factory=FlowContext)
    action_history: List[ActionHistoryEntry] = Field(default_factory=list)


class ExplorationCheckpoint(BaseModel):
    """Snapshot taken when a chat message pauses the engine"""

    timestamp: str = Field(default_factory=_now_iso)
    current_page_url: str = ""
    current_page_hash: str = ""
    queue_position: int = 0
    remaining_queue: List[str] = Field(default_factory=list)
    exploration_phase: ExplorationPhase = ExplorationPhase.ACTIVE
    last_step_number: int = 0


# --- Collaborator payloads -------------------------------------------------


class _CollaboratorPayload(BaseModel):
    """LLM payloads arrive in camelCase; accept both spellings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class InputRequest(_CollaboratorPayload):
    """One field requested from the operator"""

    key: str = Field(validation_alias=AliasChoices("key", "inputKey", "input_key"))
    type: InputType = Field(
        default=InputType.TEXT,
        validation_alias=AliasChoices("type", "inputType", "input_type"),
    )
    prompt: str = Field(
        default="",
        validation_alias=AliasChoices("prompt", "inputPrompt", "input_prompt"),
    )

    @field_validator("type", mode="before")
    @classmethod
    def _unknown_type_is_text(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {t.value for t in InputType}:
            return InputType.TEXT.value
        return value.lower() if isinstance(value, str) else value


class _DecisionBase(_CollaboratorPayload):
    reasoning: str = ""
    instruction: str = ""
    is_current_page_execution_completed: bool = False
    # an omitted flag means "not in a flow"
    is_in_sensitive_flow: bool = False

    @field_validator("is_current_page_execution_completed", "is_in_sensitive_flow", "instruction", mode="before")
    @classmethod
    def _null_is_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return "" if info.field_name == "instruction" else False
        return value


class ActDecision(_DecisionBase):
    tool: Literal["act"] = "act"


class RequestInputDecision(_DecisionBase):
    tool: Literal["request_input"] = "request_input"
    inputs: List[InputRequest] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_single_input(cls, data: Any) -> Any:
        # legacy single-field form: inputKey / inputType / inputPrompt
        if not isinstance(data, dict) or data.get("inputs"):
            return data
        key = data.get("inputKey") or data.get("input_key")
        if not key:
            return data
        folded = dict(data)
        folded["inputs"] = [
            {
                "key": key,
                "type": data.get("inputType") or data.get("input_type") or InputType.TEXT.value,
                "prompt": data.get("inputPrompt") or data.get("input_prompt") or "",
            }
        ]
        return folded


class StandbyDecision(_DecisionBase):
    tool: Literal["standby"] = "standby"
    wait_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("wait_seconds", "waitSeconds", "waitTimeSeconds"),
    )


ToolDecision = Annotated[
    Union[ActDecision, RequestInputDecision, StandbyDecision],
    Field(discriminator="tool"),
]

_TOOL_DECISION = TypeAdapter(ToolDecision)

_TOOL_ALIASES = {
    "page_act": ToolName.ACT.value,
    "user_input": ToolName.REQUEST_INPUT.value,
}


def parse_tool_decision(payload: Any) -> Optional[Union[ActDecision, RequestInputDecision, StandbyDecision]]:
    """
    Validate a raw collaborator payload into a ToolDecision.

    Accepts the flat form ``{"tool": ..., "instruction": ...}`` as well as the
    nested ``{"tool_to_use": ..., "tool_parameters": {...}}`` form. Returns
    None for unknown tools or malformed payloads.
    """
    if not isinstance(payload, dict):
        return None

    data = dict(payload)
    params = data.pop("tool_parameters", None) or data.pop("toolParameters", None)
    if isinstance(params, dict):
        for key, value in params.items():
            data.setdefault(key, value)

    tool = data.pop("tool_to_use", None) or data.pop("toolToUse", None) or data.get("tool")
    if not isinstance(tool, str):
        return None
    data["tool"] = _TOOL_ALIASES.get(tool.strip().lower(), tool.strip().lower())

    try:
        return _TOOL_DECISION.validate_python(data)
    except ValidationError:
        return None


class ChatDecision(_CollaboratorPayload):
    """Classification of an inbound chat message"""

    reasoning: str = ""
    request_type: ChatRequestType = ChatRequestType.QUESTION
    target_page: Optional[str] = None
    target_url: Optional[str] = None
    needs_user_input: bool = False
    user_input_prompt: Optional[str] = None
    response: str = ""


class ChatMessage(BaseModel):
    id: str
    timestamp: str = Field(default_factory=_now_iso)
    role: Literal["user", "assistant"]
    content: str
    message_type: str = "chat"


class UserInputResponse(BaseModel):
    """Operator reply to an input request: values or an explicit skip"""

    values: Dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("values", "inputs"),
    )
    skipped: bool = Field(default=False, validation_alias=AliasChoices("skipped", "isSkipped"))


class ActOutcome(BaseModel):
    """Result reported by the browser collaborator for a free-text act"""

    success: bool
    error: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)


class ExplorationConfig(BaseModel):
    """Per-run settings (the dashboard's execute command)"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_name: str = "cli"
    objective: str
    start_url: str
    is_exploration: bool = False
    max_pages_to_explore: int = Field(default=6, ge=1)
    additional_context: Optional[str] = None
    can_login: bool = False

    max_steps_per_page: int = Field(default=25, ge=0, description="0 = unlimited")
    input_timeout_seconds: float = Field(default=300.0, gt=0)
    default_standby_seconds: float = Field(default=5.0, gt=0)
    max_standby_seconds: float = Field(default=30.0, gt=0)
    resume_session_id: Optional[str] = None
