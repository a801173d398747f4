"""All Pydantic data models for PhaseForge.

Defines the history event log, phase completion records, function-calling
metrics, token usage counters and compiler diagnostics shared by every
orchestration layer.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, enum.Enum):
    ANALYZE = "analyze"
    SCHEMA = "schema"
    INTERFACE = "interface"
    TEST = "test"
    REALIZE = "realize"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.ANALYZE,
    Phase.SCHEMA,
    Phase.INTERFACE,
    Phase.TEST,
    Phase.REALIZE,
)


def phase_of(source: str) -> Optional[Phase]:
    """Resolve a stage id such as ``realize_correct`` to its phase."""
    for phase in PHASE_ORDER:
        if source.startswith(phase.value):
            return phase
    return None


class TelemetryKind(str, enum.Enum):
    JSON_PARSE_ERROR = "json_parse_error"
    JSON_VALIDATE_ERROR = "json_validate_error"
    CONSENT_FUNCTION_CALL = "consent_function_call"
    VENDOR_TIMEOUT = "vendor_timeout"
    PRELIMINARY = "preliminary"
    COMPILE_VALIDATE = "compile_validate"
    CORRECT = "correct"


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class FunctionCallingMetric(BaseModel):
    """Outcome counters of function-calling attempts."""
    attempt: int = 0
    success: int = 0
    consent: int = 0
    validation_failure: int = 0
    invalid_json: int = 0

    def add(self, key: str, amount: int = 1) -> None:
        if key not in type(self).model_fields:
            raise KeyError(f"Unknown metric key: {key}")
        setattr(self, key, getattr(self, key) + amount)

    def increment(self, other: FunctionCallingMetric) -> None:
        for key in type(self).model_fields:
            setattr(self, key, getattr(self, key) + getattr(other, key))

    def minus(self, other: FunctionCallingMetric) -> FunctionCallingMetric:
        return FunctionCallingMetric(**{
            key: getattr(self, key) - getattr(other, key)
            for key in type(self).model_fields
        })


class TokenUsageInput(BaseModel):
    total: int = 0
    cached: int = 0


class TokenUsageOutput(BaseModel):
    total: int = 0
    reasoning: int = 0
    accepted_prediction: int = 0
    rejected_prediction: int = 0


class TokenUsageComponent(BaseModel):
    """Additive token counters of one or more vendor calls."""
    total: int = 0
    input: TokenUsageInput = Field(default_factory=TokenUsageInput)
    output: TokenUsageOutput = Field(default_factory=TokenUsageOutput)

    @classmethod
    def from_vendor_usage(cls, usage: Optional[dict[str, Any]]) -> TokenUsageComponent:
        """Convert an OpenAI-style ``usage`` object."""
        if not usage:
            return cls()
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        return cls(
            total=int(usage.get("total_tokens") or (prompt + completion)),
            input=TokenUsageInput(
                total=prompt,
                cached=int(prompt_details.get("cached_tokens") or 0),
            ),
            output=TokenUsageOutput(
                total=completion,
                reasoning=int(completion_details.get("reasoning_tokens") or 0),
                accepted_prediction=int(completion_details.get("accepted_prediction_tokens") or 0),
                rejected_prediction=int(completion_details.get("rejected_prediction_tokens") or 0),
            ),
        )

    def increment(self, other: TokenUsageComponent) -> None:
        self.total += other.total
        self.input.total += other.input.total
        self.input.cached += other.input.cached
        self.output.total += other.output.total
        self.output.reasoning += other.output.reasoning
        self.output.accepted_prediction += other.output.accepted_prediction
        self.output.rejected_prediction += other.output.rejected_prediction

    def plus(self, other: TokenUsageComponent) -> TokenUsageComponent:
        result = self.model_copy(deep=True)
        result.increment(other)
        return result

    def minus(self, other: TokenUsageComponent) -> TokenUsageComponent:
        return TokenUsageComponent(
            total=self.total - other.total,
            input=TokenUsageInput(
                total=self.input.total - other.input.total,
                cached=self.input.cached - other.input.cached,
            ),
            output=TokenUsageOutput(
                total=self.output.total - other.output.total,
                reasoning=self.output.reasoning - other.output.reasoning,
                accepted_prediction=self.output.accepted_prediction - other.output.accepted_prediction,
                rejected_prediction=self.output.rejected_prediction - other.output.rejected_prediction,
            ),
        )


class ProcessAggregate(BaseModel):
    metric: FunctionCallingMetric = Field(default_factory=FunctionCallingMetric)
    token_usage: TokenUsageComponent = Field(default_factory=TokenUsageComponent)

    def increment(self, other: ProcessAggregate) -> None:
        self.metric.increment(other.metric)
        self.token_usage.increment(other.token_usage)


class AggregateCollection(BaseModel):
    """Per-stage aggregates plus their running total."""
    total: ProcessAggregate = Field(default_factory=ProcessAggregate)
    stages: dict[str, ProcessAggregate] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# History events
# ---------------------------------------------------------------------------

class EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_now)


class UserMessageEvent(EventBase):
    type: Literal["user_message"] = "user_message"
    text: str


class AssistantMessageEvent(EventBase):
    type: Literal["assistant_message"] = "assistant_message"
    text: str


class PhaseStartEvent(EventBase):
    type: Literal["phase_start"] = "phase_start"
    phase: Phase
    reason: str = ""
    step: int


class PhaseCompleteEvent(EventBase):
    type: Literal["phase_complete"] = "phase_complete"
    phase: Phase
    step: int
    artifact: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    started_at: Optional[datetime] = None
    aggregates: AggregateCollection = Field(default_factory=AggregateCollection)


class VendorRequestEvent(EventBase):
    type: Literal["vendor_request"] = "vendor_request"
    source: str
    retry: int
    body: dict[str, Any] = Field(default_factory=dict)


class VendorResponseEvent(EventBase):
    type: Literal["vendor_response"] = "vendor_response"
    source: str
    retry: int
    body: dict[str, Any] = Field(default_factory=dict)


class TelemetryEvent(EventBase):
    type: Literal["telemetry"] = "telemetry"
    kind: TelemetryKind
    source: str
    payload: dict[str, Any] = Field(default_factory=dict)


HistoryEvent = Annotated[
    Union[
        UserMessageEvent,
        AssistantMessageEvent,
        PhaseStartEvent,
        PhaseCompleteEvent,
        VendorRequestEvent,
        VendorResponseEvent,
        TelemetryEvent,
    ],
    Field(discriminator="type"),
]

EVENT_TYPES: tuple[str, ...] = (
    "user_message",
    "assistant_message",
    "phase_start",
    "phase_complete",
    "vendor_request",
    "vendor_response",
    "telemetry",
)

history_adapter: TypeAdapter[list[HistoryEvent]] = TypeAdapter(list[HistoryEvent])


class PhaseRecord(BaseModel):
    """Completion record of one phase, derived from a PhaseCompleteEvent."""
    model_config = ConfigDict(frozen=True)

    id: str
    phase: Phase
    step: int
    artifact: dict[str, Any] = Field(default_factory=dict)
    instruction: str = ""
    aggregates: AggregateCollection = Field(default_factory=AggregateCollection)
    created_at: datetime
    completed_at: datetime


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------

class CompileDiagnostic(BaseModel):
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    message: str
    severity: Literal["error", "warning"] = "error"
    code: Optional[str] = None


class CompileResult(BaseModel):
    type: Literal["success", "failure"]
    diagnostics: list[CompileDiagnostic] = Field(default_factory=list)
    documentation: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.type == "success"

    @classmethod
    def ok(cls, documentation: Optional[str] = None) -> CompileResult:
        return cls(type="success", documentation=documentation)

    @classmethod
    def failed(cls, diagnostics: list[CompileDiagnostic]) -> CompileResult:
        return cls(type="failure", diagnostics=diagnostics)
