"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ComplexityTier(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ModelTier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    COMPLEX = "complex"


class Pattern(str, Enum):
    DIRECT = "direct"
    HANDOFF = "handoff"
    MANAGER = "manager"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank


_RISK_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class EventType(str, Enum):
    METADATA = "metadata"
    PROGRESS = "progress"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    HANDOFF = "handoff"
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (EventType.DONE, EventType.ERROR)


@dataclass(slots=True, frozen=True)
class Message:
    role: str
    content: str


@dataclass(slots=True, frozen=True)
class QueryOverrides:
    """Explicit caller choices that bypass the classifier."""

    model_tier: ModelTier | None = None
    tools: tuple[str, ...] | None = None
    pattern: Pattern | None = None
    synthesize: bool = False

    @property
    def explicit(self) -> bool:
        return self.model_tier is not None or self.tools is not None


@dataclass(slots=True, frozen=True)
class Query:
    text: str
    history: tuple[Message, ...] = ()
    overrides: QueryOverrides = field(default_factory=QueryOverrides)


@dataclass(slots=True, frozen=True)
class ComplexitySignals:
    length: int
    code_blocks: int
    math_symbols: int
    question_depth: int
    technical_terms: int


@dataclass(slots=True, frozen=True)
class ComplexityScore:
    tier: ComplexityTier
    signals: ComplexitySignals
    score: int = 0
    rule: str = "weighted"


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    model_tier: ModelTier
    model: str
    tool_names: tuple[str, ...]
    pattern: Pattern
    target_specialists: tuple[str, ...]
    complexity: ComplexityTier | None = None
    reasoning: str = ""
    warnings: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    tool_name: str
    arguments: dict[str, Any]
    origin_specialist_id: str

    @property
    def operation(self) -> str | None:
        """`domain.action` for device-control style arguments."""
        domain = self.arguments.get("domain")
        action = self.arguments.get("service") or self.arguments.get("action")
        if not domain or not action:
            return None
        return f"{str(domain).lower()}.{str(action).lower()}"


@dataclass(slots=True)
class ApprovalRequest:
    id: str
    invocation: ToolInvocation
    tool_description: str
    risk_level: RiskLevel
    risk_reason: str
    requested_at: datetime
    expires_at: datetime
    requester_id: str
    thread_id: str | None = None
    owner: str | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.invocation.tool_name,
            "tool_description": self.tool_description,
            "parameters": dict(self.invocation.arguments),
            "risk_level": self.risk_level.value,
            "risk_reason": self.risk_reason,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "user_id": self.requester_id,
            "thread_id": self.thread_id,
        }


@dataclass(slots=True, frozen=True)
class ApprovalResponse:
    id: str
    status: ApprovalStatus
    requester_id: str
    responded_at: datetime
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "user_id": self.requester_id,
            "responded_at": self.responded_at.isoformat(),
            "reason": self.reason,
        }


@dataclass(slots=True, frozen=True)
class ApprovalAuditEntry:
    id: str
    tool_name: str
    parameters: dict[str, Any]
    risk_level: RiskLevel
    status: ApprovalStatus
    requested_at: datetime
    responded_at: datetime
    requester_id: str
    thread_id: str | None = None
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class GuardrailResult:
    validator: str
    tripwire_triggered: bool
    info: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    type: EventType
    timestamp: str
    data: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "timestamp": self.timestamp, "data": self.data}


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool call requested by a model reply."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True, frozen=True)
class ModelReply:
    text: str | None
    tool_calls: tuple[ToolCallRequest, ...] = ()


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True
