"""
Domain types shared by the decision engine: classifications, assessments,
conversation and circuit-breaker state, audit entries and results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class RequestKind(str, Enum):
    INITIAL = "initial"
    CONFIRMATION = "confirmation"
    RESCHEDULING = "rescheduling"
    CLARIFICATION = "clarification"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TrustTier(str, Enum):
    VIP = "vip"
    TRUSTED = "trusted"
    KNOWN = "known"
    UNKNOWN = "unknown"


class ConversationStatus(str, Enum):
    INITIAL = "initial"
    AVAILABILITY_SENT = "availability_sent"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    CLOSED = "closed"


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Recommendation(str, Enum):
    AUTO_RESPOND = "auto_respond"
    REQUEST_APPROVAL = "request_approval"
    DECLINE = "decline"


class AuditAction(str, Enum):
    SENT_EMAIL = "sent_email"
    DECLINED_REQUEST = "declined_request"
    REQUESTED_CLARIFICATION = "requested_clarification"
    ESCALATED = "escalated"


class OverrideKind(str, Enum):
    APPROVED = "approved"
    RETRACTED = "retracted"
    MARKED_INCORRECT = "marked_incorrect"


class ResultAction(str, Enum):
    IGNORED = "ignored"
    AUTO_RESPONDED = "auto_responded"
    PENDING_APPROVAL = "pending_approval"
    DECLINED = "declined"
    ERROR = "error"


@dataclass(frozen=True)
class TimeInterval:
    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def overlaps(self, other: "TimeInterval") -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "TimeInterval":
        return cls(
            start=datetime.fromisoformat(data["start"].replace("Z", "+00:00")),
            end=datetime.fromisoformat(data["end"].replace("Z", "+00:00")),
        )


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    thread_id: str
    sender: str
    subject: str
    body: str


@dataclass(frozen=True)
class Classification:
    is_scheduling_request: bool
    confidence: float
    proposed_times: tuple[TimeInterval, ...] = ()
    request_kind: RequestKind = RequestKind.INITIAL
    urgency: Urgency = Urgency.MEDIUM
    sender: str = ""
    thread_id: str = ""
    message_id: str = ""
    subject: str = ""
    raw_text: str = ""
    intent: str = "other"
    participants: tuple[str, ...] = ()


@dataclass(frozen=True)
class SenderHistory:
    email: str
    total_messages: int
    scheduling_requests: int
    successful_schedules: int
    last_interaction: Optional[datetime] = None
    trust_tier: TrustTier = TrustTier.UNKNOWN


@dataclass
class Policy:
    """Per-principal automation settings, as returned by the preferences store."""
    principal_id: str
    automation_enabled: bool = True
    confidence_threshold: float = 0.85
    allow_list: tuple[str, ...] = ()
    deny_list: tuple[str, ...] = ()
    cooldown_minutes: int = 60
    max_consecutive_low_confidence: int = 5
    response_tone: str = "professional"
    user_timezone: str = "America/Chicago"
    working_hours_start: int = 9
    working_hours_end: int = 17
    default_meeting_minutes: int = 30

    def is_allow_listed(self, email: str) -> bool:
        return email.strip().lower() in {e.lower() for e in self.allow_list}

    def is_deny_listed(self, email: str) -> bool:
        return email.strip().lower() in {e.lower() for e in self.deny_list}


@dataclass(frozen=True)
class ConfidenceAssessment:
    intent_confidence: float
    time_parsing_confidence: float
    sender_trust_score: float
    conversation_clarity: float
    overall_confidence: float
    recommendation: Recommendation
    factors: dict[str, Any]
    created_at: datetime


@dataclass
class ConversationState:
    id: int
    thread_id: str
    principal_id: str
    state: ConversationStatus
    turn_count: int
    context: dict[str, Any]
    last_activity: datetime
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    current_request_id: Optional[int] = None
    previous_request_ids: list[int] = field(default_factory=list)


@dataclass
class CircuitBreakerState:
    principal_id: str
    state: BreakerStatus
    consecutive_low_confidence: int
    updated_at: datetime
    last_low_confidence_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    manual_override: bool = False


@dataclass(frozen=True)
class NewAuditEntry:
    """The immutable decision half of an audit entry, as passed to AuditLedger.log."""
    principal_id: str
    action: AuditAction
    confidence_score: float
    decision_rationale: str
    request_id: Optional[int] = None
    conversation_id: Optional[int] = None
    sender: Optional[str] = None
    sent_message_id: Optional[str] = None
    calendar_facts: tuple[dict, ...] = ()
    conversation_context: Optional[dict] = None
    user_notified: bool = False


@dataclass
class AuditEntry:
    id: int
    principal_id: str
    action: AuditAction
    confidence_score: float
    decision_rationale: str
    created_at: datetime
    request_id: Optional[int] = None
    conversation_id: Optional[int] = None
    sender: Optional[str] = None
    sent_message_id: Optional[str] = None
    calendar_facts: list[dict] = field(default_factory=list)
    conversation_context: dict = field(default_factory=dict)
    user_notified: bool = False
    notification_sent_at: Optional[datetime] = None
    override: Optional[OverrideKind] = None
    override_at: Optional[datetime] = None
    override_reason: Optional[str] = None


@dataclass
class AvailabilityResult:
    requested: list[TimeInterval]
    available: list[TimeInterval]
    conflicts: list[dict]
    suggested_alternatives: list[TimeInterval]

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0


@dataclass
class OrchestratorResult:
    action: ResultAction
    reason: str
    confidence: Optional[float] = None
    audit_id: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    email_sent: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "audit_id": self.audit_id,
            "error": self.error,
            "error_code": self.error_code,
            "email_sent": self.email_sent,
        }
