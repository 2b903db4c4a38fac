"""
Data models for the registration coordinator
"""
from datetime import datetime, timedelta
from typing import Optional, List, Any, Dict
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

import pytz


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def new_id() -> str:
    return uuid4().hex


class OpenStrategy(str, Enum):
    MANUAL = "manual"
    PUBLISHED = "published"
    AUTO = "auto"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    DONE = "done"
    CANCELLED = "cancelled"


class DetectionSignal(str, Enum):
    OPEN_DETECTED = "open_detected"
    CLOSED_DETECTED = "closed_detected"
    ERROR = "error"


class TicketStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.PENDING


class ChargeStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    ERROR = "error"
    NOT_REQUIRED = "not_required"


class WindowSource(str, Enum):
    EXPLICIT = "explicit"
    PARSED = "parsed"
    HEURISTIC = "heuristic"


class RegistrationPlan(BaseModel):
    """A user's standing intent to auto-register for one session"""
    id: str = Field(default_factory=new_id)
    user_id: str
    target_session_id: str
    manual_open_at: Optional[datetime] = None
    detect_url: Optional[str] = None
    timezone: str = "America/Chicago"
    open_strategy: OpenStrategy = OpenStrategy.AUTO
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_watchable(self) -> bool:
        return (
            self.status == PlanStatus.ACTIVE
            and self.open_strategy in (OpenStrategy.PUBLISHED, OpenStrategy.AUTO)
        )


class DetectionLogEntry(BaseModel):
    """One poll of one plan. Never modified after it is written."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    seen_at: datetime
    signal: DetectionSignal
    note: str = ""
    dispatched: bool = False


class TargetWindow(BaseModel):
    start: datetime
    end: datetime
    target: datetime
    source: WindowSource

    @property
    def is_low_confidence(self) -> bool:
        return self.source == WindowSource.HEURISTIC


class PollDecision(BaseModel):
    should_poll: bool
    interval_minutes: int
    reason: str
    next_check_at: datetime
    minutes_until_start: float
    minutes_since_end: float
    window: TargetWindow


class Verdict(BaseModel):
    """Classifier result for one page body"""
    is_open: bool
    positive: List[str] = Field(default_factory=list)
    negative: List[str] = Field(default_factory=list)
    status_code: Optional[int] = None
    stated_open_at: Optional[datetime] = None
    stated_open_text: Optional[str] = None

    @property
    def signal(self) -> DetectionSignal:
        if self.is_open:
            return DetectionSignal.OPEN_DETECTED
        return DetectionSignal.CLOSED_DETECTED

    def evidence(self) -> str:
        parts = [
            f"positive={self.positive}",
            f"negative={self.negative}",
        ]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.stated_open_at:
            parts.append(f"stated_open_at={self.stated_open_at.isoformat()} ({self.stated_open_text!r})")
        return " ".join(parts)


class TickSummary(BaseModel):
    total: int = 0
    polled: int = 0
    skipped: int = 0
    dispatched: int = 0
    errors: int = 0
    misconfigured: List[str] = Field(default_factory=list)


class ChallengeTicket(BaseModel):
    """One bot-challenge interruption awaiting a human"""
    id: str = Field(default_factory=new_id)
    user_id: str
    session_id: str
    registration_id: Optional[str] = None
    provider: str
    resume_token: str
    magic_url: str
    created_at: datetime
    expires_at: datetime
    status: TicketStatus = TicketStatus.PENDING
    last_notified_at: Optional[datetime] = None
    notification_channel: Optional[str] = None
    resolved_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_live(self, now: datetime) -> bool:
        return self.status == TicketStatus.PENDING and not self.is_expired(now)

    def throttled(self, now: datetime, interval: timedelta) -> bool:
        return self.last_notified_at is not None and now - self.last_notified_at < interval


class Checkpoint(BaseModel):
    """Snapshot of executor state. The payload fields are never interpreted."""
    id: str = Field(default_factory=new_id)
    session_id: str
    step_name: str
    created_at: datetime = Field(default_factory=utcnow)
    browser_state: Any = None
    workflow_state: Any = None
    provider_context: Any = None
    success: bool = True
    metadata: Optional[Dict[str, Any]] = None


class Reservation(BaseModel):
    """Reservation whose pre-authorized charge is settled on the executor callback"""
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    status: ReservationStatus = ReservationStatus.PENDING
    payment_intent_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    charge_status: ChargeStatus = ChargeStatus.AUTHORIZED
    charge_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ConsentLedgerEntry(BaseModel):
    phone_e164: str
    opted_in: bool = True
    last_opt_in_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class UserProfile(BaseModel):
    """Read-only view of an account, owned by account management"""
    user_id: str
    email: Optional[str] = None
    phone_e164: Optional[str] = None
    phone_verified: bool = False

    @property
    def can_receive_sms(self) -> bool:
        return bool(self.phone_e164 and self.phone_verified)


class NotificationPayload(BaseModel):
    """Notification content"""
    title: str
    message: str
    url: Optional[str] = None
    urgency: str = "normal"  # low, normal, high


class DeliveryResult(BaseModel):
    delivered: bool
    channel: Optional[str] = None
    attempted: List[str] = Field(default_factory=list)
    throttled: bool = False


class ResolveResult(BaseModel):
    ticket_id: str
    status: TicketStatus
    resolved: bool
    message: str
    checkpoint_id: Optional[str] = None


class ReplyOutcome(BaseModel):
    kind: str  # opt_out, opt_in, help, resent, guidance
    message: str


class SettlementResult(BaseModel):
    ok: bool = True
    reservation_id: str
    status: ReservationStatus
    duplicate: bool = False
    charge_status: ChargeStatus
