"""
Common utilities for the registration coordinator
"""
from .config import Config, ConfigurationError, load_config
from .models import (
    RegistrationPlan,
    PlanStatus,
    OpenStrategy,
    DetectionLogEntry,
    DetectionSignal,
    ChallengeTicket,
    TicketStatus,
    Checkpoint,
    Reservation,
    ReservationStatus,
    ChargeStatus,
    ConsentLedgerEntry,
    UserProfile,
    NotificationPayload,
)
from .notifications import NotificationManager
from .scheduler import PrecisionScheduler, RateLimiter, RetryStrategy
from .store import StateStore

__all__ = [
    "Config",
    "ConfigurationError",
    "load_config",
    "RegistrationPlan",
    "PlanStatus",
    "OpenStrategy",
    "DetectionLogEntry",
    "DetectionSignal",
    "ChallengeTicket",
    "TicketStatus",
    "Checkpoint",
    "Reservation",
    "ReservationStatus",
    "ChargeStatus",
    "ConsentLedgerEntry",
    "UserProfile",
    "NotificationPayload",
    "NotificationManager",
    "PrecisionScheduler",
    "RateLimiter",
    "RetryStrategy",
    "StateStore",
]
