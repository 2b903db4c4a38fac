"""
Reservation settlement
"""
from .committer import SettlementCommitter, ReservationNotFound
from .payments import PaymentProcessor, StripeProcessor, PaymentError, build_processor

__all__ = [
    "SettlementCommitter",
    "ReservationNotFound",
    "PaymentProcessor",
    "StripeProcessor",
    "PaymentError",
    "build_processor",
]
