"""
Settlement committer

Applies the executor's final outcome to a reservation exactly once and then
captures or releases the held charge. Duplicate callbacks are answered from
the recorded state and never touch the processor.
"""
import logging
from typing import Optional, Dict, Any

from ..common.config import PaymentsConfig
from ..common.models import (
    Reservation,
    ReservationStatus,
    ChargeStatus,
    SettlementResult,
)
from ..common.scheduler import RetryStrategy
from ..common.store import StateStore
from .endpoints import idempotency_key
from .payments import PaymentProcessor, PaymentError

logger = logging.getLogger(__name__)


class ReservationNotFound(LookupError):
    pass


def failure_reason_from(provider_response: Optional[Dict[str, Any]]) -> str:
    if provider_response:
        for key in ("error", "message", "reason"):
            value = provider_response.get(key)
            if value:
                return str(value)
    return "Booking failed"


class SettlementCommitter:

    def __init__(self, store: StateStore, processor: PaymentProcessor, config: Optional[PaymentsConfig] = None):
        self.store = store
        self.processor = processor
        self.config = config or PaymentsConfig()

    async def commit(
        self,
        reservation_id: str,
        success: bool,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)

        status = ReservationStatus.CONFIRMED if success else ReservationStatus.FAILED
        won, reservation = await self.store.transition_reservation(
            reservation_id,
            status,
            provider_response,
            failure_reason=None if success else failure_reason_from(provider_response),
        )

        if not won:
            logger.info(
                f"Duplicate settlement for reservation {reservation_id}; "
                f"already {reservation.status.value}"
            )
            return SettlementResult(
                reservation_id=reservation_id,
                status=reservation.status,
                duplicate=True,
                charge_status=reservation.charge_status,
            )

        logger.info(f"Reservation {reservation_id} -> {reservation.status.value}")
        reservation = await self._settle_charge(reservation, capture=success)
        return SettlementResult(
            reservation_id=reservation_id,
            status=reservation.status,
            charge_status=reservation.charge_status,
        )

    async def _settle_charge(self, reservation: Reservation, capture: bool) -> Reservation:
        if not reservation.payment_intent_id:
            return await self.store.update_charge(reservation.id, ChargeStatus.NOT_REQUIRED)

        action = "capture" if capture else "cancel"
        call = self.processor.capture if capture else self.processor.cancel
        key = idempotency_key(reservation.id, action)

        retry = RetryStrategy(
            max_attempts=self.config.max_attempts,
            base_delay_ms=self.config.retry_delay_ms,
            max_delay_ms=self.config.max_retry_delay_ms,
            exponential_backoff=True,
        )
        last_error: Optional[PaymentError] = None

        while retry.should_retry():
            retry.record_attempt()
            try:
                await call(reservation.payment_intent_id, key)
                charge_status = ChargeStatus.CAPTURED if capture else ChargeStatus.CANCELLED
                logger.info(f"💳 Charge for reservation {reservation.id}: {charge_status.value}")
                return await self.store.update_charge(reservation.id, charge_status)
            except PaymentError as e:
                last_error = e
                logger.warning(
                    f"{action.title()} attempt {retry.attempts} for reservation {reservation.id} failed: {e}"
                )
                if not e.retryable:
                    break
                if retry.should_retry():
                    await retry.wait()

        # The reservation outcome stands; the charge is left for manual follow-up
        logger.error(f"Could not {action} charge for reservation {reservation.id}: {last_error}")
        return await self.store.update_charge(reservation.id, ChargeStatus.ERROR, str(last_error))
