"""
Payment processor clients
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
import httpx

from ..common.config import PaymentsConfig
from .endpoints import StripeEndpoints

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised when a capture or cancel request fails"""
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PaymentProcessor(ABC):
    """Base class for processors holding pre-authorized charges"""

    @abstractmethod
    async def capture(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def cancel(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        pass

    async def aclose(self):
        pass


class StripeProcessor(PaymentProcessor):
    """Stripe PaymentIntents over the form-encoded REST API"""

    def __init__(self, config: PaymentsConfig, client: Optional[httpx.AsyncClient] = None):
        self.endpoints = StripeEndpoints(config.base_url)
        self.client = client or httpx.AsyncClient(
            auth=(config.stripe_secret_key or "", ""),
            timeout=config.timeout,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def _post(self, url: str, idempotency_key: str, data: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = await self.client.post(
                url,
                data=data or {},
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            raise PaymentError(f"Stripe request failed: {e}", retryable=True) from e

        if response.status_code == 200:
            return response.json()

        try:
            message = response.json().get("error", {}).get("message", response.text)
        except ValueError:
            message = response.text
        # 409 is an idempotency-key conflict with a request still in flight
        retryable = response.status_code in (409, 429) or response.status_code >= 500
        raise PaymentError(
            f"Stripe {response.status_code}: {message}",
            status_code=response.status_code,
            retryable=retryable,
        )

    async def capture(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        logger.info(f"Capturing payment intent {intent_id}")
        return await self._post(self.endpoints.capture(intent_id), idempotency_key)

    async def cancel(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        logger.info(f"Cancelling payment intent {intent_id}")
        return await self._post(
            self.endpoints.cancel(intent_id),
            idempotency_key,
            data={"cancellation_reason": "abandoned"},
        )


class UnconfiguredProcessor(PaymentProcessor):
    """
    Used when no Stripe key is configured.

    Every call fails without retry, so the reservation records
    charge_status=error and the authorization is left for manual follow-up.
    """

    async def _refuse(self, action: str, intent_id: str) -> Dict[str, Any]:
        logger.error(f"No payment processor configured; cannot {action} {intent_id}")
        raise PaymentError(
            f"Payment processor not configured (payments.stripe_secret_key); cannot {action} {intent_id}",
            retryable=False,
        )

    async def capture(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        return await self._refuse("capture", intent_id)

    async def cancel(self, intent_id: str, idempotency_key: str) -> Dict[str, Any]:
        return await self._refuse("cancel", intent_id)


def build_processor(config: PaymentsConfig) -> PaymentProcessor:
    if config.stripe_secret_key:
        return StripeProcessor(config)
    return UnconfiguredProcessor()
