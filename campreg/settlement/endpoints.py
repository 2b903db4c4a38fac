"""
Stripe PaymentIntent endpoints used to settle pre-authorized charges

https://docs.stripe.com/api/payment_intents
"""
from dataclasses import dataclass


STRIPE_BASE_URL = "https://api.stripe.com"


@dataclass
class StripeEndpoints:
    """
    PaymentIntent endpoints rooted at a configurable base URL
    (the real API, or a stripe-mock instance in tests).
    """
    base_url: str = STRIPE_BASE_URL

    @property
    def api_base(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1"

    def payment_intent(self, intent_id: str) -> str:
        """
        GET /v1/payment_intents/{id}
        """
        return f"{self.api_base}/payment_intents/{intent_id}"

    def capture(self, intent_id: str) -> str:
        """
        Capture funds of a PaymentIntent in requires_capture state.

        POST /v1/payment_intents/{id}/capture
        """
        return f"{self.payment_intent(intent_id)}/capture"

    def cancel(self, intent_id: str) -> str:
        """
        Release an authorization. Form field cancellation_reason is optional.

        POST /v1/payment_intents/{id}/cancel
        """
        return f"{self.payment_intent(intent_id)}/cancel"


def idempotency_key(reservation_id: str, action: str) -> str:
    """One key per reservation and action, so retried requests charge once"""
    return f"reservation-{reservation_id}-{action}"
