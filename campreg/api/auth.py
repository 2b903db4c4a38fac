"""
Request authentication for the coordinator's HTTP surface

Shared-secret checks for internal callers (executor, timers) and Twilio
webhook signature verification for inbound SMS.
"""
import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Raised when a caller cannot be authenticated"""
    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code


def verify_shared_secret(provided: Optional[str], expected: Optional[str]):
    """
    Constant-time comparison of a shared secret header.

    Raises SecurityError (401) when the header is missing or wrong.
    """
    if not expected:
        # Settings are validated at startup; reaching this is a deployment bug
        raise SecurityError("Shared secret is not configured", status_code=500)
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("Rejected request with bad shared secret")
        raise SecurityError("Invalid shared secret", status_code=401)


def twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Twilio's request signature: base64(HMAC-SHA1(url + sorted key/value pairs)).
    """
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_twilio_signature(
    signature: Optional[str],
    url: str,
    params: Mapping[str, str],
    auth_token: Optional[str],
):
    """Raises SecurityError (403) when the webhook signature does not match"""
    if not auth_token:
        # Never verify against an empty key
        logger.warning("Inbound SMS rejected: no Twilio auth token configured")
        raise SecurityError("Webhook signing is not configured", status_code=403)

    if not signature:
        logger.warning("Inbound SMS without Twilio signature")
        raise SecurityError("Missing signature", status_code=403)

    expected = twilio_signature(url, params, auth_token)
    if not hmac.compare_digest(expected, signature):
        logger.warning(f"Invalid Twilio signature for {url}")
        raise SecurityError("Invalid signature", status_code=403)
