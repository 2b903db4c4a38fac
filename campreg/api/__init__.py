"""
HTTP surface (the app itself lives in campreg.api.server)
"""
from .auth import SecurityError, verify_shared_secret, verify_twilio_signature

__all__ = [
    "SecurityError",
    "verify_shared_secret",
    "verify_twilio_signature",
]
