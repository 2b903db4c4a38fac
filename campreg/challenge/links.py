"""
Magic resume links

A link carries a random single-use token plus an HMAC over the token and the
ticket expiry, so a link cannot be forged or have its lifetime extended.
"""
import hashlib
import hmac
import secrets
from datetime import datetime
from urllib.parse import urlencode


class MagicLinkSigner:

    def __init__(self, base_url: str, secret: str):
        self.base_url = base_url.rstrip("/")
        self._key = secret.encode()

    @staticmethod
    def mint_token() -> str:
        return secrets.token_hex(32)

    def sign(self, token: str, expires_at: datetime) -> str:
        message = f"{token}.{int(expires_at.timestamp())}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(self, token: str, signature: str, expires_at: datetime) -> bool:
        return hmac.compare_digest(self.sign(token, expires_at), signature or "")

    def build_url(self, token: str, expires_at: datetime) -> str:
        query = urlencode({"token": token, "sig": self.sign(token, expires_at)})
        return f"{self.base_url}/assist/captcha?{query}"
