"""
Open-signal classifier

Fetches a detection page and decides whether registration is open from the
words on it. A page is open only if it shows a positive phrase and no negative
phrase; anything ambiguous counts as closed, since a false "open" starts a
paid attempt. Fetch failures raise ProbeError and are never reported as closed.
"""
import re
import logging
from datetime import datetime
from typing import Optional, Tuple

import httpx
import pytz
from dateutil import parser as date_parser

from ..common.config import PollingConfig
from ..common.models import Verdict
from ..common.scheduler import RateLimiter, RetryStrategy

logger = logging.getLogger(__name__)

OPEN_SIGNALS = (
    "register now",
    "register today",
    "registration open",
    "registration is open",
    "sign up now",
    "enroll now",
    "enroll today",
    "click here to register",
    "registration form",
    "submit registration",
    "apply now",
    "book now",
    "reserve now",
    "register for",
    "sign up for",
)

CLOSED_SIGNALS = (
    "registration closed",
    "registration is closed",
    "registration not open",
    "registration coming soon",
    "registration full",
    "waitlist only",
    "sold out",
    "no longer accepting",
    "opens on",
    "opens at",
    "registration begins",
    "registration starts",
    "coming soon",
    "stay tuned",
)

STATED_OPEN_RE = re.compile(
    r"(?:registration|enrollment|sign[- ]?ups?)\s+(?:opens|begins|starts)\s+(?:on\s+)?"
    r"([a-z]+\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}"
    r"(?:,?\s+(?:at\s+)?\d{1,2}(?::\d{2})?\s*(?:[ap]\.?m\.?)?)?)",
    re.IGNORECASE,
)


class ProbeError(Exception):
    """Raised when the detection page could not be fetched"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def extract_stated_open_time(body: str, timezone: str = "UTC") -> Tuple[Optional[datetime], Optional[str]]:
    """Find text such as 'Registration opens March 1, 2027 at 9:00 AM'"""
    match = STATED_OPEN_RE.search(body)
    if not match:
        return None, None

    text = match.group(1).strip()
    try:
        parsed = date_parser.parse(text, fuzzy=True)
    except (ValueError, OverflowError):
        return None, text

    if parsed.tzinfo is None:
        parsed = pytz.timezone(timezone).localize(parsed)
    return parsed, text


class OpenSignalClassifier:
    """Keyword classifier plus the HTTP probe that feeds it"""

    def __init__(self, config: PollingConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.rate_limiter = RateLimiter(config.requests_per_second)
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            timeout=config.timeout,
            follow_redirects=True,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    def classify(self, body: str, timezone: str = "UTC") -> Verdict:
        lowered = body.lower()
        positive = [s for s in OPEN_SIGNALS if s in lowered]
        negative = [s for s in CLOSED_SIGNALS if s in lowered]
        stated_at, stated_text = extract_stated_open_time(body, timezone)

        return Verdict(
            is_open=bool(positive) and not negative,
            positive=positive,
            negative=negative,
            stated_open_at=stated_at,
            stated_open_text=stated_text,
        )

    async def probe(self, url: str, timezone: str = "UTC") -> Verdict:
        """
        Fetch the page and classify it.

        Network failures and 5xx/429 responses are retried a bounded number of
        times; other non-2xx responses fail immediately.
        """
        retry = RetryStrategy(
            max_attempts=self.config.max_attempts,
            base_delay_ms=self.config.retry_delay_ms,
            exponential_backoff=True,
        )
        last_error: Optional[ProbeError] = None

        while retry.should_retry():
            retry.record_attempt()
            try:
                async with self.rate_limiter:
                    response = await self.client.get(url)
            except httpx.HTTPError as e:
                last_error = ProbeError(f"Fetch failed: {e.__class__.__name__}: {e}")
                logger.warning(f"Probe of {url} failed (attempt {retry.attempts}): {e}")
            else:
                if 200 <= response.status_code < 300:
                    verdict = self.classify(response.text, timezone)
                    verdict.status_code = response.status_code
                    return verdict

                last_error = ProbeError(
                    f"Unexpected status {response.status_code}",
                    status_code=response.status_code,
                )
                if response.status_code != 429 and response.status_code < 500:
                    break
                logger.warning(f"Probe of {url} got {response.status_code} (attempt {retry.attempts})")

            if retry.should_retry():
                await retry.wait()

        raise last_error or ProbeError("No probe attempts configured")
