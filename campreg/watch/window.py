"""
Target window resolution

Works out when a plan's registration is expected to open:

1. an explicit open instant on the plan (window = instant ± 1 hour)
2. a date found in the detection URL (window = date ± 1 hour)
3. a seasonal guess from the configured calendar (window = guess ± 1 day)

The seasonal guess only exists so every plan has some window to watch; it is
never preferred over known data.
"""
import re
import logging
from datetime import datetime, timedelta
from typing import Optional, List

import pytz

from ..common.config import SeasonGuessConfig, ConfigurationError
from ..common.models import RegistrationPlan, TargetWindow, WindowSource

logger = logging.getLogger(__name__)

KNOWN_TOLERANCE = timedelta(hours=1)
GUESS_TOLERANCE = timedelta(days=1)
PARSED_HOUR = 9

SEASON_STARTS = {
    "spring": (3, 1),
    "summer": (6, 1),
    "fall": (9, 1),
    "winter": (12, 1),
}

YEAR_SEASON_RE = re.compile(r"/(\d{4})/(spring|summer|fall|winter)")
DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})|(\d{2})-(\d{2})-(\d{4})")


def _localize(tz, year: int, month: int, day: int, hour: int = PARSED_HOUR) -> Optional[datetime]:
    try:
        return tz.localize(datetime(year, month, day, hour, 0, 0))
    except ValueError:
        return None


def parse_target_date(url: Optional[str], timezone: str = "America/Chicago") -> Optional[datetime]:
    """
    Pull an opening date out of a detection URL.

    Recognises /2026/summer style paths, ISO dates (2026-03-01) and US dates
    (03-01-2026). Returns 09:00 local time on that date, or None.
    """
    if not url:
        return None

    tz = pytz.timezone(timezone)
    lowered = url.lower()

    match = YEAR_SEASON_RE.search(lowered)
    if match:
        month, day = SEASON_STARTS[match.group(2)]
        return _localize(tz, int(match.group(1)), month, day)

    match = DATE_RE.search(lowered)
    if match:
        if match.group(1):
            return _localize(tz, int(match.group(1)), int(match.group(2)), int(match.group(3)))
        return _localize(tz, int(match.group(6)), int(match.group(4)), int(match.group(5)))

    return None


class SeasonCalendar:
    """
    Low-confidence fallback: guess the next registration season from the month.

    Rows come from configuration so deployments can describe their own
    registration seasons; every month must be covered by exactly one row.
    """

    def __init__(self, guesses: List[SeasonGuessConfig]):
        covered = {}
        for row in guesses:
            for month in range(row.from_month, row.to_month + 1):
                if month in covered:
                    raise ConfigurationError(f"Season calendar covers month {month} twice")
                covered[month] = row
        missing = sorted(set(range(1, 13)) - set(covered))
        if missing:
            raise ConfigurationError(f"Season calendar does not cover months {missing}")
        self._by_month = covered

    def guess(self, now: datetime, timezone: str) -> datetime:
        tz = pytz.timezone(timezone)
        local = now.astimezone(tz)
        row = self._by_month[local.month]
        year = local.year + 1 if row.next_year else local.year
        guessed = _localize(tz, year, row.open_month, row.open_day, row.hour)
        if guessed is None:
            raise ConfigurationError(
                f"Season calendar row {row.open_month}/{row.open_day} is not a valid date"
            )
        return guessed


class TargetWindowResolver:
    """Resolves the window the poller should watch closely for a plan"""

    def __init__(self, calendar: SeasonCalendar):
        self.calendar = calendar

    def resolve(self, plan: RegistrationPlan, now: datetime) -> TargetWindow:
        if plan.manual_open_at:
            target = plan.manual_open_at
            if target.tzinfo is None:
                target = pytz.timezone(plan.timezone).localize(target)
            return TargetWindow(
                start=target - KNOWN_TOLERANCE,
                end=target + KNOWN_TOLERANCE,
                target=target,
                source=WindowSource.EXPLICIT,
            )

        parsed = parse_target_date(plan.detect_url, plan.timezone)
        if parsed:
            return TargetWindow(
                start=parsed - KNOWN_TOLERANCE,
                end=parsed + KNOWN_TOLERANCE,
                target=parsed,
                source=WindowSource.PARSED,
            )

        guessed = self.calendar.guess(now, plan.timezone)
        logger.debug(f"Plan {plan.id} has no known open time, guessing {guessed.isoformat()}")
        return TargetWindow(
            start=guessed - GUESS_TOLERANCE,
            end=guessed + GUESS_TOLERANCE,
            target=guessed,
            source=WindowSource.HEURISTIC,
        )
