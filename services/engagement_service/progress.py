"""
Time-based progress estimate for an engagement.

Elapsed time alone never reaches 100%: the estimate is capped at 90 until the
provider explicitly marks the engagement complete.
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from domain import Engagement, utcnow

TIME_BASED_CAP = 90


def _as_datetime(value: date) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def estimate(engagement: Engagement, now: Optional[datetime] = None) -> int:
    """Return a completion estimate between 0 and 100."""
    if engagement.sme_completed_at:
        return 100
    if not engagement.project_started_at:
        return 0

    now = now or utcnow()
    start = _as_datetime(engagement.start_date)
    end = _as_datetime(engagement.end_date)

    if now < start:
        return 0
    if now > end:
        return TIME_BASED_CAP

    total = (end - start).total_seconds()
    if total <= 0:
        return 0
    elapsed = (now - start).total_seconds()
    return min(round_half_up(elapsed / total * 100), TIME_BASED_CAP)
