from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional
import re

from domain import Engagement, EngagementStatus, utcnow

_ACTIVE = {
    EngagementStatus.IN_PROGRESS,
    EngagementStatus.AWAITING_CONFIRMATION,
    EngagementStatus.DISPUTED,
}


@dataclass
class EarningsSummary:
    """Provider dashboard totals."""

    total_earnings: float = 0.0
    earnings_this_week: float = 0.0
    total_paid: float = 0.0
    paid_this_week: float = 0.0
    completed_engagements: int = 0
    active_engagements: int = 0

    def to_dict(self):
        return asdict(self)


def parse_fee(fee: Optional[str]) -> Optional[Decimal]:
    """'R 4,500.00' -> Decimal('4500.00'); None when nothing numeric is left."""
    cleaned = re.sub(r"[^0-9.]", "", fee or "")
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def summarize(engagements: Iterable[Engagement], now: Optional[datetime] = None) -> EarningsSummary:
    now = now or utcnow()
    week_ago = now - timedelta(days=7)

    total = this_week = paid = paid_week = Decimal("0")
    completed = active = 0

    for engagement in engagements:
        if engagement.status in _ACTIVE:
            active += 1
        if engagement.status != EngagementStatus.COMPLETED:
            continue
        completed += 1
        fee = parse_fee(engagement.fee)
        if fee is None:
            continue

        total += fee
        if engagement.sme_completed_at and engagement.sme_completed_at >= week_ago:
            this_week += fee

        if engagement.funds_released_at and engagement.payment_confirmed_by_admin:
            paid += fee
            paid_at = engagement.payment_confirmed_at or engagement.funds_released_at
            if paid_at >= week_ago:
                paid_week += fee

    return EarningsSummary(
        total_earnings=float(total),
        earnings_this_week=float(this_week),
        total_paid=float(paid),
        paid_this_week=float(paid_week),
        completed_engagements=completed,
        active_engagements=active,
    )
