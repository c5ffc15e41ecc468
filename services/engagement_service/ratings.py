"""
Provider reputation from raw rating submissions.

The store only appends rating records, so the same buyer can have several
records for one provider. Only the most recent record per rater counts:

    A rates 5 at t1, A re-rates 3 at t2, B rates 4 at t3
    -> score (3 + 4) / 2 = 3.5, review_count 2

Usage example:

    from ratings import aggregate

    reputation = aggregate(ratings)
    # Reputation(score=3.5, review_count=2)
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable

from domain import EPOCH, Rating
from errors import ValidationError

MIN_SCORE = 1
MAX_SCORE = 5


@dataclass
class Reputation:
    """Public (score, review count) pair shown for a provider."""

    score: float = 0.0
    review_count: int = 0

    def to_dict(self):
        return asdict(self)


def validate_score(score) -> int:
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Rating must be a whole number of stars")
    if not MIN_SCORE <= score <= MAX_SCORE:
        raise ValidationError(f"Rating must be between {MIN_SCORE} and {MAX_SCORE} stars")
    return score


def effective_timestamp(rating: Rating) -> datetime:
    """updated_at, else created_at, else epoch zero (sorts oldest)."""
    return rating.updated_at or rating.created_at or EPOCH


def latest_per_rater(ratings: Iterable[Rating]) -> Dict[str, Rating]:
    latest: Dict[str, Rating] = {}
    for rating in ratings:
        current = latest.get(rating.rater_id)
        if current is None or effective_timestamp(rating) > effective_timestamp(current):
            latest[rating.rater_id] = rating
    return latest


def round_one_decimal(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def aggregate(ratings: Iterable[Rating]) -> Reputation:
    latest = latest_per_rater(ratings)
    if not latest:
        return Reputation()
    total = sum(r.score for r in latest.values())
    mean = Decimal(total) / Decimal(len(latest))
    return Reputation(score=round_one_decimal(mean), review_count=len(latest))
