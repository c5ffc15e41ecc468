from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from pydantic import ValidationError as RecordValidationError
from sqlalchemy import String, cast, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from domain import Engagement, EngagementStatus, Rating, utcnow
from errors import CollaboratorError, ConcurrentUpdateError, NotFoundError
from models import EngagementRecord, ProviderReputation, RatingRecord
from ratings import Reputation, latest_per_rater

logger = logging.getLogger(__name__)

# Engagement fields stored one-to-one as columns
_SCALAR_FIELDS = (
    "id", "fee", "start_date", "end_date", "description", "project_name",
    "engagement_type", "deliverables", "status", "progress_percentage",
    "accepted_at", "declined_at", "decline_reason", "project_started_at",
    "sme_completed_at", "sdp_confirmed_at", "funds_released_at",
    "disputed_at", "disputed_by", "disputed_by_name", "dispute_reason",
    "dispute_resolved_at", "dispute_resolution_notes",
    "payment_confirmed_by_admin", "payment_confirmed_at",
    "payment_confirmed_by", "payment_confirmation_comment",
    "version", "created_at", "updated_at",
)

# Managed by the store itself, never part of a partial write
_STORE_MANAGED = {"id", "version", "created_at", "updated_at"}


def _aware(value):
    # SQLite hands back naive datetimes even for timezone=True columns
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def _store_call(db: Session, action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Persistence failure while trying to %s: %s", action, exc)
        raise CollaboratorError(f"Could not {action}") from exc


# ------- Read boundary -------

def engagement_from_record(record: EngagementRecord) -> Engagement:
    data = {name: _aware(getattr(record, name)) for name in _SCALAR_FIELDS}
    data["provider"] = {"id": record.provider_id, "name": record.provider_name or ""}
    data["buyer"] = {"id": record.buyer_id, "name": record.buyer_name or ""}
    data["status"] = EngagementStatus(record.status) if record.status else EngagementStatus.PENDING
    data["progress_percentage"] = record.progress_percentage or 0
    data["payment_confirmed_by_admin"] = bool(record.payment_confirmed_by_admin)
    data["version"] = record.version or 1
    data["milestones"] = record.milestones or []
    data["documents"] = record.documents or []
    try:
        return Engagement.model_validate(data)
    except RecordValidationError as exc:
        logger.warning("Engagement %s has a malformed stored shape: %s", record.id, exc)
        raise CollaboratorError(f"Engagement {record.id} could not be read") from exc


def rating_from_record(record: RatingRecord) -> Rating:
    return Rating(
        id=record.id,
        provider_id=record.provider_id,
        rater_id=record.rater_id,
        rater_name=record.rater_name or "",
        score=record.score,
        comment=record.comment or "",
        engagement_id=record.engagement_id,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def engagement_columns(engagement: Engagement) -> Dict:
    """Flatten an engagement into column values for the engagements table."""
    data = {
        name: getattr(engagement, name)
        for name in _SCALAR_FIELDS
        if name not in _STORE_MANAGED
    }
    data["provider_id"] = engagement.provider.id
    data["provider_name"] = engagement.provider.name
    data["buyer_id"] = engagement.buyer.id
    data["buyer_name"] = engagement.buyer.name
    data["milestones"] = [m.model_dump(mode="json") for m in engagement.milestones]
    data["documents"] = [d.model_dump(mode="json") for d in engagement.documents]
    return data


def changed_fields(before: Engagement, after: Engagement) -> Dict:
    old = engagement_columns(before)
    new = engagement_columns(after)
    return {key: value for key, value in new.items() if old.get(key) != value}


# ------- Engagements -------

def insert_engagement(db: Session, engagement: Engagement) -> Engagement:
    record = EngagementRecord(id=engagement.id, version=1, **engagement_columns(engagement))
    with _store_call(db, "create engagement"):
        db.add(record)
        db.commit()
        db.refresh(record)
    return engagement_from_record(record)


def get_engagement_record(db: Session, engagement_id: str) -> Optional[EngagementRecord]:
    return db.query(EngagementRecord).filter(EngagementRecord.id == engagement_id).first()


def read_engagement(db: Session, engagement_id: str) -> Engagement:
    with _store_call(db, "read engagement"):
        record = get_engagement_record(db, engagement_id)
    if not record:
        raise NotFoundError(f"Engagement {engagement_id} not found")
    return engagement_from_record(record)


def write_engagement_fields(db: Session, engagement_id: str, fields: Dict, expected_version: int) -> Engagement:
    """Compare-and-swap partial write.

    Applies only when the stored version still equals expected_version, then
    bumps the version. Otherwise nothing is written.
    """
    values = {k: v for k, v in fields.items() if k not in _STORE_MANAGED}
    values["version"] = EngagementRecord.version + 1
    values["updated_at"] = utcnow()

    statement = (
        update(EngagementRecord)
        .where(EngagementRecord.id == engagement_id)
        .where(EngagementRecord.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    with _store_call(db, "update engagement"):
        result = db.execute(statement)
        if result.rowcount == 0:
            db.rollback()
            if get_engagement_record(db, engagement_id) is None:
                raise NotFoundError(f"Engagement {engagement_id} not found")
            raise ConcurrentUpdateError(engagement_id, expected_version)
        db.commit()
    db.expire_all()
    return read_engagement(db, engagement_id)


def list_engagements(
    db: Session,
    provider_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    status: Optional[EngagementStatus] = None,
) -> List[Engagement]:
    query = db.query(EngagementRecord)
    if provider_id:
        query = query.filter(EngagementRecord.provider_id == provider_id)
    if buyer_id:
        query = query.filter(EngagementRecord.buyer_id == buyer_id)
    if status:
        # Compare raw labels so legacy rows match too
        labels = EngagementStatus(status).stored_labels()
        query = query.filter(cast(EngagementRecord.status, String).in_(labels))
    with _store_call(db, "list engagements"):
        records = query.order_by(EngagementRecord.start_date.desc()).all()
    return [engagement_from_record(r) for r in records]


# ------- Ratings -------

def append_rating(db: Session, rating: Rating) -> Rating:
    record = RatingRecord(**rating.model_dump())
    with _store_call(db, "save rating"):
        db.add(record)
        db.commit()
        db.refresh(record)
    return rating_from_record(record)


def list_ratings(db: Session, provider_id: str) -> List[Rating]:
    with _store_call(db, "load ratings"):
        records = db.query(RatingRecord).filter(RatingRecord.provider_id == provider_id).all()
    return [rating_from_record(r) for r in records]


def latest_rating(db: Session, provider_id: str, rater_id: str) -> Optional[Rating]:
    with _store_call(db, "load ratings"):
        records = (
            db.query(RatingRecord)
            .filter(RatingRecord.provider_id == provider_id, RatingRecord.rater_id == rater_id)
            .all()
        )
    return latest_per_rater(rating_from_record(r) for r in records).get(rater_id)


def rated_provider_ids(db: Session) -> List[str]:
    with _store_call(db, "load ratings"):
        rows = db.query(RatingRecord.provider_id).distinct().all()
    return [row[0] for row in rows]


def get_reputation(db: Session, provider_id: str) -> Reputation:
    with _store_call(db, "load reputation"):
        record = db.query(ProviderReputation).filter(ProviderReputation.provider_id == provider_id).first()
    if not record:
        return Reputation()
    return Reputation(score=record.rating or 0.0, review_count=record.total_reviews or 0)


def save_reputation(db: Session, provider_id: str, reputation: Reputation) -> Reputation:
    """Overwrite the provider's public reputation fields."""
    with _store_call(db, "save reputation"):
        record = db.query(ProviderReputation).filter(ProviderReputation.provider_id == provider_id).first()
        if not record:
            record = ProviderReputation(provider_id=provider_id)
            db.add(record)
        record.rating = reputation.score
        record.total_reviews = reputation.review_count
        record.updated_at = utcnow()
        db.commit()
    return reputation
