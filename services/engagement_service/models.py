from sqlalchemy import Column, Integer, String, Float, Text, Date, DateTime, Boolean, JSON, TypeDecorator
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from domain import EngagementStatus

Base = declarative_base()


class EnumValue(TypeDecorator):
    """Store enum values ("In Progress") rather than member names"""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, self.enum_class):
            return value.value
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return self.enum_class(value)


class EngagementRecord(Base):
    __tablename__ = "engagements"

    id = Column(String(64), primary_key=True)
    provider_id = Column(String(64), nullable=False, index=True)
    provider_name = Column(String, nullable=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    buyer_name = Column(String, nullable=True)

    fee = Column(String, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    project_name = Column(String, nullable=True)
    engagement_type = Column(String, nullable=True)
    deliverables = Column(Text, nullable=True)

    status = Column(EnumValue(EngagementStatus, length=50), nullable=False, default=EngagementStatus.PENDING, index=True)
    progress_percentage = Column(Integer, default=0)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    decline_reason = Column(Text, nullable=True)
    project_started_at = Column(DateTime(timezone=True), nullable=True)
    sme_completed_at = Column(DateTime(timezone=True), nullable=True)
    sdp_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    funds_released_at = Column(DateTime(timezone=True), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    disputed_by = Column(String(64), nullable=True)
    disputed_by_name = Column(String, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolved_at = Column(DateTime(timezone=True), nullable=True)
    dispute_resolution_notes = Column(Text, nullable=True)
    payment_confirmed_by_admin = Column(Boolean, default=False)
    payment_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    payment_confirmed_by = Column(String(64), nullable=True)
    payment_confirmation_comment = Column(Text, nullable=True)

    # Embedded sub-records, in execution order for milestones
    milestones = Column(JSON, default=list)
    documents = Column(JSON, default=list)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class RatingRecord(Base):
    """Append-only; a re-rating is a new row with a fresher timestamp"""
    __tablename__ = "provider_ratings"

    id = Column(String(64), primary_key=True)
    provider_id = Column(String(64), nullable=False, index=True)
    rater_id = Column(String(64), nullable=False, index=True)
    rater_name = Column(String, nullable=True)
    score = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    engagement_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class ProviderReputation(Base):
    __tablename__ = "provider_reputations"

    provider_id = Column(String(64), primary_key=True)
    rating = Column(Float, default=0.0)
    total_reviews = Column(Integer, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
