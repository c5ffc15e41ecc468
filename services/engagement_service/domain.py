from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime, timezone
import enum
import uuid


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class EngagementStatus(str, enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    AWAITING_CONFIRMATION = "Awaiting Confirmation"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    DISPUTED = "Disputed"

    @classmethod
    def _missing_(cls, value):
        for status, labels in LEGACY_STATUS_LABELS.items():
            if value in labels:
                return cls(status)
        return None

    def stored_labels(self) -> List[str]:
        """Every label a stored row in this status may carry."""
        return [self.value] + LEGACY_STATUS_LABELS.get(self.value, [])


# Rows written before the rename still carry the old label
LEGACY_STATUS_LABELS = {
    "Awaiting Confirmation": ["Awaiting SDP Confirmation"],
}


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class DocumentType(str, enum.Enum):
    MILESTONE = "milestone"
    GENERAL = "general"


class DocumentStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    APPROVED = "approved"
    SIGNED = "signed"


class Role(str, enum.Enum):
    PROVIDER = "provider"
    BUYER = "buyer"
    ADMIN = "admin"


# Role names used by the auth service
ROLE_ALIASES = {
    "provider": Role.PROVIDER,
    "freelancer": Role.PROVIDER,
    "sme": Role.PROVIDER,
    "buyer": Role.BUYER,
    "client": Role.BUYER,
    "sdp": Role.BUYER,
    "admin": Role.ADMIN,
}


def coerce_role(value) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    if isinstance(value, dict):
        value = value.get("value") or value.get("name")
    if value is None:
        return None
    return ROLE_ALIASES.get(str(value).lower())


class ActorContext(BaseModel):
    """Identity of whoever performs an operation, supplied by the caller."""

    party_id: str
    name: str = ""
    role: Role


class Party(BaseModel):
    id: str
    name: str = ""


class Milestone(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    requires_document: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    document_id: Optional[str] = None


class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    url: str
    uploaded_by: str
    uploaded_by_name: str = ""
    uploaded_at: datetime
    type: DocumentType = DocumentType.GENERAL
    milestone_id: Optional[str] = None
    requires_signature: bool = False
    status: DocumentStatus = DocumentStatus.APPROVED
    signed_by: List[str] = Field(default_factory=list)
    signed_by_names: List[str] = Field(default_factory=list)
    signed_at: Optional[datetime] = None


class Engagement(BaseModel):
    id: str = Field(default_factory=new_id)
    provider: Party
    buyer: Party

    fee: str
    start_date: date
    end_date: date
    description: str
    project_name: Optional[str] = None
    engagement_type: Optional[str] = None
    deliverables: Optional[str] = None

    status: EngagementStatus = EngagementStatus.PENDING
    progress_percentage: int = 0
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    project_started_at: Optional[datetime] = None
    sme_completed_at: Optional[datetime] = None
    sdp_confirmed_at: Optional[datetime] = None
    funds_released_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    disputed_by: Optional[str] = None
    disputed_by_name: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    dispute_resolution_notes: Optional[str] = None
    payment_confirmed_by_admin: bool = False
    payment_confirmed_at: Optional[datetime] = None
    payment_confirmed_by: Optional[str] = None
    payment_confirmation_comment: Optional[str] = None

    milestones: List[Milestone] = Field(default_factory=list)
    documents: List[Document] = Field(default_factory=list)

    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def title(self) -> str:
        return self.project_name or self.engagement_type or "Engagement"

    def party_role(self, party_id: str) -> Optional[Role]:
        if party_id == self.provider.id:
            return Role.PROVIDER
        if party_id == self.buyer.id:
            return Role.BUYER
        return None

    def counterparty(self, party_id: str) -> Optional[Party]:
        if party_id == self.provider.id:
            return self.buyer
        if party_id == self.buyer.id:
            return self.provider
        return None

    def find_milestone(self, milestone_id: str) -> Optional[Milestone]:
        return next((m for m in self.milestones if m.id == milestone_id), None)

    def find_document(self, document_id: str) -> Optional[Document]:
        return next((d for d in self.documents if d.id == document_id), None)


class MilestoneSpec(BaseModel):
    title: str
    description: str = ""
    requires_document: bool = False


class EngagementTerms(BaseModel):
    """What a buyer proposes to a provider."""

    provider_id: str
    provider_name: str = ""
    fee: str
    start_date: date
    end_date: date
    description: str
    project_name: Optional[str] = None
    engagement_type: Optional[str] = None
    deliverables: Optional[str] = None
    milestones: List[MilestoneSpec] = Field(default_factory=list)


class TermsUpdate(BaseModel):
    fee: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: Optional[str] = None
    project_name: Optional[str] = None
    engagement_type: Optional[str] = None
    deliverables: Optional[str] = None
    milestones: Optional[List[MilestoneSpec]] = None


class Rating(BaseModel):
    """One rating submission. Re-ratings are new records, never edits."""

    id: str = Field(default_factory=new_id)
    provider_id: str
    rater_id: str
    rater_name: str = ""
    score: int
    comment: str = ""
    engagement_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
