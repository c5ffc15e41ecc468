from pydantic import BaseModel
from typing import List, Optional

from domain import Document, Engagement, EngagementTerms, MilestoneStatus, TermsUpdate


# ------- Engagements -------
class EngagementCreate(EngagementTerms):
    pass


class EngagementUpdate(TermsUpdate):
    pass


class EngagementResponse(Engagement):
    estimated_progress: int = 0
    available_events: List[str] = []
    awaiting_my_signature: List[str] = []


class TransitionRequest(BaseModel):
    event: str
    reason: Optional[str] = None
    resolution: Optional[str] = None


class RatingPromptResponse(BaseModel):
    provider_id: str
    provider_name: str
    is_update: bool
    score: Optional[int] = None
    comment: str = ""

    class Config:
        from_attributes = True


class TransitionResponse(BaseModel):
    engagement: EngagementResponse
    rating_prompt: Optional[RatingPromptResponse] = None


class PaymentConfirmationRequest(BaseModel):
    comment: Optional[str] = None


# ------- Milestones & documents -------
class MilestoneAdvanceRequest(BaseModel):
    status: MilestoneStatus


class DocumentResponse(Document):
    pass


class DownloadResponse(BaseModel):
    url: str
    expires_in_hours: int


# ------- Providers -------
class RatingCreate(BaseModel):
    rating: int
    comment: Optional[str] = None
    engagement_id: Optional[str] = None


class ReputationResponse(BaseModel):
    provider_id: str
    score: float
    review_count: int


class EarningsResponse(BaseModel):
    total_earnings: float
    earnings_this_week: float
    total_paid: float
    paid_this_week: float
    completed_engagements: int
    active_engagements: int

    class Config:
        from_attributes = True
