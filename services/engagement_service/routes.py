from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File, Form, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import List, Optional
import httpx
import logging
import os

from database import get_db
from domain import ActorContext, Engagement, EngagementStatus, Role, coerce_role
from errors import EngagementError, NotFoundError, ValidationError
from orchestrator import EngagementOrchestrator
from schemas import (
    DocumentResponse, DownloadResponse, EarningsResponse, EngagementCreate,
    EngagementResponse, EngagementUpdate, MilestoneAdvanceRequest,
    PaymentConfirmationRequest, RatingCreate, RatingPromptResponse,
    ReputationResponse, TransitionRequest, TransitionResponse,
)
import documents
import lifecycle
import progress
import storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/engagements", tags=["engagements"])
providers_router = APIRouter(prefix="/api/v1/providers", tags=["providers"])

AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth-service:8000")
http_bearer = HTTPBearer(auto_error=False)


def resolve_account(credentials: HTTPAuthorizationCredentials = Depends(http_bearer)):
    if not credentials:
        return None
    try:
        response = httpx.get(
            f"{AUTH_SERVICE_URL}/api/v1/auth/me",
            headers={"Authorization": f"Bearer {credentials.credentials}"},
            timeout=5.0
        )
    except httpx.HTTPError as exc:
        logger.warning("Failed to resolve account: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    if response.status_code == 200:
        return response.json()
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token"
    )


def get_actor(account=Depends(resolve_account)) -> ActorContext:
    if not account:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Auth required")
    role = coerce_role(account.get("role"))
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unsupported account role")
    return ActorContext(
        party_id=str(account.get("id")),
        name=account.get("name") or "",
        role=role,
    )


def get_orchestrator(db: Session = Depends(get_db)) -> EngagementOrchestrator:
    return EngagementOrchestrator(db)


def _require_access(engagement: Engagement, actor: ActorContext):
    if actor.role != Role.ADMIN and engagement.party_role(actor.party_id) is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this engagement")


def engagement_response(engagement: Engagement, actor: ActorContext) -> EngagementResponse:
    return EngagementResponse(
        **engagement.model_dump(),
        estimated_progress=progress.estimate(engagement),
        available_events=[e.value for e in lifecycle.available_events(engagement, actor)],
        awaiting_my_signature=[d.id for d in documents.awaiting_signature(engagement, actor.party_id)],
    )


# ------- Engagements -------

@router.post("", response_model=EngagementResponse, status_code=status.HTTP_201_CREATED)
def propose_engagement(
    payload: EngagementCreate,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.propose_engagement(payload, actor)
    return engagement_response(engagement, actor)


@router.get("", response_model=List[EngagementResponse])
def list_engagements(
    provider_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    status_filter: Optional[EngagementStatus] = Query(None, alias="status"),
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    # Non-admins only ever see their own side of the marketplace
    if actor.role == Role.PROVIDER:
        provider_id = actor.party_id
    elif actor.role == Role.BUYER:
        buyer_id = actor.party_id
    engagements = orchestrator.list_engagements(provider_id=provider_id, buyer_id=buyer_id, status=status_filter)
    return [engagement_response(e, actor) for e in engagements]


@router.get("/{engagement_id}", response_model=EngagementResponse)
def get_engagement(
    engagement_id: str,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.get_engagement(engagement_id)
    _require_access(engagement, actor)
    return engagement_response(engagement, actor)


@router.patch("/{engagement_id}", response_model=EngagementResponse)
def update_engagement(
    engagement_id: str,
    payload: EngagementUpdate,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.update_terms(engagement_id, payload, actor)
    return engagement_response(engagement, actor)


@router.post("/{engagement_id}/transitions", response_model=TransitionResponse)
def transition_engagement(
    engagement_id: str,
    payload: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    outcome = orchestrator.transition(
        engagement_id,
        payload.event,
        actor,
        payload.model_dump(exclude={"event"}, exclude_none=True),
    )
    prompt = None
    if outcome.rating_prompt:
        prompt = RatingPromptResponse.model_validate(outcome.rating_prompt)
    return TransitionResponse(
        engagement=engagement_response(outcome.engagement, actor),
        rating_prompt=prompt,
    )


@router.post("/{engagement_id}/payment-confirmation", response_model=EngagementResponse)
def confirm_payment(
    engagement_id: str,
    payload: PaymentConfirmationRequest,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.confirm_payment(engagement_id, actor, payload.comment)
    return engagement_response(engagement, actor)


# ------- Milestones -------

@router.post("/{engagement_id}/milestones/{milestone_id}/advance", response_model=EngagementResponse)
def advance_milestone(
    engagement_id: str,
    milestone_id: str,
    payload: MilestoneAdvanceRequest,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.advance_milestone(engagement_id, milestone_id, payload.status, actor)
    return engagement_response(engagement, actor)


# ------- Documents -------

@router.post("/{engagement_id}/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def upload_document(
    engagement_id: str,
    file: UploadFile = File(...),
    requires_signature: bool = Form(False),
    milestone_id: Optional[str] = Form(None),
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.get_engagement(engagement_id)
    if engagement.party_role(actor.party_id) is None:
        raise ValidationError("Only the engagement's provider or buyer may upload documents")
    milestone_id = milestone_id or None
    if milestone_id and engagement.find_milestone(milestone_id) is None:
        raise NotFoundError(f"Milestone {milestone_id} not found")

    data = await file.read()
    if not data:
        raise ValidationError("Uploaded file is empty")
    locator = storage.upload_file(
        storage.object_name_for(engagement_id, file.filename),
        data,
        file.content_type or "application/octet-stream",
    )
    try:
        document = orchestrator.attach_document(
            engagement_id,
            {"name": file.filename, "url": locator},
            requires_signature,
            actor,
            milestone_id=milestone_id,
        )
    except EngagementError:
        # Nothing references the object now
        storage.delete_file(locator)
        raise
    return DocumentResponse(**document.model_dump())


@router.post("/{engagement_id}/documents/{document_id}/sign", response_model=DocumentResponse)
def sign_document(
    engagement_id: str,
    document_id: str,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    document = orchestrator.sign_document(engagement_id, document_id, actor)
    return DocumentResponse(**document.model_dump())


@router.get("/{engagement_id}/documents/{document_id}/download", response_model=DownloadResponse)
def download_document(
    engagement_id: str,
    document_id: str,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    engagement = orchestrator.get_engagement(engagement_id)
    _require_access(engagement, actor)
    document = engagement.find_document(document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    return DownloadResponse(
        url=storage.resolve_download_url(document.url),
        expires_in_hours=storage.PRESIGNED_URL_HOURS,
    )


# ------- Providers -------

@providers_router.post("/{provider_id}/ratings", response_model=ReputationResponse, status_code=status.HTTP_201_CREATED)
def rate_provider(
    provider_id: str,
    payload: RatingCreate,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    reputation = orchestrator.submit_rating(
        provider_id,
        actor,
        payload.rating,
        comment=payload.comment,
        engagement_id=payload.engagement_id,
    )
    return ReputationResponse(provider_id=provider_id, **reputation.to_dict())


@providers_router.get("/{provider_id}/reputation", response_model=ReputationResponse)
def get_reputation(
    provider_id: str,
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    reputation = orchestrator.reputation(provider_id)
    return ReputationResponse(provider_id=provider_id, **reputation.to_dict())


@providers_router.get("/{provider_id}/earnings", response_model=EarningsResponse)
def get_earnings(
    provider_id: str,
    actor: ActorContext = Depends(get_actor),
    orchestrator: EngagementOrchestrator = Depends(get_orchestrator),
):
    if actor.role != Role.ADMIN and actor.party_id != provider_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your earnings")
    return EarningsResponse.model_validate(orchestrator.earnings(provider_id))
