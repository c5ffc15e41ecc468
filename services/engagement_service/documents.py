from datetime import datetime
from typing import List, Optional, Tuple

from domain import (
    ActorContext,
    Document,
    DocumentStatus,
    DocumentType,
    Engagement,
    utcnow,
)
from errors import NotFoundError, ValidationError


def _require_party(engagement: Engagement, actor: ActorContext, action: str):
    if engagement.party_role(actor.party_id) is None:
        raise ValidationError(f"Only the engagement's provider or buyer may {action} documents")


def upload(
    engagement: Engagement,
    name: str,
    url: str,
    uploader: ActorContext,
    requires_signature: bool = False,
    milestone_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Engagement, Document]:
    """Attach document metadata to a copy of the engagement.

    A document that needs no signature is usable straight away (approved);
    otherwise it waits in 'uploaded' until someone signs it.
    """
    _require_party(engagement, uploader, "upload")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Document name is required")
    if not url:
        raise ValidationError("Document storage locator is required")

    updated = engagement.model_copy(deep=True)
    milestone = None
    if milestone_id:
        milestone = updated.find_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError(f"Milestone {milestone_id} not found")

    document = Document(
        name=name,
        url=url,
        uploaded_by=uploader.party_id,
        uploaded_by_name=uploader.name,
        uploaded_at=now or utcnow(),
        type=DocumentType.MILESTONE if milestone else DocumentType.GENERAL,
        milestone_id=milestone.id if milestone else None,
        requires_signature=requires_signature,
        status=DocumentStatus.UPLOADED if requires_signature else DocumentStatus.APPROVED,
    )
    updated.documents.append(document)
    if milestone:
        milestone.document_id = document.id
    return updated, document


def sign(
    engagement: Engagement,
    document_id: str,
    signer: ActorContext,
    now: Optional[datetime] = None,
) -> Tuple[Engagement, Document]:
    """Record a signature. Signing twice as the same party changes nothing.

    The first signature flips the document to 'signed'; counter-signatures are
    collected but not required.
    """
    _require_party(engagement, signer, "sign")
    updated = engagement.model_copy(deep=True)
    document = updated.find_document(document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    if not document.requires_signature:
        raise ValidationError(f"Document '{document.name}' does not require a signature")

    if signer.party_id in document.signed_by:
        return updated, document

    document.signed_by.append(signer.party_id)
    document.signed_by_names.append(signer.name)
    document.signed_at = now or utcnow()
    document.status = DocumentStatus.SIGNED
    return updated, document


def is_signed_by(document: Document, party_id: str) -> bool:
    return party_id in document.signed_by


def awaiting_signature(engagement: Engagement, party_id: str) -> List[Document]:
    return [
        d for d in engagement.documents
        if d.requires_signature and not is_signed_by(d, party_id)
    ]
