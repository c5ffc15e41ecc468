"""
Engagement orchestrator: the single entry point for API handlers.

Each call reads the engagement, lets the pure modules (lifecycle, milestones,
documents, ratings) compute the new state on a copy, writes only the changed
fields guarded by the version that was read, then publishes the snapshot and
the notifications. Notification and snapshot failures are logged and dropped;
persistence failures abort the call with nothing committed.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

import crud
import documents
import earnings
import lifecycle
import milestones
import ratings
from change_feed import ChangeFeed
from domain import (
    ActorContext,
    Document,
    Engagement,
    EngagementTerms,
    MilestoneStatus,
    Party,
    Rating,
    Role,
    TermsUpdate,
    utcnow,
)
from errors import CollaboratorError, InvalidTransitionError, ValidationError
from lifecycle import Event
from notifier import Notifier

logger = logging.getLogger(__name__)

ENGAGEMENT_LINK = "/dashboard?tab=engagements&engagement={id}"
PROFILE_LINK = "/dashboard?tab=profile"

# event -> (recipient, notification type, title, message template)
_TRANSITION_NOTICES = {
    Event.ACCEPT: ("buyer", "engagement", "Project Accepted",
                   '{actor} accepted your project: "{title}"'),
    Event.DECLINE: ("buyer", "engagement", "Project Rejected",
                    '{actor} rejected your project: "{title}". Reason: {reason}'),
    Event.MARK_COMPLETE: ("buyer", "engagement", "Project Marked Complete",
                          '{actor} marked "{title}" as complete. Please confirm to release funds.'),
    Event.RAISE_DISPUTE: ("provider", "engagement", "Dispute Raised",
                          'Dispute raised on "{title}". Reason: {reason}. The payment is on hold.'),
    Event.RESOLVE_DISPUTE: ("provider", "engagement", "Dispute Resolved",
                            'The dispute on "{title}" was marked resolved. Resolution notes: {resolution}'),
    Event.CONFIRM: ("provider", "payment", "Funds Released",
                    '{actor} confirmed completion of "{title}". Funds have been released.'),
}


@dataclass
class RatingPrompt:
    """Tells the caller whether the buyer is creating or updating a rating."""

    provider_id: str
    provider_name: str
    is_update: bool
    score: Optional[int] = None
    comment: str = ""


@dataclass
class TransitionOutcome:
    engagement: Engagement
    rating_prompt: Optional[RatingPrompt] = None


def _validate_terms(fee: str, start_date, end_date, description: str):
    if not (fee or "").strip():
        raise ValidationError("A fee is required")
    if not (description or "").strip():
        raise ValidationError("A description is required")
    if start_date > end_date:
        raise ValidationError("The start date must not be after the end date")


class EngagementOrchestrator:
    def __init__(self, db: Session, notifier: Notifier = None, feed: ChangeFeed = None, clock=utcnow):
        self.db = db
        self.notifier = notifier or Notifier()
        self.feed = feed or ChangeFeed()
        self.clock = clock

    # ------- internals -------

    def _commit(self, before: Engagement, after: Engagement) -> Engagement:
        fields = crud.changed_fields(before, after)
        if not fields:
            return before
        saved = crud.write_engagement_fields(self.db, before.id, fields, before.version)
        self.feed.publish(saved)
        return saved

    def _link(self, engagement: Engagement) -> str:
        return ENGAGEMENT_LINK.format(id=engagement.id)

    def _notify_transition(self, engagement: Engagement, event: Event, actor: ActorContext, payload: dict):
        notice = _TRANSITION_NOTICES.get(event)
        if notice is None:
            return
        recipient, kind, title, template = notice
        party = engagement.buyer if recipient == "buyer" else engagement.provider
        message = template.format(
            actor=actor.name or "Your counterpart",
            title=engagement.title,
            reason=engagement.dispute_reason if event == Event.RAISE_DISPUTE else engagement.decline_reason,
            resolution=engagement.dispute_resolution_notes,
        )
        self.notifier.notify(
            party.id, kind, title, message,
            link=self._link(engagement),
            metadata={"engagement_id": engagement.id, "event": event.value, **(payload or {})},
        )
        self.notifier.event(f"engagement.{event.value}", {
            "engagement_id": engagement.id,
            "provider_id": engagement.provider.id,
            "buyer_id": engagement.buyer.id,
            "status": engagement.status.value,
        })

    # ------- queries -------

    def get_engagement(self, engagement_id: str) -> Engagement:
        return crud.read_engagement(self.db, engagement_id)

    def list_engagements(self, provider_id=None, buyer_id=None, status=None) -> List[Engagement]:
        return crud.list_engagements(self.db, provider_id=provider_id, buyer_id=buyer_id, status=status)

    def reputation(self, provider_id: str) -> ratings.Reputation:
        return crud.get_reputation(self.db, provider_id)

    def earnings(self, provider_id: str) -> earnings.EarningsSummary:
        return earnings.summarize(self.list_engagements(provider_id=provider_id), now=self.clock())

    # ------- engagement lifecycle -------

    def propose_engagement(self, terms: EngagementTerms, actor: ActorContext) -> Engagement:
        if actor.role != Role.BUYER:
            raise ValidationError("Only a buyer may propose an engagement")
        if terms.provider_id == actor.party_id:
            raise ValidationError("A buyer cannot propose an engagement to themselves")
        _validate_terms(terms.fee, terms.start_date, terms.end_date, terms.description)

        engagement = Engagement(
            provider=Party(id=terms.provider_id, name=terms.provider_name),
            buyer=Party(id=actor.party_id, name=actor.name),
            fee=terms.fee.strip(),
            start_date=terms.start_date,
            end_date=terms.end_date,
            description=terms.description.strip(),
            project_name=terms.project_name,
            engagement_type=terms.engagement_type,
            deliverables=terms.deliverables,
            milestones=milestones.build_milestones(m.model_dump() for m in terms.milestones),
        )
        saved = crud.insert_engagement(self.db, engagement)
        logger.info("Engagement %s proposed by %s to %s", saved.id, actor.party_id, terms.provider_id)
        self.feed.publish(saved)
        self.notifier.notify(
            saved.provider.id, "engagement", "New Project Proposal",
            f'{actor.name or "A buyer"} proposed a project: "{saved.title}"',
            link=self._link(saved),
            metadata={"engagement_id": saved.id},
        )
        return saved

    def transition(self, engagement_id: str, event, actor: ActorContext, payload: Optional[dict] = None) -> TransitionOutcome:
        before = crud.read_engagement(self.db, engagement_id)
        after = lifecycle.apply_transition(before, event, actor, payload, now=self.clock())
        saved = self._commit(before, after)
        event = Event(event)
        logger.info(
            "Engagement %s: %s by %s (%s -> %s)",
            saved.id, event.value, actor.party_id, before.status.value, saved.status.value,
        )
        self._notify_transition(saved, event, actor, payload)

        prompt = None
        if event == Event.CONFIRM:
            # The engagement is already Completed; the next rating recomputes anyway
            try:
                self.recompute_reputation(saved.provider.id)
            except CollaboratorError as exc:
                logger.warning("Reputation for provider %s not refreshed: %s", saved.provider.id, exc.message)
            prompt = self.rating_prompt(saved, actor)
        return TransitionOutcome(engagement=saved, rating_prompt=prompt)

    def update_terms(self, engagement_id: str, changes: TermsUpdate, actor: ActorContext) -> Engagement:
        before = crud.read_engagement(self.db, engagement_id)
        if not lifecycle.can_edit_terms(before, actor):
            raise InvalidTransitionError(
                "edit_terms", before.status.value,
                "terms can only be edited by the buyer before work starts",
            )

        after = before.model_copy(deep=True)
        updates = changes.model_dump(exclude_unset=True, exclude={"milestones"})
        for key, value in updates.items():
            if value is not None:
                setattr(after, key, value.strip() if isinstance(value, str) else value)
        if changes.milestones is not None:
            after.milestones = milestones.build_milestones(m.model_dump() for m in changes.milestones)
        _validate_terms(after.fee, after.start_date, after.end_date, after.description)

        saved = self._commit(before, after)
        if saved.version != before.version:
            self.notifier.notify(
                saved.provider.id, "engagement", "Project Updated",
                f'{actor.name or "The buyer"} updated the details of "{saved.title}"',
                link=self._link(saved),
                metadata={"engagement_id": saved.id},
            )
        return saved

    def confirm_payment(self, engagement_id: str, actor: ActorContext, comment: Optional[str] = None) -> Engagement:
        before = crud.read_engagement(self.db, engagement_id)
        after = lifecycle.confirm_payment(before, actor, comment, now=self.clock())
        saved = self._commit(before, after)
        logger.info("Payment for engagement %s confirmed by admin %s", saved.id, actor.party_id)
        self.notifier.notify(
            saved.provider.id, "payment", "Payment Confirmed",
            f'Payment for "{saved.title}" ({saved.fee}) has been confirmed.',
            link=self._link(saved),
            metadata={"engagement_id": saved.id},
        )
        return saved

    # ------- milestones & documents -------

    def advance_milestone(self, engagement_id: str, milestone_id: str, new_status, actor: ActorContext) -> Engagement:
        before = crud.read_engagement(self.db, engagement_id)
        after, milestone, progress = milestones.advance(before, milestone_id, new_status, actor, now=self.clock())
        if milestone.status == MilestoneStatus.COMPLETED:
            after.progress_percentage = progress
        saved = self._commit(before, after)
        logger.info("Engagement %s: milestone %s -> %s", saved.id, milestone_id, milestone.status.value)
        return saved

    def attach_document(
        self,
        engagement_id: str,
        file_meta: dict,
        requires_signature: bool,
        actor: ActorContext,
        milestone_id: Optional[str] = None,
    ) -> Document:
        before = crud.read_engagement(self.db, engagement_id)
        after, document = documents.upload(
            before,
            name=file_meta.get("name"),
            url=file_meta.get("url"),
            uploader=actor,
            requires_signature=requires_signature,
            milestone_id=milestone_id,
            now=self.clock(),
        )
        saved = self._commit(before, after)

        other = saved.counterparty(actor.party_id)
        if other:
            suffix = " (signature required)" if requires_signature else ""
            self.notifier.notify(
                other.id, "document", "New Document",
                f'{actor.name or "Your counterpart"} uploaded "{document.name}" to "{saved.title}"{suffix}',
                link=self._link(saved),
                metadata={"engagement_id": saved.id, "document_id": document.id},
            )
        return saved.find_document(document.id)

    def sign_document(self, engagement_id: str, document_id: str, actor: ActorContext) -> Document:
        before = crud.read_engagement(self.db, engagement_id)
        after, document = documents.sign(before, document_id, actor, now=self.clock())
        saved = self._commit(before, after)

        other = saved.counterparty(actor.party_id)
        if saved.version != before.version and other:
            self.notifier.notify(
                other.id, "document", "Document Signed",
                f'{actor.name or "Your counterpart"} signed "{document.name}"',
                link=self._link(saved),
                metadata={"engagement_id": saved.id, "document_id": document.id},
            )
        return saved.find_document(document_id)

    # ------- ratings -------

    def rating_prompt(self, engagement: Engagement, actor: ActorContext) -> RatingPrompt:
        existing = crud.latest_rating(self.db, engagement.provider.id, actor.party_id)
        return RatingPrompt(
            provider_id=engagement.provider.id,
            provider_name=engagement.provider.name,
            is_update=existing is not None,
            score=existing.score if existing else None,
            comment=existing.comment if existing else "",
        )

    def recompute_reputation(self, provider_id: str) -> ratings.Reputation:
        reputation = ratings.aggregate(crud.list_ratings(self.db, provider_id))
        crud.save_reputation(self.db, provider_id, reputation)
        logger.info(
            "Reputation for provider %s: %.1f (%d reviews)",
            provider_id, reputation.score, reputation.review_count,
        )
        return reputation

    def submit_rating(
        self,
        provider_id: str,
        rater: ActorContext,
        score,
        comment: Optional[str] = None,
        engagement_id: Optional[str] = None,
    ) -> ratings.Reputation:
        score = ratings.validate_score(score)
        if rater.role != Role.BUYER:
            raise ValidationError("Only buyers can rate providers")
        if rater.party_id == provider_id:
            raise ValidationError("Providers cannot rate themselves")
        if engagement_id:
            engagement = crud.read_engagement(self.db, engagement_id)
            if engagement.provider.id != provider_id or engagement.buyer.id != rater.party_id:
                raise ValidationError("The engagement does not belong to this buyer and provider")

        now = self.clock()
        comment = (comment or "").strip()
        crud.append_rating(self.db, Rating(
            provider_id=provider_id,
            rater_id=rater.party_id,
            rater_name=rater.name,
            score=score,
            comment=comment,
            engagement_id=engagement_id,
            created_at=now,
            updated_at=now,
        ))
        reputation = self.recompute_reputation(provider_id)

        excerpt = ""
        if comment:
            excerpt = ": " + comment[:50] + ("..." if len(comment) > 50 else "")
        self.notifier.notify(
            provider_id, "rating", "New Rating Received",
            f"{rater.name or 'A buyer'} gave you a {score} star rating{excerpt}",
            link=PROFILE_LINK,
            metadata={"rating": score, "rater_id": rater.party_id, "rater_name": rater.name},
        )
        return reputation
