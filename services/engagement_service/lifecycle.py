"""
Engagement lifecycle state machine.

    Pending -> In Progress -> Awaiting Confirmation -> Completed
                               |        ^
                               v        |
                              Disputed -+
    Pending -> Cancelled

Every "can the user do X" question is answered here from status, timestamps
and the acting party, never from a stored flag.

Usage:
    from lifecycle import Event, apply_transition

    updated = apply_transition(engagement, Event.START, actor)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
import enum

from domain import ActorContext, Engagement, EngagementStatus, Role, utcnow
from errors import InvalidTransitionError, ValidationError


class Event(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    START = "start"
    MARK_COMPLETE = "mark_complete"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class TransitionRule:
    source: EngagementStatus
    actor: Role
    target: EngagementStatus


TRANSITIONS: Dict[Event, TransitionRule] = {
    Event.ACCEPT: TransitionRule(EngagementStatus.PENDING, Role.PROVIDER, EngagementStatus.IN_PROGRESS),
    Event.DECLINE: TransitionRule(EngagementStatus.PENDING, Role.PROVIDER, EngagementStatus.CANCELLED),
    Event.START: TransitionRule(EngagementStatus.IN_PROGRESS, Role.PROVIDER, EngagementStatus.IN_PROGRESS),
    Event.MARK_COMPLETE: TransitionRule(EngagementStatus.IN_PROGRESS, Role.PROVIDER, EngagementStatus.AWAITING_CONFIRMATION),
    Event.RAISE_DISPUTE: TransitionRule(EngagementStatus.AWAITING_CONFIRMATION, Role.BUYER, EngagementStatus.DISPUTED),
    Event.RESOLVE_DISPUTE: TransitionRule(EngagementStatus.DISPUTED, Role.BUYER, EngagementStatus.AWAITING_CONFIRMATION),
    Event.CONFIRM: TransitionRule(EngagementStatus.AWAITING_CONFIRMATION, Role.BUYER, EngagementStatus.COMPLETED),
}

DEFAULT_DECLINE_REASON = "No reason provided"

# Statuses where the buyer may still rewrite the terms
_EDITABLE = {EngagementStatus.PENDING, EngagementStatus.IN_PROGRESS}


def _is_party(engagement: Engagement, actor: ActorContext, role: Role) -> bool:
    if actor.role != role:
        return False
    if role == Role.PROVIDER:
        return actor.party_id == engagement.provider.id
    if role == Role.BUYER:
        return actor.party_id == engagement.buyer.id
    return True


def _extra_guard(engagement: Engagement, event: Event) -> Optional[str]:
    """Guard beyond status and actor. Returns the reason it fails, if any."""
    if event == Event.START and engagement.project_started_at:
        return "project already started"
    if event == Event.MARK_COMPLETE:
        if not engagement.project_started_at:
            return "project has not been started"
        if engagement.sme_completed_at:
            return "project already marked complete"
    return None


def check_transition(engagement: Engagement, event: Event, actor: ActorContext) -> Optional[str]:
    """Return None when the transition is allowed, otherwise why not."""
    rule = TRANSITIONS.get(event)
    if rule is None:
        return f"unknown event '{event}'"
    if engagement.status != rule.source:
        return f"'{event.value}' requires status '{rule.source.value}'"
    if actor.role != rule.actor:
        return f"only the {rule.actor.value} may '{event.value}'"
    if not _is_party(engagement, actor, rule.actor):
        return f"actor is not this engagement's {rule.actor.value}"
    return _extra_guard(engagement, event)


def can(engagement: Engagement, event: Event, actor: ActorContext) -> bool:
    return check_transition(engagement, event, actor) is None


def can_accept(engagement, actor):
    return can(engagement, Event.ACCEPT, actor)


def can_decline(engagement, actor):
    return can(engagement, Event.DECLINE, actor)


def can_start(engagement, actor):
    return can(engagement, Event.START, actor)


def can_mark_complete(engagement, actor):
    return can(engagement, Event.MARK_COMPLETE, actor)


def can_raise_dispute(engagement, actor):
    return can(engagement, Event.RAISE_DISPUTE, actor)


def can_resolve_dispute(engagement, actor):
    return can(engagement, Event.RESOLVE_DISPUTE, actor)


def can_confirm(engagement, actor):
    return can(engagement, Event.CONFIRM, actor)


def can_edit_terms(engagement: Engagement, actor: ActorContext) -> bool:
    if not _is_party(engagement, actor, Role.BUYER):
        return False
    if engagement.status not in _EDITABLE:
        return False
    return engagement.status == EngagementStatus.PENDING or not engagement.project_started_at


def can_confirm_payment(engagement: Engagement, actor: ActorContext) -> bool:
    return (
        actor.role == Role.ADMIN
        and engagement.status == EngagementStatus.COMPLETED
        and engagement.funds_released_at is not None
        and not engagement.payment_confirmed_by_admin
    )


def available_events(engagement: Engagement, actor: ActorContext) -> List[Event]:
    return [event for event in Event if can(engagement, event, actor)]


def _not_before(now: datetime, *previous: Optional[datetime]) -> datetime:
    # Lifecycle timestamps must never run backwards, even with clock skew
    stamps = [p for p in previous if p is not None]
    return max([now] + stamps)


def _require_text(payload: dict, key: str, label: str) -> str:
    text = ((payload or {}).get(key) or "").strip()
    if not text:
        raise ValidationError(f"A {label} is required")
    return text


def apply_transition(
    engagement: Engagement,
    event: Event,
    actor: ActorContext,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Engagement:
    """Perform a transition on a copy of the engagement and return the copy.

    Raises InvalidTransitionError (wrong actor/party/state) or ValidationError
    (missing dispute/resolution text). Either way the input is unchanged.
    """
    try:
        event = Event(event)
    except ValueError:
        raise InvalidTransitionError(str(event), engagement.status.value, "unknown event")

    reason = check_transition(engagement, event, actor)
    if reason is not None:
        raise InvalidTransitionError(event.value, engagement.status.value, reason)

    payload = payload or {}
    now = now or utcnow()
    updated = engagement.model_copy(deep=True)

    if event == Event.ACCEPT:
        updated.accepted_at = now
    elif event == Event.DECLINE:
        updated.declined_at = now
        updated.decline_reason = (payload.get("reason") or "").strip() or DEFAULT_DECLINE_REASON
    elif event == Event.START:
        updated.project_started_at = _not_before(now, engagement.accepted_at)
        updated.progress_percentage = 0
    elif event == Event.MARK_COMPLETE:
        updated.sme_completed_at = _not_before(now, engagement.project_started_at)
        updated.progress_percentage = 100
    elif event == Event.RAISE_DISPUTE:
        updated.dispute_reason = _require_text(payload, "reason", "dispute reason")
        updated.disputed_at = _not_before(now, engagement.sme_completed_at)
        updated.disputed_by = actor.party_id
        updated.disputed_by_name = actor.name
    elif event == Event.RESOLVE_DISPUTE:
        updated.dispute_resolution_notes = _require_text(payload, "resolution", "dispute resolution")
        updated.dispute_resolved_at = _not_before(now, engagement.disputed_at)
    elif event == Event.CONFIRM:
        confirmed_at = _not_before(now, engagement.sme_completed_at, engagement.dispute_resolved_at)
        updated.sdp_confirmed_at = confirmed_at
        updated.funds_released_at = confirmed_at

    updated.status = TRANSITIONS[event].target
    return updated


def confirm_payment(
    engagement: Engagement,
    actor: ActorContext,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Engagement:
    """Admin confirmation that released funds reached the provider."""
    if not can_confirm_payment(engagement, actor):
        if actor.role != Role.ADMIN:
            reason = "only an admin may confirm payment"
        elif engagement.payment_confirmed_by_admin:
            reason = "payment already confirmed"
        else:
            reason = "funds have not been released"
        raise InvalidTransitionError("confirm_payment", engagement.status.value, reason)

    updated = engagement.model_copy(deep=True)
    updated.payment_confirmed_by_admin = True
    updated.payment_confirmed_at = _not_before(now or utcnow(), engagement.funds_released_at)
    updated.payment_confirmed_by = actor.party_id
    updated.payment_confirmation_comment = (comment or "").strip() or None
    return updated
