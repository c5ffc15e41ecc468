from datetime import datetime, timedelta, timezone

import pytest

import lifecycle
from conftest import ADMIN, BUYER, OTHER_BUYER, OTHER_PROVIDER, PROVIDER
from domain import EngagementStatus
from errors import InvalidTransitionError, ValidationError
from lifecycle import Event, apply_transition

T0 = datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)


def step(engagement, event, actor, payload=None, minutes=0):
    return apply_transition(engagement, event, actor, payload, now=T0 + timedelta(minutes=minutes))


@pytest.fixture
def in_progress(make_engagement):
    return step(make_engagement(), Event.ACCEPT, PROVIDER)


@pytest.fixture
def awaiting(in_progress):
    started = step(in_progress, Event.START, PROVIDER, minutes=5)
    return step(started, Event.MARK_COMPLETE, PROVIDER, minutes=10)


def test_happy_path(make_engagement):
    engagement = make_engagement()
    accepted = step(engagement, Event.ACCEPT, PROVIDER)
    assert accepted.status == EngagementStatus.IN_PROGRESS
    assert accepted.accepted_at == T0

    started = step(accepted, Event.START, PROVIDER, minutes=1)
    assert started.status == EngagementStatus.IN_PROGRESS
    assert started.project_started_at == T0 + timedelta(minutes=1)

    done = step(started, Event.MARK_COMPLETE, PROVIDER, minutes=2)
    assert done.status == EngagementStatus.AWAITING_CONFIRMATION
    assert done.progress_percentage == 100

    confirmed = step(done, Event.CONFIRM, BUYER, minutes=3)
    assert confirmed.status == EngagementStatus.COMPLETED
    assert confirmed.sdp_confirmed_at == confirmed.funds_released_at == T0 + timedelta(minutes=3)


def test_apply_transition_leaves_input_untouched(make_engagement):
    engagement = make_engagement()
    step(engagement, Event.ACCEPT, PROVIDER)
    assert engagement.status == EngagementStatus.PENDING
    assert engagement.accepted_at is None


def test_buyer_cannot_accept(make_engagement):
    with pytest.raises(InvalidTransitionError) as exc:
        step(make_engagement(), Event.ACCEPT, BUYER)
    assert exc.value.event == "accept"
    assert exc.value.current_status == "Pending"


def test_provider_of_another_engagement_cannot_accept(make_engagement):
    with pytest.raises(InvalidTransitionError):
        step(make_engagement(), Event.ACCEPT, OTHER_PROVIDER)


def test_decline_defaults_reason(make_engagement):
    declined = step(make_engagement(), Event.DECLINE, PROVIDER)
    assert declined.status == EngagementStatus.CANCELLED
    assert declined.decline_reason == "No reason provided"
    assert declined.declined_at == T0


def test_decline_keeps_given_reason(make_engagement):
    declined = step(make_engagement(), Event.DECLINE, PROVIDER, {"reason": "Fully booked"})
    assert declined.decline_reason == "Fully booked"


def test_start_only_once(in_progress):
    started = step(in_progress, Event.START, PROVIDER)
    with pytest.raises(InvalidTransitionError):
        step(started, Event.START, PROVIDER)


def test_mark_complete_requires_start(in_progress):
    with pytest.raises(InvalidTransitionError):
        step(in_progress, Event.MARK_COMPLETE, PROVIDER)


def test_dispute_requires_reason(awaiting):
    with pytest.raises(ValidationError):
        step(awaiting, Event.RAISE_DISPUTE, BUYER, {"reason": "   "})


def test_dispute_and_resolution_cycle(awaiting):
    disputed = step(awaiting, Event.RAISE_DISPUTE, BUYER, {"reason": "Certificate missing"}, minutes=20)
    assert disputed.status == EngagementStatus.DISPUTED
    assert disputed.disputed_by == BUYER.party_id
    assert disputed.disputed_by_name == BUYER.name

    # nothing but resolution is possible while disputed
    with pytest.raises(InvalidTransitionError):
        step(disputed, Event.CONFIRM, BUYER)

    with pytest.raises(ValidationError):
        step(disputed, Event.RESOLVE_DISPUTE, BUYER)

    resolved = step(disputed, Event.RESOLVE_DISPUTE, BUYER, {"resolution": "Uploaded"}, minutes=30)
    assert resolved.status == EngagementStatus.AWAITING_CONFIRMATION
    assert resolved.dispute_resolution_notes == "Uploaded"

    confirmed = step(resolved, Event.CONFIRM, BUYER, minutes=40)
    assert confirmed.status == EngagementStatus.COMPLETED


def test_other_buyer_cannot_confirm(awaiting):
    with pytest.raises(InvalidTransitionError):
        step(awaiting, Event.CONFIRM, OTHER_BUYER)


def test_unknown_event_is_rejected(make_engagement):
    with pytest.raises(InvalidTransitionError):
        apply_transition(make_engagement(), "teleport", PROVIDER)


ACTORS = {
    "provider": PROVIDER,
    "buyer": BUYER,
    "admin": ADMIN,
    "other_provider": OTHER_PROVIDER,
    "other_buyer": OTHER_BUYER,
}

# In Progress appears twice: before and after the provider starts work
STATES = {
    "pending": dict(status=EngagementStatus.PENDING),
    "not_started": dict(status=EngagementStatus.IN_PROGRESS, accepted_at=T0),
    "started": dict(status=EngagementStatus.IN_PROGRESS, accepted_at=T0, project_started_at=T0),
    "awaiting": dict(
        status=EngagementStatus.AWAITING_CONFIRMATION,
        accepted_at=T0, project_started_at=T0, sme_completed_at=T0,
    ),
    "disputed": dict(
        status=EngagementStatus.DISPUTED,
        accepted_at=T0, project_started_at=T0, sme_completed_at=T0,
        disputed_at=T0, dispute_reason="Late",
    ),
    "completed": dict(
        status=EngagementStatus.COMPLETED,
        accepted_at=T0, project_started_at=T0, sme_completed_at=T0,
        sdp_confirmed_at=T0, funds_released_at=T0,
    ),
    "cancelled": dict(status=EngagementStatus.CANCELLED, declined_at=T0),
}

ALLOWED = {
    ("pending", Event.ACCEPT, "provider"),
    ("pending", Event.DECLINE, "provider"),
    ("not_started", Event.START, "provider"),
    ("started", Event.MARK_COMPLETE, "provider"),
    ("awaiting", Event.RAISE_DISPUTE, "buyer"),
    ("awaiting", Event.CONFIRM, "buyer"),
    ("disputed", Event.RESOLVE_DISPUTE, "buyer"),
}


@pytest.mark.parametrize("actor_name", sorted(ACTORS))
@pytest.mark.parametrize("event", list(Event))
@pytest.mark.parametrize("state", sorted(STATES))
def test_every_state_event_actor_combination(make_engagement, state, event, actor_name):
    engagement = make_engagement(**STATES[state])
    snapshot = engagement.model_copy(deep=True)
    actor = ACTORS[actor_name]
    payload = {"reason": "Missing report", "resolution": "Report sent"}

    if (state, event, actor_name) in ALLOWED:
        assert lifecycle.can(engagement, event, actor)
        updated = step(engagement, event, actor, payload, minutes=5)
        assert updated.status == lifecycle.TRANSITIONS[event].target
    else:
        assert not lifecycle.can(engagement, event, actor)
        with pytest.raises(InvalidTransitionError):
            step(engagement, event, actor, payload, minutes=5)
    assert engagement == snapshot


@pytest.mark.parametrize("status", [EngagementStatus.COMPLETED, EngagementStatus.CANCELLED])
def test_terminal_states_offer_no_events(make_engagement, status):
    engagement = make_engagement(status=status)
    for actor in ACTORS.values():
        assert lifecycle.available_events(engagement, actor) == []


def test_timestamps_never_run_backwards(make_engagement):
    accepted = step(make_engagement(), Event.ACCEPT, PROVIDER, minutes=60)
    # clock skewed back an hour
    started = step(accepted, Event.START, PROVIDER, minutes=0)
    assert started.project_started_at == accepted.accepted_at


def test_available_events(make_engagement, in_progress):
    assert lifecycle.available_events(make_engagement(), PROVIDER) == [Event.ACCEPT, Event.DECLINE]
    assert lifecycle.available_events(make_engagement(), BUYER) == []
    assert lifecycle.available_events(in_progress, PROVIDER) == [Event.START]


def test_can_edit_terms(make_engagement, in_progress):
    assert lifecycle.can_edit_terms(make_engagement(), BUYER)
    assert not lifecycle.can_edit_terms(make_engagement(), PROVIDER)
    assert lifecycle.can_edit_terms(in_progress, BUYER)
    started = step(in_progress, Event.START, PROVIDER)
    assert not lifecycle.can_edit_terms(started, BUYER)


def test_confirm_payment(awaiting):
    completed = step(awaiting, Event.CONFIRM, BUYER, minutes=30)

    with pytest.raises(InvalidTransitionError):
        lifecycle.confirm_payment(completed, BUYER)

    paid = lifecycle.confirm_payment(completed, ADMIN, " Paid via EFT ", now=T0 + timedelta(hours=1))
    assert paid.payment_confirmed_by_admin
    assert paid.payment_confirmed_by == ADMIN.party_id
    assert paid.payment_confirmation_comment == "Paid via EFT"

    with pytest.raises(InvalidTransitionError):
        lifecycle.confirm_payment(paid, ADMIN)


def test_confirm_payment_requires_released_funds(awaiting):
    with pytest.raises(InvalidTransitionError):
        lifecycle.confirm_payment(awaiting, ADMIN)


def test_legacy_status_label_is_read():
    assert EngagementStatus("Awaiting SDP Confirmation") == EngagementStatus.AWAITING_CONFIRMATION
