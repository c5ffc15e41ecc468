"""Shared pytest fixtures for the engagement service tests.

Provides:
- db: session on an in-memory SQLite database with all tables
- orchestrator: wired to a recording notifier, a recording change feed and
  a fixed clock
- make_engagement: builds in-memory engagements for the pure modules
- client: TestClient with the orchestrator and account resolver overridden
"""

import os

# database.py builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from change_feed import ChangeFeed
from domain import ActorContext, Engagement, Milestone, Party, Role
from database import SessionLocal as TestingSessionLocal, engine
from models import Base
from notifier import Notifier
from orchestrator import EngagementOrchestrator


NOW = datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)

PROVIDER = ActorContext(party_id="sme-1", name="Thandi Mokoena", role=Role.PROVIDER)
OTHER_PROVIDER = ActorContext(party_id="sme-2", name="Pieter Botha", role=Role.PROVIDER)
BUYER = ActorContext(party_id="sdp-1", name="Acme Holdings", role=Role.BUYER)
OTHER_BUYER = ActorContext(party_id="sdp-2", name="Globex", role=Role.BUYER)
ADMIN = ActorContext(party_id="admin-1", name="Ops", role=Role.ADMIN)


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__(publish=self._record)
        self.sent = []
        self.events = []

    def _record(self, event_type, data):
        if event_type == "notification.requested":
            self.sent.append(data)
        else:
            self.events.append((event_type, data))

    def sent_to(self, user_id):
        return [n for n in self.sent if n["user_id"] == user_id]


class RecordingFeed(ChangeFeed):
    def __init__(self):
        super().__init__(client_factory=None)
        self.published = []

    def publish(self, engagement):
        self.published.append(engagement)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def build_engagement(**overrides) -> Engagement:
    data = dict(
        provider=Party(id=PROVIDER.party_id, name=PROVIDER.name),
        buyer=Party(id=BUYER.party_id, name=BUYER.name),
        fee="R 12,000",
        start_date=date(2024, 3, 1),
        end_date=date(2024, 3, 31),
        description="B-BBEE verification audit",
        project_name="Verification audit",
        milestones=[
            Milestone(id="m1", title="Collect documents"),
            Milestone(id="m2", title="Site visit"),
            Milestone(id="m3", title="Issue certificate", requires_document=True),
        ],
    )
    data.update(overrides)
    return Engagement(**data)


@pytest.fixture
def make_engagement():
    return build_engagement


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def feed():
    return RecordingFeed()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(db, notifier, feed, clock):
    return EngagementOrchestrator(db, notifier=notifier, feed=feed, clock=clock)


@pytest.fixture
def terms():
    return {
        "provider_id": PROVIDER.party_id,
        "provider_name": PROVIDER.name,
        "fee": "R 12,000",
        "start_date": "2024-03-01",
        "end_date": "2024-03-31",
        "description": "B-BBEE verification audit",
        "project_name": "Verification audit",
        "milestones": [
            {"title": "Collect documents"},
            {"title": "Site visit", "description": "On-site review"},
        ],
    }


@pytest.fixture
def accounts():
    """Account returned by the auth service; tests set accounts['current']."""
    return {"current": None}


@pytest.fixture
def client(orchestrator, accounts):
    from main import app
    from routes import get_orchestrator, resolve_account

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[resolve_account] = lambda: accounts["current"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
