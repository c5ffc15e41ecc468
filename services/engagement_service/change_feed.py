"""
Engagement snapshots over redis pub/sub.

Every committed engagement write is published on one channel; dashboards
subscribe with a filter instead of re-reading a shared cache.
"""

import json
import logging
import os
from typing import Iterator, Optional

import redis

from domain import Engagement, EngagementStatus

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CHANNEL = "engagements.snapshots"

_redis_client = None


def get_redis() -> redis.Redis:
    """Return a shared redis connection, reconnecting if it dropped."""
    global _redis_client
    if _redis_client:
        try:
            _redis_client.ping()
            return _redis_client
        except redis.exceptions.ConnectionError:
            logger.warning("Redis connection lost. Reconnecting...")
            _redis_client = None

    _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    _redis_client.ping()
    return _redis_client


def matches(
    engagement: Engagement,
    party_id: Optional[str] = None,
    status: Optional[EngagementStatus] = None,
) -> bool:
    if party_id and party_id not in (engagement.provider.id, engagement.buyer.id):
        return False
    if status and engagement.status != EngagementStatus(status):
        return False
    return True


class ChangeFeed:
    def __init__(self, client_factory=get_redis):
        self.client_factory = client_factory

    def publish(self, engagement: Engagement):
        """Best effort: a missed snapshot never undoes the committed write."""
        try:
            self.client_factory().publish(CHANNEL, engagement.model_dump_json())
        except Exception as exc:
            logger.warning("Could not publish snapshot of engagement %s: %s", engagement.id, exc)

    def subscribe(
        self,
        party_id: Optional[str] = None,
        status: Optional[EngagementStatus] = None,
    ) -> Iterator[Engagement]:
        """Yield engagement snapshots matching the filter as they arrive."""
        pubsub = self.client_factory().pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(CHANNEL)
        try:
            for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    engagement = Engagement.model_validate(json.loads(message["data"]))
                except (ValueError, TypeError) as exc:
                    logger.warning("Skipping malformed engagement snapshot: %s", exc)
                    continue
                if matches(engagement, party_id, status):
                    yield engagement
        finally:
            pubsub.close()
