class EngagementError(Exception):
    """Base class for every failure reported by the engagement core."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngagementError):
    status_code = 422


class NotFoundError(EngagementError):
    status_code = 404


class InvalidTransitionError(EngagementError):
    """Wrong actor, wrong party or wrong current state for an event."""

    status_code = 409

    def __init__(self, event: str, current: str, reason: str = None):
        msg = f"Cannot '{event}' engagement (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.event = event
        self.current_status = current
        self.reason = reason


class ConcurrentUpdateError(EngagementError):
    """The engagement changed since it was read; nothing was written."""

    status_code = 409

    def __init__(self, engagement_id: str, expected_version: int):
        super().__init__(
            f"Engagement {engagement_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.engagement_id = engagement_id
        self.expected_version = expected_version


class CollaboratorError(EngagementError):
    """Persistence or object storage failed; the operation is not committed."""

    status_code = 502
