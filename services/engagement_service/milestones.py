from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from domain import ActorContext, Engagement, Milestone, MilestoneStatus, Role, utcnow
from errors import InvalidTransitionError, NotFoundError, ValidationError
from progress import round_half_up

# Only the provider moves a milestone forward, one step at a time
MILESTONE_TRANSITIONS = {
    MilestoneStatus.PENDING: {MilestoneStatus.IN_PROGRESS},
    MilestoneStatus.IN_PROGRESS: {MilestoneStatus.COMPLETED},
}


def build_milestones(specs: Iterable[dict]) -> List[Milestone]:
    """Create fresh milestone records from title/description pairs."""
    milestones = []
    for idx, spec in enumerate(specs or []):
        title = (spec.get("title") or "").strip()
        if not title:
            raise ValidationError(f"Milestone #{idx + 1} requires a title")
        milestones.append(
            Milestone(
                title=title,
                description=(spec.get("description") or "").strip(),
                requires_document=bool(spec.get("requires_document", False)),
            )
        )
    return milestones


def completion_ratio(milestones: List[Milestone]) -> Tuple[int, int]:
    completed = sum(1 for m in milestones if m.status == MilestoneStatus.COMPLETED)
    return completed, len(milestones)


def milestone_progress(milestones: List[Milestone]) -> int:
    completed, total = completion_ratio(milestones)
    if total == 0:
        return 0
    return round_half_up(completed / total * 100)


def advance(
    engagement: Engagement,
    milestone_id: str,
    new_status: MilestoneStatus,
    actor: ActorContext,
    now: Optional[datetime] = None,
) -> Tuple[Engagement, Milestone, int]:
    """Move one milestone forward on a copy of the engagement.

    Returns the updated engagement, the milestone and the milestone-driven
    progress percentage. The input engagement is left untouched.
    """
    new_status = MilestoneStatus(new_status)
    event = f"advance_milestone:{new_status.value}"

    if actor.role != Role.PROVIDER or actor.party_id != engagement.provider.id:
        raise InvalidTransitionError(event, engagement.status.value, "only the engagement's provider may advance milestones")

    updated = engagement.model_copy(deep=True)
    milestone = updated.find_milestone(milestone_id)
    if milestone is None:
        raise NotFoundError(f"Milestone {milestone_id} not found")

    if new_status not in MILESTONE_TRANSITIONS.get(milestone.status, set()):
        raise InvalidTransitionError(
            event,
            engagement.status.value,
            f"milestone cannot move from '{milestone.status.value}' to '{new_status.value}'",
        )

    milestone.status = new_status
    if new_status == MilestoneStatus.COMPLETED:
        milestone.completed_at = now or utcnow()
        milestone.completed_by = actor.party_id

    return updated, milestone, milestone_progress(updated.milestones)
