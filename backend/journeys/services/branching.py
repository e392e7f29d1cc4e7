import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from journeys.db.repositories import EventRepository
from journeys.models.campaign import (
    Branch,
    CustomEventCondition,
    EmailEngagementCondition,
    FieldValueCondition,
    TagPresenceCondition,
    TimeElapsedCondition,
)
from journeys.models.contact import Contact
from journeys.models.journey import ContactJourney
from journeys.services.clock import minutes_from
from journeys.services.conditions import evaluate_field_condition, event_properties, properties_match

logger = logging.getLogger(__name__)


@dataclass
class BranchDecision:
    """
    Outcome of evaluating a branch.

    `path` is the node to continue with. It is None when the condition is
    pending (re-check at `recheck_at`) or when the false path was taken on a
    branch that has none, in which case the journey is complete.
    """

    path: Optional[str]
    matched: bool
    pending: bool = False
    recheck_at: Optional[datetime] = None


def as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def branch_entered_at(journey: ContactJourney, branch_id: str) -> Optional[datetime]:
    return as_datetime((journey.metadata.get("branch_entered_at") or {}).get(branch_id))


class BranchEvaluator:
    def __init__(self, events: EventRepository):
        self.events = events

    async def resolve(self, branch: Branch, contact: Contact, journey: ContactJourney, now: datetime) -> BranchDecision:
        entered_at = branch_entered_at(journey, branch.id) or now
        matched = await self.condition_met(branch, contact, journey, entered_at, now)
        if matched:
            return BranchDecision(path=branch.true_path, matched=True)

        deadline = minutes_from(entered_at, branch.wait_minutes)
        if now < deadline:
            recheck_at = deadline
            condition = branch.condition
            if isinstance(condition, TimeElapsedCondition):
                elapsed_at = self._time_reference(condition, journey, entered_at)
                if elapsed_at is not None:
                    recheck_at = min(deadline, minutes_from(elapsed_at, condition.minutes))
            logger.debug(f"[BRANCH] {branch.id} pending for journey {journey.journey_id} until {recheck_at.isoformat()}")
            return BranchDecision(path=None, matched=False, pending=True, recheck_at=recheck_at)

        # Wait window expired: condition counts as not met.
        return BranchDecision(path=branch.false_path, matched=False)

    async def condition_met(
        self,
        branch: Branch,
        contact: Contact,
        journey: ContactJourney,
        entered_at: datetime,
        now: datetime,
    ) -> bool:
        condition = branch.condition
        try:
            if isinstance(condition, EmailEngagementCondition):
                return self._engaged(condition, journey)
            if isinstance(condition, FieldValueCondition):
                return evaluate_field_condition(contact.field_value(condition.field), condition.operator, condition.value)
            if isinstance(condition, TagPresenceCondition):
                return (condition.tag in contact.tags) == condition.present
            if isinstance(condition, TimeElapsedCondition):
                reference = self._time_reference(condition, journey, entered_at)
                return reference is not None and now >= minutes_from(reference, condition.minutes)
            if isinstance(condition, CustomEventCondition):
                events = await self.events.find(journey.contact_id, condition.event_type, since=entered_at)
                return any(properties_match(condition.properties, event_properties(e.payload)) for e in events)
            logger.warning(f"[BRANCH] Unsupported condition on branch {branch.id}: {condition!r}")
            return False
        except Exception as e:
            logger.error(f"[BRANCH] Condition evaluation failed on branch {branch.id} for journey {journey.journey_id}: {e}")
            return False

    def _engaged(self, condition: EmailEngagementCondition, journey: ContactJourney) -> bool:
        step_id = condition.step_id or (journey.metadata.get("last_email") or {}).get("step_id")
        if not step_id:
            return False
        engagement = (journey.metadata.get("engagement") or {}).get(step_id) or {}
        if condition.engagement == "clicked":
            return bool(engagement.get("clicked_at"))
        # A click implies the message was opened even if the open pixel never fired.
        return bool(engagement.get("opened_at") or engagement.get("clicked_at"))

    def _time_reference(self, condition: TimeElapsedCondition, journey: ContactJourney, entered_at: datetime) -> Optional[datetime]:
        if condition.since == "branch":
            return entered_at
        if condition.since == "previous_step":
            sent_at = as_datetime((journey.metadata.get("last_email") or {}).get("sent_at"))
            return sent_at or as_datetime(journey.metadata.get("entered_at")) or journey.created_at
        return as_datetime(journey.metadata.get("entered_at")) or journey.created_at
