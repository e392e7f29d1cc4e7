import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from journeys.db.repositories import Repositories
from journeys.errors import InvariantViolation
from journeys.models.campaign import (
    START_STEP,
    Campaign,
    FieldChangedExit,
    GoalReachedExit,
    MaxDurationExit,
    TagAddedExit,
    UnsubscribedExit,
)
from journeys.models.contact import Contact
from journeys.models.journal import JourneyJournal
from journeys.models.journey import PROGRESS_COUNTERS, TERMINAL_STATUSES, ContactJourney, NextAction
from journeys.services.clock import Clock, minutes_from
from journeys.services.statistics import StatisticsTracker

logger = logging.getLogger(__name__)

# Statuses a journey can still leave. Terminal statuses are final.
OPEN_STATUSES = ("active", "paused")

DUPLICATE_REASON = "Duplicate active journey detected"
SUPERSEDED_REASON = "Superseded by another active journey"

_CLEARED_CLAIM = {"claimed_by": None, "claimed_until": None}


class JourneyLifecycleManager:
    """
    The only mutation path for journey state: enrollment, advancing,
    termination, progress, engagement and goals. Storage atomicity is
    delegated to the repositories.
    """

    def __init__(self, repositories: Repositories, statistics: StatisticsTracker, clock: Clock):
        self.repositories = repositories
        self.journeys = repositories.journeys
        self.statistics = statistics
        self.clock = clock

    def _log_journey(self, journey_id: str, message: str, level: str = "info", **kwargs):
        """Structured logging for journey transitions"""
        log_data = {"journey_id": journey_id, "message": message, **kwargs}
        getattr(logger, level)(f"[JOURNEY] {log_data}")

    async def add_journal_entry(
        self,
        journey: ContactJourney,
        message: str,
        step_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        try:
            await self.repositories.journal.add(JourneyJournal(
                journey_id=journey.journey_id,
                campaign_id=journey.campaign_id,
                contact_id=journey.contact_id,
                timestamp=self.clock.now(),
                message=message,
                step_id=step_id,
                details=details,
            ))
        except Exception as e:
            logger.error(f"[JOURNAL_ERROR] Failed to add journal entry for journey {journey.journey_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Enrollment and transitions
    # ------------------------------------------------------------------

    async def enroll(
        self,
        campaign: Campaign,
        contact: Contact,
        event_data: Dict[str, Any],
        delay_minutes: int = 0,
        trigger_event_type: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        """
        Create an active journey for (campaign, contact). Returns None when the
        contact already has an active journey in the campaign.
        """
        now = self.clock.now()
        snapshot = {
            condition.field: contact.field_value(condition.field)
            for condition in campaign.flow.exit_conditions
            if isinstance(condition, FieldChangedExit) and condition.value is None
        }
        journey = ContactJourney(
            campaign_id=campaign.campaign_id,
            contact_id=contact.contact_id,
            owner_id=campaign.owner_id,
            trigger_event_type=trigger_event_type,
            current_step=START_STEP,
            next_action="send_email",
            next_action_at=minutes_from(now, delay_minutes),
            event_data=dict(event_data or {}),
            metadata={"field_snapshot": snapshot} if snapshot else {},
            created_at=now,
            updated_at=now,
        )

        if not await self.journeys.insert_if_no_active(journey):
            logger.debug(
                f"[JOURNEY] Contact {contact.contact_id} already active in campaign {campaign.campaign_id}, enrollment skipped"
            )
            return None

        await self.statistics.increment(campaign.campaign_id, triggered=1)
        self._log_journey(
            journey.journey_id,
            "Enrolled",
            campaign_id=campaign.campaign_id,
            contact_id=contact.contact_id,
            next_action_at=journey.next_action_at.isoformat(),
        )
        await self.add_journal_entry(journey, "Journey started", details={"trigger": trigger_event_type})
        return journey

    async def advance(
        self,
        journey_id: str,
        next_step_id: str,
        next_action: NextAction,
        next_action_at: datetime,
        changes: Optional[Dict[str, Any]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        """
        Move an active journey to its next node and release its claim. With
        `claimed_by`, nothing changes unless that worker still holds the claim.
        """
        update = {
            **(changes or {}),
            "current_step": next_step_id,
            "next_action": next_action,
            "next_action_at": next_action_at,
            "updated_at": self.clock.now(),
            **_CLEARED_CLAIM,
        }
        journey = await self.journeys.update(journey_id, update, statuses=("active",), claimed_by=claimed_by)
        if journey is None:
            self._log_journey(journey_id, "Advance ignored, journey no longer active or claimed elsewhere", level="warning")
            return None
        self._log_journey(
            journey_id,
            "Advanced",
            current_step=next_step_id,
            next_action=next_action,
            next_action_at=next_action_at.isoformat(),
        )
        return journey

    async def terminate(
        self,
        journey_id: str,
        status: str,
        reason: Optional[str] = None,
        step_id: Optional[str] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        """
        Move a journey to a terminal status. Terminating a journey that is
        already terminal, or whose claim `claimed_by` no longer holds, is a
        no-op and returns None.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        now = self.clock.now()
        changes = {
            "status": status,
            "status_reason": reason,
            "terminated_at": now,
            "updated_at": now,
            **_CLEARED_CLAIM,
        }
        if status == "completed":
            changes["completed_at"] = now

        journey = await self.journeys.update(journey_id, changes, statuses=OPEN_STATUSES, claimed_by=claimed_by)
        if journey is None:
            self._log_journey(journey_id, f"Terminate as {status} ignored, journey already terminal or claimed elsewhere", level="debug")
            return None

        if status == "completed":
            await self.statistics.increment(journey.campaign_id, completed=1)
        elif status == "exited":
            await self.statistics.increment(journey.campaign_id, exited=1)

        self._log_journey(
            journey_id,
            f"Status change → {status}",
            level="error" if status == "failed" else "info",
            reason=reason,
            step_id=step_id,
        )
        await self.add_journal_entry(journey, f"Journey {status}" + (f": {reason}" if reason else ""), step_id=step_id)
        return journey

    async def pause(self, journey_id: str, reason: str, claimed_by: Optional[str] = None) -> Optional[ContactJourney]:
        now = self.clock.now()
        journey = await self.journeys.update(
            journey_id,
            {"status": "paused", "status_reason": reason, "updated_at": now, **_CLEARED_CLAIM},
            statuses=("active",),
            claimed_by=claimed_by,
        )
        if journey is not None:
            self._log_journey(journey_id, "Paused", reason=reason)
            await self.add_journal_entry(journey, f"Journey paused: {reason}")
        return journey

    async def resume_campaign(self, campaign_id: str, now: datetime) -> Dict[str, int]:
        """Reactivate the paused journeys of a campaign that was switched back on."""
        resumed = superseded = 0
        for journey in await self.journeys.list_for_campaign(campaign_id, status="paused"):
            updated = await self.journeys.update(
                journey.journey_id,
                {"status": "active", "status_reason": None, "updated_at": now},
                statuses=("paused",),
            )
            if updated is not None:
                resumed += 1
                await self.add_journal_entry(updated, "Journey resumed")
                continue

            current = await self.journeys.get(journey.journey_id)
            if current is not None and current.status == "paused":
                # Another journey became active for this contact while paused.
                if await self.terminate(journey.journey_id, "exited", SUPERSEDED_REASON):
                    superseded += 1

        if resumed or superseded:
            logger.info(f"[JOURNEY] Campaign {campaign_id} resumed: {resumed} reactivated, {superseded} superseded")
        return {"resumed": resumed, "superseded": superseded}

    # ------------------------------------------------------------------
    # Progress, engagement and goals
    # ------------------------------------------------------------------

    async def record_progress(self, journey: ContactJourney, delta: Dict[str, int]) -> Optional[ContactJourney]:
        """Add `delta` to the journey's progress counters and roll it up into campaign statistics."""
        for counter, amount in delta.items():
            if counter not in PROGRESS_COUNTERS:
                raise ValueError(f"Unknown progress counter: {counter}")
            if amount < 0:
                raise ValueError(f"Progress counters only increase, got {counter}={amount}")

        updated = await self.journeys.increment_progress(journey.journey_id, delta, self.clock.now())
        if updated is not None:
            await self.statistics.on_progress(journey.campaign_id, delta)
        return updated

    async def record_engagement(
        self,
        journey_id: str,
        step_id: Optional[str],
        kind: str,
        at: datetime,
        contact_id: Optional[str] = None,
    ) -> bool:
        """
        Record an open or click for the email sent at `step_id` (default: the
        last email). With `contact_id`, the journey must belong to that contact.
        """
        if kind not in ("opened", "clicked"):
            raise ValueError(f"Unknown engagement kind: {kind}")

        journey = await self.journeys.get(journey_id)
        if journey is None:
            logger.warning(f"[JOURNEY] Engagement for unknown journey {journey_id}")
            return False
        if contact_id is not None and journey.contact_id != contact_id:
            self._log_journey(journey_id, f"Engagement from contact {contact_id} does not match journey, ignored", level="warning")
            return False

        step_id = step_id or (journey.metadata.get("last_email") or {}).get("step_id")
        if not step_id:
            self._log_journey(journey_id, f"Engagement '{kind}' without a sent email, ignored", level="warning")
            return False

        engagement = (journey.metadata.get("engagement") or {}).get(step_id) or {}
        if engagement.get(f"{kind}_at"):
            return False

        await self.journeys.update(journey_id, {f"metadata.engagement.{step_id}.{kind}_at": at})
        await self.record_progress(journey, {f"emails_{kind}": 1})
        self._log_journey(journey_id, f"Email {kind}", step_id=step_id)
        return True

    async def mark_goal_reached(self, journey_id: str, campaign_id: str, goal_name: str) -> bool:
        if not await self.journeys.add_goal(journey_id, goal_name, self.clock.now()):
            return False
        await self.statistics.increment(campaign_id, goals_reached=1)
        self._log_journey(journey_id, "Goal reached", goal=goal_name)
        journey = await self.journeys.get(journey_id)
        if journey is not None:
            await self.add_journal_entry(journey, f"Goal reached: {goal_name}")
        return True

    async def wake_branch_waiters(self, contact_id: str, now: datetime) -> int:
        woken = await self.journeys.wake_branch_waiters(contact_id, now)
        if woken:
            logger.info(f"[JOURNEY] Woke {woken} branch waiter(s) for contact {contact_id}")
        return woken

    # ------------------------------------------------------------------
    # Exit conditions
    # ------------------------------------------------------------------

    def check_exit_conditions(
        self,
        journey: ContactJourney,
        campaign: Campaign,
        contact: Contact,
        now: datetime,
    ) -> Optional[str]:
        """Reason the journey must exit before its next action, or None."""
        settings = campaign.settings

        if contact.unsubscribed and settings.respect_unsubscribe:
            return "Contact unsubscribed"

        for condition in campaign.flow.exit_conditions:
            if isinstance(condition, UnsubscribedExit) and contact.unsubscribed:
                return "Contact unsubscribed"
            if isinstance(condition, TagAddedExit) and condition.tag in contact.tags:
                return f"Tag '{condition.tag}' added"
            if isinstance(condition, FieldChangedExit) and self._field_changed(condition, journey, contact):
                return f"Field '{condition.field}' changed"
            if isinstance(condition, GoalReachedExit):
                reached = journey.metadata.get("goals_reached") or []
                if reached and (condition.goal is None or condition.goal in reached):
                    return f"Goal '{condition.goal or reached[0]}' reached"
            if isinstance(condition, MaxDurationExit) and now - journey.created_at > timedelta(days=condition.days):
                return f"Maximum duration of {condition.days} days exceeded"

        if settings.max_duration_days is not None and now - journey.created_at > timedelta(days=settings.max_duration_days):
            return f"Maximum duration of {settings.max_duration_days} days exceeded"

        if (
            journey.next_action == "send_email"
            and settings.max_emails_per_contact is not None
            and journey.progress.emails_sent >= settings.max_emails_per_contact
        ):
            return "Maximum emails per contact reached"

        return None

    def _field_changed(self, condition: FieldChangedExit, journey: ContactJourney, contact: Contact) -> bool:
        current = contact.field_value(condition.field)
        if condition.value is not None:
            return current is not None and str(current) == condition.value
        snapshot = journey.metadata.get("field_snapshot") or {}
        return condition.field in snapshot and snapshot[condition.field] != current

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def repair_duplicates(self) -> int:
        """
        Resolve (campaign, contact) pairs with more than one active journey:
        the most recently created one stays active, the rest fail.
        """
        terminated = 0
        for group in await self.journeys.find_duplicate_active():
            group = sorted(group, key=lambda j: j.created_at, reverse=True)
            keep, extras = group[0], group[1:]
            violation = InvariantViolation(keep.campaign_id, keep.contact_id, [j.journey_id for j in group])
            logger.critical(f"[JOURNEY] Invariant violation: {violation}. Keeping {keep.journey_id}")
            for journey in extras:
                if await self.terminate(journey.journey_id, "failed", DUPLICATE_REASON):
                    terminated += 1
        return terminated

    async def release_stale_claims(self, now: datetime) -> int:
        released = await self.journeys.release_stale_claims(now)
        if released:
            logger.warning(f"[JOURNEY] Released {released} journey claim(s) with expired leases")
        return released

    async def list_journal(self, journey_id: str) -> List[JourneyJournal]:
        return await self.repositories.journal.list_for_journey(journey_id)
