"""
Due-queue processor.

A tick first claims every due journey it will handle (up to the batch size),
then executes exactly one action per claimed journey with bounded
concurrency. Claiming before executing means a journey whose next action is
scheduled at `now` is not picked up again in the same tick.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from journeys.db.repositories import Repositories
from journeys.errors import ConfigurationError, ContactStoreError, MailerError
from journeys.models.campaign import START_STEP, Campaign, Step
from journeys.models.contact import Contact
from journeys.models.journey import ContactJourney, NextAction
from journeys.services.actions import PostActionExecutor
from journeys.services.branching import BranchEvaluator, branch_entered_at
from journeys.services.clock import minutes_from
from journeys.services.conditions import evaluate_step_conditions, in_sending_window, next_window_start
from journeys.services.lifecycle import JourneyLifecycleManager
from journeys.services.mailer import Mailer
from journeys.services.personalization import TemplateRenderer, template_variables

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    journey_id: str
    action: str
    result: str
    detail: Optional[str] = None


@dataclass
class TickReport:
    now: datetime
    claimed: int = 0
    outcomes: List[StepOutcome] = field(default_factory=list)

    def count(self, result: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result == result)


class ActionScheduler:
    def __init__(
        self,
        repositories: Repositories,
        lifecycle: JourneyLifecycleManager,
        branches: BranchEvaluator,
        mailer: Mailer,
        renderer: TemplateRenderer,
        actions: PostActionExecutor,
        batch_size: int = 200,
        concurrency: int = 8,
        lease_seconds: int = 300,
        default_timezone: str = "UTC",
        worker_id: Optional[str] = None,
    ):
        self.repositories = repositories
        self.journeys = repositories.journeys
        self.lifecycle = lifecycle
        self.branches = branches
        self.mailer = mailer
        self.renderer = renderer
        self.actions = actions
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.lease_seconds = lease_seconds
        self.default_timezone = default_timezone
        self.worker_id = worker_id or f"scheduler-{uuid.uuid4().hex[:8]}"

    async def tick(self, now: datetime) -> TickReport:
        lease_until = now + timedelta(seconds=self.lease_seconds)
        claimed = []
        while len(claimed) < self.batch_size:
            journey = await self.journeys.claim_due(now, self.worker_id, lease_until)
            if journey is None:
                break
            claimed.append(journey)

        report = TickReport(now=now, claimed=len(claimed))
        if not claimed:
            logger.debug(f"[SCHEDULER] Tick at {now.isoformat()}: nothing due")
            return report

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(journey: ContactJourney) -> StepOutcome:
            async with semaphore:
                return await self.process(journey, now)

        report.outcomes = list(await asyncio.gather(*(run(j) for j in claimed)))
        summary = {}
        for outcome in report.outcomes:
            summary[outcome.result] = summary.get(outcome.result, 0) + 1
        logger.info(f"[SCHEDULER] Tick at {now.isoformat()} ({self.worker_id}): {len(claimed)} claimed, {summary}")
        return report

    async def process(self, journey: ContactJourney, now: datetime) -> StepOutcome:
        """
        Execute one claimed journey's due action. Never raises. Every write
        made here only applies while this worker still holds the claim.
        """
        action = journey.next_action
        try:
            return await self._execute(journey, now)
        except (MailerError, ContactStoreError) as e:
            return await self._terminate(journey, action, "failed", str(e), step_id=journey.current_step)
        except Exception as e:
            logger.error(f"[SCHEDULER] Unexpected error processing journey {journey.journey_id}: {e}", exc_info=True)
            return StepOutcome(journey.journey_id, action, "error", str(e))
        finally:
            try:
                await self.journeys.release_claim(journey.journey_id, self.worker_id)
            except Exception as e:
                logger.error(f"[SCHEDULER] Failed to release claim on journey {journey.journey_id}: {e}")

    def _stale(self, journey_id: str, action: str) -> StepOutcome:
        logger.warning(f"[SCHEDULER] Journey {journey_id} changed or was reclaimed while {self.worker_id} held it, dropping result")
        return StepOutcome(journey_id, action, "stale")

    async def _terminate(
        self,
        journey: ContactJourney,
        action: str,
        status: str,
        reason: Optional[str] = None,
        step_id: Optional[str] = None,
        result: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> StepOutcome:
        done = await self.lifecycle.terminate(journey.journey_id, status, reason, step_id=step_id, claimed_by=self.worker_id)
        if done is None:
            return self._stale(journey.journey_id, action)
        return StepOutcome(journey.journey_id, action, result or status, detail if result else reason)

    async def _advance(
        self,
        journey: ContactJourney,
        node_id: str,
        next_action: NextAction,
        at: datetime,
        changes: Optional[Dict[str, Any]],
        result: str,
        detail: Optional[str] = None,
    ) -> StepOutcome:
        moved = await self.lifecycle.advance(journey.journey_id, node_id, next_action, at, changes, claimed_by=self.worker_id)
        if moved is None:
            return self._stale(journey.journey_id, journey.next_action)
        return StepOutcome(journey.journey_id, journey.next_action, result, detail)

    async def _touch(self, journey_id: str, changes: Dict[str, Any]) -> bool:
        """Apply `changes` only while this worker still holds the journey."""
        updated = await self.journeys.update(journey_id, changes, statuses=("active",), claimed_by=self.worker_id)
        return updated is not None

    async def _execute(self, journey: ContactJourney, now: datetime) -> StepOutcome:
        journey_id, action = journey.journey_id, journey.next_action

        campaign = await self.repositories.campaigns.get(journey.campaign_id)
        if campaign is None:
            logger.error(f"[CAMPAIGN_LOAD] Campaign {journey.campaign_id} not found for journey {journey_id}")
            return await self._terminate(journey, action, "failed", "Campaign not found")

        if not campaign.settings.is_active:
            paused = await self.lifecycle.pause(journey_id, "Campaign inactive", claimed_by=self.worker_id)
            if paused is None:
                return self._stale(journey_id, action)
            return StepOutcome(journey_id, action, "paused", "Campaign inactive")

        contact = await self._load_contact(journey.contact_id)
        if contact is None:
            return await self._terminate(journey, action, "failed", "Contact not found")

        reason = self.lifecycle.check_exit_conditions(journey, campaign, contact, now)
        if reason:
            return await self._terminate(journey, action, "exited", reason, step_id=journey.current_step)

        if action == "send_email":
            return await self._send_email(journey, campaign, contact, now)
        if action == "evaluate_branch":
            return await self._evaluate_branch(journey, campaign, contact, now)

        return await self._terminate(journey, action, "completed", "Flow finished", step_id=journey.current_step, result="completed")

    async def _load_contact(self, contact_id: str) -> Optional[Contact]:
        try:
            return await self.repositories.contacts.get(contact_id)
        except Exception as e:
            raise ContactStoreError(f"Contact store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # send_email
    # ------------------------------------------------------------------

    async def _send_email(self, journey: ContactJourney, campaign: Campaign, contact: Contact, now: datetime) -> StepOutcome:
        journey_id = journey.journey_id
        flow = campaign.flow

        if journey.current_step == START_STEP:
            step = flow.first_step()
            if step is None:
                return await self._terminate(journey, "send_email", "completed", "Flow has no steps")
        else:
            step = flow.get_step(journey.current_step)
            if step is None:
                logger.error(f"[SCHEDULER] Journey {journey_id} points to unknown step {journey.current_step}")
                return await self._terminate(journey, "send_email", "failed", f"Unknown step {journey.current_step}")

        deferred_until = self._outside_sending_window(campaign, now)
        if deferred_until is not None:
            return await self._advance(
                journey, journey.current_step, "send_email", deferred_until, None, "deferred", deferred_until.isoformat()
            )

        if not journey.metadata.get("entered_at"):
            if not await self._touch(journey_id, {"metadata.entered_at": now}):
                return self._stale(journey_id, "send_email")
            await self.lifecycle.statistics.increment(campaign.campaign_id, entered=1)

        if not evaluate_step_conditions(step.conditions, contact, journey):
            changes = {"metadata.skipped_steps": self._skipped(journey, step.id)}
            await self.lifecycle.add_journal_entry(journey, "Step skipped: conditions not met", step_id=step.id)
            return await self._route(journey, campaign, flow.following(step), now, changes, "skipped", step.id)

        if not contact.email:
            logger.error(f"[SCHEDULER] Contact {contact.contact_id} has no email address (journey {journey_id})")
            return await self._terminate(journey, "send_email", "failed", "Contact has no email address", step_id=step.id)

        try:
            subject, body = self._render(step, contact, journey, campaign)
        except ConfigurationError as e:
            logger.error(f"[SCHEDULER] Template error at step {step.id} of campaign {campaign.campaign_id}: {e}")
            changes = {"metadata.skipped_steps": self._skipped(journey, step.id)}
            await self.lifecycle.add_journal_entry(journey, f"Step skipped: {e}", step_id=step.id)
            return await self._route(journey, campaign, flow.following(step), now, changes, "skipped", str(e))

        # Last chance to notice a lost claim before the email leaves.
        if not await self._touch(journey_id, {"updated_at": now}):
            return self._stale(journey_id, "send_email")

        delivery_id = await self._deliver(contact, subject, body, journey, step)

        # The email is out: a failure from here must not leave the step due again.
        try:
            return await self._after_delivery(journey, campaign, step, delivery_id, now)
        except Exception as e:
            logger.error(
                f"[SCHEDULER] Email {delivery_id} sent for journey {journey_id} but recording it failed: {e}",
                exc_info=True,
            )
            reason = f"Email sent but journey update failed: {e}"
            return await self._terminate(journey, "send_email", "failed", reason, step_id=step.id)

    async def _after_delivery(
        self, journey: ContactJourney, campaign: Campaign, step: Step, delivery_id: str, now: datetime
    ) -> StepOutcome:
        await self.lifecycle.record_progress(journey, {"emails_sent": 1})
        changes: Dict[str, Any] = {
            "metadata.last_email": {"step_id": step.id, "sent_at": now, "delivery_id": delivery_id},
        }
        errors = await self.actions.run(step.actions, journey, step.id)
        if errors:
            changes["metadata.action_errors"] = list(journey.metadata.get("action_errors") or []) + errors
        await self.lifecycle.add_journal_entry(journey, "Email sent", step_id=step.id, details={"delivery_id": delivery_id})
        return await self._route(journey, campaign, campaign.flow.following(step), now, changes, "sent", delivery_id)

    def _outside_sending_window(self, campaign: Campaign, now: datetime) -> Optional[datetime]:
        window = campaign.settings.sending_window
        tz = campaign.settings.timezone or self.default_timezone
        if window is None or in_sending_window(window, tz, now):
            return None
        resume_at = next_window_start(window, tz, now)
        if resume_at is None:
            logger.error(f"[SCHEDULER] Campaign {campaign.campaign_id} has an unusable sending window, ignoring it")
        return resume_at

    def _render(self, step: Step, contact: Contact, journey: ContactJourney, campaign: Campaign):
        variables = template_variables(contact, journey, campaign)
        subject = self.renderer.render(step.template.subject, variables, step.template.personalize_fields)
        body = self.renderer.render(step.template.content, variables)
        return subject, body

    async def _deliver(self, contact: Contact, subject: str, body: str, journey: ContactJourney, step: Step) -> str:
        metadata = {
            "journey_id": journey.journey_id,
            "campaign_id": journey.campaign_id,
            "contact_id": contact.contact_id,
            "step_id": step.id,
        }
        try:
            return await self.mailer.send(contact.email, subject, body, metadata)
        except MailerError:
            raise
        except Exception as e:
            raise MailerError(f"Mailer failed: {e}") from e

    @staticmethod
    def _skipped(journey: ContactJourney, step_id: str) -> List[str]:
        return list(journey.metadata.get("skipped_steps") or []) + [step_id]

    # ------------------------------------------------------------------
    # evaluate_branch
    # ------------------------------------------------------------------

    async def _evaluate_branch(self, journey: ContactJourney, campaign: Campaign, contact: Contact, now: datetime) -> StepOutcome:
        journey_id = journey.journey_id
        branch = campaign.flow.get_branch(journey.current_step)
        if branch is None:
            logger.error(f"[SCHEDULER] Journey {journey_id} points to unknown branch {journey.current_step}")
            return await self._terminate(journey, "evaluate_branch", "failed", f"Unknown branch {journey.current_step}")

        changes: Dict[str, Any] = {}
        if branch_entered_at(journey, branch.id) is None:
            changes[f"metadata.branch_entered_at.{branch.id}"] = now

        decision = await self.branches.resolve(branch, contact, journey, now)
        if decision.pending:
            return await self._advance(
                journey, branch.id, "evaluate_branch", decision.recheck_at, changes, "pending", decision.recheck_at.isoformat()
            )

        changes[f"metadata.branches.{branch.id}"] = {
            "result": decision.matched,
            "path": decision.path,
            "evaluated_at": now,
        }
        logger.info(f"[BRANCH] Journey {journey_id} branch {branch.id}: matched={decision.matched} → {decision.path or 'end'}")
        await self.lifecycle.add_journal_entry(
            journey,
            f"Branch {'matched' if decision.matched else 'not matched'}",
            step_id=branch.id,
            details={"path": decision.path},
        )
        return await self._route(journey, campaign, decision.path, now, changes, "branched", decision.path)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(
        self,
        journey: ContactJourney,
        campaign: Campaign,
        node_id: Optional[str],
        now: datetime,
        changes: Dict[str, Any],
        result: str,
        detail: Optional[str] = None,
    ) -> StepOutcome:
        """Schedule the node that follows, or complete the journey when there is none."""
        journey_id, action = journey.journey_id, journey.next_action
        flow = campaign.flow

        if node_id is None:
            if changes and not await self._touch(journey_id, changes):
                return self._stale(journey_id, action)
            return await self._terminate(
                journey, action, "completed", "Flow finished", step_id=journey.current_step, result=result, detail=detail
            )

        step = flow.get_step(node_id)
        if step is not None:
            return await self._advance(journey, step.id, "send_email", minutes_from(now, step.delay_minutes), changes, result, detail)

        branch = flow.get_branch(node_id)
        if branch is not None:
            changes = {**changes, f"metadata.branch_entered_at.{branch.id}": now}
            return await self._advance(journey, branch.id, "evaluate_branch", now, changes, result, detail)

        logger.error(f"[SCHEDULER] Campaign {campaign.campaign_id} routes journey {journey_id} to unknown node {node_id}")
        return await self._terminate(journey, action, "failed", f"Unknown step {node_id}")
