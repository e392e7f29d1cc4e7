import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set

import httpx

from journeys.config import Settings
from journeys.db.memory import memory_repositories
from journeys.db.mongo import mongo_repositories
from journeys.db.repositories import Repositories
from journeys.models.campaign import Campaign
from journeys.models.event import ENGAGEMENT_EVENTS, ContactEvent, TriggerEvent
from journeys.models.journey import ContactJourney
from journeys.services.actions import PostActionExecutor
from journeys.services.branching import BranchEvaluator
from journeys.services.clock import Clock, SystemClock
from journeys.services.lifecycle import JourneyLifecycleManager
from journeys.services.mailer import Mailer, SMTPMailer
from journeys.services.personalization import TemplateRenderer, TokenTemplateRenderer
from journeys.services.scheduler import ActionScheduler, TickReport
from journeys.services.statistics import GoalHit, StatisticsTracker
from journeys.services.triggers import EnrollmentResult, TriggerMatcher

logger = logging.getLogger(__name__)


@dataclass
class EventReport:
    event_id: str
    event_type: str
    contact_id: Optional[str] = None
    enrollments: List[EnrollmentResult] = field(default_factory=list)
    goals: List[GoalHit] = field(default_factory=list)
    engagement_recorded: bool = False
    branch_waiters_woken: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class JourneyEngine:
    def __init__(
        self,
        repositories: Repositories,
        clock: Clock,
        statistics: StatisticsTracker,
        lifecycle: JourneyLifecycleManager,
        matcher: TriggerMatcher,
        scheduler: ActionScheduler,
    ):
        self.repositories = repositories
        self.clock = clock
        self.statistics = statistics
        self.lifecycle = lifecycle
        self.matcher = matcher
        self.scheduler = scheduler

    async def handle_event(self, event: TriggerEvent) -> EventReport:
        report = EventReport(event_id=event.event_id, event_type=event.event_type)
        contact = await self.matcher.resolve_contact(event)
        if contact is None:
            logger.warning(f"[TRIGGER] Event {event.event_id} ({event.event_type}) has no known contact, ignored")
            return report
        report.contact_id = contact.contact_id
        now = self.clock.now()

        await self.repositories.events.record(ContactEvent.from_trigger_event(event, contact.contact_id, contact.owner_id))

        kind = ENGAGEMENT_EVENTS.get(event.event_type)
        if kind and event.payload.get("journey_id"):
            report.engagement_recorded = await self.lifecycle.record_engagement(
                event.payload["journey_id"],
                event.payload.get("step_id"),
                kind,
                event.timestamp,
                contact_id=contact.contact_id,
            )

        for hit in await self.statistics.observe_event(event, contact):
            if await self.lifecycle.mark_goal_reached(hit.journey_id, hit.campaign_id, hit.goal_name):
                report.goals.append(hit)

        report.branch_waiters_woken = await self.lifecycle.wake_branch_waiters(contact.contact_id, now)
        report.enrollments = await self.matcher.on_event(event, contact)
        return report

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        return await self.scheduler.tick(now or self.clock.now())

    async def maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock.now()
        released = await self.lifecycle.release_stale_claims(now)
        repaired = await self.lifecycle.repair_duplicates()
        return {"released_claims": released, "duplicates_repaired": repaired}

    # ------------------------------------------------------------------
    # Campaign management
    # ------------------------------------------------------------------

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        campaign.updated_at = self.clock.now()
        saved = await self.repositories.campaigns.save(campaign)
        logger.info(f"[CAMPAIGN_LOAD] Campaign {campaign.campaign_id} saved ({len(campaign.flow.steps)} steps, {len(campaign.flow.branches)} branches)")
        return saved

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return await self.repositories.campaigns.get(campaign_id)

    async def set_campaign_active(self, campaign_id: str, is_active: bool) -> Optional[dict]:
        now = self.clock.now()
        campaign = await self.repositories.campaigns.set_active(campaign_id, is_active, now)
        if campaign is None:
            return None
        resumed = {"resumed": 0, "superseded": 0}
        if is_active:
            resumed = await self.lifecycle.resume_campaign(campaign_id, now)
        logger.info(f"[CAMPAIGN_LOAD] Campaign {campaign_id} {'activated' if is_active else 'deactivated'}")
        return {"campaign_id": campaign_id, "is_active": is_active, **resumed}

    async def campaign_analytics(self, campaign_id: str) -> Optional[dict]:
        return await self.statistics.campaign_analytics(campaign_id)

    async def list_journeys(self, campaign_id: str, status: Optional[str] = None) -> List[ContactJourney]:
        return await self.repositories.journeys.list_for_campaign(campaign_id, status=status)


# ----------------------------------------------------------------------
# Event sources
# ----------------------------------------------------------------------

class EventSource(Protocol):
    def emit(self, event: TriggerEvent) -> None: ...


class CeleryEventSource:
    """Hands events to the Celery worker. The producer never waits on processing."""

    def emit(self, event: TriggerEvent) -> None:
        from journeys.tasks import process_event_task

        process_event_task.delay(event.model_dump(mode="json"))
        logger.debug(f"[TRIGGER] Event {event.event_id} queued for processing")


class InlineEventSource:
    """Processes events on the running event loop, in the background."""

    def __init__(self, engine: JourneyEngine):
        self.engine = engine
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, event: TriggerEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, event: TriggerEvent):
        try:
            await self.engine.handle_event(event)
        except Exception as e:
            logger.error(f"[TRIGGER] Failed to process event {event.event_id}: {e}", exc_info=True)

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_engine(
    settings: Settings,
    repositories: Optional[Repositories] = None,
    mailer: Optional[Mailer] = None,
    clock: Optional[Clock] = None,
    renderer: Optional[TemplateRenderer] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> JourneyEngine:
    if repositories is None:
        repositories = memory_repositories() if settings.STORAGE_BACKEND == "memory" else mongo_repositories()
    clock = clock or SystemClock()

    statistics = StatisticsTracker(repositories.campaigns, repositories.journeys, clock)
    lifecycle = JourneyLifecycleManager(repositories, statistics, clock)
    matcher = TriggerMatcher(repositories, lifecycle, clock, default_timezone=settings.DEFAULT_TIMEZONE)
    scheduler = ActionScheduler(
        repositories,
        lifecycle,
        BranchEvaluator(repositories.events),
        mailer or SMTPMailer(settings),
        renderer or TokenTemplateRenderer(),
        PostActionExecutor(repositories.contacts, settings.WEBHOOK_TIMEOUT_SECONDS, http_client),
        batch_size=settings.TICK_BATCH_SIZE,
        concurrency=settings.TICK_CONCURRENCY,
        lease_seconds=settings.CLAIM_LEASE_SECONDS,
        default_timezone=settings.DEFAULT_TIMEZONE,
    )
    return JourneyEngine(repositories, clock, statistics, lifecycle, matcher, scheduler)
