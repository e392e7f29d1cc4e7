import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, get_args

from journeys.db.repositories import CampaignRepository, JourneyRepository
from journeys.models.campaign import STATISTIC_COUNTERS
from journeys.models.contact import Contact
from journeys.models.event import TriggerEvent
from journeys.models.journey import JourneyStatus
from journeys.services.clock import Clock
from journeys.services.conditions import event_properties, properties_match

logger = logging.getLogger(__name__)

# Journey progress counters that roll up into campaign statistics.
PROGRESS_TO_STATISTICS = {
    "emails_sent": "emails_sent",
    "goals_reached": "goals_reached",
}

JOURNEY_STATUSES = get_args(JourneyStatus)


@dataclass
class GoalHit:
    campaign_id: str
    journey_id: str
    goal_name: str


class StatisticsTracker:
    """
    Campaign-level counters. Every change is a `$inc`-style increment on the
    stored counters; the conversion rate is derived from them on read.
    """

    def __init__(self, campaigns: CampaignRepository, journeys: JourneyRepository, clock: Clock):
        self.campaigns = campaigns
        self.journeys = journeys
        self.clock = clock

    async def increment(self, campaign_id: str, **counters: int) -> None:
        for counter, amount in counters.items():
            if counter not in STATISTIC_COUNTERS:
                raise ValueError(f"Unknown campaign statistic: {counter}")
            if amount < 0:
                raise ValueError(f"Campaign statistics only increase, got {counter}={amount}")
        counters = {k: v for k, v in counters.items() if v}
        if not counters:
            return
        await self.campaigns.increment_statistics(campaign_id, counters, self.clock.now())
        logger.debug(f"[STATS] Campaign {campaign_id} incremented {counters}")

    async def on_progress(self, campaign_id: str, delta: Dict[str, int]) -> None:
        rollup = {
            PROGRESS_TO_STATISTICS[key]: amount
            for key, amount in delta.items()
            if key in PROGRESS_TO_STATISTICS
        }
        if rollup:
            await self.increment(campaign_id, **rollup)

    async def observe_event(self, event: TriggerEvent, contact: Contact) -> List[GoalHit]:
        """
        Goals of the contact's active journeys that `event` satisfies and that
        are not yet reached. A journey still waiting for its first step has not
        entered the campaign and cannot convert.
        """
        hits = []
        for journey in await self.journeys.list_active_for_contact(contact.contact_id):
            if not journey.metadata.get("entered_at"):
                continue
            campaign = await self.campaigns.get(journey.campaign_id)
            if campaign is None:
                continue
            reached = set(journey.metadata.get("goals_reached") or [])
            for goal in campaign.goals:
                if goal.name in reached or goal.event_type != event.event_type:
                    continue
                if goal.config.properties and not properties_match(goal.config.properties, event_properties(event.payload)):
                    continue
                hits.append(GoalHit(campaign.campaign_id, journey.journey_id, goal.name))
        if hits:
            logger.info(f"[STATS] Event {event.event_type} matched {len(hits)} goal(s) for contact {contact.contact_id}")
        return hits

    async def campaign_analytics(self, campaign_id: str) -> Optional[dict]:
        campaign = await self.campaigns.get(campaign_id)
        if campaign is None:
            return None

        journeys = await self.journeys.list_for_campaign(campaign_id)
        by_status = Counter(j.status for j in journeys)
        sent = sum(j.progress.emails_sent for j in journeys)
        opened = sum(j.progress.emails_opened for j in journeys)
        clicked = sum(j.progress.emails_clicked for j in journeys)

        return {
            "campaign_id": campaign.campaign_id,
            "name": campaign.name,
            "is_active": campaign.settings.is_active,
            "statistics": campaign.statistics.summary(),
            "journeys": {
                "total": len(journeys),
                **{status: by_status.get(status, 0) for status in JOURNEY_STATUSES},
            },
            "engagement": {
                "emails_sent": sent,
                "emails_opened": opened,
                "emails_clicked": clicked,
                "open_rate": opened / sent if sent else 0.0,
                "click_rate": clicked / sent if sent else 0.0,
            },
            "failures": [
                {"journey_id": j.journey_id, "contact_id": j.contact_id, "reason": j.status_reason}
                for j in journeys
                if j.status == "failed"
            ],
        }
