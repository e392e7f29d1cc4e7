import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from journeys.db.repositories import Repositories
from journeys.models.campaign import Campaign, Trigger
from journeys.models.contact import Contact
from journeys.models.event import TriggerEvent
from journeys.services.clock import Clock
from journeys.services.conditions import ConditionContext, evaluate
from journeys.services.lifecycle import JourneyLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentResult:
    campaign_id: str
    campaign_name: str
    journey_id: str
    event_type: str


class TriggerMatcher:
    """
    Matches an incoming event against the triggers of the owner's active
    campaigns and enrolls the contact where a trigger fires.

    The event is expected to be in the contact's event history already, so
    frequency conditions count it.
    """

    def __init__(
        self,
        repositories: Repositories,
        lifecycle: JourneyLifecycleManager,
        clock: Clock,
        default_timezone: str = "UTC",
    ):
        self.repositories = repositories
        self.lifecycle = lifecycle
        self.clock = clock
        self.default_timezone = default_timezone

    async def resolve_contact(self, event: TriggerEvent) -> Optional[Contact]:
        """
        Look up the event's contact by id, else by email within the owner. A
        contact that belongs to a different owner than the event names is
        treated as unknown.
        """
        contacts = self.repositories.contacts
        contact = None
        if event.contact_id:
            contact = await contacts.get(event.contact_id)
        elif event.email:
            contact = await contacts.get_by_email(event.email, event.owner_id)
        if contact is not None and event.owner_id and contact.owner_id != event.owner_id:
            logger.warning(
                f"[TRIGGER] Event {event.event_type} for owner {event.owner_id} names contact "
                f"{contact.contact_id} of another owner, ignored"
            )
            return None
        return contact

    async def on_event(self, event: TriggerEvent, contact: Optional[Contact] = None) -> List[EnrollmentResult]:
        contact = contact or await self.resolve_contact(event)
        if contact is None:
            logger.warning(
                f"[TRIGGER] No contact for event {event.event_type} "
                f"(contact_id={event.contact_id}, email={event.email}), skipped"
            )
            return []

        campaigns = await self.repositories.campaigns.list_active_for_event(contact.owner_id, event.event_type)
        logger.info(f"[TRIGGER] Event {event.event_type} for contact {contact.contact_id}: {len(campaigns)} candidate campaign(s)")

        results = []
        for campaign in campaigns:
            try:
                result = await self._match_campaign(campaign, contact, event)
            except Exception as e:
                logger.error(f"[TRIGGER] Campaign {campaign.campaign_id} failed to process {event.event_type}: {e}", exc_info=True)
                continue
            if result is not None:
                results.append(result)
        return results

    async def _match_campaign(self, campaign: Campaign, contact: Contact, event: TriggerEvent) -> Optional[EnrollmentResult]:
        for trigger in campaign.triggers_for(event.event_type):
            context = ConditionContext(
                now=self.clock.now(),
                timezone=campaign.settings.timezone or self.default_timezone,
                event_count=await self._event_count(trigger, contact, event),
            )
            if not evaluate(trigger.conditions, contact, event, context):
                logger.debug(f"[TRIGGER] Campaign {campaign.campaign_id} trigger {trigger.event_type} conditions not met")
                continue

            # The highest-priority matching trigger decides; a duplicate is not retried with a lower one.
            journey = await self.lifecycle.enroll(
                campaign,
                contact,
                event.payload,
                delay_minutes=trigger.delay_minutes,
                trigger_event_type=event.event_type,
            )
            if journey is None:
                return None
            logger.info(f"[TRIGGER] Contact {contact.contact_id} enrolled in campaign {campaign.campaign_id} as {journey.journey_id}")
            return EnrollmentResult(
                campaign_id=campaign.campaign_id,
                campaign_name=campaign.name,
                journey_id=journey.journey_id,
                event_type=event.event_type,
            )
        return None

    async def _event_count(self, trigger: Trigger, contact: Contact, event: TriggerEvent) -> Optional[int]:
        frequency = trigger.conditions.frequency
        if frequency is None:
            return None
        since = None
        if frequency.period:
            since = self.clock.now() - timedelta(days=frequency.period)
        return await self.repositories.events.count(contact.contact_id, event.event_type, since=since)
