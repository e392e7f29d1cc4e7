from journeys.models.campaign import Campaign, CampaignStatistics
from journeys.models.contact import Contact, ContactMutation
from journeys.models.event import ContactEvent, TriggerEvent
from journeys.models.journal import JourneyJournal
from journeys.models.journey import ContactJourney, JourneyProgress

__all__ = [
    "Campaign",
    "CampaignStatistics",
    "Contact",
    "ContactEvent",
    "ContactJourney",
    "ContactMutation",
    "JourneyJournal",
    "JourneyProgress",
    "TriggerEvent",
]
