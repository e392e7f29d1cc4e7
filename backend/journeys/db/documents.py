from beanie import Document
from pymongo import ASCENDING, DESCENDING, IndexModel

from journeys.models.campaign import Campaign
from journeys.models.contact import Contact
from journeys.models.event import ContactEvent
from journeys.models.journal import JourneyJournal
from journeys.models.journey import ContactJourney


class CampaignDocument(Campaign, Document):
    class Settings:
        name = "campaigns"
        indexes = [
            IndexModel([("campaign_id", ASCENDING)], unique=True),
            IndexModel([("owner_id", ASCENDING), ("settings.is_active", ASCENDING)]),
        ]


class JourneyDocument(ContactJourney, Document):
    class Settings:
        name = "contact_journeys"
        indexes = [
            IndexModel([("journey_id", ASCENDING)], unique=True),
            # Single active journey per (campaign, contact).
            IndexModel(
                [("campaign_id", ASCENDING), ("contact_id", ASCENDING)],
                name="one_active_journey_per_contact",
                unique=True,
                partialFilterExpression={"status": "active"},
            ),
            IndexModel([("status", ASCENDING), ("next_action_at", ASCENDING)], name="due_queue"),
            IndexModel([("contact_id", ASCENDING), ("status", ASCENDING)]),
        ]


class ContactDocument(Contact, Document):
    class Settings:
        name = "contacts"
        indexes = [
            IndexModel([("contact_id", ASCENDING)], unique=True),
            IndexModel([("owner_id", ASCENDING), ("email", ASCENDING)]),
        ]


class ContactEventDocument(ContactEvent, Document):
    class Settings:
        name = "contact_events"
        indexes = [
            IndexModel([("contact_id", ASCENDING), ("event_type", ASCENDING), ("created_at", DESCENDING)]),
        ]


class JourneyJournalDocument(JourneyJournal, Document):
    class Settings:
        name = "journey_journal"
        indexes = [
            IndexModel([("journey_id", ASCENDING), ("timestamp", ASCENDING)]),
        ]


DOCUMENT_MODELS = [
    CampaignDocument,
    JourneyDocument,
    ContactDocument,
    ContactEventDocument,
    JourneyJournalDocument,
]
