"""
MongoDB storage backend built on Beanie documents.

Atomicity comes from MongoDB itself:
- the partial unique index `one_active_journey_per_contact` rejects a second
  active journey for the same (campaign, contact) pair;
- journey claims and guarded status changes use find_one_and_update
  (Beanie's `UpdateResponse.NEW_DOCUMENT`);
- counters only ever move through `$inc`.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from journeys.db.documents import (
    CampaignDocument,
    ContactDocument,
    ContactEventDocument,
    JourneyDocument,
    JourneyJournalDocument,
)
from journeys.db.repositories import Repositories
from journeys.models.campaign import Campaign
from journeys.models.contact import Contact, ContactMutation
from journeys.models.event import ContactEvent
from journeys.models.journal import JourneyJournal
from journeys.models.journey import ContactJourney

logger = logging.getLogger(__name__)

_DOCUMENT_ONLY_FIELDS = {"id", "revision_id"}


class MongoCampaignRepository:
    async def get(self, campaign_id: str) -> Optional[Campaign]:
        return await CampaignDocument.find_one({"campaign_id": campaign_id})

    async def save(self, campaign: Campaign) -> Campaign:
        data = campaign.model_dump(exclude=_DOCUMENT_ONLY_FIELDS)
        await CampaignDocument.find_one({"campaign_id": campaign.campaign_id}).upsert(
            {"$set": data},
            on_insert=CampaignDocument(**data),
        )
        return campaign

    async def list_active_for_event(self, owner_id: str, event_type: str) -> List[Campaign]:
        return await CampaignDocument.find({
            "owner_id": owner_id,
            "settings.is_active": True,
            "triggers.event_type": event_type,
        }).to_list()

    async def set_active(self, campaign_id: str, is_active: bool, now: datetime) -> Optional[Campaign]:
        return await CampaignDocument.find_one({"campaign_id": campaign_id}).update(
            {"$set": {"settings.is_active": is_active, "updated_at": now}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    async def increment_statistics(self, campaign_id: str, counters: Dict[str, int], now: datetime) -> None:
        await CampaignDocument.find_one({"campaign_id": campaign_id}).update({
            "$inc": {f"statistics.{counter}": amount for counter, amount in counters.items()},
            "$set": {"updated_at": now},
        })


class MongoJourneyRepository:
    async def get(self, journey_id: str) -> Optional[ContactJourney]:
        return await JourneyDocument.find_one({"journey_id": journey_id})

    async def find_active(self, campaign_id: str, contact_id: str) -> Optional[ContactJourney]:
        return await JourneyDocument.find_one({
            "campaign_id": campaign_id,
            "contact_id": contact_id,
            "status": "active",
        })

    async def insert_if_no_active(self, journey: ContactJourney) -> bool:
        if await self.find_active(journey.campaign_id, journey.contact_id):
            return False
        try:
            await JourneyDocument(**journey.model_dump(exclude=_DOCUMENT_ONLY_FIELDS)).insert()
        except DuplicateKeyError:
            # Lost the race against a concurrent enrollment; the index kept the invariant.
            return False
        return True

    async def claim_due(self, now: datetime, worker_id: str, lease_until: datetime) -> Optional[ContactJourney]:
        return await JourneyDocument.find_one({
            "status": "active",
            "next_action_at": {"$lte": now},
            "$or": [{"claimed_until": None}, {"claimed_until": {"$lte": now}}],
        }).update(
            {"$set": {"claimed_by": worker_id, "claimed_until": lease_until}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    async def release_claim(self, journey_id: str, worker_id: str) -> None:
        await JourneyDocument.find_one({"journey_id": journey_id, "claimed_by": worker_id}).update(
            {"$set": {"claimed_by": None, "claimed_until": None}}
        )

    async def update(
        self,
        journey_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Sequence[str]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        query: Dict[str, Any] = {"journey_id": journey_id}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        if claimed_by is not None:
            query["claimed_by"] = claimed_by
        try:
            return await JourneyDocument.find_one(query).update(
                {"$set": changes},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        except DuplicateKeyError:
            logger.warning(f"[JOURNEY] Update of {journey_id} would create a second active journey, rejected")
            return None

    async def increment_progress(self, journey_id: str, delta: Dict[str, int], now: datetime) -> Optional[ContactJourney]:
        return await JourneyDocument.find_one({"journey_id": journey_id}).update(
            {
                "$inc": {f"progress.{counter}": amount for counter, amount in delta.items()},
                "$set": {"updated_at": now},
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    async def add_goal(self, journey_id: str, goal_name: str, now: datetime) -> bool:
        updated = await JourneyDocument.find_one({
            "journey_id": journey_id,
            "status": "active",
            "metadata.goals_reached": {"$ne": goal_name},
        }).update(
            {
                "$push": {"metadata.goals_reached": goal_name},
                "$inc": {"progress.goals_reached": 1},
                "$set": {"updated_at": now},
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        return updated is not None

    async def list_active_for_contact(self, contact_id: str) -> List[ContactJourney]:
        return await JourneyDocument.find({"contact_id": contact_id, "status": "active"}).to_list()

    async def list_for_campaign(self, campaign_id: str, status: Optional[str] = None) -> List[ContactJourney]:
        query: Dict[str, Any] = {"campaign_id": campaign_id}
        if status is not None:
            query["status"] = status
        return await JourneyDocument.find(query).to_list()

    async def wake_branch_waiters(self, contact_id: str, now: datetime) -> int:
        result = await JourneyDocument.find({
            "contact_id": contact_id,
            "status": "active",
            "next_action": "evaluate_branch",
            "next_action_at": {"$gt": now},
        }).update({"$set": {"next_action_at": now}})
        return result.modified_count if result else 0

    async def release_stale_claims(self, now: datetime) -> int:
        result = await JourneyDocument.find({
            "claimed_until": {"$ne": None, "$lte": now},
        }).update({"$set": {"claimed_by": None, "claimed_until": None}})
        return result.modified_count if result else 0

    async def find_duplicate_active(self) -> List[List[ContactJourney]]:
        groups = await JourneyDocument.aggregate([
            {"$match": {"status": "active"}},
            {"$group": {
                "_id": {"campaign_id": "$campaign_id", "contact_id": "$contact_id"},
                "journey_ids": {"$push": "$journey_id"},
                "count": {"$sum": 1},
            }},
            {"$match": {"count": {"$gt": 1}}},
        ]).to_list()

        duplicates = []
        for group in groups:
            journeys = await JourneyDocument.find({"journey_id": {"$in": group["journey_ids"]}}).to_list()
            duplicates.append(journeys)
        return duplicates


class MongoContactRepository:
    async def get(self, contact_id: str) -> Optional[Contact]:
        return await ContactDocument.find_one({"contact_id": contact_id})

    async def get_by_email(self, email: str, owner_id: Optional[str] = None) -> Optional[Contact]:
        query: Dict[str, Any] = {"email": email.lower()}
        if owner_id is not None:
            query["owner_id"] = owner_id
        return await ContactDocument.find_one(query)

    async def save(self, contact: Contact) -> Contact:
        data = contact.model_dump(exclude=_DOCUMENT_ONLY_FIELDS)
        data["email"] = data["email"].lower()
        await ContactDocument.find_one({"contact_id": contact.contact_id}).upsert(
            {"$set": data},
            on_insert=ContactDocument(**data),
        )
        return contact

    async def mutate(self, contact_id: str, mutation: ContactMutation) -> Optional[Contact]:
        if mutation.op == "add_tag":
            update = {"$addToSet": {"tags": mutation.tag}}
        elif mutation.op == "remove_tag":
            update = {"$pull": {"tags": mutation.tag}}
        else:
            update = {"$set": {f"custom_fields.{mutation.field}": mutation.value}}
        return await ContactDocument.find_one({"contact_id": contact_id}).update(
            update,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )


class MongoEventRepository:
    async def record(self, event: ContactEvent) -> None:
        await ContactEventDocument(**event.model_dump()).insert()

    def _query(self, contact_id: str, event_type: str, since: Optional[datetime]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"contact_id": contact_id, "event_type": event_type}
        if since is not None:
            query["created_at"] = {"$gte": since}
        return query

    async def count(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> int:
        return await ContactEventDocument.find(self._query(contact_id, event_type, since)).count()

    async def find(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> List[ContactEvent]:
        return await ContactEventDocument.find(self._query(contact_id, event_type, since)).to_list()


class MongoJournalRepository:
    async def add(self, entry: JourneyJournal) -> None:
        await JourneyJournalDocument(**entry.model_dump()).insert()

    async def list_for_journey(self, journey_id: str) -> List[JourneyJournal]:
        return await JourneyJournalDocument.find({"journey_id": journey_id}).sort("timestamp").to_list()


def mongo_repositories() -> Repositories:
    return Repositories(
        campaigns=MongoCampaignRepository(),
        journeys=MongoJourneyRepository(),
        contacts=MongoContactRepository(),
        events=MongoEventRepository(),
        journal=MongoJournalRepository(),
    )
