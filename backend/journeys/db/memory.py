"""
In-process storage backend.

Each repository keeps its records in a dict and serializes every mutation
through an asyncio.Lock, which gives the same check-and-set guarantees the
Mongo backend gets from unique indexes and find_one_and_update. Records are
copied on the way in and out so callers never share mutable state.
"""

import asyncio
import copy
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from journeys.db.repositories import Repositories
from journeys.models.campaign import Campaign
from journeys.models.contact import Contact, ContactMutation
from journeys.models.event import ContactEvent
from journeys.models.journal import JourneyJournal
from journeys.models.journey import ContactJourney


def _set_path(data: dict, dotted_key: str, value: Any):
    parts = dotted_key.split(".")
    target = data
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


class MemoryCampaignRepository:
    def __init__(self):
        self._campaigns: Dict[str, Campaign] = {}
        self._lock = asyncio.Lock()

    async def get(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def save(self, campaign: Campaign) -> Campaign:
        async with self._lock:
            self._campaigns[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign

    async def list_active_for_event(self, owner_id: str, event_type: str) -> List[Campaign]:
        return [
            c.model_copy(deep=True)
            for c in self._campaigns.values()
            if c.owner_id == owner_id
            and c.settings.is_active
            and any(t.event_type == event_type for t in c.triggers)
        ]

    async def set_active(self, campaign_id: str, is_active: bool, now: datetime) -> Optional[Campaign]:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            campaign.settings.is_active = is_active
            campaign.updated_at = now
            return campaign.model_copy(deep=True)

    async def increment_statistics(self, campaign_id: str, counters: Dict[str, int], now: datetime) -> None:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return
            for counter, amount in counters.items():
                setattr(campaign.statistics, counter, getattr(campaign.statistics, counter) + amount)
            campaign.updated_at = now


class MemoryJourneyRepository:
    def __init__(self):
        self._journeys: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    def _load(self, data: Optional[dict]) -> Optional[ContactJourney]:
        return ContactJourney.model_validate(copy.deepcopy(data)) if data is not None else None

    def _active_for(self, campaign_id: str, contact_id: str) -> List[dict]:
        return [
            j for j in self._journeys.values()
            if j["campaign_id"] == campaign_id and j["contact_id"] == contact_id and j["status"] == "active"
        ]

    async def get(self, journey_id: str) -> Optional[ContactJourney]:
        return self._load(self._journeys.get(journey_id))

    async def find_active(self, campaign_id: str, contact_id: str) -> Optional[ContactJourney]:
        active = self._active_for(campaign_id, contact_id)
        return self._load(active[0]) if active else None

    async def insert_if_no_active(self, journey: ContactJourney) -> bool:
        async with self._lock:
            if journey.status == "active" and self._active_for(journey.campaign_id, journey.contact_id):
                return False
            self._journeys[journey.journey_id] = copy.deepcopy(journey.model_dump())
            return True

    async def claim_due(self, now: datetime, worker_id: str, lease_until: datetime) -> Optional[ContactJourney]:
        async with self._lock:
            due = [
                j for j in self._journeys.values()
                if j["status"] == "active"
                and j["next_action_at"] <= now
                and (j["claimed_until"] is None or j["claimed_until"] <= now)
            ]
            if not due:
                return None
            journey = min(due, key=lambda j: j["next_action_at"])
            journey["claimed_by"] = worker_id
            journey["claimed_until"] = lease_until
            return self._load(journey)

    async def release_claim(self, journey_id: str, worker_id: str) -> None:
        async with self._lock:
            journey = self._journeys.get(journey_id)
            if journey and journey["claimed_by"] == worker_id:
                journey["claimed_by"] = None
                journey["claimed_until"] = None

    async def update(
        self,
        journey_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Sequence[str]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        async with self._lock:
            journey = self._journeys.get(journey_id)
            if journey is None:
                return None
            if statuses is not None and journey["status"] not in statuses:
                return None
            if claimed_by is not None and journey["claimed_by"] != claimed_by:
                return None
            candidate = copy.deepcopy(journey)
            for key, value in changes.items():
                _set_path(candidate, key, value)
            if candidate["status"] == "active" and journey["status"] != "active":
                others = [
                    j for j in self._active_for(candidate["campaign_id"], candidate["contact_id"])
                    if j["journey_id"] != journey_id
                ]
                if others:
                    return None
            self._journeys[journey_id] = ContactJourney.model_validate(candidate).model_dump()
            return self._load(self._journeys[journey_id])

    async def increment_progress(self, journey_id: str, delta: Dict[str, int], now: datetime) -> Optional[ContactJourney]:
        async with self._lock:
            journey = self._journeys.get(journey_id)
            if journey is None:
                return None
            for counter, amount in delta.items():
                journey["progress"][counter] = journey["progress"].get(counter, 0) + amount
            journey["updated_at"] = now
            return self._load(journey)

    async def add_goal(self, journey_id: str, goal_name: str, now: datetime) -> bool:
        async with self._lock:
            journey = self._journeys.get(journey_id)
            if journey is None or journey["status"] != "active":
                return False
            reached = journey["metadata"].setdefault("goals_reached", [])
            if goal_name in reached:
                return False
            reached.append(goal_name)
            journey["progress"]["goals_reached"] += 1
            journey["updated_at"] = now
            return True

    async def list_active_for_contact(self, contact_id: str) -> List[ContactJourney]:
        return [
            self._load(j) for j in self._journeys.values()
            if j["contact_id"] == contact_id and j["status"] == "active"
        ]

    async def list_for_campaign(self, campaign_id: str, status: Optional[str] = None) -> List[ContactJourney]:
        return [
            self._load(j) for j in self._journeys.values()
            if j["campaign_id"] == campaign_id and (status is None or j["status"] == status)
        ]

    async def wake_branch_waiters(self, contact_id: str, now: datetime) -> int:
        woken = 0
        async with self._lock:
            for journey in self._journeys.values():
                if (
                    journey["contact_id"] == contact_id
                    and journey["status"] == "active"
                    and journey["next_action"] == "evaluate_branch"
                    and journey["next_action_at"] > now
                ):
                    journey["next_action_at"] = now
                    woken += 1
        return woken

    async def release_stale_claims(self, now: datetime) -> int:
        released = 0
        async with self._lock:
            for journey in self._journeys.values():
                if journey["claimed_until"] is not None and journey["claimed_until"] <= now:
                    journey["claimed_by"] = None
                    journey["claimed_until"] = None
                    released += 1
        return released

    async def find_duplicate_active(self) -> List[List[ContactJourney]]:
        groups: Dict[tuple, List[dict]] = defaultdict(list)
        for journey in self._journeys.values():
            if journey["status"] == "active":
                groups[(journey["campaign_id"], journey["contact_id"])].append(journey)
        return [[self._load(j) for j in group] for group in groups.values() if len(group) > 1]


class MemoryContactRepository:
    def __init__(self):
        self._contacts: Dict[str, Contact] = {}
        self._lock = asyncio.Lock()

    async def get(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def get_by_email(self, email: str, owner_id: Optional[str] = None) -> Optional[Contact]:
        for contact in self._contacts.values():
            if contact.email.lower() == email.lower() and (owner_id is None or contact.owner_id == owner_id):
                return contact.model_copy(deep=True)
        return None

    async def save(self, contact: Contact) -> Contact:
        async with self._lock:
            self._contacts[contact.contact_id] = contact.model_copy(deep=True)
        return contact

    async def mutate(self, contact_id: str, mutation: ContactMutation) -> Optional[Contact]:
        async with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is None:
                return None
            if mutation.op == "add_tag" and mutation.tag not in contact.tags:
                contact.tags.append(mutation.tag)
            elif mutation.op == "remove_tag" and mutation.tag in contact.tags:
                contact.tags.remove(mutation.tag)
            elif mutation.op == "set_field":
                contact.custom_fields[mutation.field] = mutation.value
            return contact.model_copy(deep=True)


class MemoryEventRepository:
    def __init__(self):
        self._events: List[ContactEvent] = []

    async def record(self, event: ContactEvent) -> None:
        self._events.append(event.model_copy(deep=True))

    async def count(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> int:
        return len(await self.find(contact_id, event_type, since))

    async def find(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> List[ContactEvent]:
        return [
            e.model_copy(deep=True) for e in self._events
            if e.contact_id == contact_id
            and e.event_type == event_type
            and (since is None or e.created_at >= since)
        ]


class MemoryJournalRepository:
    def __init__(self):
        self._entries: List[JourneyJournal] = []

    async def add(self, entry: JourneyJournal) -> None:
        self._entries.append(entry)

    async def list_for_journey(self, journey_id: str) -> List[JourneyJournal]:
        return [e for e in self._entries if e.journey_id == journey_id]


def memory_repositories() -> Repositories:
    return Repositories(
        campaigns=MemoryCampaignRepository(),
        journeys=MemoryJourneyRepository(),
        contacts=MemoryContactRepository(),
        events=MemoryEventRepository(),
        journal=MemoryJournalRepository(),
    )
