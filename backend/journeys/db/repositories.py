"""
Storage contracts used by the journey engine.

Two backends implement them: `journeys.db.mongo` (Beanie documents on MongoDB)
and `journeys.db.memory` (in-process, for embedding and tests). Every method
that the engine's concurrency guarantees depend on is atomic in both backends:
`insert_if_no_active`, `claim_due`, `update` with a status or claim guard,
`increment_progress`, `add_goal` and `increment_statistics`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from journeys.models.campaign import Campaign
from journeys.models.contact import Contact, ContactMutation
from journeys.models.event import ContactEvent
from journeys.models.journal import JourneyJournal
from journeys.models.journey import ContactJourney


class CampaignRepository(Protocol):
    async def get(self, campaign_id: str) -> Optional[Campaign]: ...

    async def save(self, campaign: Campaign) -> Campaign: ...

    async def list_active_for_event(self, owner_id: str, event_type: str) -> List[Campaign]: ...

    async def set_active(self, campaign_id: str, is_active: bool, now: datetime) -> Optional[Campaign]: ...

    async def increment_statistics(self, campaign_id: str, counters: Dict[str, int], now: datetime) -> None: ...


class JourneyRepository(Protocol):
    async def get(self, journey_id: str) -> Optional[ContactJourney]: ...

    async def find_active(self, campaign_id: str, contact_id: str) -> Optional[ContactJourney]: ...

    async def insert_if_no_active(self, journey: ContactJourney) -> bool:
        """Insert `journey` unless an active journey exists for its (campaign, contact) pair."""
        ...

    async def claim_due(self, now: datetime, worker_id: str, lease_until: datetime) -> Optional[ContactJourney]:
        """Atomically claim one active, unclaimed journey whose next action is due."""
        ...

    async def release_claim(self, journey_id: str, worker_id: str) -> None: ...

    async def update(
        self,
        journey_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Sequence[str]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[ContactJourney]:
        """
        Set `changes` (dotted keys allowed). With `statuses`, only applies while
        the status is one of them; with `claimed_by`, only while that worker
        still holds the claim.
        """
        ...

    async def increment_progress(self, journey_id: str, delta: Dict[str, int], now: datetime) -> Optional[ContactJourney]: ...

    async def add_goal(self, journey_id: str, goal_name: str, now: datetime) -> bool:
        """Record `goal_name` as reached; False if already recorded or the journey is not active."""
        ...

    async def list_active_for_contact(self, contact_id: str) -> List[ContactJourney]: ...

    async def list_for_campaign(self, campaign_id: str, status: Optional[str] = None) -> List[ContactJourney]: ...

    async def wake_branch_waiters(self, contact_id: str, now: datetime) -> int: ...

    async def release_stale_claims(self, now: datetime) -> int: ...

    async def find_duplicate_active(self) -> List[List[ContactJourney]]: ...


class ContactRepository(Protocol):
    async def get(self, contact_id: str) -> Optional[Contact]: ...

    async def get_by_email(self, email: str, owner_id: Optional[str] = None) -> Optional[Contact]: ...

    async def save(self, contact: Contact) -> Contact: ...

    async def mutate(self, contact_id: str, mutation: ContactMutation) -> Optional[Contact]: ...


class EventRepository(Protocol):
    async def record(self, event: ContactEvent) -> None: ...

    async def count(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> int: ...

    async def find(self, contact_id: str, event_type: str, since: Optional[datetime] = None) -> List[ContactEvent]: ...


class JournalRepository(Protocol):
    async def add(self, entry: JourneyJournal) -> None: ...

    async def list_for_journey(self, journey_id: str) -> List[JourneyJournal]: ...


@dataclass
class Repositories:
    campaigns: CampaignRepository
    journeys: JourneyRepository
    contacts: ContactRepository
    events: EventRepository
    journal: JournalRepository
