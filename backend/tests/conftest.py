"""
Shared fixtures: a frozen clock, in-memory repositories, a mock mailer and
an engine wired from them.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from journeys.config import Settings
from journeys.db.memory import MemoryJourneyRepository, memory_repositories
from journeys.models.campaign import Campaign
from journeys.models.contact import Contact
from journeys.models.event import TriggerEvent
from journeys.models.journey import ContactJourney
from journeys.services.engine import build_engine

# Monday 2026-03-02 10:00 UTC
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
OWNER = "owner-1"


class FrozenClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def settings():
    return Settings(STORAGE_BACKEND="memory", TICK_CONCURRENCY=4, _env_file=None)


class SeedableJourneyRepository(MemoryJourneyRepository):
    """Memory journeys plus a seeding hook for states the engine refuses to create."""

    async def insert_unchecked(self, journey: ContactJourney) -> None:
        async with self._lock:
            self._journeys[journey.journey_id] = journey.model_dump()


@pytest.fixture
def repositories():
    return replace(memory_repositories(), journeys=SeedableJourneyRepository())


@pytest.fixture
def mailer():
    """Mailer double: every send succeeds with a sequential delivery id."""
    mock = AsyncMock()
    counter = {"n": 0}

    async def send(to, subject, html_body, metadata):
        counter["n"] += 1
        return f"<delivery-{counter['n']}@test>"

    mock.send = AsyncMock(side_effect=send)
    return mock


@pytest.fixture
def engine(settings, repositories, mailer, clock):
    return build_engine(settings, repositories=repositories, mailer=mailer, clock=clock)


@pytest.fixture
def make_campaign():
    def factory(steps=None, **overrides):
        data = {
            "campaign_id": "campaign-welcome",
            "owner_id": OWNER,
            "name": "Welcome Series",
            "triggers": [{"event_type": "contact_created"}],
            "flow": {
                "steps": steps if steps is not None else [
                    {"id": "welcome", "template": {"subject": "Hi {{first_name}}", "content": "<p>Welcome {{name}}</p>"}},
                ],
            },
        }
        data.update(overrides)
        return Campaign.model_validate(data)

    return factory


@pytest.fixture
def make_event():
    def factory(event_type="contact_created", contact_id="contact-1", **overrides):
        return TriggerEvent(event_type=event_type, contact_id=contact_id, owner_id=OWNER, **overrides)

    return factory


@pytest_asyncio.fixture
async def contact(repositories):
    contact = Contact(
        contact_id="contact-1",
        owner_id=OWNER,
        email="ada@example.com",
        name="Ada Lovelace",
        tags=["lead"],
        custom_fields={"plan": "trial", "score": "42"},
    )
    await repositories.contacts.save(contact)
    return contact
