from datetime import timedelta

import pytest
import pytest_asyncio

from journeys.models.journey import ContactJourney
from journeys.services.lifecycle import DUPLICATE_REASON, SUPERSEDED_REASON

from conftest import NOW, OWNER


@pytest_asyncio.fixture
async def campaign(engine, make_campaign):
    return await engine.save_campaign(make_campaign(
        flow={
            "steps": [{"id": "welcome", "template": {"subject": "Hi", "content": "x"}}],
            "exit_conditions": [
                {"type": "tag_added", "tag": "customer"},
                {"type": "field_changed", "field": "plan"},
                {"type": "goal_reached", "goal": "purchase"},
            ],
        },
        goals=[{"name": "purchase", "event_type": "order_placed", "config": {"properties": {"sku": "A1"}}}],
    ))


@pytest_asyncio.fixture
async def journey(engine, campaign, contact):
    return await engine.lifecycle.enroll(campaign, contact, {"source": "test"}, trigger_event_type="contact_created")


def stray_journey(created_at, **overrides):
    return ContactJourney(
        campaign_id="campaign-welcome",
        contact_id="contact-1",
        owner_id=OWNER,
        next_action_at=NOW,
        created_at=created_at,
        **overrides,
    )


@pytest.mark.asyncio
async def test_enroll_snapshots_watched_fields(journey):
    assert journey.metadata["field_snapshot"] == {"plan": "trial"}
    assert journey.event_data == {"source": "test"}
    assert journey.created_at == NOW


@pytest.mark.asyncio
async def test_terminate_is_idempotent(engine, repositories, journey):
    first = await engine.lifecycle.terminate(journey.journey_id, "completed")
    second = await engine.lifecycle.terminate(journey.journey_id, "exited", "late exit")

    assert first is not None
    assert second is None
    stored = await repositories.journeys.get(journey.journey_id)
    assert stored.status == "completed"
    stats = (await repositories.campaigns.get("campaign-welcome")).statistics
    assert stats.completed == 1
    assert stats.exited == 0


@pytest.mark.asyncio
async def test_terminate_rejects_non_terminal_status(engine, journey):
    with pytest.raises(ValueError):
        await engine.lifecycle.terminate(journey.journey_id, "paused")


@pytest.mark.asyncio
async def test_advance_ignored_once_terminal(engine, repositories, journey):
    await engine.lifecycle.terminate(journey.journey_id, "failed", "boom")

    assert await engine.lifecycle.advance(journey.journey_id, "welcome", "send_email", NOW) is None
    assert (await repositories.journeys.get(journey.journey_id)).status == "failed"


@pytest.mark.asyncio
async def test_transitions_naming_a_worker_need_its_claim(engine, repositories, journey):
    await repositories.journeys.claim_due(NOW, "worker-a", NOW + timedelta(minutes=5))

    assert await engine.lifecycle.advance(journey.journey_id, "welcome", "send_email", NOW, claimed_by="worker-b") is None
    assert await engine.lifecycle.terminate(journey.journey_id, "failed", "late", claimed_by="worker-b") is None
    assert await engine.lifecycle.pause(journey.journey_id, "late", claimed_by="worker-b") is None
    stored = await repositories.journeys.get(journey.journey_id)
    assert stored.status == "active"
    assert stored.claimed_by == "worker-a"

    moved = await engine.lifecycle.advance(
        journey.journey_id, "welcome", "send_email", NOW + timedelta(hours=1), claimed_by="worker-a"
    )

    assert moved.next_action_at == NOW + timedelta(hours=1)
    assert moved.claimed_by is None


@pytest.mark.asyncio
async def test_progress_counters_only_increase(engine, repositories, journey):
    await engine.lifecycle.record_progress(journey, {"emails_sent": 2})

    with pytest.raises(ValueError):
        await engine.lifecycle.record_progress(journey, {"emails_sent": -1})
    with pytest.raises(ValueError):
        await engine.lifecycle.record_progress(journey, {"bounces": 1})

    stored = await repositories.journeys.get(journey.journey_id)
    assert stored.progress.emails_sent == 2
    assert (await repositories.campaigns.get("campaign-welcome")).statistics.emails_sent == 2


@pytest.mark.asyncio
async def test_engagement_counted_once_per_email(engine, repositories, journey):
    await repositories.journeys.update(journey.journey_id, {"metadata.last_email": {"step_id": "welcome"}})

    assert await engine.lifecycle.record_engagement(journey.journey_id, None, "opened", NOW)
    assert not await engine.lifecycle.record_engagement(journey.journey_id, "welcome", "opened", NOW)
    assert await engine.lifecycle.record_engagement(journey.journey_id, "welcome", "clicked", NOW)

    stored = await repositories.journeys.get(journey.journey_id)
    assert stored.progress.emails_opened == 1
    assert stored.progress.emails_clicked == 1
    assert stored.metadata["engagement"]["welcome"]["opened_at"] == NOW


@pytest.mark.asyncio
async def test_engagement_without_sent_email_is_ignored(engine, journey):
    assert not await engine.lifecycle.record_engagement(journey.journey_id, None, "opened", NOW)
    assert not await engine.lifecycle.record_engagement("journey_missing", "welcome", "opened", NOW)


@pytest.mark.asyncio
async def test_goal_reached_counts_once(engine, repositories, journey):
    assert await engine.lifecycle.mark_goal_reached(journey.journey_id, "campaign-welcome", "purchase")
    assert not await engine.lifecycle.mark_goal_reached(journey.journey_id, "campaign-welcome", "purchase")

    stats = (await repositories.campaigns.get("campaign-welcome")).statistics
    assert stats.goals_reached == 1


@pytest.mark.asyncio
async def test_exit_on_tag_added(engine, campaign, contact, journey):
    tagged = contact.model_copy(update={"tags": ["lead", "customer"]})

    assert engine.lifecycle.check_exit_conditions(journey, campaign, contact, NOW) is None
    assert engine.lifecycle.check_exit_conditions(journey, campaign, tagged, NOW) == "Tag 'customer' added"


@pytest.mark.asyncio
async def test_exit_on_field_changed_since_enrollment(engine, campaign, contact, journey):
    upgraded = contact.model_copy(update={"custom_fields": {"plan": "pro"}})

    assert engine.lifecycle.check_exit_conditions(journey, campaign, upgraded, NOW) == "Field 'plan' changed"


@pytest.mark.asyncio
async def test_exit_on_goal_reached(engine, repositories, campaign, contact, journey):
    await engine.lifecycle.mark_goal_reached(journey.journey_id, "campaign-welcome", "purchase")
    stored = await repositories.journeys.get(journey.journey_id)

    assert engine.lifecycle.check_exit_conditions(stored, campaign, contact, NOW) == "Goal 'purchase' reached"


@pytest.mark.asyncio
async def test_unsubscribed_exits_when_respected(engine, campaign, contact, journey):
    unsubscribed = contact.model_copy(update={"unsubscribed": True})

    assert engine.lifecycle.check_exit_conditions(journey, campaign, unsubscribed, NOW) == "Contact unsubscribed"


@pytest.mark.asyncio
async def test_repair_duplicates_keeps_newest(engine, repositories, contact, campaign, caplog):
    older = stray_journey(NOW - timedelta(hours=2))
    newer = stray_journey(NOW - timedelta(hours=1))
    await repositories.journeys.insert_unchecked(older)
    await repositories.journeys.insert_unchecked(newer)

    repaired = await engine.maintenance()

    assert repaired["duplicates_repaired"] == 1
    assert (await repositories.journeys.get(newer.journey_id)).status == "active"
    failed = await repositories.journeys.get(older.journey_id)
    assert failed.status == "failed"
    assert failed.status_reason == DUPLICATE_REASON
    assert any(record.levelname == "CRITICAL" for record in caplog.records)


@pytest.mark.asyncio
async def test_resume_supersedes_paused_journey_with_active_twin(engine, repositories, contact, campaign):
    paused = stray_journey(NOW - timedelta(days=1), status="paused")
    active = stray_journey(NOW)
    await repositories.journeys.insert_unchecked(paused)
    await repositories.journeys.insert_unchecked(active)

    result = await engine.lifecycle.resume_campaign("campaign-welcome", NOW)

    assert result == {"resumed": 0, "superseded": 1}
    exited = await repositories.journeys.get(paused.journey_id)
    assert exited.status == "exited"
    assert exited.status_reason == SUPERSEDED_REASON


@pytest.mark.asyncio
async def test_stale_claims_are_released(engine, repositories, journey):
    claimed = await repositories.journeys.claim_due(NOW, "worker-a", NOW + timedelta(minutes=5))
    assert claimed.journey_id == journey.journey_id
    assert await repositories.journeys.claim_due(NOW, "worker-b", NOW + timedelta(minutes=5)) is None

    assert await engine.lifecycle.release_stale_claims(NOW + timedelta(minutes=1)) == 0
    assert await engine.lifecycle.release_stale_claims(NOW + timedelta(minutes=5)) == 1

    again = await repositories.journeys.claim_due(NOW + timedelta(minutes=5), "worker-b", NOW + timedelta(minutes=10))
    assert again.claimed_by == "worker-b"


@pytest.mark.asyncio
async def test_journal_records_transitions(engine, journey):
    await engine.lifecycle.terminate(journey.journey_id, "exited", "Contact unsubscribed")

    entries = await engine.lifecycle.list_journal(journey.journey_id)

    assert [e.message for e in entries] == ["Journey started", "Journey exited: Contact unsubscribed"]
