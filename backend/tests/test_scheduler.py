import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from journeys.errors import MailerError
from journeys.models.contact import Contact
from journeys.services.engine import build_engine

from conftest import NOW, OWNER

TWO_EMAILS = [
    {"id": "welcome", "template": {"subject": "Welcome {{first_name}}", "content": "<p>Hi {{name}}, plan {{plan}}</p>"}},
    {"id": "follow-up", "delay_minutes": 60, "template": {"subject": "Checking in", "content": "<p>{{missing}}ok</p>"}},
]


async def enroll(engine, make_campaign, make_event, **campaign_overrides):
    await engine.save_campaign(make_campaign(**campaign_overrides))
    report = await engine.handle_event(make_event())
    return report.enrollments[0].journey_id


@pytest.mark.asyncio
async def test_first_send_schedules_next_step_after_its_delay(engine, repositories, mailer, contact, clock, make_campaign, make_event):
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": TWO_EMAILS})

    report = await engine.tick()

    assert report.claimed == 1
    assert report.outcomes[0].result == "sent"
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "active"
    assert journey.current_step == "follow-up"
    assert journey.next_action == "send_email"
    assert journey.next_action_at == NOW + timedelta(minutes=60)
    assert journey.progress.emails_sent == 1
    assert journey.claimed_by is None

    to, subject, body, metadata = mailer.send.call_args.args
    assert to == "ada@example.com"
    assert subject == "Welcome Ada"
    assert body == "<p>Hi Ada Lovelace, plan trial</p>"
    assert metadata["journey_id"] == journey_id


@pytest.mark.asyncio
async def test_unsubscribed_contact_exits_without_sending(engine, repositories, mailer, contact, make_campaign, make_event):
    journey_id = await enroll(
        engine, make_campaign, make_event,
        flow={"steps": TWO_EMAILS, "exit_conditions": [{"type": "unsubscribed"}]},
        settings={"respect_unsubscribe": False},
    )
    await repositories.contacts.save(contact.model_copy(update={"unsubscribed": True}))

    report = await engine.tick()

    assert report.outcomes[0].result == "exited"
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "exited"
    assert journey.status_reason == "Contact unsubscribed"
    mailer.send.assert_not_called()
    assert (await repositories.campaigns.get("campaign-welcome")).statistics.exited == 1


@pytest.mark.asyncio
async def test_final_send_completes_journey(engine, repositories, contact, make_campaign, make_event):
    journey_id = await enroll(engine, make_campaign, make_event)

    await engine.tick()

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "completed"
    assert journey.completed_at == NOW
    stats = (await repositories.campaigns.get("campaign-welcome")).statistics
    assert stats.completed == 1
    assert stats.entered == 1
    assert stats.emails_sent == 1

    # A later tick finds nothing to do and counters stay put.
    await engine.tick()
    assert (await repositories.campaigns.get("campaign-welcome")).statistics.completed == 1


@pytest.mark.asyncio
async def test_each_journey_executes_one_step_per_tick(engine, repositories, mailer, contact, clock, make_campaign, make_event):
    steps = [
        {"id": "one", "template": {"subject": "1", "content": "a"}},
        {"id": "two", "template": {"subject": "2", "content": "b"}},
    ]
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": steps})

    await engine.tick()
    assert mailer.send.call_count == 1
    journey = await repositories.journeys.get(journey_id)
    assert journey.current_step == "two"
    assert journey.next_action_at == NOW

    await engine.tick()
    assert mailer.send.call_count == 2
    assert (await repositories.journeys.get(journey_id)).status == "completed"


@pytest.mark.asyncio
async def test_not_due_yet_is_left_alone(engine, repositories, mailer, contact, clock, make_campaign, make_event):
    await enroll(engine, make_campaign, make_event, triggers=[{"event_type": "contact_created", "delay_minutes": 15}])

    report = await engine.tick()
    assert report.claimed == 0

    clock.advance(minutes=15)
    report = await engine.tick()
    assert report.claimed == 1
    mailer.send.assert_called_once()


@pytest.mark.asyncio
async def test_mailer_failure_fails_only_that_journey(engine, repositories, mailer, contact, make_campaign, make_event):
    await repositories.contacts.save(Contact(contact_id="contact-2", owner_id=OWNER, email="bob@example.com", name="Bob"))
    await engine.save_campaign(make_campaign())
    await engine.handle_event(make_event())
    await engine.handle_event(make_event(contact_id="contact-2"))

    async def send(to, subject, html_body, metadata):
        if to == "bob@example.com":
            raise MailerError("relay rejected message")
        return "<ok@test>"

    mailer.send.side_effect = send

    report = await engine.tick()

    assert sorted(o.result for o in report.outcomes) == ["failed", "sent"]
    journeys = {j.contact_id: j for j in await repositories.journeys.list_for_campaign("campaign-welcome")}
    assert journeys["contact-2"].status == "failed"
    assert journeys["contact-2"].status_reason == "relay rejected message"
    assert journeys["contact-1"].status == "completed"


@pytest.mark.asyncio
async def test_unexpected_mailer_exception_is_reported_as_failure(engine, repositories, mailer, contact, make_campaign, make_event):
    journey_id = await enroll(engine, make_campaign, make_event)
    mailer.send.side_effect = ConnectionError("socket closed")

    await engine.tick()

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "failed"
    assert "socket closed" in journey.status_reason


@pytest.mark.asyncio
async def test_step_conditions_false_skips_and_advances(engine, repositories, mailer, contact, make_campaign, make_event):
    steps = [
        {"id": "vip-only", "conditions": {"tags": ["vip"]}, "template": {"subject": "VIP", "content": "x"}},
        {"id": "everyone", "delay_minutes": 10, "template": {"subject": "All", "content": "y"}},
    ]
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": steps})

    report = await engine.tick()

    assert report.outcomes[0].result == "skipped"
    mailer.send.assert_not_called()
    journey = await repositories.journeys.get(journey_id)
    assert journey.current_step == "everyone"
    assert journey.next_action_at == NOW + timedelta(minutes=10)
    assert journey.metadata["skipped_steps"] == ["vip-only"]
    assert journey.progress.emails_sent == 0


@pytest.mark.asyncio
async def test_template_error_skips_step(engine, repositories, mailer, contact, make_campaign, make_event):
    steps = [
        {"id": "broken", "template": {"subject": "Hi {{ first name }}", "content": "x"}},
        {"id": "fine", "template": {"subject": "Ok", "content": "y"}},
    ]
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": steps})

    await engine.tick()

    mailer.send.assert_not_called()
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "active"
    assert journey.current_step == "fine"


@pytest.mark.asyncio
async def test_contact_without_email_fails(engine, repositories, mailer, make_campaign, make_event):
    await repositories.contacts.save(Contact(contact_id="contact-1", owner_id=OWNER, email=""))
    journey_id = await enroll(engine, make_campaign, make_event)

    await engine.tick()

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "failed"
    assert journey.status_reason == "Contact has no email address"
    mailer.send.assert_not_called()


@pytest.mark.asyncio
async def test_post_actions_mutate_contact_and_errors_do_not_fail(settings, repositories, mailer, clock, contact, make_campaign, make_event):
    http_client = AsyncMock()
    http_client.post.side_effect = httpx.ConnectError("connection refused")
    engine = build_engine(settings, repositories=repositories, mailer=mailer, clock=clock, http_client=http_client)
    steps = [{
        "id": "welcome",
        "template": {"subject": "Hi", "content": "x"},
        "actions": [
            {"type": "add_tag", "tag": "welcomed"},
            {"type": "remove_tag", "tag": "lead"},
            {"type": "update_field", "field": "stage", "value": "onboarding"},
            {"type": "send_webhook", "url": "https://hooks.example.com/journeys", "payload": {"source": "welcome"}},
        ],
    }]
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": steps})

    await engine.tick()

    updated = await repositories.contacts.get("contact-1")
    assert "welcomed" in updated.tags
    assert "lead" not in updated.tags
    assert updated.custom_fields["stage"] == "onboarding"

    url = http_client.post.call_args.args[0]
    body = http_client.post.call_args.kwargs["json"]
    assert url == "https://hooks.example.com/journeys"
    assert body["source"] == "welcome"
    assert body["journey_id"] == journey_id

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "completed"
    assert [e["action"] for e in journey.metadata["action_errors"]] == ["send_webhook"]


@pytest.mark.asyncio
async def test_inactive_campaign_pauses_and_resumes(engine, repositories, mailer, contact, make_campaign, make_event):
    journey_id = await enroll(engine, make_campaign, make_event)
    await engine.set_campaign_active("campaign-welcome", False)

    report = await engine.tick()

    assert report.outcomes[0].result == "paused"
    assert (await repositories.journeys.get(journey_id)).status == "paused"
    mailer.send.assert_not_called()

    result = await engine.set_campaign_active("campaign-welcome", True)
    assert result["resumed"] == 1
    await engine.tick()
    assert (await repositories.journeys.get(journey_id)).status == "completed"


@pytest.mark.asyncio
async def test_sending_window_defers_to_next_opening(engine, repositories, mailer, contact, make_campaign, make_event):
    journey_id = await enroll(
        engine, make_campaign, make_event,
        settings={"sending_window": {"start": "14:00", "end": "18:00"}},
    )

    report = await engine.tick()

    assert report.outcomes[0].result == "deferred"
    mailer.send.assert_not_called()
    journey = await repositories.journeys.get(journey_id)
    assert journey.current_step == "start"
    assert journey.next_action_at == NOW.replace(hour=14)
    assert (await repositories.campaigns.get("campaign-welcome")).statistics.entered == 0


@pytest.mark.asyncio
async def test_max_emails_per_contact_exits(engine, repositories, mailer, contact, make_campaign, make_event):
    steps = [
        {"id": "one", "template": {"subject": "1", "content": "a"}},
        {"id": "two", "template": {"subject": "2", "content": "b"}},
    ]
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": steps}, settings={"max_emails_per_contact": 1})

    await engine.tick()
    await engine.tick()

    assert mailer.send.call_count == 1
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "exited"
    assert journey.status_reason == "Maximum emails per contact reached"


@pytest.mark.asyncio
async def test_max_duration_exits(engine, repositories, mailer, contact, clock, make_campaign, make_event):
    journey_id = await enroll(engine, make_campaign, make_event, triggers=[{"event_type": "contact_created", "delay_minutes": 3 * 24 * 60}], settings={"max_duration_days": 2})

    clock.advance(days=3)
    await engine.tick()

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "exited"
    mailer.send.assert_not_called()


@pytest.mark.asyncio
async def test_branch_routes_on_engagement(engine, repositories, mailer, contact, clock, make_campaign, make_event):
    flow = {
        "steps": [
            {"id": "intro", "template": {"subject": "Intro", "content": "a"}, "next": "did-open"},
            {"id": "thanks", "template": {"subject": "Thanks", "content": "b"}},
            {"id": "reminder", "template": {"subject": "Reminder", "content": "c"}},
        ],
        "branches": [{
            "id": "did-open",
            "condition": {"type": "email_engagement", "engagement": "opened"},
            "true_path": "thanks",
            "false_path": "reminder",
            "wait_minutes": 60,
        }],
    }
    journey_id = await enroll(engine, make_campaign, make_event, flow=flow)

    await engine.tick()  # sends intro, moves to branch
    journey = await repositories.journeys.get(journey_id)
    assert journey.next_action == "evaluate_branch"

    report = await engine.tick()  # not opened yet: pending until the wait expires
    assert report.outcomes[0].result == "pending"
    assert (await repositories.journeys.get(journey_id)).next_action_at == NOW + timedelta(minutes=60)

    clock.advance(minutes=10)
    await engine.handle_event(make_event("email_opened", payload={"journey_id": journey_id, "step_id": "intro"}))
    journey = await repositories.journeys.get(journey_id)
    assert journey.progress.emails_opened == 1
    assert journey.next_action_at == clock.now()  # woken by the signal

    report = await engine.tick()
    assert report.outcomes[0].result == "branched"
    journey = await repositories.journeys.get(journey_id)
    assert journey.current_step == "thanks"
    assert journey.metadata["branches"]["did-open"]["result"] is True


@pytest.mark.asyncio
async def test_branch_without_false_path_completes_after_wait(engine, repositories, contact, clock, make_campaign, make_event):
    flow = {
        "steps": [{"id": "intro", "template": {"subject": "Intro", "content": "a"}, "next": "did-click"},
                  {"id": "upsell", "template": {"subject": "Upsell", "content": "b"}}],
        "branches": [{"id": "did-click", "condition": {"type": "email_engagement", "engagement": "clicked"},
                      "true_path": "upsell", "wait_minutes": 30}],
    }
    journey_id = await enroll(engine, make_campaign, make_event, flow=flow)

    await engine.tick()
    await engine.tick()
    clock.advance(minutes=30)
    await engine.tick()

    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "completed"
    assert journey.metadata["branches"]["did-click"]["path"] is None


@pytest.mark.asyncio
async def test_concurrent_ticks_process_each_journey_once(settings, repositories, mailer, clock, contact, make_campaign, make_event):

    for n in range(2, 12):
        await repositories.contacts.save(Contact(contact_id=f"contact-{n}", owner_id=OWNER, email=f"c{n}@example.com"))
    first = build_engine(settings, repositories=repositories, mailer=mailer, clock=clock)
    second = build_engine(settings, repositories=repositories, mailer=mailer, clock=clock)
    await first.save_campaign(make_campaign())
    for n in range(1, 12):
        await first.handle_event(make_event(contact_id=f"contact-{n}"))

    reports = await asyncio.gather(first.tick(), second.tick())

    assert sum(r.claimed for r in reports) == 11
    assert mailer.send.call_count == 11
    journeys = await repositories.journeys.list_for_campaign("campaign-welcome")
    assert all(j.status == "completed" for j in journeys)


@pytest.mark.asyncio
async def test_error_before_sending_releases_claim_for_retry(engine, repositories, mailer, contact, make_campaign, make_event, monkeypatch):
    journey_id = await enroll(engine, make_campaign, make_event)
    real_get = repositories.campaigns.get
    calls = {"n": 0}

    async def flaky_get(campaign_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("storage hiccup")
        return await real_get(campaign_id)

    monkeypatch.setattr(repositories.campaigns, "get", flaky_get)

    report = await engine.tick()

    assert report.outcomes[0].result == "error"
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "active"
    assert journey.claimed_by is None
    mailer.send.assert_not_called()

    retry = await engine.tick()

    assert retry.outcomes[0].result == "sent"
    mailer.send.assert_called_once()


@pytest.mark.asyncio
async def test_failure_after_send_fails_journey_instead_of_resending(engine, repositories, mailer, contact, clock, make_campaign, make_event, monkeypatch):
    journey_id = await enroll(engine, make_campaign, make_event, flow={"steps": TWO_EMAILS})

    async def broken_increment(*args, **kwargs):
        raise RuntimeError("write timed out")

    monkeypatch.setattr(repositories.journeys, "increment_progress", broken_increment)

    report = await engine.tick()

    assert report.outcomes[0].result == "failed"
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "failed"
    assert journey.status_reason.startswith("Email sent but journey update failed")
    assert journey.claimed_by is None

    clock.advance(hours=2)
    await engine.tick()

    mailer.send.assert_called_once()


@pytest.mark.asyncio
async def test_expired_claim_holder_cannot_overwrite_new_owner(settings, repositories, contact, clock, make_campaign, make_event):
    entered = asyncio.Event()
    release = asyncio.Event()
    sent = []

    async def slow_then_fast(to, subject, html_body, metadata):
        sent.append(to)
        if len(sent) == 1:
            entered.set()
            await release.wait()
        return f"<delivery-{len(sent)}@test>"

    slow_mailer = AsyncMock()
    slow_mailer.send = AsyncMock(side_effect=slow_then_fast)
    first = build_engine(settings, repositories=repositories, mailer=slow_mailer, clock=clock)
    second = build_engine(settings, repositories=repositories, mailer=slow_mailer, clock=clock)
    journey_id = await enroll(first, make_campaign, make_event, flow={"steps": TWO_EMAILS})

    stuck = asyncio.create_task(first.tick())
    await entered.wait()
    clock.advance(seconds=settings.CLAIM_LEASE_SECONDS + 60)
    takeover = await second.tick()
    release.set()
    late = await stuck

    assert takeover.outcomes[0].result == "sent"
    assert late.outcomes[0].result == "stale"
    journey = await repositories.journeys.get(journey_id)
    assert journey.status == "active"
    assert journey.current_step == "follow-up"
    assert journey.next_action_at == clock.now() + timedelta(minutes=60)
    assert journey.claimed_by is None


@pytest.mark.asyncio
async def test_lost_claim_is_noticed_before_sending(engine, repositories, mailer, contact, make_campaign, make_event, monkeypatch):
    journey_id = await enroll(engine, make_campaign, make_event)
    real_claim = repositories.journeys.claim_due

    async def claim_then_lose(now, worker_id, lease_until):
        journey = await real_claim(now, worker_id, lease_until)
        if journey is not None:
            await repositories.journeys.release_claim(journey.journey_id, worker_id)
            await real_claim(now, "another-worker", lease_until)
        return journey

    monkeypatch.setattr(repositories.journeys, "claim_due", claim_then_lose)

    report = await engine.tick()

    assert [o.result for o in report.outcomes] == ["stale"]
    mailer.send.assert_not_called()
    journey = await repositories.journeys.get(journey_id)
    assert journey.claimed_by == "another-worker"
