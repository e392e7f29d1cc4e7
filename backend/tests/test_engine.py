from unittest.mock import AsyncMock, MagicMock

import pytest

from journeys import tasks
from journeys.config import Settings
from journeys.db.documents import JourneyDocument
from journeys.services.engine import InlineEventSource
from journeys.services.mailer import SMTPMailer
from journeys.services.ticker import SchedulerLoop


@pytest.mark.asyncio
async def test_inline_event_source_processes_in_background(engine, repositories, contact, make_campaign, make_event):
    await engine.save_campaign(make_campaign())
    source = InlineEventSource(engine)

    source.emit(make_event())
    await source.drain()

    assert len(await repositories.journeys.list_for_campaign("campaign-welcome")) == 1


@pytest.mark.asyncio
async def test_inline_event_source_logs_processing_errors(caplog, make_event):
    broken = MagicMock()
    broken.handle_event = AsyncMock(side_effect=RuntimeError("db down"))
    source = InlineEventSource(broken)

    source.emit(make_event())
    await source.drain()

    assert "db down" in caplog.text


@pytest.mark.asyncio
async def test_scheduler_loop_runs_maintenance_periodically():
    engine = MagicMock()
    engine.tick = AsyncMock()
    engine.maintenance = AsyncMock()
    loop = SchedulerLoop(engine, interval_seconds=1, maintenance_every=3)

    for iteration in range(1, 7):
        await loop.run_once(iteration)

    assert engine.tick.await_count == 6
    assert engine.maintenance.await_count == 2


def test_single_active_journey_index_is_partial_and_unique():
    indexes = {index.document["name"]: index.document for index in JourneyDocument.Settings.indexes if "name" in index.document}

    guard = indexes["one_active_journey_per_contact"]
    assert guard["unique"] is True
    assert guard["partialFilterExpression"] == {"status": "active"}


@pytest.mark.asyncio
async def test_smtp_mailer_bounds_relay_calls_by_timeout(monkeypatch):
    smtp = MagicMock()
    monkeypatch.setattr("journeys.services.mailer.smtplib.SMTP", smtp)
    settings = Settings(MAIL_FROM="news@example.com", SMTP_USE_TLS=False, SMTP_TIMEOUT_SECONDS=12, _env_file=None)

    delivery_id = await SMTPMailer(settings).send("ada@example.com", "Hi", "<p>Hi</p>", {"journey_id": "j-1"})

    assert delivery_id.endswith("@example.com>")
    assert smtp.call_args.kwargs["timeout"] == 12
    smtp.return_value.__enter__.return_value.send_message.assert_called_once()


def test_default_smtp_timeout_is_shorter_than_claim_lease():
    settings = Settings(_env_file=None)

    assert settings.SMTP_TIMEOUT_SECONDS < settings.CLAIM_LEASE_SECONDS


def test_event_task_runs_once_and_surfaces_failures(monkeypatch):
    broken = MagicMock()
    broken.handle_event = AsyncMock(side_effect=RuntimeError("db down"))

    async def engine():
        return broken

    monkeypatch.setattr(tasks, "_engine", engine)

    with pytest.raises(RuntimeError):
        tasks.process_event_task.run({"event_type": "contact_created", "contact_id": "contact-1"})

    broken.handle_event.assert_awaited_once()
    assert not getattr(tasks.process_event_task, "autoretry_for", ())
