import asyncio
import logging

from journeys.celery_config import celery_app
from journeys.config import get_settings
from journeys.db.init import init_db
from journeys.models.event import TriggerEvent
from journeys.services.engine import JourneyEngine, build_engine

logger = logging.getLogger(__name__)


async def _engine() -> JourneyEngine:
    settings = get_settings()
    if settings.STORAGE_BACKEND == "mongo":
        # Each task runs in a fresh event loop, so Motor/Beanie bind to it here.
        await init_db(settings)
    return build_engine(settings)


@celery_app.task(name="journeys.tasks.process_event_task", acks_late=True)
def process_event_task(event_data: dict):
    """Run an inbound event through goals, branch waiters and the trigger matcher."""
    event = TriggerEvent.model_validate(event_data)

    async def process():
        engine = await _engine()
        report = await engine.handle_event(event)
        logger.info(
            f"[TRIGGER] Event {event.event_id} ({event.event_type}) processed: "
            f"{len(report.enrollments)} enrollment(s), {len(report.goals)} goal(s)"
        )
        return report.to_dict()

    try:
        return asyncio.run(process())
    except Exception as e:
        logger.error(f"=== PROCESS_EVENT_TASK FAILED ===")
        logger.error(f"Event: {event.event_id} ({event.event_type})")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="journeys.tasks.tick_task", acks_late=True)
def tick_task():
    """Execute the due action of every journey whose next action time has passed."""

    async def tick():
        engine = await _engine()
        report = await engine.tick()
        return {"now": report.now.isoformat(), "claimed": report.claimed}

    try:
        return asyncio.run(tick())
    except Exception as e:
        logger.error(f"=== TICK_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="journeys.tasks.maintenance_task", acks_late=True)
def maintenance_task():
    """Release expired journey claims and repair duplicate active journeys."""

    async def maintain():
        engine = await _engine()
        return await engine.maintenance()

    try:
        result = asyncio.run(maintain())
        logger.info(f"[SCHEDULER] Maintenance completed: {result}")
        return result
    except Exception as e:
        logger.error(f"=== MAINTENANCE_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise
