import asyncio
import logging

from celery.signals import worker_process_init

from journeys.celery_config import celery_app
from journeys.config import get_settings
from journeys.db.init import init_db

# Entry point for the Celery worker. Importing the scheduler module registers
# the periodic tick and maintenance tasks for beat.
import journeys.scheduler  # noqa: F401

logging.basicConfig(level=get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Check the database is reachable when a worker process starts."""
    settings = get_settings()
    if settings.STORAGE_BACKEND != "mongo":
        logger.warning("Celery worker running with in-memory storage; state is not shared between processes.")
        return
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db(settings))
        logger.info("Database connection initialized for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        raise


# The 'celery' variable is automatically detected by Celery
celery = celery_app
