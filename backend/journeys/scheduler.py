import logging

from journeys.celery_config import celery_app
from journeys.config import get_settings
from journeys.tasks import maintenance_task, tick_task

logger = logging.getLogger(__name__)


# Configure periodic tasks
@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    settings = get_settings()
    logger.info("Setting up periodic tasks...")

    sender.add_periodic_task(
        float(settings.TICK_INTERVAL_SECONDS),
        tick_task.s(),
        name="journey-tick",
    )

    sender.add_periodic_task(
        float(settings.MAINTENANCE_INTERVAL_SECONDS),
        maintenance_task.s(),
        name="journey-maintenance",
    )

    logger.info("Periodic tasks configured successfully")
