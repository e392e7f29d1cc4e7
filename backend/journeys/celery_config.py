from celery import Celery

from journeys.config import get_settings

settings = get_settings()

celery_app = Celery(
    "journey_engine_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["journeys.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_always_eager=False,
    task_eager_propagates=True,
    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
    # Worker settings
    worker_max_tasks_per_child=1000,
    # Result backend settings
    result_expires=3600,  # 1 hour
    # Connection error handling
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    result_backend_transport_options={
        "retry_on_timeout": True,
        "max_retries": 3,
    },
)
