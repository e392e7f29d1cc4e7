import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from journeys.api.campaigns import router as campaigns_router
from journeys.api.events import router as events_router
from journeys.config import Settings, get_settings
from journeys.db.init import init_db
from journeys.services.engine import CeleryEventSource, EventSource, InlineEventSource, JourneyEngine, build_engine
from journeys.services.ticker import SchedulerLoop

logging.basicConfig(level=get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[JourneyEngine] = None,
    event_source: Optional[EventSource] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=== APPLICATION STARTUP ===")
        logger.info(f"Starting {settings.APP_NAME} with {settings.STORAGE_BACKEND} storage")
        if getattr(app.state, "engine", None) is None:
            if settings.STORAGE_BACKEND == "mongo":
                try:
                    await init_db(settings)
                    logger.info("Database initialized successfully")
                except Exception as e:
                    logger.error(f"Database initialization failed: {e}", exc_info=True)
                    raise
            app.state.engine = build_engine(settings)

        if getattr(app.state, "event_source", None) is None:
            if settings.EMBEDDED_SCHEDULER or settings.STORAGE_BACKEND == "memory":
                app.state.event_source = InlineEventSource(app.state.engine)
            else:
                app.state.event_source = CeleryEventSource()

        loop = None
        if settings.EMBEDDED_SCHEDULER:
            loop = SchedulerLoop(
                app.state.engine,
                interval_seconds=settings.TICK_INTERVAL_SECONDS,
                maintenance_every=max(1, settings.MAINTENANCE_INTERVAL_SECONDS // settings.TICK_INTERVAL_SECONDS),
            )
            await loop.start()
        else:
            logger.info("Scheduler tick runs in Celery beat (separate process).")
        logger.info("=== APPLICATION STARTUP COMPLETE ===")

        yield

        logger.info("=== APPLICATION SHUTDOWN ===")
        if loop is not None:
            await loop.stop()
        if isinstance(app.state.event_source, InlineEventSource):
            await app.state.event_source.drain()
        logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.event_source = event_source

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy" if app.state.engine is not None else "starting",
            "storage": settings.STORAGE_BACKEND,
            "embedded_scheduler": settings.EMBEDDED_SCHEDULER,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(events_router, prefix="/api", tags=["events"])
    app.include_router(campaigns_router, prefix="/api", tags=["campaigns"])
    return app


app = create_app()
