import logging

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from journeys.config import Settings, get_settings
from journeys.db.documents import DOCUMENT_MODELS

logger = logging.getLogger(__name__)


async def init_db(settings: Settings | None = None):
    settings = settings or get_settings()
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)

        # Test the connection
        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        await init_beanie(database=client[settings.DB_NAME], document_models=DOCUMENT_MODELS)
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
