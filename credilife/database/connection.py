import logging
import re

import motor.motor_asyncio
from beanie import init_beanie

from credilife.core.config import settings
from credilife.core.exceptions import ConfigurationError
from credilife.database.models.notification_log_model import NotificationLog

logger = logging.getLogger(__name__)


def _mask_mongo_uri(uri: str) -> str:
    """Never log full connection URIs, they may contain credentials."""
    m = re.match(r'(?P<prefix>mongodb(?:\+srv)?://)(?:(?P<creds>[^@]+)@)?(?P<rest>.+)', uri or "")
    if not m:
        return "mongodb://<redacted>"
    host_part = m.group('rest').split('/')[0]
    return f"{m.group('prefix')}***@{host_part}"

async def init_db():
    """Connect to MongoDB and register the notification log document with Beanie."""
    mongodb_uri = settings.MONGODB_URI
    mongodb_db_name = settings.MONGODB_DB_NAME

    if not mongodb_uri:
        logger.error("MONGODB_URI is not set in environment variables")
        raise ConfigurationError("MONGODB_URI is not set in environment variables")
    if not mongodb_db_name:
        logger.error("MONGODB_DB_NAME is not set in environment variables")
        raise ConfigurationError("MONGODB_DB_NAME is not set in environment variables")

    logger.info(f"Attempting to connect to MongoDB at: {_mask_mongo_uri(mongodb_uri)}")
    logger.info("Database name: %s", mongodb_db_name)

    client = motor.motor_asyncio.AsyncIOMotorClient(
        mongodb_uri,
        serverSelectionTimeoutMS=30000,
        connectTimeoutMS=30000,
        socketTimeoutMS=30000,
        retryWrites=True,
    )

    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}", exc_info=True)
        raise

    logger.info("Successfully connected to MongoDB!")
    database = client[mongodb_db_name]

    await init_beanie(database, document_models=[NotificationLog])
    logger.info("Beanie initialized successfully!")
    return database
