"""
Database connection for the business plan service
"""

import motor.motor_asyncio

from bizplan.config import config
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

# Global database instance
_async_client = None
_async_db = None


async def get_async_database():
    """Get async database instance for motor"""
    global _async_client, _async_db

    if _async_db is None:
        mongo_uri = config.MONGODB_URI_AUTH or config.MONGODB_URI
        _async_client = motor.motor_asyncio.AsyncIOMotorClient(
            mongo_uri, serverSelectionTimeoutMS=10000
        )
        _async_db = _async_client[config.MONGODB_NAME]

        # Test connection
        await _async_client.admin.command("ping")
        logger.info(f"✅ MongoDB connection successful - database: {config.MONGODB_NAME}")

    return _async_db


def close_async_database():
    global _async_client, _async_db
    if _async_client is not None:
        _async_client.close()
    _async_client = None
    _async_db = None
