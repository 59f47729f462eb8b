from typing import Tuple
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from loguru import logger

from intake_workflow.config import WorkflowSettings


def create_mongo_client(settings: WorkflowSettings) -> AsyncIOMotorClient:
    logger.info(f"Initializing MongoDB client (pool size: {settings.mongo_max_pool_size})")
    return AsyncIOMotorClient(
        settings.mongo_uri,
        maxPoolSize=settings.mongo_max_pool_size,
        serverSelectionTimeoutMS=settings.mongo_server_selection_timeout_ms,
        timeoutMS=settings.mongo_operation_timeout_ms,
    )


def get_database(client: AsyncIOMotorClient, settings: WorkflowSettings) -> AsyncIOMotorDatabase:
    return client[settings.mongo_db_name]


async def check_connection(db: AsyncIOMotorDatabase) -> Tuple[bool, str]:
    try:
        await db.command("ping")
        return True, "connected"
    except Exception as e:
        logger.error(f"MongoDB ping failed: {e}")
        return False, str(e)


async def close_mongo_client(client: AsyncIOMotorClient):
    if client is not None:
        logger.info("Closing MongoDB client connection")
        client.close()
