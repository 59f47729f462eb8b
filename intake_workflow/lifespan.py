from contextlib import asynccontextmanager

import aiohttp
from fastapi import FastAPI
from loguru import logger

from intake_workflow.config import REQUIRED_API_ENV_VARS, WorkflowSettings, validate_startup
from intake_workflow.database import close_mongo_client, create_mongo_client, get_database
from intake_workflow.dependencies import build_container


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests hand in a prebuilt container around an in-memory database
    if getattr(app.state, "container", None) is not None:
        await app.state.container.ensure_indexes()
        yield
        return

    logger.info("Application starting...")
    settings = WorkflowSettings.from_env()

    mongo_client = create_mongo_client(settings)
    db = get_database(mongo_client, settings)
    await validate_startup(settings, db, REQUIRED_API_ENV_VARS)

    http_session = aiohttp.ClientSession()
    logger.info("HTTP session created")

    container = build_container(settings, db, http_session=http_session)
    await container.ensure_indexes()
    app.state.container = container
    logger.info("Application ready")

    yield

    logger.info("Shutdown signal received...")
    await http_session.close()
    logger.info("HTTP session closed")
    await close_mongo_client(mongo_client)
    logger.info("Graceful shutdown complete")
