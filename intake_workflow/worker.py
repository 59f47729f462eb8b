"""
Workflow worker: one consumer per channel plus the interval timers.

Run with ``python -m intake_workflow.worker``. Any number of workers may run
against the same database; message leases and conditional record updates keep
them from doing the same work twice.
"""

import asyncio
import signal
import sys
from typing import Awaitable, Callable

import aiohttp
from loguru import logger

from intake_workflow.config import REQUIRED_WORKER_ENV_VARS, WorkflowSettings, validate_startup
from intake_workflow.database import close_mongo_client, create_mongo_client, get_database
from intake_workflow.dependencies import WorkflowContainer, build_container
from intake_workflow.exceptions import TokenRefreshError
from intake_workflow.logging_config import setup_logging


async def run_periodically(name: str, interval_seconds: float, job: Callable[[], Awaitable],
                           stop_event: asyncio.Event, run_immediately: bool = False):
    """Run ``job`` every ``interval_seconds`` until ``stop_event`` is set. Failures are logged, not fatal."""
    logger.info(f"Timer started: {name} every {interval_seconds}s")
    if not run_immediately:
        await _sleep_or_stop(stop_event, interval_seconds)

    while not stop_event.is_set():
        try:
            await job()
        except Exception as e:
            logger.error(f"Timer {name} failed: {e}")
        await _sleep_or_stop(stop_event, interval_seconds)
    logger.info(f"Timer stopped: {name}")


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float):
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def run_worker(container: WorkflowContainer, stop_event: asyncio.Event):
    settings = container.settings

    try:
        await container.token_refresh.ensure_fresh()
    except TokenRefreshError as e:
        # Stages retry on CredentialUnavailable until the timer succeeds
        logger.error(f"Initial token refresh failed: {e}")

    tasks = [
        asyncio.create_task(
            container.dispatcher.consume(stage, stop_event, poll_interval=settings.poll_interval_seconds)
        )
        for stage in container.channel_stages
    ]
    tasks.append(asyncio.create_task(run_periodically(
        "token_refresh", settings.token_refresh_interval_seconds, container.token_refresh.refresh, stop_event
    )))
    tasks.append(asyncio.create_task(run_periodically(
        "reconciler", settings.reconcile_interval_seconds, container.reconciler.run_once, stop_event
    )))
    tasks.append(asyncio.create_task(run_periodically(
        "intake_poll", settings.intake_poll_interval_seconds, container.intake_processor.run_cycle, stop_event,
        run_immediately=True,
    )))

    logger.info(f"Worker running with {len(tasks)} tasks")
    await asyncio.gather(*tasks)


async def main():
    setup_logging("worker")
    settings = WorkflowSettings.from_env()

    mongo_client = create_mongo_client(settings)
    db = get_database(mongo_client, settings)
    await validate_startup(settings, db, REQUIRED_WORKER_ENV_VARS)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with aiohttp.ClientSession() as http_session:
        container = build_container(settings, db, http_session=http_session)
        await container.ensure_indexes()
        try:
            await run_worker(container, stop_event)
        finally:
            await close_mongo_client(mongo_client)
            logger.info("Worker shutdown complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
