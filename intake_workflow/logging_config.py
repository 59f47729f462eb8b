import os
import sys
import logging
from typing import Optional

from loguru import logger

# Driver chatter drowns out stage logs at INFO
QUIET_LOGGERS = ['pymongo', 'pymongo.command', 'motor', 'aiohttp.access', 'aiohttp.client', 'httpx', 'httpcore']

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[component]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(component: str = "api", debug: Optional[bool] = None):
    """Configure loguru once per process.

    ``component`` tags every line (``api`` or ``worker``) so both processes can
    share one log stream. Stages bind ``stage``, ``record_id`` and
    ``correlation_id``; those land in the JSON output under ``extra``.
    """
    if debug is None:
        debug = os.getenv("DEBUG", "false").lower() in ["true", "1", "yes"]

    env = os.getenv("ENV", "local")
    level = "DEBUG" if debug else "INFO"

    logger.remove()
    logger.configure(extra={"component": component})

    if env == "production":
        logger.add(sys.stderr, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        logger.add(log_file, level=level, serialize=True, rotation="50 MB", retention="14 days", enqueue=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured (component={component}, env={env}, level={level})")
