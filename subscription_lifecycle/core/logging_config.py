"""
Loguru-based logging for the subscription lifecycle service.

Service modules log through ``logging.getLogger(__name__)`` with ``extra={...}``;
the app entrypoint and request middleware use loguru loggers bound to a
subscriber / subscription / request id.
"""

import sys
import logging
import uuid
from loguru import logger

from .config import settings

# Libraries that are chatty at INFO; kept at WARNING unless debugging them directly
NOISY_LIBRARIES = (
    "uvicorn.access",
    "pika",
    "sqlalchemy.engine",
    "alembic",
    "apscheduler",
    "stripe",
    "httpx",
    "urllib3",
)

PLAIN_FORMAT = (
    "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} {level: <8} [{name}:{line}] {message} {extra}{exception}"
)
COLOR_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <8}</level> "
    "<cyan>[{name}:{line}]</cyan> <level>{message}</level> <blue>{extra}</blue>{exception}"
)


def setup_logging(log_level: str = None, log_file: str = None) -> None:
    """
    Route stdlib logging and loguru to stdout at a single level.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR; defaults to ``settings.LOG_LEVEL``
        log_file: optional rotating file sink; defaults to ``settings.LOG_FILE``
    """
    level = (log_level or settings.LOG_LEVEL).upper()
    log_file = log_file or settings.LOG_FILE
    production = settings.ENVIRONMENT == "production"

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        force=True
    )
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()
    logger.add(
        sys.stdout,
        format=PLAIN_FORMAT if production else COLOR_FORMAT,
        level=level,
        colorize=not production,
        enqueue=True
    )
    if log_file:
        logger.add(log_file, level=level, rotation="50 MB", retention="14 days", enqueue=True)

    logger.info(f"Logging ready ({settings.ENVIRONMENT}, {level})")


def get_logger(name: str = None):
    return logger.bind(module=name or "subscription-lifecycle")


def set_request_context(request_id: str = None, subscriber_id: str = None, subscription_id: str = None):
    """Bind whichever ids are known to a loguru logger for the current request."""
    context = {
        key: value
        for key, value in (
            ("request_id", request_id),
            ("subscriber_id", subscriber_id),
            ("subscription_id", subscription_id),
        )
        if value
    }
    return logger.bind(**context)


def generate_request_id() -> str:
    return uuid.uuid4().hex
