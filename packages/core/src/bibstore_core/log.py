"""
Logging configuration.

One entry point, `configure_logging()`, sets up structlog on top of stdlib
logging. Modules get their loggers with `structlog.get_logger(__name__)` and
log events with key/value context:

    logger = structlog.get_logger(__name__)
    logger.info("record_saved", base="fennica", record_id="1")

Level and format default to the `BIBSTORE_LOG_LEVEL` / `BIBSTORE_LOG_FORMAT`
settings.
"""

from __future__ import annotations

import logging
import sys
from typing import Literal

import structlog
from structlog.types import Processor

from bibstore_core.settings import settings

_configured = False


def configure_logging(
    level: str | None = None,
    format: Literal["json", "console"] | None = None,
    force: bool = False,
) -> None:
    """
    Configure structured logging for the process.

    Subsequent calls are no-ops unless force=True.
    """
    global _configured

    if _configured and not force:
        return

    log_level = (level or settings.log_level).upper()
    log_format = (format or settings.log_format).lower()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=False,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
        force=True,
    )
    for logger_name in ("bibstore_core", "datastore_service"):
        logging.getLogger(logger_name).setLevel(getattr(logging, log_level))

    _configured = True


def progress_percent(current: int, total: int) -> float:
    """Percentage rounded to two decimals, as shown in progress log lines."""
    if total <= 0:
        return 100.0
    return round(current / total * 100, 2)
