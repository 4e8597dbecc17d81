"""structlog setup shared by every Koya module.

Events are snake_case names with key/value context, for example::

    logger.warning(
        "webhook_delivery_retry_scheduled",
        webhook_id="whk_1",
        delivery_id="dlv_1",
        attempt=2,
    )

``json`` output is meant for log aggregation in production, where
``webhook_delivery_exhausted`` and ``inbound_webhook_permanently_failed``
are the events to alert on. ``text`` renders the same events in color for
local development.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Literal

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

    from koya.config import Settings

LogFormat = Literal["json", "text"]

_configured = False


def _renderers(format: str) -> list[Processor]:
    if format.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(level: str = "INFO", format: LogFormat | str = "json") -> None:
    """Route structlog through stdlib logging at ``level``.

    Unknown level names fall back to INFO. Any format other than ``json``
    gets the console renderer. Safe to call again; the last call wins.
    """
    global _configured

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderers(format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def configure_from_settings(settings: Settings) -> None:
    configure_logging(level=settings.log_level, format=settings.log_format)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger for ``name``; falls back to JSON at INFO if nothing was configured."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def job_context(job: str, **fields: Any) -> Iterator[None]:
    """Tag every event logged inside the block with ``job`` and ``fields``.

    Example:
        ```python
        with job_context("webhook_retries", batch_size=100):
            await scheduler.process_retries()
        ```
    """
    with structlog.contextvars.bound_contextvars(job=job, **fields):
        yield
