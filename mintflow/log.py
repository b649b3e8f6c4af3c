"""Structured logging configuration (structlog on top of stdlib logging).

:func:`setup_logging` is called once from the FastAPI lifespan.  Modules never
configure logging themselves; they only do::

    logger = structlog.get_logger(__name__)
    logger.info("upload_complete", content_id=cid, size_bytes=n)

In production (``json_output=True``) every event is one JSON line; in
development the console renderer is used.
"""
from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "info", json_output: bool = False) -> None:
    """Configure structlog and route stdlib loggers through the same renderer."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
