"""
Structured Logging Configuration

Uses structlog for JSON-formatted, structured logs. Lines logged while a
scheduled job runs carry the job name, its provider_id and elapsed_ms.
"""

import logging
import sys
import time
from typing import Optional

import structlog
from structlog.types import Processor

from ..config import get_settings

# Bound by bind_job_context, rendered as elapsed_ms
JOB_STARTED_KEY = "_job_started"


def setup_logging(log_level: Optional[str] = None):
    """
    Configure structured logging for the ingestion service.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
    """
    settings = get_settings()

    if log_level is None:
        log_level = "DEBUG" if settings.debug else "INFO"

    # Route stdlib loggers (uvicorn, apscheduler, httpx) to stdout too
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_job_elapsed,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.environment == "development":
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_job_context(job: str, provider_id: Optional[str] = None, **fields):
    """Attach the job (and its provider, if any) to every log line of the current task."""
    context = {"job": job, JOB_STARTED_KEY: time.monotonic(), **fields}
    if provider_id is not None:
        context["provider_id"] = provider_id
    structlog.contextvars.bind_contextvars(**context)


def add_job_elapsed(logger, method_name, event_dict):
    """Replace the bound job start time with elapsed_ms since the job started."""
    started = event_dict.pop(JOB_STARTED_KEY, None)
    if started is not None:
        event_dict["elapsed_ms"] = int((time.monotonic() - started) * 1000)
    return event_dict


def clear_job_context():
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "iptv_ingest") -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
