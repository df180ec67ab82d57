import logging
import sys
from typing import Any

import structlog

from .settings import Settings, get_settings

JOB_CONTEXT_KEYS = ("job_id", "job_type", "owner_id", "attempts")


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for a worker or CLI process.

    Debug runs get a console renderer with the calling function; everything
    else writes one JSON object per line.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors += [
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            ),
            structlog.dev.ConsoleRenderer(),
        ]
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_worker_context(worker_id: str) -> None:
    structlog.contextvars.bind_contextvars(worker_id=worker_id)


def bind_job_context(job_id: str, job_type: str, **context: Any) -> None:
    """Attach job identifiers to every log line emitted while a job runs.

    Each job runs in its own asyncio task, which copies the current context,
    so bindings made here do not leak into sibling jobs.
    """
    structlog.contextvars.bind_contextvars(job_id=job_id, job_type=job_type, **context)


def unbind_job_context() -> None:
    structlog.contextvars.unbind_contextvars(*JOB_CONTEXT_KEYS)
