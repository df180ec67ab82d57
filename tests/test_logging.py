import logging

import pytest
import structlog

from orchestrator.config.logging import (
    bind_job_context,
    bind_worker_context,
    setup_logging,
    unbind_job_context,
)


@pytest.fixture(autouse=True)
def clean_logging_state():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_job_context_is_bound_and_unbound():
    bind_worker_context("worker-1")
    bind_job_context("job-1", "echo", owner_id="user-1", attempts=2)

    assert structlog.contextvars.get_contextvars() == {
        "worker_id": "worker-1",
        "job_id": "job-1",
        "job_type": "echo",
        "owner_id": "user-1",
        "attempts": 2,
    }

    unbind_job_context()

    assert structlog.contextvars.get_contextvars() == {"worker_id": "worker-1"}


def test_production_logging_renders_json(settings):
    setup_logging(settings.model_copy(update={"debug": False}))

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)


def test_debug_logging_renders_console(settings):
    setup_logging(settings.model_copy(update={"debug": True}))

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
