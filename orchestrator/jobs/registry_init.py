"""
Job registry initialization.

Registers the built-in job handlers and chain rules.
"""

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings, get_settings
from orchestrator.core.registries import JobRegistry, job_registry
from orchestrator.jobs.chainer import ChainRule
from orchestrator.jobs.handlers import EchoHandler, WebhookDeliveryHandler

logger = get_logger(__name__)

# A completed echo job may ask for its payload to be delivered as a webhook.
CHAIN_RULES: list[ChainRule] = [
    ChainRule(source_type="echo", next_type="webhook_delivery", suffix="webhook"),
]


def register_job_handlers(
    settings: Settings | None = None, registry: JobRegistry | None = None
) -> None:
    """Register all built-in job handlers; already registered names are kept."""
    settings = settings or get_settings()
    registry = registry or job_registry

    handlers = {
        "echo": EchoHandler(),
        "webhook_delivery": WebhookDeliveryHandler(settings),
    }
    for name, handler in handlers.items():
        if not registry.has(name):
            registry.register(name, handler)

    if settings.environment == "production" and not registry.is_frozen():
        registry.freeze()

    logger.info("Job handlers registered", registered_handlers=registry.list())
