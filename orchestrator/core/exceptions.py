from typing import Any


class OrchestratorError(Exception):
    """Base exception for the job orchestrator."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigError(OrchestratorError):
    """Raised when required configuration (usually credentials) is missing."""


class PermanentJobError(OrchestratorError):
    """Raised by handlers for failures that a retry cannot fix.

    Invalid payloads and missing prerequisite records belong here.
    """


class ExternalServiceError(OrchestratorError):
    """Structured failure from a third-party dependency.

    ``retryable`` is the authoritative classification for the scheduler;
    ``raw_snippet`` is diagnostic context and is never shown unencoded.
    """

    marker = "ExternalServiceError"

    def __init__(
        self,
        provider: str,
        message: str,
        retryable: bool,
        status: int | None = None,
        raw_snippet: str | None = None,
    ):
        super().__init__(
            message,
            details={"provider": provider, "status": status, "retryable": retryable},
        )
        self.provider = provider
        self.retryable = retryable
        self.status = status
        self.raw_snippet = raw_snippet


class ExternalCallTimeoutError(OrchestratorError, TimeoutError):
    """Raised when a guarded external call exceeds its timeout."""


class CircuitOpenError(OrchestratorError):
    """Raised without calling the dependency while its breaker is open."""

    def __init__(self, label: str, breaker_key: str):
        super().__init__(
            f"{label} blocked: circuit breaker open",
            details={"breaker_key": breaker_key},
        )
        self.breaker_key = breaker_key


class JobRuntimeExceededError(OrchestratorError):
    """Raised when a handler runs longer than the configured max runtime."""


class InvalidTransitionError(OrchestratorError):
    """Raised on a job status change the lifecycle does not allow."""


class QuotaExceededError(OrchestratorError):
    """Raised when a reservation would push usage past the plan limit."""

    def __init__(self, metric: str, used: int, limit: int):
        super().__init__(
            f"Quota exceeded: {metric} ({used}/{limit})",
            details={"metric": metric, "used": used, "limit": limit},
        )
        self.metric = metric
        self.used = used
        self.limit = limit
