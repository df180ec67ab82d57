"""
Failure classification and job-level retry scheduling.

A retryable failure re-queues the job as PENDING with an exponential delay;
anything else fails it terminally. Either way the job's quota reservation is
released, at most once per job.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.exceptions import (
    CircuitOpenError,
    ConfigError,
    ExternalServiceError,
    JobRuntimeExceededError,
    PermanentJobError,
)
from orchestrator.core.sanitize import to_b64_snippet, to_safe_text_snippet
from orchestrator.jobs.models import ClaimedJob, now_ms
from orchestrator.jobs.store import JobStore

if TYPE_CHECKING:
    from orchestrator.jobs.quota import QuotaCompensator

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "network",
    "econnreset",
    "connection reset",
    "connection refused",
    "fetch failed",
    "429",
    "rate limit",
    "too many requests",
    "500",
    "502",
    "503",
    "504",
    "service unavailable",
)

_TERMINAL_TYPES = (ConfigError, PermanentJobError, JobRuntimeExceededError)


def compute_backoff_ms(attempts: int, base_ms: int, max_ms: int) -> int:
    """Delay before retry number ``attempts``: min(base * 2^(attempts-1), max)."""
    exponent = max(0, attempts - 1)
    return min(max_ms, base_ms * (2**exponent))


def _looks_external(error: Any) -> bool:
    if isinstance(error, ExternalServiceError):
        return True
    if getattr(error, "marker", None) == ExternalServiceError.marker:
        return True
    return isinstance(getattr(error, "provider", None), str) and isinstance(
        getattr(error, "retryable", None), bool
    )


def _status_code(error: Any) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def error_message(error: Any) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or error.__class__.__name__


def is_retryable_error(error: Any) -> bool:
    """Decide whether a failure is worth retrying later."""
    if _looks_external(error):
        return bool(error.retryable)
    if isinstance(error, _TERMINAL_TYPES):
        return False
    if isinstance(error, (TimeoutError, CircuitOpenError)):
        return True
    status = _status_code(error)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES
    message = error_message(error).lower()
    return any(pattern in message for pattern in _RETRYABLE_PATTERNS)


@dataclass(frozen=True)
class FailureInfo:
    """Normalized view of a handler failure."""

    message: str
    retryable: bool
    provider: str | None = None
    raw_snippet: str | None = None


def classify_failure(error: Any, retryable: bool | None = None) -> FailureInfo:
    """
    Normalize an exception or message for persistence.

    Plain strings are explicit failures reported by a handler; they are
    terminal unless ``retryable`` says otherwise.
    """
    if isinstance(error, str):
        return FailureInfo(message=error, retryable=bool(retryable))

    provider = None
    raw_snippet = None
    if _looks_external(error):
        provider = error.provider
        for attr in ("raw_snippet", "rawSnippet", "raw", "body"):
            raw = getattr(error, attr, None)
            if isinstance(raw, str) and raw:
                raw_snippet = to_b64_snippet(raw)
                break

    return FailureInfo(
        message=error_message(error),
        retryable=is_retryable_error(error) if retryable is None else retryable,
        provider=provider,
        raw_snippet=raw_snippet,
    )


class FailureOutcome(str, Enum):
    REQUEUED = "requeued"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"


class RetryScheduler:
    """Turns a handler failure into a backoff re-queue or a terminal failure."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        quota: "QuotaCompensator | None" = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.settings = settings
        self.quota = quota
        self.clock = clock

    def backoff_ms(self, attempts: int) -> int:
        return compute_backoff_ms(
            attempts, self.settings.job_retry_base_ms, self.settings.job_retry_max_ms
        )

    async def handle_failure(
        self, job: ClaimedJob, error: Any, retryable: bool | None = None
    ) -> FailureOutcome:
        """Persist a failure of the claimed job and decide its next state."""
        info = classify_failure(error, retryable)
        attempts = job.meta.attempts + 1
        max_attempts = self.settings.job_max_attempts

        if info.retryable and (max_attempts == 0 or attempts < max_attempts):
            delay_ms = self.backoff_ms(attempts)
            requeued = await self.store.requeue_with_backoff(
                job.id,
                job.lease_token,
                attempts=attempts,
                next_run_at_ms=self.clock() + delay_ms,
                error=info.message,
                transient=True,
                provider=info.provider,
                raw_snippet=info.raw_snippet,
            )
            if not requeued:
                return FailureOutcome.LEASE_LOST
            logger.warning(
                "Job scheduled for retry",
                job_id=str(job.id),
                attempts=attempts,
                delay_ms=delay_ms,
                error=to_safe_text_snippet(info.message),
            )
            if self.quota is not None:
                await self.quota.rollback_for_job(job.id)
            return FailureOutcome.REQUEUED

        message = info.message
        if info.retryable:
            message = f"Max attempts exceeded: {info.message}"

        return await self.fail_terminal(
            job,
            message,
            attempts=attempts,
            transient=info.retryable,
            provider=info.provider,
            raw_snippet=info.raw_snippet,
        )

    async def fail_terminal(
        self,
        job: ClaimedJob,
        message: str,
        *,
        attempts: int | None = None,
        transient: bool = False,
        provider: str | None = None,
        raw_snippet: str | None = None,
    ) -> FailureOutcome:
        """Fail the job for good, then release its quota reservation."""
        failed = await self.store.mark_failed(
            job.id,
            job.lease_token,
            message,
            attempts=attempts,
            transient=transient,
            provider=provider,
            raw_snippet=raw_snippet,
        )
        if not failed:
            return FailureOutcome.LEASE_LOST

        logger.error(
            "Job failed",
            job_id=str(job.id),
            type=job.type,
            error=to_safe_text_snippet(message),
            provider=provider,
        )
        if self.quota is not None:
            await self.quota.rollback_for_job(job.id)
        return FailureOutcome.FAILED
