"""
Per-execution context handed to job handlers.
"""

import asyncio
import os
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import MissingCredentialsPolicy, Settings
from orchestrator.core.exceptions import ConfigError, JobRuntimeExceededError
from orchestrator.jobs.breaker import (
    BreakerOptions,
    BreakerRegistry,
    RetryPolicy,
    guarded_external_call,
)
from orchestrator.jobs.models import ClaimedJob
from orchestrator.jobs.retry import FailureOutcome, RetryScheduler, is_retryable_error
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)

T = TypeVar("T")


async def run_with_max_runtime(
    call: Callable[[], Awaitable[T]], max_runtime_ms: int, label: str = "job"
) -> T:
    """
    Race call() against a timer.

    On timeout the call is cancelled at its next await and
    JobRuntimeExceededError is raised. External requests already sent may
    still take effect. A TimeoutError raised by call() itself propagates
    unchanged.
    """
    timer = asyncio.timeout(max_runtime_ms / 1000)
    try:
        async with timer:
            return await call()
    except TimeoutError:
        if not timer.expired():
            raise
        raise JobRuntimeExceededError(
            f"{label} exceeded max runtime of {max_runtime_ms}ms",
            details={"max_runtime_ms": max_runtime_ms},
        ) from None


class JobContext:
    """
    Callbacks a handler uses to report the outcome of its job.

    Only the first ``complete`` or ``fail`` call takes effect; later calls
    are logged and ignored.
    """

    def __init__(
        self,
        job: ClaimedJob,
        store: JobStore,
        scheduler: RetryScheduler,
        settings: Settings,
        breakers: BreakerRegistry,
        env: Mapping[str, str] | None = None,
    ):
        self.job = job
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.breakers = breakers
        self.env = os.environ if env is None else env

        self.completed = False
        self.failure: FailureOutcome | None = None
        self.result: Any = None

    @property
    def finished(self) -> bool:
        return self.completed or self.failure is not None

    def _already_finished(self, action: str) -> bool:
        if self.finished:
            logger.warning(
                "Job outcome already reported, ignoring",
                job_id=str(self.job.id),
                action=action,
            )
            return True
        return False

    async def complete(self, result: Any, summary: str | None = None) -> bool:
        """Mark the job COMPLETED. Returns False if the lease was lost."""
        if self._already_finished("complete"):
            return False

        updated = await self.store.mark_completed(
            self.job.id, self.job.lease_token, result, summary
        )
        self.completed = updated
        if updated:
            self.result = result
            logger.info("Job completed", job_id=str(self.job.id), type=self.job.type)
        else:
            self.failure = FailureOutcome.LEASE_LOST
        return updated

    async def fail(self, error: Any, retryable: bool | None = None) -> FailureOutcome:
        """
        Report a failure.

        ``error`` may be an exception (classified automatically) or a
        message; messages are terminal unless ``retryable`` is True.
        """
        if self._already_finished("fail"):
            return self.failure or FailureOutcome.LEASE_LOST

        self.failure = await self.scheduler.handle_failure(self.job, error, retryable)
        return self.failure

    async def append_summary(self, message: str) -> None:
        await self.store.append_result_summary(self.job.id, message)

    async def require_credentials(self, provider: str, env_names: list[str]) -> bool:
        """
        Check that every named environment variable is set.

        When something is missing the job is finished according to the
        missing-credentials policy (completed as skipped, or failed with a
        ConfigError) and False is returned; the handler should then return.
        """
        missing = [
            name for name in env_names if not (self.env.get(name) or "").strip()
        ]
        if not missing:
            return True

        reason = f"{provider} not configured"
        logger.warning(
            "Missing credentials",
            job_id=str(self.job.id),
            provider=provider,
            missing=missing,
            policy=self.settings.missing_credentials_policy.value,
        )
        if self.settings.missing_credentials_policy == MissingCredentialsPolicy.SKIP:
            await self.complete(
                {"ok": True, "skipped": True, "reason": reason}, f"Skipped: {reason}"
            )
        else:
            await self.fail(ConfigError(reason, details={"missing": missing}))
        return False

    async def guarded_call(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        label: str,
        breaker_key: str | None = None,
        timeout_ms: int | None = None,
        retries: int | None = None,
        is_retryable: Callable[[Any], bool] = is_retryable_error,
    ) -> T:
        """Run an outbound call with the configured timeout, retry and breaker."""
        s = self.settings
        return await guarded_external_call(
            call,
            breaker_key=breaker_key or label,
            label=label,
            timeout_ms=timeout_ms or s.external_call_timeout_ms,
            retry=RetryPolicy(
                retries=s.external_call_retries if retries is None else retries,
                base_delay_ms=s.external_call_base_delay_ms,
                max_delay_ms=s.external_call_max_delay_ms,
            ),
            breaker=BreakerOptions(
                failure_threshold=s.breaker_failure_threshold,
                cooldown_ms=s.breaker_cooldown_ms,
            ),
            is_retryable=is_retryable,
            registry=self.breakers,
        )
