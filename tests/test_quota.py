from unittest.mock import AsyncMock

import pytest

from orchestrator.core.exceptions import (
    ExternalServiceError,
    PermanentJobError,
    QuotaExceededError,
)
from orchestrator.jobs.models import JobStatus, now_ms
from orchestrator.jobs.quota import QuotaCompensator, current_period_key
from orchestrator.jobs.retry import RetryScheduler
from orchestrator.jobs.schemas import QuotaReservationIn

RESERVATION = QuotaReservationIn(period_key="2026-10", metric="videos", amount=2)


@pytest.fixture
def mock_ledger():
    ledger = AsyncMock()
    ledger.rollback_quota = AsyncMock(return_value=None)
    return ledger


@pytest.fixture
def mock_scheduler(store, settings, mock_ledger):
    return RetryScheduler(store, settings, quota=QuotaCompensator(store, mock_ledger))


def test_current_period_key_format():
    from datetime import datetime, UTC

    assert current_period_key(datetime(2026, 3, 9, tzinfo=UTC)) == "2026-03"


class TestUsageLedger:
    async def test_reserve_and_rollback(self, ledger):
        reservation = await ledger.reserve_quota("user-1", "videos", limit=5, amount=3)

        assert reservation.amount == 3
        assert reservation.period_key == current_period_key()
        assert await ledger.get_used("user-1", "videos") == 3

        await ledger.rollback_quota("user-1", reservation.period_key, "videos", 3)
        assert await ledger.get_used("user-1", "videos") == 0

    async def test_reserve_rejects_over_limit(self, ledger):
        await ledger.reserve_quota("user-1", "videos", limit=5, amount=4)

        with pytest.raises(QuotaExceededError) as exc_info:
            await ledger.reserve_quota("user-1", "videos", limit=5, amount=2)

        assert exc_info.value.used == 4
        assert await ledger.get_used("user-1", "videos") == 4

    async def test_rollback_clamps_at_zero(self, ledger):
        reservation = await ledger.reserve_quota("user-1", "videos", limit=5, amount=1)

        await ledger.rollback_quota("user-1", reservation.period_key, "videos", 3)

        assert await ledger.get_used("user-1", "videos") == 0

    async def test_rollback_without_usage_is_safe(self, ledger):
        await ledger.rollback_quota("nobody", "2026-10", "videos", 1)
        assert await ledger.get_used("nobody", "videos", "2026-10") == 0


class TestQuotaCompensation:
    async def test_terminal_failure_rolls_back_exactly_once(
        self, store, create_job, mock_scheduler, mock_ledger
    ):
        job = await create_job("a", owner_id="user-1", quota_reservation=RESERVATION)
        claimed = await store.claim_next("w", job_id=job.id)

        await mock_scheduler.handle_failure(claimed, PermanentJobError("bad"))
        # A second compensation attempt, e.g. from another path, is a no-op
        assert not await mock_scheduler.quota.rollback_for_job(job.id)

        mock_ledger.rollback_quota.assert_awaited_once_with("user-1", "2026-10", "videos", 2)
        row = await store.get_job(job.id)
        assert row.status == JobStatus.FAILED.value
        assert row.quota_rolled_back_at is not None

    async def test_success_never_rolls_back(
        self, store, create_job, mock_ledger, dispatcher, registry
    ):
        class Complete:
            async def handle(self, job, ctx):
                await ctx.complete({"ok": True})

        registry.register("a", Complete())
        dispatcher.scheduler.quota = QuotaCompensator(store, mock_ledger)
        job = await create_job("a", quota_reservation=RESERVATION)

        await dispatcher.dispatch(await store.claim_next("w", job_id=job.id))

        mock_ledger.rollback_quota.assert_not_awaited()
        assert (await store.get_job(job.id)).quota_rolled_back_at is None

    async def test_retryable_failure_rolls_back_once_across_attempts(
        self, store, create_job, mock_scheduler, mock_ledger
    ):
        job = await create_job("a", owner_id="user-1", quota_reservation=RESERVATION)

        claimed = await store.claim_next("w", job_id=job.id)
        await mock_scheduler.handle_failure(claimed, TimeoutError("timed out"))

        assert (await store.get_job(job.id)).status == JobStatus.PENDING.value
        mock_ledger.rollback_quota.assert_awaited_once_with("user-1", "2026-10", "videos", 2)

        claimed = await store.claim_next("w", at_ms=now_ms() + 60_000, job_id=job.id)
        await mock_scheduler.handle_failure(claimed, PermanentJobError("bad"))

        assert (await store.get_job(job.id)).status == JobStatus.FAILED.value
        mock_ledger.rollback_quota.assert_awaited_once()

    async def test_dispatched_retryable_error_rolls_back(
        self, store, create_job, mock_ledger, dispatcher, registry
    ):
        class Unavailable:
            async def handle(self, job, ctx):
                raise ExternalServiceError("prov", "HTTP 503", retryable=True)

        registry.register("a", Unavailable())
        dispatcher.scheduler.quota = QuotaCompensator(store, mock_ledger)
        job = await create_job("a", owner_id="user-1", quota_reservation=RESERVATION)

        await dispatcher.dispatch(await store.claim_next("w", job_id=job.id))

        row = await store.get_job(job.id)
        assert row.status == JobStatus.PENDING.value
        assert row.quota_rolled_back_at is not None
        mock_ledger.rollback_quota.assert_awaited_once_with("user-1", "2026-10", "videos", 2)

    async def test_ledger_failure_is_logged_not_raised(
        self, store, create_job, mock_scheduler, mock_ledger
    ):
        mock_ledger.rollback_quota.side_effect = RuntimeError("ledger down")
        job = await create_job("a", quota_reservation=RESERVATION)
        claimed = await store.claim_next("w", job_id=job.id)

        await mock_scheduler.handle_failure(claimed, PermanentJobError("bad"))

        assert (await store.get_job(job.id)).status == JobStatus.FAILED.value
        mock_ledger.rollback_quota.assert_awaited_once()

    async def test_job_without_reservation_is_ignored(
        self, store, create_job, mock_scheduler, mock_ledger
    ):
        job = await create_job("a")
        claimed = await store.claim_next("w", job_id=job.id)

        await mock_scheduler.handle_failure(claimed, PermanentJobError("bad"))

        mock_ledger.rollback_quota.assert_not_awaited()

    async def test_rollback_against_usage_ledger(
        self, store, create_job, ledger, scheduler
    ):
        reservation = await ledger.reserve_quota("user-1", "videos", limit=10, amount=2)
        job = await create_job(
            "a",
            owner_id="user-1",
            quota_reservation=QuotaReservationIn(
                period_key=reservation.period_key, metric="videos", amount=2
            ),
        )
        claimed = await store.claim_next("w", job_id=job.id)

        await scheduler.handle_failure(claimed, PermanentJobError("bad"))

        assert await ledger.get_used("user-1", "videos") == 0
