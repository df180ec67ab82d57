"""
Job store: idempotent creation, the atomic claim and every status change.

Each operation runs in its own short transaction. Status changes are single
conditional UPDATE statements guarded by the expected current status, and
writes that finish a RUNNING job also require the lease token handed out by
the claim, so a worker that lost its lease cannot overwrite the row.
"""

import json
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from orchestrator.config.logging import get_logger
from orchestrator.jobs.models import (
    ClaimedJob,
    Job,
    JobStatus,
    QuotaReservation,
    assert_valid_transition,
    now_ms,
    utcnow,
)
from orchestrator.jobs.schemas import JobCreate, JobStatsResponse

logger = get_logger(__name__)

STUCK_JOB_ERROR = "Job stuck RUNNING past timeout; reset by reaper"


def serialize_result(value: Any) -> Any:
    """Return a JSON-safe copy of a handler result."""
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return {"ok": False, "error": "Result not serializable", "value": str(value)}


def _lease_guard(job_id: UUID, lease_token: str):
    return and_(
        Job.id == job_id,
        Job.status == JobStatus.RUNNING.value,
        Job.lease_token == lease_token,
    )


def _released_lease() -> dict[str, Any]:
    return {"locked_by": None, "locked_at": None, "lease_token": None}


class JobStore:
    """Durable job table access shared by producers and workers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # Creation

    async def create_job(self, job_create: JobCreate) -> tuple[Job, bool]:
        """
        Create a PENDING job, or return the existing one for a reused key.

        Returns:
            (job, created) where created is False when the idempotency key
            already existed, including when a concurrent producer won the
            insert race.
        """
        key = job_create.idempotency_key
        if key:
            existing = await self.find_by_idempotency_key(key)
            if existing:
                logger.info(
                    "Job deduplicated",
                    job_id=str(existing.id),
                    idempotency_key=key,
                    type=job_create.type,
                )
                return existing, False

        meta, business = job_create.split()
        job = Job(
            id=uuid4(),
            type=job_create.type,
            owner_id=job_create.owner_id,
            project_ref=job_create.project_ref,
            payload=business,
            idempotency_key=key,
            status=JobStatus.PENDING.value,
            **meta.column_values(),
        )

        async with self._sessions() as session:
            try:
                session.add(job)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if not key:
                    raise
                # Race condition - another producer created the same job
                existing = await self.find_by_idempotency_key(key)
                if existing is None:
                    raise
                logger.info(
                    "Job deduplicated after insert race",
                    job_id=str(existing.id),
                    idempotency_key=key,
                )
                return existing, False

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            type=job.type,
            owner_id=job.owner_id,
            idempotency_key=key,
        )
        return job, True

    async def find_by_idempotency_key(self, key: str) -> Job | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Job).where(Job.idempotency_key == key).limit(1)
            )
            return result.scalar_one_or_none()

    async def get_job(self, job_id: UUID) -> Job | None:
        async with self._sessions() as session:
            return await session.get(Job, job_id)

    # Claiming

    async def list_due(
        self,
        at_ms: int | None = None,
        limit: int = 10,
        exclude_owner_ids: set[str] | None = None,
    ) -> list[tuple[UUID, str]]:
        """List (job_id, owner_id) of claim-eligible jobs, oldest first."""
        at_ms = now_ms() if at_ms is None else at_ms
        query = (
            select(Job.id, Job.owner_id)
            .where(
                Job.status == JobStatus.PENDING.value,
                or_(Job.next_run_at_ms.is_(None), Job.next_run_at_ms <= at_ms),
            )
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(limit)
        )
        if exclude_owner_ids:
            query = query.where(Job.owner_id.not_in(exclude_owner_ids))

        async with self._sessions() as session:
            result = await session.execute(query)
            return [(row.id, row.owner_id) for row in result.all()]

    async def claim_next(
        self,
        worker_id: str,
        at_ms: int | None = None,
        job_id: UUID | None = None,
    ) -> ClaimedJob | None:
        """
        Atomically move the oldest eligible PENDING job to RUNNING.

        A single UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED
        LIMIT 1) RETURNING statement, so concurrent workers never receive the
        same job. Passing job_id restricts the claim to that one candidate.

        Returns None when no job is eligible (or the candidate was taken).
        """
        at_ms = now_ms() if at_ms is None else at_ms
        now = utcnow()

        candidate = aliased(Job)
        eligible = (
            select(candidate.id)
            .where(
                candidate.status == JobStatus.PENDING.value,
                or_(
                    candidate.next_run_at_ms.is_(None),
                    candidate.next_run_at_ms <= at_ms,
                ),
            )
            .order_by(candidate.created_at.asc(), candidate.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_id is not None:
            eligible = eligible.where(candidate.id == job_id)

        assert_valid_transition(JobStatus.PENDING, JobStatus.RUNNING)
        stmt = (
            update(Job)
            .where(
                Job.id == eligible.scalar_subquery(),
                Job.status == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.RUNNING.value,
                locked_by=worker_id,
                locked_at=now,
                lease_token=uuid4().hex,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._sessions() as session:
            result = await session.execute(stmt)
            job = result.scalars().one_or_none()
            await session.commit()

        if job is None:
            return None

        logger.info(
            "Claimed job",
            job_id=str(job.id),
            type=job.type,
            worker_id=worker_id,
            attempts=job.attempts,
        )
        return ClaimedJob.from_row(job)

    async def count_running_for_owner(self, owner_id: str) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count(Job.id)).where(
                    Job.owner_id == owner_id,
                    Job.status == JobStatus.RUNNING.value,
                )
            )
            return result.scalar() or 0

    # Finishing a RUNNING job

    async def _finish(
        self, job_id: UUID, lease_token: str, target: JobStatus, values: dict[str, Any]
    ) -> bool:
        assert_valid_transition(JobStatus.RUNNING, target)
        stmt = (
            update(Job)
            .where(_lease_guard(job_id, lease_token))
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()

        updated = result.rowcount > 0
        if not updated:
            logger.warning(
                "Job update skipped: lease no longer held",
                job_id=str(job_id),
                target_status=target.value,
            )
        return updated

    async def mark_completed(
        self,
        job_id: UUID,
        lease_token: str,
        result: Any,
        summary: str | None = None,
    ) -> bool:
        """Mark a RUNNING job COMPLETED and persist its result."""
        values: dict[str, Any] = {
            "result": serialize_result(result),
            "error": None,
            "next_run_at_ms": None,
            **_released_lease(),
        }
        if summary is not None:
            values["result_summary"] = summary
        return await self._finish(job_id, lease_token, JobStatus.COMPLETED, values)

    async def mark_failed(
        self,
        job_id: UUID,
        lease_token: str,
        error: str,
        *,
        attempts: int | None = None,
        transient: bool = False,
        provider: str | None = None,
        raw_snippet: str | None = None,
    ) -> bool:
        """Mark a RUNNING job terminally FAILED, keeping the message verbatim."""
        default_summary = (
            f"Transient external failure ({provider})" if transient and provider
            else "Transient external failure" if transient
            else f"Job failed ({provider})" if provider
            else "Job failed"
        )
        values: dict[str, Any] = {
            "error": error,
            "last_error": error,
            "last_error_raw": raw_snippet,
            "transient": transient,
            "provider": provider,
            "next_run_at_ms": None,
            "result": {"ok": False, "error": error},
            "result_summary": func.coalesce(Job.result_summary, default_summary),
            **_released_lease(),
        }
        if attempts is not None:
            values["attempts"] = attempts
        return await self._finish(job_id, lease_token, JobStatus.FAILED, values)

    async def requeue_with_backoff(
        self,
        job_id: UUID,
        lease_token: str,
        *,
        attempts: int,
        next_run_at_ms: int,
        error: str,
        transient: bool = True,
        provider: str | None = None,
        raw_snippet: str | None = None,
    ) -> bool:
        """Return a RUNNING job to PENDING, claimable from next_run_at_ms."""
        values: dict[str, Any] = {
            "attempts": attempts,
            "next_run_at_ms": next_run_at_ms,
            "last_error": error,
            "last_error_raw": raw_snippet,
            "transient": transient,
            "provider": provider,
            **_released_lease(),
        }
        return await self._finish(job_id, lease_token, JobStatus.PENDING, values)

    # Recovery and compensation

    async def reset_stuck(
        self, cutoff: datetime, at_ms: int | None = None, limit: int = 50
    ) -> list[UUID]:
        """Revert RUNNING jobs not updated since cutoff back to PENDING."""
        at_ms = now_ms() if at_ms is None else at_ms
        stuck = aliased(Job)
        stuck_ids = (
            select(stuck.id)
            .where(
                stuck.status == JobStatus.RUNNING.value,
                stuck.updated_at < cutoff,
            )
            .order_by(stuck.updated_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        assert_valid_transition(JobStatus.RUNNING, JobStatus.PENDING)
        stmt = (
            update(Job)
            .where(
                Job.id.in_(stuck_ids),
                Job.status == JobStatus.RUNNING.value,
                Job.updated_at < cutoff,
            )
            .values(
                status=JobStatus.PENDING.value,
                attempts=Job.attempts + 1,
                last_error=STUCK_JOB_ERROR,
                next_run_at_ms=at_ms,
                updated_at=utcnow(),
                **_released_lease(),
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            reset_ids = list(result.scalars().all())
            await session.commit()
        return reset_ids

    async def take_quota_reservation(
        self, job_id: UUID
    ) -> tuple[str, QuotaReservation] | None:
        """
        Claim the job's quota reservation for rollback.

        The rollback stamp is set in the same statement that reads the
        reservation, so only the first caller ever receives it.
        """
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.quota_period_key.is_not(None),
                Job.quota_metric.is_not(None),
                Job.quota_amount > 0,
                Job.quota_rolled_back_at.is_(None),
            )
            .values(quota_rolled_back_at=utcnow())
            .returning(
                Job.owner_id, Job.quota_period_key, Job.quota_metric, Job.quota_amount
            )
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            row = result.one_or_none()
            await session.commit()

        if row is None:
            return None
        reservation = QuotaReservation(
            row.quota_period_key, row.quota_metric, row.quota_amount
        )
        if not reservation.is_valid():
            return None
        return row.owner_id, reservation

    async def append_result_summary(self, job_id: UUID, message: str) -> None:
        """Append ``message`` to the summary unless it is already there."""
        message = str(message or "").strip()
        if not message:
            return

        for _ in range(3):
            async with self._sessions() as session:
                current = await session.scalar(
                    select(Job.result_summary).where(Job.id == job_id)
                )
            current_text = (current or "").strip()
            if message in current_text:
                return
            new_summary = f"{current_text} | {message}" if current_text else message

            unchanged = (
                Job.result_summary.is_(None)
                if current is None
                else Job.result_summary == current
            )
            stmt = (
                update(Job)
                .where(Job.id == job_id, unchanged)
                .values(result_summary=new_summary)
                .execution_options(synchronize_session=False)
            )
            async with self._sessions() as session:
                result = await session.execute(stmt)
                await session.commit()
            if result.rowcount > 0:
                return

        logger.warning("Could not append result summary", job_id=str(job_id))

    # Operator actions

    async def requeue_failed(self, job_id: UUID, reset_attempts: bool = False) -> bool:
        """
        Return a terminal FAILED job to the pool.

        A quota reservation that was already rolled back stays rolled back;
        the rerun is not charged again.
        """
        assert_valid_transition(JobStatus.FAILED, JobStatus.PENDING)
        values: dict[str, Any] = {
            "status": JobStatus.PENDING.value,
            "error": None,
            "next_run_at_ms": None,
            "updated_at": utcnow(),
        }
        if reset_attempts:
            values["attempts"] = 0

        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.FAILED.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job requeued", job_id=str(job_id), reset_attempts=reset_attempts)
        return success

    async def get_stats(self) -> JobStatsResponse:
        """Get job statistics."""
        async with self._sessions() as session:
            total_jobs = await session.scalar(select(func.count(Job.id))) or 0

            status_result = await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
            by_status = {status: count for status, count in status_result.all()}

            type_result = await session.execute(
                select(Job.type, func.count(Job.id)).group_by(Job.type)
            )
            by_type = {job_type: count for job_type, count in type_result.all()}

            one_hour_ago = utcnow() - timedelta(hours=1)
            failed_last_hour = (
                await session.scalar(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.FAILED.value,
                        Job.updated_at >= one_hour_ago,
                    )
                )
                or 0
            )

        queue_depth = by_status.get(JobStatus.PENDING.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )
        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
        )
