"""
Job system models: the jobs table, the lifecycle state machine and the typed
scheduler metadata carried next to each opaque business payload.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.core.exceptions import InvalidTransitionError
from orchestrator.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# PENDING -> RUNNING -> COMPLETED | FAILED. RUNNING -> PENDING happens only
# through the reaper or a backoff re-queue; FAILED -> PENDING only through an
# operator requeue.
TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.RUNNING,),
    JobStatus.RUNNING: (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (JobStatus.PENDING,),
}

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


def is_terminal_status(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def assert_valid_transition(current: JobStatus | str, target: JobStatus | str) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    current, target = JobStatus(current), JobStatus(target)
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Invalid job state transition: {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )


def utcnow() -> datetime:
    return datetime.now(UTC)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(utcnow().timestamp() * 1000)


class Job(Base):
    """
    Durable job record.

    The business ``payload`` is opaque to the scheduler; everything the
    scheduler reads or writes lives in dedicated columns:
    - retry state (attempts, next_run_at_ms, last_error, transient, provider)
    - quota reservation and its one-shot rollback stamp
    - chaining (chain_next_type, depends_on_job_id)
    - the RUNNING lease (locked_by, locked_at, lease_token)
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    owner_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Owning user, used for fairness and quota"
    )
    project_ref: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Owning project"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Handler input, opaque to the scheduler",
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, unique=True, comment="Caller-supplied dedupe token"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|running|completed|failed",
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True, comment="Handler result"
    )
    result_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Terminal error message"
    )

    # Retry state
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failed or reaped attempts"
    )
    next_run_at_ms: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, comment="Earliest claim time, epoch ms"
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_raw: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="b64-encoded diagnostic snippet"
    )
    transient: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    provider: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Quota reservation
    quota_period_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    quota_metric: Mapped[str | None] = mapped_column(Text, nullable=True)
    quota_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quota_rolled_back_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Chaining
    chain_next_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    depends_on_job_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID holding the RUNNING lease"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    lease_token: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Changes on every claim; guards finalising writes"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        Index("ix_jobs_status_next_run_created", "status", "next_run_at_ms", "created_at"),
        Index("ix_jobs_owner_status", "owner_id", "status"),
        Index("ix_jobs_status_updated_at", "status", "updated_at"),
    )

    @property
    def meta(self) -> "SchedulerMeta":
        return SchedulerMeta.from_job(self)


@dataclass(frozen=True)
class QuotaReservation:
    """A pre-committed usage charge that is reversed on the first failure."""

    period_key: str
    metric: str
    amount: int

    def is_valid(self) -> bool:
        return bool(self.period_key) and bool(self.metric) and self.amount > 0

    @classmethod
    def from_dict(cls, data: Any) -> "QuotaReservation | None":
        if not isinstance(data, dict):
            return None
        try:
            amount = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            return None
        reservation = cls(
            period_key=str(data.get("periodKey") or data.get("period_key") or ""),
            metric=str(data.get("metric") or ""),
            amount=amount,
        )
        return reservation if reservation.is_valid() else None


# Keys that producers may still place inside a payload document; they are
# lifted into SchedulerMeta so they never collide with business fields.
SCHEDULER_PAYLOAD_KEYS = (
    "attempts",
    "nextRunAt",
    "lastError",
    "transient",
    "provider",
    "quotaReservation",
    "chainNext",
    "dependsOnJobId",
)


@dataclass
class SchedulerMeta:
    """Typed scheduler metadata carried alongside the business payload."""

    attempts: int = 0
    next_run_at_ms: int | None = None
    last_error: str | None = None
    transient: bool = False
    provider: str | None = None
    quota_reservation: QuotaReservation | None = None
    chain_next_type: str | None = None
    depends_on_job_id: UUID | None = None

    @classmethod
    def from_job(cls, job: Job) -> "SchedulerMeta":
        reservation = None
        if job.quota_period_key and job.quota_metric and job.quota_amount:
            reservation = QuotaReservation(
                job.quota_period_key, job.quota_metric, job.quota_amount
            )
        return cls(
            attempts=job.attempts or 0,
            next_run_at_ms=job.next_run_at_ms,
            last_error=job.last_error,
            transient=bool(job.transient),
            provider=job.provider,
            quota_reservation=reservation,
            chain_next_type=job.chain_next_type,
            depends_on_job_id=job.depends_on_job_id,
        )

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any]
    ) -> tuple["SchedulerMeta", dict[str, Any]]:
        """Split a legacy mixed payload into (meta, business payload)."""
        business = {k: v for k, v in payload.items() if k not in SCHEDULER_PAYLOAD_KEYS}
        chain_next = payload.get("chainNext")
        depends_on = payload.get("dependsOnJobId")
        next_run_at = payload.get("nextRunAt")
        meta = cls(
            attempts=int(payload.get("attempts") or 0),
            next_run_at_ms=int(next_run_at) if next_run_at is not None else None,
            last_error=payload.get("lastError"),
            transient=bool(payload.get("transient", False)),
            provider=payload.get("provider"),
            quota_reservation=QuotaReservation.from_dict(payload.get("quotaReservation")),
            chain_next_type=(
                str(chain_next.get("type")) if isinstance(chain_next, dict) and chain_next.get("type") else None
            ),
            depends_on_job_id=UUID(str(depends_on)) if depends_on else None,
        )
        return meta, business

    def column_values(self) -> dict[str, Any]:
        """Column values for inserting a job with this metadata."""
        reservation = self.quota_reservation
        return {
            "attempts": self.attempts,
            "next_run_at_ms": self.next_run_at_ms,
            "last_error": self.last_error,
            "transient": self.transient,
            "provider": self.provider,
            "quota_period_key": reservation.period_key if reservation else None,
            "quota_metric": reservation.metric if reservation else None,
            "quota_amount": reservation.amount if reservation else None,
            "chain_next_type": self.chain_next_type,
            "depends_on_job_id": self.depends_on_job_id,
        }


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job handed to a handler after a successful claim."""

    id: UUID
    type: str
    owner_id: str
    project_ref: str | None
    payload: dict[str, Any]
    idempotency_key: str | None
    lease_token: str
    meta: SchedulerMeta = field(default_factory=SchedulerMeta)

    @classmethod
    def from_row(cls, job: Job) -> "ClaimedJob":
        return cls(
            id=job.id,
            type=job.type,
            owner_id=job.owner_id,
            project_ref=job.project_ref,
            payload=dict(job.payload or {}),
            idempotency_key=job.idempotency_key,
            lease_token=job.lease_token or "",
            meta=SchedulerMeta.from_job(job),
        )
