"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.jobs.models import QuotaReservation, SchedulerMeta


class QuotaReservationIn(BaseModel):
    """Reservation issued by the producer before the job is created."""

    period_key: str = Field(..., min_length=1, description="Usage period, YYYY-MM")
    metric: str = Field(..., min_length=1, description="Metered resource")
    amount: int = Field(..., gt=0, description="Reserved units")


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: str = Field(..., min_length=1, description="Job type identifier")
    owner_id: str = Field(..., min_length=1, description="Owning user")
    project_ref: str | None = Field(default=None, description="Owning project")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    idempotency_key: str | None = Field(default=None, description="Deduplication key")
    next_run_at_ms: int | None = Field(
        default=None, description="Earliest claim time, epoch ms"
    )
    quota_reservation: QuotaReservationIn | None = None
    chain_next_type: str | None = Field(
        default=None, description="Job type to enqueue after success"
    )
    depends_on_job_id: UUID | None = None

    def split(self) -> tuple[SchedulerMeta, dict[str, Any]]:
        """Return (scheduler meta, business payload).

        Explicit fields win over legacy scheduler keys found in the payload.
        """
        meta, business = SchedulerMeta.from_payload(self.payload)
        if self.next_run_at_ms is not None:
            meta.next_run_at_ms = self.next_run_at_ms
        if self.quota_reservation is not None:
            meta.quota_reservation = QuotaReservation(
                self.quota_reservation.period_key,
                self.quota_reservation.metric,
                self.quota_reservation.amount,
            )
        if self.chain_next_type:
            meta.chain_next_type = self.chain_next_type
        if self.depends_on_job_id is not None:
            meta.depends_on_job_id = self.depends_on_job_id
        return meta, business


class JobResponse(BaseModel):
    """Schema for rendering a job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    owner_id: str
    project_ref: str | None = None
    status: str
    payload: dict[str, Any]
    idempotency_key: str | None = None

    attempts: int
    next_run_at_ms: int | None = None
    last_error: str | None = None
    transient: bool = False
    provider: str | None = None
    chain_next_type: str | None = None
    depends_on_job_id: UUID | None = None

    result: Any = None
    result_summary: str | None = None
    error: str | None = None

    locked_by: str | None = None
    created_at: datetime
    updated_at: datetime


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + running
    failed_last_hour: int
