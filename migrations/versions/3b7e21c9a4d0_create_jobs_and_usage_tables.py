"""create jobs and usage tables

Revision ID: 3b7e21c9a4d0
Revises:
Create Date: 2026-10-12 09:41:07.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e21c9a4d0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "owner_id",
            sa.Text,
            nullable=False,
            comment="Owning user, used for fairness and quota",
        ),
        sa.Column("project_ref", sa.Text, nullable=True, comment="Owning project"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Handler input, opaque to the scheduler",
        ),
        sa.Column(
            "idempotency_key",
            sa.Text,
            nullable=True,
            comment="Caller-supplied dedupe token",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|running|completed|failed",
        ),
        sa.Column("result", sa.JSON, nullable=True, comment="Handler result"),
        sa.Column("result_summary", sa.Text, nullable=True),
        sa.Column("error", sa.Text, nullable=True, comment="Terminal error message"),
        # Retry state
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Failed or reaped attempts",
        ),
        sa.Column(
            "next_run_at_ms",
            sa.BigInteger,
            nullable=True,
            comment="Earliest claim time, epoch ms",
        ),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "last_error_raw",
            sa.Text,
            nullable=True,
            comment="b64-encoded diagnostic snippet",
        ),
        sa.Column(
            "transient", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("provider", sa.Text, nullable=True),
        # Quota reservation
        sa.Column("quota_period_key", sa.Text, nullable=True),
        sa.Column("quota_metric", sa.Text, nullable=True),
        sa.Column("quota_amount", sa.Integer, nullable=True),
        sa.Column("quota_rolled_back_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Chaining
        sa.Column("chain_next_type", sa.Text, nullable=True),
        sa.Column("depends_on_job_id", sa.UUID(as_uuid=True), nullable=True),
        # Worker coordination fields
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker ID holding the RUNNING lease",
        ),
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "lease_token",
            sa.Text,
            nullable=True,
            comment="Changes on every claim; guards finalising writes",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        sa.UniqueConstraint("idempotency_key", name="uq_jobs_idempotency_key"),
    )

    # Claim scan, per-owner admission and reaper scan
    op.create_index(
        "ix_jobs_status_next_run_created",
        "jobs",
        ["status", "next_run_at_ms", "created_at"],
    )
    op.create_index("ix_jobs_owner_status", "jobs", ["owner_id", "status"])
    op.create_index("ix_jobs_status_updated_at", "jobs", ["status", "updated_at"])

    op.create_table(
        "usage",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column(
            "period_key", sa.Text, nullable=False, comment="Usage period, YYYY-MM"
        ),
        sa.Column("metric", sa.Text, nullable=False),
        sa.Column("used", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "owner_id", "period_key", "metric", name="uq_usage_owner_period_metric"
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("usage")
    op.drop_index("ix_jobs_status_updated_at", table_name="jobs")
    op.drop_index("ix_jobs_owner_status", table_name="jobs")
    op.drop_index("ix_jobs_status_next_run_created", table_name="jobs")
    op.drop_table("jobs")
