"""
Usage quota ledger and compensation for terminally failed jobs.
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import Integer, Text, UniqueConstraint, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.config.logging import get_logger
from orchestrator.core.exceptions import QuotaExceededError
from orchestrator.infra.database import Base
from orchestrator.jobs.models import QuotaReservation, utcnow
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)


def current_period_key(now: datetime | None = None) -> str:
    """Usage period for the given time, formatted YYYY-MM (UTC)."""
    now = now or utcnow()
    return f"{now.year:04d}-{now.month:02d}"


class Usage(Base):
    """Metered usage per owner, period and metric."""

    __tablename__ = "usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    period_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Usage period, YYYY-MM"
    )
    metric: Mapped[str] = mapped_column(Text, nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("owner_id", "period_key", "metric", name="uq_usage_owner_period_metric"),
    )


class QuotaLedger(Protocol):
    """Collaborator that can reverse a usage reservation."""

    async def rollback_quota(
        self, owner_id: str, period_key: str, metric: str, amount: int
    ) -> None:
        """Reverse a reservation; safe even if it was never consumed."""
        ...


class UsageLedger:
    """QuotaLedger over the ``usage`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get_used(self, owner_id: str, metric: str, period_key: str | None = None) -> int:
        period_key = period_key or current_period_key()
        async with self._sessions() as session:
            used = await session.scalar(
                select(Usage.used).where(
                    Usage.owner_id == owner_id,
                    Usage.period_key == period_key,
                    Usage.metric == metric,
                )
            )
        return used or 0

    async def _ensure_row(self, owner_id: str, period_key: str, metric: str) -> None:
        async with self._sessions() as session:
            existing = await session.scalar(
                select(Usage.id).where(
                    Usage.owner_id == owner_id,
                    Usage.period_key == period_key,
                    Usage.metric == metric,
                )
            )
            if existing is not None:
                return
            try:
                session.add(
                    Usage(owner_id=owner_id, period_key=period_key, metric=metric, used=0)
                )
                await session.commit()
            except IntegrityError:
                # Created concurrently
                await session.rollback()

    async def reserve_quota(
        self, owner_id: str, metric: str, limit: int, amount: int = 1
    ) -> QuotaReservation:
        """
        Charge ``amount`` against the owner's current period.

        The increment is conditional on staying within ``limit``, so
        concurrent reservations cannot overshoot it.

        Raises:
            QuotaExceededError: if the charge would exceed the limit
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        period_key = current_period_key()
        await self._ensure_row(owner_id, period_key, metric)

        stmt = (
            update(Usage)
            .where(
                Usage.owner_id == owner_id,
                Usage.period_key == period_key,
                Usage.metric == metric,
                Usage.used + amount <= limit,
            )
            .values(used=Usage.used + amount)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            used = await self.get_used(owner_id, metric, period_key)
            raise QuotaExceededError(metric, used, limit)

        logger.info(
            "Quota reserved",
            owner_id=owner_id,
            metric=metric,
            period_key=period_key,
            amount=amount,
        )
        return QuotaReservation(period_key=period_key, metric=metric, amount=amount)

    async def rollback_quota(
        self, owner_id: str, period_key: str, metric: str, amount: int
    ) -> None:
        """Decrement usage by ``amount``, clamping at zero."""
        where = (
            Usage.owner_id == owner_id,
            Usage.period_key == period_key,
            Usage.metric == metric,
        )
        async with self._sessions() as session:
            result = await session.execute(
                update(Usage)
                .where(*where, Usage.used >= amount)
                .values(used=Usage.used - amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.execute(
                    update(Usage)
                    .where(*where, Usage.used > 0)
                    .values(used=0)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()


class QuotaCompensator:
    """Issues the single compensating rollback for a failed job."""

    def __init__(self, store: JobStore, ledger: QuotaLedger):
        self.store = store
        self.ledger = ledger

    async def rollback_for_job(self, job_id: UUID) -> bool:
        """
        Roll back the job's reservation if it has one that was not yet
        rolled back. Failures are logged; the job stays FAILED either way.
        """
        try:
            taken = await self.store.take_quota_reservation(job_id)
        except Exception:
            logger.exception("Quota rollback lookup failed", job_id=str(job_id))
            return False
        if taken is None:
            return False

        owner_id, reservation = taken
        try:
            await self.ledger.rollback_quota(
                owner_id, reservation.period_key, reservation.metric, reservation.amount
            )
        except Exception:
            logger.exception(
                "Quota rollback failed",
                job_id=str(job_id),
                owner_id=owner_id,
                metric=reservation.metric,
                period_key=reservation.period_key,
                amount=reservation.amount,
            )
            return False

        logger.info(
            "Quota rolled back",
            job_id=str(job_id),
            owner_id=owner_id,
            metric=reservation.metric,
            period_key=reservation.period_key,
            amount=reservation.amount,
        )
        return True
