"""
Admission control applied before each claim.
"""

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)


class TickAdmission:
    """Admission state for a single poll tick."""

    def __init__(self, store: JobStore, max_started: int, max_running_per_owner: int):
        self.store = store
        self.max_started = max_started
        self.max_running_per_owner = max_running_per_owner
        self.started = 0
        self.saturated_owners: set[str] = set()

    @property
    def has_capacity(self) -> bool:
        return self.started < self.max_started

    async def owner_has_room(self, owner_id: str) -> bool:
        """Check the owner's RUNNING count; saturated owners are remembered."""
        if owner_id in self.saturated_owners:
            return False

        running = await self.store.count_running_for_owner(owner_id)
        if running >= self.max_running_per_owner:
            self.saturated_owners.add(owner_id)
            logger.info(
                "Owner at running-job limit, skipping",
                owner_id=owner_id,
                running=running,
                limit=self.max_running_per_owner,
            )
            return False
        return True

    def record_start(self) -> None:
        self.started += 1


class AdmissionController:
    """
    Gates job starts on the per-worker concurrency budget and the
    per-owner RUNNING limit.

    The owner limit is checked before the claim, so across several worker
    processes it can be exceeded briefly; it bounds steady-state fairness.
    """

    def __init__(self, store: JobStore, settings: Settings):
        self.store = store
        self.settings = settings

    def begin_tick(self) -> TickAdmission:
        return TickAdmission(
            self.store,
            max_started=self.settings.max_worker_concurrency,
            max_running_per_owner=self.settings.max_running_jobs_per_user,
        )
