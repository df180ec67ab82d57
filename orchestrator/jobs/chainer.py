"""
Follow-up job creation after a successful completion.
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from orchestrator.config.logging import get_logger
from orchestrator.jobs.models import ClaimedJob, Job
from orchestrator.jobs.schemas import JobCreate
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)

PayloadBuilder = Callable[[ClaimedJob, Any, str], dict[str, Any]]


def copy_payload(job: ClaimedJob, result: Any, derived_key: str) -> dict[str, Any]:
    """Default successor payload: the predecessor's payload under the new key."""
    return {**job.payload, "idempotencyKey": derived_key}


@dataclass(frozen=True)
class ChainRule:
    """Allows ``source_type`` jobs to enqueue a ``next_type`` successor."""

    source_type: str
    next_type: str
    suffix: str
    build_payload: PayloadBuilder = field(default=copy_payload)


def root_idempotency_key(job: ClaimedJob) -> str:
    key = job.idempotency_key or job.payload.get("idempotencyKey") or ""
    return str(key).strip()


class JobChainer:
    """
    Enqueues the successor a completed job asked for.

    The successor's idempotency key is derived from the predecessor's, so
    repeated or concurrent chain attempts collapse into one job.
    """

    def __init__(self, store: JobStore, rules: list[ChainRule] | None = None):
        self.store = store
        self._rules: dict[tuple[str, str], ChainRule] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: ChainRule) -> None:
        self._rules[(rule.source_type, rule.next_type)] = rule

    def rule_for(self, job: ClaimedJob) -> ChainRule | None:
        next_type = job.meta.chain_next_type
        if not next_type:
            return None
        return self._rules.get((job.type, next_type))

    async def chain(self, job: ClaimedJob, result: Any = None) -> Job | None:
        """
        Create the successor for a completed job, if one applies.

        Errors are logged and swallowed; the predecessor stays COMPLETED.
        """
        rule = self.rule_for(job)
        if rule is None:
            if job.meta.chain_next_type:
                logger.warning(
                    "No chain rule for requested successor",
                    job_id=str(job.id),
                    type=job.type,
                    chain_next_type=job.meta.chain_next_type,
                )
            return None

        root = root_idempotency_key(job)
        if not root:
            logger.warning(
                "Chaining skipped: no idempotency key",
                job_id=str(job.id),
                next_type=rule.next_type,
            )
            return None

        derived_key = f"{root}:{rule.suffix}"
        try:
            successor, created = await self.store.create_job(
                JobCreate(
                    type=rule.next_type,
                    owner_id=job.owner_id,
                    project_ref=job.project_ref,
                    payload=rule.build_payload(job, result, derived_key),
                    idempotency_key=derived_key,
                    depends_on_job_id=job.id,
                )
            )
            await self.store.append_result_summary(
                job.id, f"Queued {rule.next_type} job"
            )
        except Exception:
            logger.exception(
                "Chaining failed",
                job_id=str(job.id),
                next_type=rule.next_type,
                idempotency_key=derived_key,
            )
            return None

        logger.info(
            "Chained successor job",
            job_id=str(job.id),
            successor_id=str(successor.id),
            next_type=rule.next_type,
            created=created,
        )
        return successor
