from uuid import uuid4

import pytest

from orchestrator.core.exceptions import InvalidTransitionError
from orchestrator.jobs.models import (
    JobStatus,
    QuotaReservation,
    SchedulerMeta,
    assert_valid_transition,
    is_terminal_status,
)


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "running"),
        ("running", "completed"),
        ("running", "failed"),
        ("running", "pending"),
        ("failed", "pending"),
    ],
)
def test_allowed_transitions(current, target):
    assert_valid_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "completed"),
        ("pending", "failed"),
        ("completed", "pending"),
        ("completed", "failed"),
        ("failed", "running"),
    ],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransitionError) as exc_info:
        assert_valid_transition(current, target)
    assert exc_info.value.details == {"from": current, "to": target}


def test_terminal_statuses():
    assert is_terminal_status(JobStatus.COMPLETED)
    assert is_terminal_status("failed")
    assert not is_terminal_status("pending")
    assert not is_terminal_status(JobStatus.RUNNING)


class TestQuotaReservation:
    def test_from_camel_case_dict(self):
        reservation = QuotaReservation.from_dict(
            {"periodKey": "2026-10", "metric": "videos", "amount": "2"}
        )
        assert reservation == QuotaReservation("2026-10", "videos", 2)

    @pytest.mark.parametrize(
        "data",
        [
            None,
            "2026-10",
            {"periodKey": "2026-10", "metric": "videos", "amount": 0},
            {"periodKey": "", "metric": "videos", "amount": 1},
            {"periodKey": "2026-10", "metric": "videos", "amount": "lots"},
        ],
    )
    def test_invalid_reservations_are_dropped(self, data):
        assert QuotaReservation.from_dict(data) is None


class TestSchedulerMeta:
    def test_from_payload_splits_scheduler_keys(self):
        parent = uuid4()
        meta, business = SchedulerMeta.from_payload(
            {
                "storyboardId": "sb-1",
                "attempts": 2,
                "nextRunAt": 1700000000000,
                "lastError": "503",
                "transient": True,
                "provider": "svc",
                "quotaReservation": {"periodKey": "2026-10", "metric": "videos", "amount": 1},
                "chainNext": {"type": "b"},
                "dependsOnJobId": str(parent),
            }
        )

        assert business == {"storyboardId": "sb-1"}
        assert meta.attempts == 2
        assert meta.next_run_at_ms == 1700000000000
        assert meta.last_error == "503"
        assert meta.transient is True
        assert meta.provider == "svc"
        assert meta.quota_reservation == QuotaReservation("2026-10", "videos", 1)
        assert meta.chain_next_type == "b"
        assert meta.depends_on_job_id == parent

    def test_plain_payload_has_default_meta(self):
        meta, business = SchedulerMeta.from_payload({"a": 1})

        assert business == {"a": 1}
        assert meta == SchedulerMeta()

    def test_column_values_flatten_reservation(self):
        meta = SchedulerMeta(quota_reservation=QuotaReservation("2026-10", "videos", 3))

        values = meta.column_values()

        assert values["quota_period_key"] == "2026-10"
        assert values["quota_metric"] == "videos"
        assert values["quota_amount"] == 3
        assert values["attempts"] == 0
