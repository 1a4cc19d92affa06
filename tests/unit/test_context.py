from __future__ import annotations

import pytest

from pipeline_orchestrator.orchestrator.workflow.context import (
    JobResult,
    ResultAlreadyRecordedError,
    RunContext,
    aggregate_status,
)
from pipeline_orchestrator.orchestrator.workflow.state_machine import JobStatus


def _result(instance_id: str, status: JobStatus, **kwargs: object) -> JobResult:
    return JobResult(
        instance_id=instance_id, job="test", status=status, **kwargs  # type: ignore[arg-type]
    )


def test_results_are_write_once() -> None:
    ctx = RunContext(run_id="r1")
    ctx.record(_result("build", JobStatus.SUCCESS, outputs={"v": "1"}))

    with pytest.raises(ResultAlreadyRecordedError):
        ctx.record(_result("build", JobStatus.FAILURE))

    stored = ctx.get("build")
    assert stored is not None
    assert stored.status is JobStatus.SUCCESS
    assert stored.outputs == {"v": "1"}


@pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.RUNNING])
def test_non_terminal_results_are_rejected(status: JobStatus) -> None:
    ctx = RunContext(run_id="r1")

    with pytest.raises(ValueError):
        ctx.record(_result("build", status))

    assert ctx.get("build") is None
    assert ctx.results() == {}


def test_matrix_group_status_and_outputs_aggregate() -> None:
    ctx = RunContext(run_id="r1", groups={"test": ("test-a", "test-b")})
    ctx.record(_result("test-a", JobStatus.SUCCESS, outputs={"a": "1", "shared": "a"}))
    assert ctx.status_of("test") is JobStatus.PENDING

    ctx.record(_result("test-b", JobStatus.FAILURE, outputs={"shared": "b"}))

    assert ctx.status_of("test") is JobStatus.FAILURE
    assert ctx.outputs_of("test") == {"a": "1", "shared": "b"}


def test_aggregate_status() -> None:
    assert aggregate_status([]) is JobStatus.SKIPPED
    assert aggregate_status([JobStatus.SKIPPED, JobStatus.SKIPPED]) is JobStatus.SKIPPED
    assert aggregate_status([JobStatus.SUCCESS, JobStatus.SKIPPED]) is JobStatus.SUCCESS
    assert aggregate_status([JobStatus.CANCELLED, JobStatus.SUCCESS]) is JobStatus.CANCELLED
    assert aggregate_status([JobStatus.CANCELLED, JobStatus.FAILURE]) is JobStatus.FAILURE
