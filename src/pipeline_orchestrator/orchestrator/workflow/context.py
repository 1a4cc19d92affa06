"""Per-run shared state: job results and the expression views built from them.

`RunContext` is the only structure mutated by more than one job thread. Each
job instance writes its final :class:`JobResult` exactly once; a single
map-level lock guards the write.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.expressions import (
    Expression,
    ExpressionContext,
    StatusFlags,
    evaluate,
)
from pipeline_orchestrator.orchestrator.workflow.models import JobInstance, TriggerEvent
from pipeline_orchestrator.orchestrator.workflow.state_machine import JobStatus


@dataclass(frozen=True, slots=True)
class StepResult:
    """What happened to one step.

    `outcome` is the real result; `conclusion` is what the job sees after
    `continue_on_error` has been applied.
    """

    step_id: str
    name: str
    outcome: JobStatus
    conclusion: JobStatus
    exit_code: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    reason: str | None = None
    log_tail: str = ""

    def to_json(self) -> dict[str, object]:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "outcome": self.outcome.value,
            "conclusion": self.conclusion.value,
            "exit_code": self.exit_code,
            "outputs": dict(self.outputs),
            "attempts": self.attempts,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class JobResult:
    instance_id: str
    job: str
    status: JobStatus
    outputs: dict[str, str] = field(default_factory=dict)
    steps: tuple[StepResult, ...] = ()
    matrix: dict[str, object] = field(default_factory=dict)
    continue_on_error: bool = False
    reason: str | None = None
    exit_code: int | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def fails_run(self) -> bool:
        """A failure that is not suppressed by `continue_on_error`."""

        return self.status is JobStatus.FAILURE and not self.continue_on_error

    def to_json(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "job": self.job,
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "matrix": dict(self.matrix),
            "continue_on_error": self.continue_on_error,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_json() for s in self.steps],
        }


class ResultAlreadyRecordedError(RuntimeError):
    pass


def aggregate_status(statuses: Sequence[JobStatus]) -> JobStatus:
    """Collapse the statuses of a job's instances into one.

    Any failure wins, then cancellation; all-skipped (or no instances) is
    skipped; anything not yet terminal is reported as pending.
    """

    if not statuses:
        return JobStatus.SKIPPED
    if any(s is JobStatus.FAILURE for s in statuses):
        return JobStatus.FAILURE
    if any(s is JobStatus.CANCELLED for s in statuses):
        return JobStatus.CANCELLED
    if any(not s.is_terminal for s in statuses):
        return JobStatus.PENDING
    if all(s is JobStatus.SKIPPED for s in statuses):
        return JobStatus.SKIPPED
    return JobStatus.SUCCESS


class RunContext:
    """Results, environment and trigger metadata for one workflow run."""

    def __init__(
        self,
        *,
        run_id: str,
        event: TriggerEvent | None = None,
        env: Mapping[str, str] | None = None,
        groups: Mapping[str, Sequence[str]] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.run_id = run_id
        self.event = event or TriggerEvent()
        self.env: dict[str, str] = dict(env or {})
        self.cancellation = cancellation or CancellationToken()
        self._groups: dict[str, tuple[str, ...]] = {k: tuple(v) for k, v in (groups or {}).items()}
        self._results: dict[str, JobResult] = {}
        self._lock = threading.Lock()

    # -- writes ------------------------------------------------------------

    def record(self, result: JobResult) -> None:
        """Store a terminal job result. Each instance id may be written once."""

        if not result.status.is_terminal:
            raise ValueError(f"Cannot record non-terminal status {result.status.value!r}")
        with self._lock:
            if result.instance_id in self._results:
                raise ResultAlreadyRecordedError(
                    f"Result for {result.instance_id!r} already recorded"
                )
            self._results[result.instance_id] = result

    # -- reads -------------------------------------------------------------

    def get(self, instance_id: str) -> JobResult | None:
        with self._lock:
            return self._results.get(instance_id)

    def results(self) -> dict[str, JobResult]:
        with self._lock:
            return dict(self._results)

    def status_of(self, name: str) -> JobStatus:
        """Status of an instance id, or the aggregate over a job name's instances."""

        ids = self._ids_for(name)
        with self._lock:
            if not ids and name in self._results:
                return self._results[name].status
            return aggregate_status(
                [self._results[i].status if i in self._results else JobStatus.PENDING for i in ids]
            )

    def outputs_of(self, name: str) -> dict[str, str]:
        merged: dict[str, str] = {}
        with self._lock:
            for instance_id in self._ids_for(name) or (name,):
                result = self._results.get(instance_id)
                if result is not None:
                    merged.update(result.outputs)
        return merged

    def _ids_for(self, name: str) -> tuple[str, ...]:
        if name in self._groups:
            return self._groups[name]
        return (name,)

    # -- expression views --------------------------------------------------

    def needs_view(self, instance: JobInstance) -> tuple[dict[str, object], StatusFlags]:
        needs: dict[str, object] = {}
        statuses: list[JobStatus] = []
        for name in instance.need_groups:
            status = self.status_of(name)
            statuses.append(status)
            needs[name] = {"result": status.value, "outputs": self.outputs_of(name)}
        flags = StatusFlags(
            success=all(s is JobStatus.SUCCESS for s in statuses),
            failure=any(s is JobStatus.FAILURE for s in statuses),
            cancelled=self.cancellation.cancelled,
        )
        return needs, flags

    def job_gate_context(
        self, instance: JobInstance, *, env: Mapping[str, str] | None = None
    ) -> ExpressionContext:
        """Context for a job's `if:` gate and its env templates."""

        needs, flags = self.needs_view(instance)
        return ExpressionContext(
            values={
                "needs": needs,
                "event": self.event.to_context(),
                "env": dict(env if env is not None else self.env),
                "matrix": dict(instance.matrix),
            },
            status=flags,
        )

    def step_context(
        self,
        instance: JobInstance,
        *,
        env: Mapping[str, str],
        steps: Sequence[StepResult],
    ) -> ExpressionContext:
        """Context for a step gate or template, given the steps that already ran."""

        needs, _ = self.needs_view(instance)
        failed = any(s.conclusion is JobStatus.FAILURE for s in steps)
        return ExpressionContext(
            values={
                "needs": needs,
                "event": self.event.to_context(),
                "env": dict(env),
                "matrix": dict(instance.matrix),
                "steps": {
                    s.step_id: {
                        "outcome": s.outcome.value,
                        "conclusion": s.conclusion.value,
                        "outputs": dict(s.outputs),
                    }
                    for s in steps
                },
                "job": {"status": "failure" if failed else "success"},
            },
            status=StatusFlags(
                success=not failed,
                failure=failed,
                cancelled=self.cancellation.cancelled,
            ),
        )

    def evaluate(self, expression: str | Expression, instance: JobInstance) -> object:
        """Evaluate an expression against this run as seen by `instance`'s gate."""

        return evaluate(expression, self.job_gate_context(instance))
