"""Layered job scheduler.

Jobs of one dependency layer run concurrently on a bounded thread pool; the
next layer starts only after every job of the current layer has recorded a
terminal result, so later layers always observe earlier results.

Per job instance::

    pending -> (gate) -> skipped | running -> (steps) -> success | failure
    pending -> cancelled                 (run cancelled or fail-fast tripped)
    running -> cancelled                 (run cancelled; checked between steps)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pipeline_orchestrator.orchestrator.errors import FORCED_TERMINATION, EvaluationError
from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.context import JobResult, RunContext, StepResult
from pipeline_orchestrator.orchestrator.workflow.events import (
    JOB_FINISHED,
    JOB_STARTED,
    RUN_FINISHED,
    RUN_STARTED,
    STEP_FINISHED,
    EventSink,
    NullEventSink,
    PipelineEvent,
    safe_emit,
)
from pipeline_orchestrator.orchestrator.workflow.executor import (
    StepExecutor,
    StepInvocation,
    StepOutcome,
)
from pipeline_orchestrator.orchestrator.workflow.expressions import (
    ExpressionContext,
    compile_condition,
    evaluate_condition,
    interpolate,
)
from pipeline_orchestrator.orchestrator.workflow.models import (
    JobInstance,
    StepSpec,
    TriggerEvent,
    WorkflowSpec,
)
from pipeline_orchestrator.orchestrator.workflow.planner import (
    ExecutionPlan,
    default_gate,
    plan_workflow,
)
from pipeline_orchestrator.orchestrator.workflow.state_machine import JobStatus, transition

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class RunResult:
    run_id: str
    workflow: str
    status: JobStatus
    jobs: dict[str, JobResult] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    def summary(self) -> dict[str, str]:
        """Instance id -> final status."""

        return {iid: result.status.value for iid, result in self.jobs.items()}

    def to_json(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": {iid: r.to_json() for iid, r in self.jobs.items()},
        }


@dataclass
class _RunState:
    ctx: RunContext
    workflow_env: dict[str, str]
    fail_fast: bool
    fail_fast_tripped: threading.Event = field(default_factory=threading.Event)


class Scheduler:
    """Run a workflow's job instances in dependency order."""

    def __init__(
        self,
        executor: StepExecutor,
        *,
        max_concurrent_jobs: int = 4,
        fail_fast: bool = False,
        events: EventSink | None = None,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._executor = executor
        self._max_concurrent_jobs = max_concurrent_jobs
        self._fail_fast = fail_fast
        self._events: EventSink = events or NullEventSink()

    def run(
        self,
        workflow: WorkflowSpec,
        *,
        event: TriggerEvent | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Validate and execute `workflow`.

        Configuration errors are raised before any step runs. Runtime errors are
        recorded on the affected job results.
        """

        plan = plan_workflow(workflow)
        return self.run_plan(plan, event=event, cancellation=cancellation, run_id=run_id)

    def run_plan(
        self,
        plan: ExecutionPlan,
        *,
        event: TriggerEvent | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        workflow = plan.workflow
        run_id = run_id or uuid.uuid4().hex
        started_at = _now()
        trigger = event or TriggerEvent()
        token = cancellation or CancellationToken()

        workflow_env = _render_mapping(
            workflow.env, ExpressionContext(values={"event": trigger.to_context(), "env": {}})
        )
        ctx = RunContext(
            run_id=run_id,
            event=trigger,
            env=workflow_env,
            groups=plan.groups,
            cancellation=token,
        )
        state = _RunState(
            ctx=ctx,
            workflow_env=workflow_env,
            fail_fast=workflow.fail_fast if workflow.fail_fast is not None else self._fail_fast,
        )
        max_workers = workflow.max_concurrent_jobs or self._max_concurrent_jobs

        logger.info(
            "Workflow run started",
            extra={"run_id": run_id, "workflow": workflow.name, "layers": len(plan.layers)},
        )
        safe_emit(
            self._events,
            PipelineEvent(RUN_STARTED, {"run_id": run_id, "workflow": workflow.name}),
        )

        for name in plan.empty_jobs:
            ctx.record(
                JobResult(
                    instance_id=name,
                    job=name,
                    status=JobStatus.SKIPPED,
                    reason="Matrix expanded to no instances",
                )
            )

        for index, layer in enumerate(plan.layers):
            logger.debug("Starting layer", extra={"run_id": run_id, "layer": index, "jobs": layer})
            with ThreadPoolExecutor(
                max_workers=min(max_workers, len(layer)),
                thread_name_prefix=f"pipeline-{run_id[:8]}",
            ) as pool:
                futures = {
                    pool.submit(self._run_instance, plan.instances[iid], state): iid
                    for iid in layer
                }
                for future in as_completed(futures):
                    future.result()

        results = ctx.results()
        if token.cancelled:
            status = JobStatus.CANCELLED
        elif any(r.fails_run for r in results.values()):
            status = JobStatus.FAILURE
        else:
            status = JobStatus.SUCCESS

        run_result = RunResult(
            run_id=run_id,
            workflow=workflow.name,
            status=status,
            jobs={iid: results[iid] for iid in _ordered_ids(plan) if iid in results},
            started_at=started_at,
            finished_at=_now(),
        )
        logger.info(
            "Workflow run finished",
            extra={"run_id": run_id, "status": status.value, "summary": run_result.summary()},
        )
        safe_emit(
            self._events,
            PipelineEvent(
                RUN_FINISHED,
                {"run_id": run_id, "status": status.value, "jobs": run_result.summary()},
            ),
        )
        return run_result

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _finish(self, state: _RunState, result: JobResult) -> JobResult:
        state.ctx.record(result)
        # Trip on the worker thread, before it can pick up another queued instance.
        if result.fails_run and state.fail_fast and not state.fail_fast_tripped.is_set():
            state.fail_fast_tripped.set()
            logger.warning(
                "Fail-fast: cancelling jobs that have not started",
                extra={"run_id": state.ctx.run_id, "instance_id": result.instance_id},
            )
        logger.info(
            "Job finished",
            extra={
                "run_id": state.ctx.run_id,
                "instance_id": result.instance_id,
                "status": result.status.value,
                "reason": result.reason,
            },
        )
        safe_emit(
            self._events,
            PipelineEvent(
                JOB_FINISHED,
                {
                    "run_id": state.ctx.run_id,
                    "instance_id": result.instance_id,
                    "status": result.status.value,
                    "reason": result.reason,
                },
            ),
        )
        return result

    def _run_instance(self, instance: JobInstance, state: _RunState) -> JobResult:
        ctx = state.ctx
        job = instance.job
        status = JobStatus.PENDING

        def terminal(to: JobStatus, reason: str | None, **kwargs: object) -> JobResult:
            transition(current=status, to=to)
            return self._finish(
                state,
                JobResult(
                    instance_id=instance.instance_id,
                    job=job.name,
                    status=to,
                    matrix=dict(instance.matrix),
                    continue_on_error=job.continue_on_error,
                    reason=reason,
                    **kwargs,  # type: ignore[arg-type]
                ),
            )

        if ctx.cancellation.cancelled:
            return terminal(JobStatus.CANCELLED, ctx.cancellation.reason)
        if state.fail_fast_tripped.is_set():
            return terminal(JobStatus.CANCELLED, "Cancelled by fail-fast")

        try:
            env = {
                **state.workflow_env,
                **_render_mapping(job.env, ctx.job_gate_context(instance, env=state.workflow_env)),
            }
            gate = compile_condition(job.condition, default=default_gate(job))
            proceed = evaluate_condition(gate, ctx.job_gate_context(instance, env=env))
        except EvaluationError as e:
            logger.warning(
                "Job gate could not be evaluated; skipping",
                extra={"instance_id": instance.instance_id, "error": str(e)},
            )
            return terminal(JobStatus.SKIPPED, f"EvaluationError: {e}")

        if not proceed:
            return terminal(JobStatus.SKIPPED, f"Condition not met: {gate.source}")

        status = transition(current=status, to=JobStatus.RUNNING)
        started_at = _now()
        logger.info(
            "Job started",
            extra={"run_id": ctx.run_id, "instance_id": instance.instance_id},
        )
        safe_emit(
            self._events,
            PipelineEvent(JOB_STARTED, {"run_id": ctx.run_id, "instance_id": instance.instance_id}),
        )

        steps: list[StepResult] = []
        start = 0
        attempts = 0
        cancelled = False
        while True:
            attempts += 1
            del steps[start:]
            cancelled = self._run_steps(instance, state, env, steps, start, attempts)
            failed_at = _first_failure(steps)
            if cancelled or failed_at is None or attempts >= job.retry.max_attempts:
                break
            logger.info(
                "Retrying job from failed step",
                extra={
                    "instance_id": instance.instance_id,
                    "step": steps[failed_at].name,
                    "attempt": attempts + 1,
                    "backoff_seconds": job.retry.backoff_seconds,
                },
            )
            if job.retry.backoff_seconds and ctx.cancellation.wait(job.retry.backoff_seconds):
                cancelled = True
                break
            start = failed_at

        failed_at = _first_failure(steps)
        if cancelled:
            final = JobStatus.CANCELLED
            forced = any(s.reason == FORCED_TERMINATION for s in steps)
            reason = FORCED_TERMINATION if forced else ctx.cancellation.reason
        elif failed_at is not None:
            final = JobStatus.FAILURE
            reason = steps[failed_at].reason or f"Step {steps[failed_at].name!r} failed"
        else:
            final = JobStatus.SUCCESS
            reason = None

        return terminal(
            final,
            reason,
            outputs=self._job_outputs(instance, state, env, steps),
            steps=tuple(steps),
            exit_code=steps[failed_at].exit_code if failed_at is not None else 0,
            attempts=attempts,
            started_at=started_at,
            finished_at=_now(),
        )

    def _job_outputs(
        self,
        instance: JobInstance,
        state: _RunState,
        env: Mapping[str, str],
        steps: list[StepResult],
    ) -> dict[str, str]:
        job = instance.job
        if not job.outputs:
            merged: dict[str, str] = {}
            for step in steps:
                merged.update(step.outputs)
            return merged

        ctx = state.ctx.step_context(instance, env=env, steps=steps)
        outputs: dict[str, str] = {}
        for key, template in job.outputs.items():
            try:
                outputs[key] = interpolate(template, ctx)
            except EvaluationError as e:
                logger.warning(
                    "Job output could not be evaluated; omitting it",
                    extra={"instance_id": instance.instance_id, "output": key, "error": str(e)},
                )
        return outputs

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_steps(
        self,
        instance: JobInstance,
        state: _RunState,
        env: Mapping[str, str],
        steps: list[StepResult],
        start: int,
        job_attempt: int,
    ) -> bool:
        """Run steps from index `start`, appending to `steps`. Returns True if cancelled."""

        ctx = state.ctx
        job_steps = instance.job.steps
        for index in range(start, len(job_steps)):
            step = job_steps[index]
            if ctx.cancellation.cancelled:
                for remaining in job_steps[index:]:
                    steps.append(
                        StepResult(
                            step_id=remaining.step_id,
                            name=remaining.name,
                            outcome=JobStatus.CANCELLED,
                            conclusion=JobStatus.CANCELLED,
                            reason=ctx.cancellation.reason,
                        )
                    )
                return True
            result = self._run_step(instance, state, env, step, steps)
            steps.append(result)
            logger.info(
                "Step finished",
                extra={
                    "instance_id": instance.instance_id,
                    "step": step.name,
                    "outcome": result.outcome.value,
                    "attempts": result.attempts,
                    "job_attempt": job_attempt,
                },
            )
            safe_emit(
                self._events,
                PipelineEvent(
                    STEP_FINISHED,
                    {
                        "run_id": ctx.run_id,
                        "instance_id": instance.instance_id,
                        "step": step.name,
                        "outcome": result.outcome.value,
                        "conclusion": result.conclusion.value,
                    },
                ),
            )
        # A cancel that lands during the last step still cancels the job once that step returns.
        return ctx.cancellation.cancelled

    def _run_step(
        self,
        instance: JobInstance,
        state: _RunState,
        env: Mapping[str, str],
        step: StepSpec,
        previous: list[StepResult],
    ) -> StepResult:
        ctx = state.ctx

        def done(outcome: JobStatus, **kwargs: object) -> StepResult:
            conclusion = outcome
            if outcome is JobStatus.FAILURE and step.continue_on_error:
                conclusion = JobStatus.SUCCESS
            return StepResult(
                step_id=step.step_id,
                name=step.name,
                outcome=outcome,
                conclusion=conclusion,
                **kwargs,  # type: ignore[arg-type]
            )

        base = ctx.step_context(instance, env=env, steps=previous)
        try:
            step_env = {**env, **_render_mapping(step.env, base)}
            gate_ctx = ctx.step_context(instance, env=step_env, steps=previous)
            proceed = evaluate_condition(compile_condition(step.condition), gate_ctx)
        except EvaluationError as e:
            return done(JobStatus.SKIPPED, reason=f"EvaluationError: {e}")
        if not proceed:
            return done(JobStatus.SKIPPED, reason="Condition not met")

        try:
            command = interpolate(step.run, gate_ctx) if step.run is not None else None
            inputs = _render_mapping(step.inputs, gate_ctx)
        except EvaluationError as e:
            return done(JobStatus.FAILURE, exit_code=1, attempts=0, reason=f"EvaluationError: {e}")

        outcome = StepOutcome(exit_code=1)
        attempt = 0
        for attempt in range(1, step.retry.max_attempts + 1):
            invocation = StepInvocation(
                step=step,
                instance_id=instance.instance_id,
                command=command,
                inputs=inputs,
                env=step_env,
                attempt=attempt,
            )
            try:
                outcome = self._executor.execute(invocation, ctx.cancellation)
            except Exception as e:
                logger.exception(
                    "Step executor raised",
                    extra={"instance_id": instance.instance_id, "step": step.name},
                )
                outcome = StepOutcome(exit_code=1, reason=f"{type(e).__name__}: {e}")
            if outcome.ok or ctx.cancellation.cancelled or attempt >= step.retry.max_attempts:
                break
            logger.info(
                "Retrying step",
                extra={
                    "instance_id": instance.instance_id,
                    "step": step.name,
                    "attempt": attempt + 1,
                    "exit_code": outcome.exit_code,
                },
            )
            if step.retry.backoff_seconds and ctx.cancellation.wait(step.retry.backoff_seconds):
                break

        return done(
            JobStatus.SUCCESS if outcome.ok else JobStatus.FAILURE,
            exit_code=outcome.exit_code,
            outputs=dict(outcome.outputs),
            attempts=attempt,
            reason=outcome.reason,
            log_tail=outcome.log_tail,
        )


def _render_mapping(values: Mapping[str, str], ctx: ExpressionContext) -> dict[str, str]:
    return {key: interpolate(value, ctx) for key, value in values.items()}


def _first_failure(steps: list[StepResult]) -> int | None:
    for index, step in enumerate(steps):
        if step.conclusion is JobStatus.FAILURE:
            return index
    return None


def _ordered_ids(plan: ExecutionPlan) -> list[str]:
    ids: list[str] = []
    for job in plan.workflow.jobs:
        group = plan.groups[job.name]
        ids.extend(group if group else (job.name,))
    return ids
