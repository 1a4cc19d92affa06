"""Top-level orchestration: run a workflow, then promote what it built."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from pipeline_orchestrator.orchestrator.config import OrchestratorSettings
from pipeline_orchestrator.orchestrator.deploy.delegates import CommandDeployer, HttpHealthCheck
from pipeline_orchestrator.orchestrator.deploy.promotion import PromotionEngine, PromotionResult
from pipeline_orchestrator.orchestrator.deploy.store import EnvironmentStore, JsonEnvironmentStore
from pipeline_orchestrator.orchestrator.errors import ConfigError, EvaluationError
from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.context import JobResult, aggregate_status
from pipeline_orchestrator.orchestrator.workflow.events import EventSink, LoggingEventSink
from pipeline_orchestrator.orchestrator.workflow.executor import ShellStepExecutor, StepExecutor
from pipeline_orchestrator.orchestrator.workflow.expressions import ExpressionContext, interpolate
from pipeline_orchestrator.orchestrator.workflow.models import TriggerEvent, WorkflowSpec
from pipeline_orchestrator.orchestrator.workflow.scheduler import RunResult, Scheduler
from pipeline_orchestrator.orchestrator.workflow.state_machine import JobStatus

logger = logging.getLogger(__name__)


def build_promotion_engine(
    settings: OrchestratorSettings,
    *,
    store: EnvironmentStore | None = None,
    events: EventSink | None = None,
) -> PromotionEngine:
    """Wire the configured deploy command, HTTP health check and JSON state file."""

    if not settings.promotion_configured:
        raise ConfigError(
            "Promotion requires PIPELINE_DEPLOY_COMMAND and PIPELINE_HEALTH_CHECK_URL"
        )
    return PromotionEngine(
        deployer=CommandDeployer(settings.deploy_command),
        health_checker=HttpHealthCheck(
            settings.health_check_url, timeout_seconds=settings.health_check_timeout_seconds
        ),
        store=store or JsonEnvironmentStore(settings.environments_state_file),
        health_check_attempts=settings.health_check_attempts,
        health_check_interval_seconds=settings.health_check_interval_seconds,
        events=events,
    )


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    run: RunResult
    promotions: list[PromotionResult] = field(default_factory=list)
    version: str | None = None

    @property
    def ok(self) -> bool:
        return self.run.ok and all(p.ok for p in self.promotions)


class Orchestrator:
    """Run a workflow and, if it declares a promotion, push the result through its stages."""

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        executor: StepExecutor | None = None,
        promotion: PromotionEngine | None = None,
        events: EventSink | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.events: EventSink = events or LoggingEventSink()
        self.scheduler = Scheduler(
            executor or ShellStepExecutor(grace_seconds=self.settings.cancel_grace_seconds),
            max_concurrent_jobs=self.settings.max_concurrent_jobs,
            fail_fast=self.settings.fail_fast,
            events=self.events,
        )
        self._promotion = promotion

    @property
    def promotion(self) -> PromotionEngine:
        if self._promotion is None:
            self._promotion = build_promotion_engine(self.settings, events=self.events)
        return self._promotion

    def run(
        self,
        workflow: WorkflowSpec,
        *,
        event: TriggerEvent | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineOutcome:
        run = self.scheduler.run(workflow, event=event, cancellation=cancellation)
        spec = workflow.promotion
        if spec is None:
            return PipelineOutcome(run=run)

        if not _requirements_met(run, spec.requires):
            logger.warning(
                "Skipping promotion; required jobs did not succeed",
                extra={"run_id": run.run_id, "requires": list(spec.requires) or "all"},
            )
            return PipelineOutcome(run=run)

        try:
            version = interpolate(spec.version, _promotion_context(run, event or TriggerEvent()))
        except EvaluationError as e:
            logger.error(
                "Promotion version could not be evaluated",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            return PipelineOutcome(run=run)
        if not version.strip():
            logger.error(
                "Promotion version evaluated to an empty string", extra={"run_id": run.run_id}
            )
            return PipelineOutcome(run=run)

        results = self.promotion.promote_through(spec.stages, version)
        return PipelineOutcome(run=run, promotions=results, version=version)


def _by_job(run: RunResult) -> dict[str, list[JobResult]]:
    grouped: dict[str, list[JobResult]] = defaultdict(list)
    for result in run.jobs.values():
        grouped[result.job].append(result)
    return grouped


def _requirements_met(run: RunResult, requires: tuple[str, ...]) -> bool:
    if not requires:
        return run.ok
    grouped = _by_job(run)
    for name in requires:
        if name in run.jobs:
            status = run.jobs[name].status
        else:
            status = aggregate_status([r.status for r in grouped.get(name, [])])
        if status is not JobStatus.SUCCESS:
            return False
    return True


def _promotion_context(run: RunResult, event: TriggerEvent) -> ExpressionContext:
    needs: dict[str, object] = {}
    for name, results in _by_job(run).items():
        outputs: dict[str, str] = {}
        for r in results:
            outputs.update(r.outputs)
        needs[name] = {
            "result": aggregate_status([r.status for r in results]).value,
            "outputs": outputs,
        }
    return ExpressionContext(values={"needs": needs, "event": event.to_context(), "env": {}})
