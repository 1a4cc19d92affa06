"""Turn a WorkflowSpec into an executable plan, validating everything up front.

After :func:`plan_workflow` returns, the workflow is known to be runnable:
matrices expand cleanly, every `needs` entry resolves, the graph is acyclic,
and every expression and template parses.
"""

from __future__ import annotations

from dataclasses import dataclass

from pipeline_orchestrator.orchestrator.errors import ConfigError, UnknownDependencyError
from pipeline_orchestrator.orchestrator.workflow import graph
from pipeline_orchestrator.orchestrator.workflow.expressions import (
    compile_condition,
    compile_template,
)
from pipeline_orchestrator.orchestrator.workflow.matrix import expand, instance_id
from pipeline_orchestrator.orchestrator.workflow.models import (
    JobInstance,
    JobSpec,
    WorkflowSpec,
)


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    workflow: WorkflowSpec
    instances: dict[str, JobInstance]
    layers: list[list[str]]
    groups: dict[str, tuple[str, ...]]

    @property
    def empty_jobs(self) -> list[str]:
        """Matrix jobs that expanded to no instances."""

        return [name for name, ids in self.groups.items() if not ids]


@dataclass(frozen=True, slots=True)
class _JobNode:
    node_id: str
    needs: tuple[str, ...]


def default_gate(job: JobSpec) -> str:
    return "always()" if job.run_always else "success()"


def _check_expressions(job: JobSpec) -> None:
    compile_condition(job.condition, default=default_gate(job))
    for value in job.env.values():
        compile_template(value)
    for expr in job.outputs.values():
        compile_template(expr)
    for step in job.steps:
        compile_condition(step.condition)
        if step.run is not None:
            compile_template(step.run)
        for value in step.inputs.values():
            compile_template(value)
        for value in step.env.values():
            compile_template(value)


def plan_workflow(workflow: WorkflowSpec) -> ExecutionPlan:
    """Validate a workflow and lay out its job instances.

    Raises:
        ConfigError: malformed matrix, colliding instance ids, bad promotion block.
        UnknownDependencyError: a `needs` entry names nothing.
        CyclicDependencyError: the job graph has a cycle.
        ParseError: an expression or template is malformed.
    """

    for value in workflow.env.values():
        compile_template(value)

    groups: dict[str, tuple[str, ...]] = {}
    combos: dict[str, dict[str, object]] = {}
    owner: dict[str, str] = {}
    job_names = {j.name for j in workflow.jobs}

    for job in workflow.jobs:
        _check_expressions(job)
        if job.matrix is None:
            pairs = [(job.name, {})]
        else:
            try:
                combinations = expand(job.matrix)
            except ConfigError as e:
                raise ConfigError(f"job {job.name!r}: {e}") from e
            pairs = [(instance_id(job.name, c), c) for c in combinations]

        ids: list[str] = []
        for iid, combination in pairs:
            if iid in owner or (iid != job.name and iid in job_names):
                raise ConfigError(f"Instance id {iid!r} of job {job.name!r} is not unique")
            owner[iid] = job.name
            combos[iid] = combination
            ids.append(iid)
        groups[job.name] = tuple(ids)

    def resolve(job: JobSpec, need: str) -> tuple[str, ...]:
        if need in groups:
            return groups[need]
        if need in owner:
            return (need,)
        raise UnknownDependencyError(job.name, need, sorted(job_names))

    # Job-level graph first: cycles are reported in terms of job names.
    job_nodes = []
    for job in workflow.jobs:
        deps: list[str] = []
        for need in job.needs:
            resolve(job, need)
            dep_job = need if need in groups else owner[need]
            if dep_job not in deps:
                deps.append(dep_job)
        job_nodes.append(_JobNode(job.name, tuple(deps)))
    graph.build(job_nodes)

    instances: dict[str, JobInstance] = {}
    for job in workflow.jobs:
        need_groups = {need: resolve(job, need) for need in job.needs}
        for iid in groups[job.name]:
            instances[iid] = JobInstance(
                instance_id=iid,
                job=job,
                matrix=combos[iid],
                need_groups=need_groups,
            )

    layers = graph.build(list(instances.values()))

    if workflow.promotion is not None:
        compile_template(workflow.promotion.version)
        for name in workflow.promotion.requires:
            if name not in groups and name not in owner:
                raise ConfigError(f"promotion requires unknown job {name!r}")

    return ExecutionPlan(workflow=workflow, instances=instances, layers=layers, groups=groups)
