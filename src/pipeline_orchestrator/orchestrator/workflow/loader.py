"""Workflow definition loader.

Reads a YAML document, validates its shape with pydantic, converts it into the
immutable :mod:`models` tree and then runs the full plan validation, so a
workflow returned from here is known to be runnable.

Example::

    name: ci
    env:
      PYTHON: "3.12"
    jobs:
      build:
        steps:
          - run: make build
      test:
        needs: build
        strategy:
          matrix:
            os: [linux, macos]
            exclude:
              - os: macos
        steps:
          - run: make test
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pipeline_orchestrator.orchestrator.errors import ConfigError
from pipeline_orchestrator.orchestrator.workflow.expressions import to_string
from pipeline_orchestrator.orchestrator.workflow.models import (
    NO_RETRY,
    JobSpec,
    MatrixSpec,
    PromotionSpec,
    RetryPolicy,
    StepSpec,
    WorkflowSpec,
)
from pipeline_orchestrator.orchestrator.workflow.planner import plan_workflow

logger = logging.getLogger(__name__)


class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RetryDoc(_Doc):
    max_attempts: int = Field(default=1, alias="max-attempts", ge=1)
    backoff_seconds: float = Field(default=0.0, alias="backoff-seconds", ge=0)


class StepDoc(_Doc):
    name: str | None = None
    id: str | None = None
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: str | None = Field(default=None, alias="if")
    env: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    retry: RetryDoc | None = None
    timeout_seconds: float | None = Field(default=None, alias="timeout-seconds", gt=0)


class StrategyDoc(_Doc):
    matrix: dict[str, Any]


class JobDoc(_Doc):
    needs: list[str] = Field(default_factory=list)
    if_: str | None = Field(default=None, alias="if")
    env: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    run_always: bool = Field(default=False, alias="run-always")
    retry: RetryDoc | None = None
    strategy: StrategyDoc | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    steps: list[StepDoc]

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_as_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value


class ConcurrencyDoc(_Doc):
    max_jobs: int = Field(alias="max-jobs", ge=1)


class PromotionDoc(_Doc):
    stages: list[str]
    version: str
    requires: list[str] = Field(default_factory=list)


class WorkflowDoc(_Doc):
    name: str = "workflow"
    env: dict[str, Any] = Field(default_factory=dict)
    concurrency: ConcurrencyDoc | None = None
    fail_fast: bool | None = Field(default=None, alias="fail-fast")
    jobs: dict[str, JobDoc]
    promotion: PromotionDoc | None = None


def _str_map(values: dict[str, Any]) -> dict[str, str]:
    return {str(k): to_string(v) for k, v in values.items()}


def _retry(doc: RetryDoc | None) -> RetryPolicy:
    if doc is None:
        return NO_RETRY
    return RetryPolicy(max_attempts=doc.max_attempts, backoff_seconds=doc.backoff_seconds)


def _matrix(job: str, raw: dict[str, Any]) -> MatrixSpec:
    axes: dict[str, tuple[object, ...]] = {}
    excludes: list[dict[str, object]] = []
    for key, value in raw.items():
        if key == "exclude":
            if not isinstance(value, list) or not all(isinstance(e, dict) for e in value):
                raise ConfigError(f"job {job!r}: matrix exclude must be a list of mappings")
            excludes.extend({str(k): v for k, v in e.items()} for e in value)
            continue
        if not isinstance(value, list):
            raise ConfigError(f"job {job!r}: matrix axis {key!r} must be a list")
        axes[str(key)] = tuple(value)
    return MatrixSpec(axes=axes, exclude=tuple(excludes))


def _step(job: str, index: int, doc: StepDoc) -> StepSpec:
    name = doc.name or doc.id
    if name is None:
        source = doc.run if doc.run is not None else doc.uses
        name = (source or "").strip().splitlines()[0] if source and source.strip() else ""
    if not name:
        name = f"step-{index + 1}"
    return StepSpec(
        name=name,
        id=doc.id,
        run=doc.run,
        uses=doc.uses,
        inputs=_str_map(doc.with_),
        condition=doc.if_,
        env=_str_map(doc.env),
        continue_on_error=doc.continue_on_error,
        retry=_retry(doc.retry),
        timeout_seconds=doc.timeout_seconds,
    )


def _job(name: str, doc: JobDoc) -> JobSpec:
    return JobSpec(
        name=name,
        steps=tuple(_step(name, i, s) for i, s in enumerate(doc.steps)),
        needs=tuple(doc.needs),
        matrix=_matrix(name, doc.strategy.matrix) if doc.strategy is not None else None,
        condition=doc.if_,
        continue_on_error=doc.continue_on_error,
        run_always=doc.run_always,
        env=_str_map(doc.env),
        retry=_retry(doc.retry),
        outputs=dict(doc.outputs),
    )


def parse_workflow(data: object) -> WorkflowSpec:
    """Build and validate a WorkflowSpec from an already-parsed mapping.

    Raises:
        ConfigError: malformed definition (including unknown or cyclic `needs`).
        ParseError: malformed expression.
    """

    if not isinstance(data, dict):
        raise ConfigError("Workflow definition must be a mapping")
    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid workflow definition:\n{e}") from e

    promotion = None
    if doc.promotion is not None:
        promotion = PromotionSpec(
            stages=tuple(doc.promotion.stages),
            version=doc.promotion.version,
            requires=tuple(doc.promotion.requires),
        )

    workflow = WorkflowSpec(
        name=doc.name,
        jobs=tuple(_job(name, job) for name, job in doc.jobs.items()),
        env=_str_map(doc.env),
        max_concurrent_jobs=doc.concurrency.max_jobs if doc.concurrency is not None else None,
        fail_fast=doc.fail_fast,
        promotion=promotion,
    )
    plan_workflow(workflow)
    return workflow


def load_workflow(path: str | Path) -> WorkflowSpec:
    """Load and validate a workflow from a YAML file."""

    wf_path = Path(path).expanduser()
    if not wf_path.exists():
        raise ConfigError(f"Workflow file not found: {wf_path}")
    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Workflow file is not valid YAML: {wf_path}: {e}") from e

    workflow = parse_workflow(data)
    logger.info(
        "Workflow loaded",
        extra={"path": str(wf_path), "workflow": workflow.name, "jobs": len(workflow.jobs)},
    )
    return workflow
