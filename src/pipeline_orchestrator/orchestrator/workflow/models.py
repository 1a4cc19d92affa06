"""In-memory workflow definitions.

These are the validated trees produced by the workflow loader (or built
directly in Python). They are immutable once constructed; everything that
changes during a run lives in :mod:`pipeline_orchestrator.orchestrator.workflow.context`.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pipeline_orchestrator.orchestrator.errors import ConfigError


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times a step (or job) is attempted, and how long to wait in between."""

    max_attempts: int = 1
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"retry max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ConfigError(f"retry backoff_seconds must be >= 0, got {self.backoff_seconds}")


NO_RETRY = RetryPolicy()


@dataclass(frozen=True, slots=True)
class StepSpec:
    """A single unit inside a job: either a shell command (`run`) or an action (`uses`)."""

    name: str
    run: str | None = None
    uses: str | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    id: str | None = None
    condition: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    retry: RetryPolicy = NO_RETRY
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ConfigError("step name must not be empty")
        if (self.run is None) == (self.uses is None):
            raise ConfigError(f"step {self.name!r} must define exactly one of 'run' or 'uses'")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigError(f"step {self.name!r} timeout_seconds must be > 0")

    @property
    def step_id(self) -> str:
        """Key under which the step is visible in the `steps` expression context."""

        return self.id or self.name


@dataclass(frozen=True, slots=True)
class MatrixSpec:
    """Axis name -> ordered values, plus partial or full combinations to skip."""

    axes: dict[str, tuple[object, ...]]
    exclude: tuple[dict[str, object], ...] = ()


@dataclass(frozen=True, slots=True)
class JobSpec:
    name: str
    steps: tuple[StepSpec, ...]
    needs: tuple[str, ...] = ()
    matrix: MatrixSpec | None = None
    condition: str | None = None
    continue_on_error: bool = False
    run_always: bool = False
    env: dict[str, str] = field(default_factory=dict)
    retry: RetryPolicy = NO_RETRY
    outputs: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ConfigError("job name must not be empty")
        if not self.steps:
            raise ConfigError(f"job {self.name!r} must have at least one step")
        ids = [s.step_id for s in self.steps]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ConfigError(f"job {self.name!r} has duplicate step ids: {dupes}")

    @property
    def node_id(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class PromotionSpec:
    """Environments a successful run promotes into, in order."""

    stages: tuple[str, ...]
    version: str
    requires: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigError("promotion must name at least one stage")
        if len(set(self.stages)) != len(self.stages):
            raise ConfigError(f"promotion stages must be unique: {list(self.stages)}")


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """Metadata about what started the run (visible as `event.*`)."""

    name: str = "push"
    ref: str = ""
    sha: str = ""
    payload: dict[str, object] = field(default_factory=dict)

    def to_context(self) -> dict[str, object]:
        out: dict[str, object] = dict(self.payload)
        out.update({"name": self.name, "ref": self.ref, "sha": self.sha})
        return out


@dataclass(frozen=True, slots=True)
class WorkflowSpec:
    name: str
    jobs: tuple[JobSpec, ...]
    env: dict[str, str] = field(default_factory=dict)
    max_concurrent_jobs: int | None = None
    fail_fast: bool | None = None
    promotion: PromotionSpec | None = None

    def __post_init__(self) -> None:
        names = [j.name for j in self.jobs]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigError(f"Duplicate job names found: {dupes}")
        if self.max_concurrent_jobs is not None and self.max_concurrent_jobs < 1:
            raise ConfigError("max_concurrent_jobs must be >= 1")

    def job(self, name: str) -> JobSpec:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)


@dataclass(frozen=True, slots=True)
class JobInstance:
    """A job bound to one matrix combination (or the job itself when it has no matrix).

    `need_groups` maps each declared `needs` entry to the instance ids it
    resolved to; `needs` is the flattened, de-duplicated set of those ids.
    """

    instance_id: str
    job: JobSpec
    matrix: dict[str, object] = field(default_factory=dict)
    need_groups: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def node_id(self) -> str:
        return self.instance_id

    @property
    def needs(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for ids in self.need_groups.values():
            for instance_id in ids:
                seen.setdefault(instance_id, None)
        return tuple(seen)
