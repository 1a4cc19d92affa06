"""Error taxonomy for the pipeline orchestrator.

Configuration-time errors (`ConfigError` and its subclasses, `ParseError`) are
raised before any job runs. Runtime errors are scoped to the step or job that
raised them and are recorded on results rather than aborting the run.
"""

from __future__ import annotations

FORCED_TERMINATION = "ForcedTermination"


class PipelineError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigError(PipelineError):
    """The workflow definition is malformed."""


class UnknownDependencyError(ConfigError):
    def __init__(self, job: str, dependency: str, known: list[str]) -> None:
        self.job = job
        self.dependency = dependency
        self.known = known
        super().__init__(
            f"Job {job!r} needs unknown job {dependency!r}. Known jobs: {sorted(known)}"
        )


class CyclicDependencyError(ConfigError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class ParseError(PipelineError):
    """An expression could not be parsed, or calls an unknown function."""

    def __init__(self, message: str, *, expression: str, position: int | None = None) -> None:
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"{message}{where}: {expression!r}")


class EvaluationError(PipelineError):
    """An expression referenced a path that does not exist."""


class StepExecutionError(PipelineError):
    def __init__(self, step: str, exit_code: int, message: str = "") -> None:
        self.step = step
        self.exit_code = exit_code
        detail = f": {message}" if message else ""
        super().__init__(f"Step {step!r} failed (exit={exit_code}){detail}")


class PromotionError(PipelineError):
    """A deployment or health check failed during promotion."""
