"""Test configuration and fixtures."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.executor import StepInvocation, StepOutcome
from pipeline_orchestrator.orchestrator.workflow.models import JobSpec, StepSpec

StepScript = Callable[[StepInvocation], StepOutcome]


class FakeExecutor:
    """Scripted step executor.

    Steps succeed by default. `fail(instance_id, step)` makes a step exit 1
    (optionally only for the first `times` attempts), `outputs(...)` sets the
    outputs a step returns and `on(...)` installs an arbitrary callable.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self.calls: list[StepInvocation] = []
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()
        self._failures: dict[tuple[str, str], int | None] = {}
        self._outputs: dict[tuple[str, str], dict[str, str]] = {}
        self._scripts: dict[tuple[str, str], StepScript] = {}
        self._attempts: dict[tuple[str, str], int] = {}

    def fail(self, instance_id: str, step: str, *, times: int | None = None) -> FakeExecutor:
        self._failures[(instance_id, step)] = times
        return self

    def outputs(self, instance_id: str, step: str, **values: str) -> FakeExecutor:
        self._outputs[(instance_id, step)] = dict(values)
        return self

    def on(self, instance_id: str, step: str, script: StepScript) -> FakeExecutor:
        self._scripts[(instance_id, step)] = script
        return self

    def ran(self, instance_id: str) -> list[str]:
        with self._lock:
            return [c.step.name for c in self.calls if c.instance_id == instance_id]

    def instances_started(self) -> list[str]:
        with self._lock:
            seen: dict[str, None] = {}
            for call in self.calls:
                seen.setdefault(call.instance_id, None)
            return list(seen)

    def execute(self, invocation: StepInvocation, token: CancellationToken) -> StepOutcome:
        key = (invocation.instance_id, invocation.step.name)
        with self._lock:
            self.calls.append(invocation)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            attempt = self._attempts.get(key, 0) + 1
            self._attempts[key] = attempt
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            script = self._scripts.get(key)
            if script is not None:
                return script(invocation)
            if key in self._failures:
                times = self._failures[key]
                if times is None or attempt <= times:
                    return StepOutcome(exit_code=1, reason="scripted failure")
            return StepOutcome(exit_code=0, outputs=dict(self._outputs.get(key, {})))
        finally:
            with self._lock:
                self._active -= 1


def make_step(name: str, **kwargs: object) -> StepSpec:
    if "uses" not in kwargs and "run" not in kwargs:
        kwargs["run"] = f"echo {name}"
    return StepSpec(name=name, **kwargs)  # type: ignore[arg-type]


def make_job(name: str, *steps: str | StepSpec, **kwargs: object) -> JobSpec:
    specs = tuple(s if isinstance(s, StepSpec) else make_step(s) for s in steps or ("main",))
    return JobSpec(name=name, steps=specs, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / "pipeline_state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture(autouse=True)
def _isolated_settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's .env and PIPELINE_* variables out of the tests."""

    monkeypatch.chdir(tmp_path)
    for name in (
        "LOG_LEVEL",
        "PIPELINE_MAX_CONCURRENT_JOBS",
        "PIPELINE_FAIL_FAST",
        "PIPELINE_CANCEL_GRACE_SECONDS",
        "PIPELINE_HEALTH_CHECK_ATTEMPTS",
        "PIPELINE_HEALTH_CHECK_INTERVAL_SECONDS",
        "PIPELINE_HEALTH_CHECK_TIMEOUT_SECONDS",
        "PIPELINE_STATE_PATH",
        "PIPELINE_DEPLOY_COMMAND",
        "PIPELINE_HEALTH_CHECK_URL",
        "PIPELINE_CORS_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_root_logging() -> Iterator[None]:
    """Undo handler and level changes made by configure_logging()."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
