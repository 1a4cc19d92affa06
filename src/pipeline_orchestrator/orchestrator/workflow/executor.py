"""Step execution delegates.

The scheduler hands each resolved step to a :class:`StepExecutor` and treats
the call as opaque. :class:`ShellStepExecutor` runs `run:` steps as shell
commands and dispatches `uses:` steps to registered Python callables.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pipeline_orchestrator.orchestrator.errors import FORCED_TERMINATION, StepExecutionError
from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.models import StepSpec

logger = logging.getLogger(__name__)

OUTPUT_FILE_ENV = "PIPELINE_OUTPUT"
_LOG_TAIL_CHARS = 4000


@dataclass(frozen=True, slots=True)
class StepInvocation:
    """A step with its templates rendered and its environment merged."""

    step: StepSpec
    instance_id: str
    command: str | None
    inputs: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True, slots=True)
class StepOutcome:
    exit_code: int
    outputs: dict[str, str] = field(default_factory=dict)
    reason: str | None = None
    log_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class StepExecutor(Protocol):
    def execute(self, invocation: StepInvocation, token: CancellationToken) -> StepOutcome: ...


ActionHandler = Callable[[StepInvocation], "StepOutcome | Mapping[str, str] | None"]


def parse_output_file(text: str) -> dict[str, str]:
    """Parse `key=value` lines; blank lines and lines without `=` are ignored."""

    outputs: dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            outputs[key] = value
    return outputs


class ShellStepExecutor:
    """Run `run:` steps through the shell, and `uses:` steps through a handler registry."""

    def __init__(
        self,
        *,
        actions: Mapping[str, ActionHandler] | None = None,
        cwd: Path | None = None,
        grace_seconds: float = 10.0,
        poll_interval_seconds: float = 0.1,
        inherit_environ: bool = True,
    ) -> None:
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._actions = dict(actions or {})
        self._cwd = cwd
        self._grace_seconds = grace_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._inherit_environ = inherit_environ

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self._actions[name] = handler

    def execute(self, invocation: StepInvocation, token: CancellationToken) -> StepOutcome:
        if invocation.command is None:
            return self._run_action(invocation)
        return self._run_command(invocation, token)

    def _run_action(self, invocation: StepInvocation) -> StepOutcome:
        name = invocation.step.uses or ""
        handler = self._actions.get(name)
        if handler is None:
            return StepOutcome(exit_code=127, reason=f"Unknown action {name!r}")
        try:
            result = handler(invocation)
        except StepExecutionError as e:
            return StepOutcome(exit_code=e.exit_code or 1, reason=str(e))
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome(exit_code=0, outputs={k: str(v) for k, v in (result or {}).items()})

    def _run_command(self, invocation: StepInvocation, token: CancellationToken) -> StepOutcome:
        env = dict(os.environ) if self._inherit_environ else {}
        env.update(invocation.env)

        with tempfile.TemporaryDirectory(prefix="pipeline-step-") as tmp:
            output_path = Path(tmp) / "outputs"
            log_path = Path(tmp) / "log"
            output_path.touch()
            env[OUTPUT_FILE_ENV] = str(output_path)

            logger.debug(
                "Starting step process",
                extra={"instance_id": invocation.instance_id, "step": invocation.step.name},
            )
            with open(log_path, "wb") as log:
                proc = subprocess.Popen(
                    invocation.command or "",
                    shell=True,
                    cwd=str(self._cwd) if self._cwd is not None else None,
                    env=env,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                )
                exit_code, reason = self._wait(proc, invocation, token)

            log_tail = log_path.read_text(encoding="utf-8", errors="replace")[-_LOG_TAIL_CHARS:]
            outputs = parse_output_file(output_path.read_text(encoding="utf-8"))

        if exit_code != 0 and reason is None:
            reason = str(StepExecutionError(invocation.step.name, exit_code))
        return StepOutcome(exit_code=exit_code, outputs=outputs, reason=reason, log_tail=log_tail)

    def _wait(
        self,
        proc: subprocess.Popen[bytes],
        invocation: StepInvocation,
        token: CancellationToken,
    ) -> tuple[int, str | None]:
        timeout = invocation.step.timeout_seconds
        started = time.monotonic()
        while True:
            code = proc.poll()
            if code is not None:
                return code, None
            if token.cancelled:
                return self._stop(proc, invocation, "Cancelled")
            if timeout is not None and (time.monotonic() - started) >= timeout:
                return self._stop(proc, invocation, f"Timed out after {timeout}s")
            token.wait(self._poll_interval_seconds)

    def _stop(
        self, proc: subprocess.Popen[bytes], invocation: StepInvocation, reason: str
    ) -> tuple[int, str]:
        logger.info(
            "Asking step process to terminate",
            extra={"instance_id": invocation.instance_id, "step": invocation.step.name},
        )
        proc.terminate()
        try:
            code = proc.wait(timeout=self._grace_seconds)
            return (code if code != 0 else 1), reason
        except subprocess.TimeoutExpired:
            logger.warning(
                "Step process ignored termination; killing it",
                extra={
                    "instance_id": invocation.instance_id,
                    "step": invocation.step.name,
                    "grace_seconds": self._grace_seconds,
                },
            )
            proc.kill()
            code = proc.wait()
            return (code if code != 0 else 1), FORCED_TERMINATION
