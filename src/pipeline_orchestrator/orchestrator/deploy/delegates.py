"""Deployment and health-check collaborators used by the promotion engine."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True, slots=True)
class DeploymentOutcome:
    ok: bool
    message: str = ""


class Deployer(Protocol):
    def apply(self, environment: str, version: str) -> DeploymentOutcome: ...


class HealthChecker(Protocol):
    def check(self, environment: str) -> HealthStatus: ...


class CommandDeployer:
    """Deploy by running a shell command built from a template.

    The template may reference `{environment}` and `{version}`; both are
    shell-quoted before substitution.
    """

    def __init__(self, template: str, *, timeout_seconds: float | None = None) -> None:
        if "{version}" not in template:
            raise ValueError("Deploy command template must reference {version}")
        self._template = template
        self._timeout_seconds = timeout_seconds

    def apply(self, environment: str, version: str) -> DeploymentOutcome:
        command = self._template.format(
            environment=shlex.quote(environment), version=shlex.quote(version)
        )
        logger.info(
            "Running deploy command",
            extra={"environment": environment, "version": version, "command": command},
        )
        try:
            proc = subprocess.run(
                command,
                shell=True,
                text=True,
                capture_output=True,
                timeout=self._timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return DeploymentOutcome(
                ok=False, message=f"Deploy command timed out after {self._timeout_seconds}s"
            )
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip()[-2000:]
            return DeploymentOutcome(
                ok=False, message=f"Deploy command exited {proc.returncode}: {tail}"
            )
        return DeploymentOutcome(ok=True, message=proc.stdout.strip()[-2000:])


class HttpHealthCheck:
    """Probe an HTTP endpoint; any 2xx response counts as healthy."""

    def __init__(
        self,
        url_template: str,
        *,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url_template = url_template
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "pipeline-orchestrator"})

    def url_for(self, environment: str) -> str:
        return self._url_template.format(environment=environment)

    def check(self, environment: str) -> HealthStatus:
        url = self.url_for(environment)
        try:
            resp = self._session.get(url, timeout=self._timeout_seconds)
        except requests.RequestException as e:
            logger.warning(
                "Health check request failed",
                extra={"environment": environment, "url": url, "error": str(e)},
            )
            return HealthStatus.UNHEALTHY
        if 200 <= resp.status_code < 300:
            return HealthStatus.HEALTHY
        logger.info(
            "Health check returned non-2xx",
            extra={"environment": environment, "url": url, "status_code": resp.status_code},
        )
        return HealthStatus.UNHEALTHY

    def close(self) -> None:
        self._session.close()
