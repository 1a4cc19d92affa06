"""Environment promotion with health-check gating and automatic rollback.

Per environment::

    idle -> deploying -> health_checking -> promoted
                 |               |
                 +---------------+--> rolled_back

Promotions for the same environment are serialised in strict arrival order
through a per-environment ticket queue. Different environments never block
each other.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pipeline_orchestrator.orchestrator.deploy.delegates import (
    Deployer,
    DeploymentOutcome,
    HealthChecker,
    HealthStatus,
)
from pipeline_orchestrator.orchestrator.deploy.state_machine import PromotionState, transition
from pipeline_orchestrator.orchestrator.deploy.store import (
    DeploymentRecord,
    EnvironmentState,
    EnvironmentStore,
)
from pipeline_orchestrator.orchestrator.errors import PromotionError
from pipeline_orchestrator.orchestrator.workflow.events import (
    PROMOTION_FINISHED,
    EventSink,
    NullEventSink,
    PipelineEvent,
    safe_emit,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PromotionResult:
    environment: str
    version: str
    status: PromotionState
    previous_version: str | None
    reason: str | None = None
    health_checks: int = 0
    rollback_healthy: bool | None = None
    states: tuple[PromotionState, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status is PromotionState.PROMOTED

    def raise_for_status(self) -> None:
        if not self.ok:
            raise PromotionError(
                f"Promotion of {self.version!r} to {self.environment!r} was rolled back: "
                f"{self.reason}"
            )

    def to_json(self) -> dict[str, object]:
        return {
            "environment": self.environment,
            "version": self.version,
            "status": self.status.value,
            "previous_version": self.previous_version,
            "reason": self.reason,
            "health_checks": self.health_checks,
            "rollback_healthy": self.rollback_healthy,
            "states": [s.value for s in self.states],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class _TicketQueue:
    """Mutual exclusion that admits waiters strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    @contextmanager
    def turn(self) -> Iterator[int]:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()
        try:
            yield ticket
        finally:
            with self._cond:
                self._now_serving += 1
                self._cond.notify_all()

    @property
    def depth(self) -> int:
        """Requests holding or waiting for a turn."""

        with self._cond:
            return self._next_ticket - self._now_serving


@dataclass
class _Attempt:
    environment: str
    version: str
    previous: EnvironmentState
    started_at: datetime
    current: PromotionState = PromotionState.IDLE
    states: list[PromotionState] = field(default_factory=lambda: [PromotionState.IDLE])

    def move(self, to: PromotionState) -> None:
        self.current = transition(current=self.current, to=to)
        self.states.append(to)


class PromotionEngine:
    def __init__(
        self,
        *,
        deployer: Deployer,
        health_checker: HealthChecker,
        store: EnvironmentStore,
        health_check_attempts: int = 3,
        health_check_interval_seconds: float = 5.0,
        events: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if health_check_attempts < 1:
            raise ValueError("health_check_attempts must be >= 1")
        if health_check_interval_seconds < 0:
            raise ValueError("health_check_interval_seconds must be >= 0")
        self._deployer = deployer
        self._health_checker = health_checker
        self._store = store
        self._attempts = health_check_attempts
        self._interval = health_check_interval_seconds
        self._events: EventSink = events or NullEventSink()
        self._sleep = sleep
        self._clock = clock
        self._queues: dict[str, _TicketQueue] = {}
        self._queues_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def promote(self, environment: str, version: str) -> PromotionResult:
        """Deploy `version` to `environment`, gate on health, roll back on failure."""

        if not environment.strip():
            raise ValueError("environment must not be empty")
        if not version.strip():
            raise ValueError("version must not be empty")
        with self._queue(environment).turn():
            return self._run(environment, version, reverting=False)

    def rollback(self, environment: str) -> PromotionResult:
        """Revert `environment` to the most recent version in its history.

        Raises:
            PromotionError: the environment has no earlier version to return to.
        """

        with self._queue(environment).turn():
            state = self._load(environment)
            if state.previous_version is None:
                raise PromotionError(f"Environment {environment!r} has no previous version")
            return self._run(environment, state.previous_version, reverting=True)

    def promote_through(self, stages: Sequence[str], version: str) -> list[PromotionResult]:
        """Promote `version` stage by stage, stopping at the first rollback."""

        results: list[PromotionResult] = []
        for stage in stages:
            result = self.promote(stage, version)
            results.append(result)
            if not result.ok:
                logger.warning(
                    "Stopping promotion pipeline",
                    extra={"environment": stage, "version": version, "reason": result.reason},
                )
                break
        return results

    def promote_from(self, source: str, target: str) -> PromotionResult:
        """Promote whatever is currently deployed in `source` into `target`."""

        state = self._store.get(source)
        if state is None or state.current_version is None:
            raise PromotionError(f"Environment {source!r} has no deployed version to promote")
        return self.promote(target, state.current_version)

    def status(self, environment: str) -> EnvironmentState | None:
        return self._store.get(environment)

    def queue_depth(self, environment: str) -> int:
        return self._queue(environment).depth

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _queue(self, environment: str) -> _TicketQueue:
        with self._queues_lock:
            queue = self._queues.get(environment)
            if queue is None:
                queue = self._queues[environment] = _TicketQueue()
            return queue

    def _load(self, environment: str) -> EnvironmentState:
        return self._store.get(environment) or EnvironmentState(name=environment)

    def _run(self, environment: str, version: str, *, reverting: bool) -> PromotionResult:
        attempt = _Attempt(
            environment=environment,
            version=version,
            previous=self._load(environment),
            started_at=self._clock(),
        )
        logger.info(
            "Promotion started",
            extra={
                "environment": environment,
                "version": version,
                "previous_version": attempt.previous.current_version,
                "reverting": reverting,
            },
        )

        attempt.move(PromotionState.DEPLOYING)
        outcome = self._apply(environment, version)
        if not outcome.ok:
            attempt.move(PromotionState.ROLLED_BACK)
            return self._roll_back(attempt, f"Deployment failed: {outcome.message}", checks=0)

        attempt.move(PromotionState.HEALTH_CHECKING)
        healthy, checks = self._poll_health(environment)
        if not healthy:
            attempt.move(PromotionState.ROLLED_BACK)
            return self._roll_back(
                attempt, f"Health check failed after {checks} attempt(s)", checks=checks
            )

        attempt.move(PromotionState.PROMOTED)
        now = self._clock()
        prior = attempt.previous
        history = list(prior.history)
        if reverting:
            history = history[:-1]
        elif prior.current_version is not None:
            history.append(
                DeploymentRecord(
                    version=prior.current_version, deployed_at=prior.deployed_at, replaced_at=now
                )
            )
        self._store.put(
            environment,
            prior.model_copy(
                update={
                    "current_version": version,
                    "deployed_at": now,
                    "health": "healthy",
                    "history": history,
                    "last_failed_version": prior.current_version
                    if reverting
                    else prior.last_failed_version,
                }
            ),
        )
        return self._finish(attempt, PromotionState.PROMOTED, reason=None, checks=checks)

    def _roll_back(self, attempt: _Attempt, reason: str, *, checks: int) -> PromotionResult:
        environment = attempt.environment
        restore = attempt.previous.current_version
        rollback_healthy: bool | None = None

        if restore is None:
            reason = f"{reason}; no previous version to restore"
        else:
            outcome = self._apply(environment, restore)
            if not outcome.ok:
                rollback_healthy = False
                reason = f"{reason}; re-applying {restore!r} failed: {outcome.message}"
            else:
                # One confirmation check; a failure here is reported, not retried.
                rollback_healthy = self._check(environment) is HealthStatus.HEALTHY
                if not rollback_healthy:
                    reason = f"{reason}; {restore!r} is unhealthy after rollback"

        health = "unknown" if rollback_healthy is None else (
            "healthy" if rollback_healthy else "unhealthy"
        )
        self._store.put(
            environment,
            attempt.previous.model_copy(
                update={"health": health, "last_failed_version": attempt.version}
            ),
        )
        logger.error(
            "Promotion rolled back",
            extra={
                "environment": environment,
                "version": attempt.version,
                "restored_version": restore,
                "reason": reason,
            },
        )
        return self._finish(
            attempt,
            PromotionState.ROLLED_BACK,
            reason=reason,
            checks=checks,
            rollback_healthy=rollback_healthy,
        )

    def _finish(
        self,
        attempt: _Attempt,
        status: PromotionState,
        *,
        reason: str | None,
        checks: int,
        rollback_healthy: bool | None = None,
    ) -> PromotionResult:
        result = PromotionResult(
            environment=attempt.environment,
            version=attempt.version,
            status=status,
            previous_version=attempt.previous.current_version,
            reason=reason,
            health_checks=checks,
            rollback_healthy=rollback_healthy,
            states=tuple(attempt.states),
            started_at=attempt.started_at,
            finished_at=self._clock(),
        )
        if result.ok:
            logger.info(
                "Promotion succeeded",
                extra={"environment": attempt.environment, "version": attempt.version},
            )
        safe_emit(self._events, PipelineEvent(PROMOTION_FINISHED, result.to_json()))
        return result

    def _apply(self, environment: str, version: str) -> DeploymentOutcome:
        try:
            return self._deployer.apply(environment, version)
        except Exception as e:
            logger.exception(
                "Deployer raised", extra={"environment": environment, "version": version}
            )
            return DeploymentOutcome(ok=False, message=f"{type(e).__name__}: {e}")

    def _check(self, environment: str) -> HealthStatus:
        try:
            return self._health_checker.check(environment)
        except Exception:
            logger.exception("Health checker raised", extra={"environment": environment})
            return HealthStatus.UNHEALTHY

    def _poll_health(self, environment: str) -> tuple[bool, int]:
        for attempt in range(1, self._attempts + 1):
            status = self._check(environment)
            logger.info(
                "Health check",
                extra={"environment": environment, "attempt": attempt, "status": status.value},
            )
            if status is HealthStatus.HEALTHY:
                return True, attempt
            if attempt < self._attempts:
                self._sleep(self._interval)
        return False, self._attempts
