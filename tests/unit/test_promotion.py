from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest

from pipeline_orchestrator.orchestrator.deploy.delegates import DeploymentOutcome, HealthStatus
from pipeline_orchestrator.orchestrator.deploy.promotion import PromotionEngine
from pipeline_orchestrator.orchestrator.deploy.state_machine import (
    IllegalTransitionError,
    PromotionState,
    transition,
)
from pipeline_orchestrator.orchestrator.deploy.store import (
    EnvironmentState,
    InMemoryEnvironmentStore,
)
from pipeline_orchestrator.orchestrator.errors import PromotionError
from pipeline_orchestrator.orchestrator.workflow.events import PROMOTION_FINISHED, PipelineEvent

HEALTHY = HealthStatus.HEALTHY
UNHEALTHY = HealthStatus.UNHEALTHY


def _engine(
    *,
    store: InMemoryEnvironmentStore | None = None,
    deployer: Mock | None = None,
    health: Mock | None = None,
    attempts: int = 3,
    events: object | None = None,
) -> tuple[PromotionEngine, Mock, Mock, Mock]:
    if deployer is None:
        deployer = Mock()
        deployer.apply.return_value = DeploymentOutcome(ok=True)
    if health is None:
        health = Mock()
        health.check.return_value = HEALTHY
    sleep = Mock()
    engine = PromotionEngine(
        deployer=deployer,
        health_checker=health,
        store=store or InMemoryEnvironmentStore(),
        health_check_attempts=attempts,
        health_check_interval_seconds=5.0,
        events=events,  # type: ignore[arg-type]
        sleep=sleep,
    )
    return engine, deployer, health, sleep


def _seed(store: InMemoryEnvironmentStore, environment: str, version: str) -> None:
    store.put(environment, EnvironmentState(name=environment, current_version=version))


def test_successful_promotion_records_history() -> None:
    store = InMemoryEnvironmentStore()
    _seed(store, "staging", "v1")
    engine, deployer, health, sleep = _engine(store=store)

    result = engine.promote("staging", "v2")

    assert result.ok
    assert result.status is PromotionState.PROMOTED
    assert result.previous_version == "v1"
    assert result.health_checks == 1
    assert result.states == (
        PromotionState.IDLE,
        PromotionState.DEPLOYING,
        PromotionState.HEALTH_CHECKING,
        PromotionState.PROMOTED,
    )
    deployer.apply.assert_called_once_with("staging", "v2")
    sleep.assert_not_called()

    state = store.get("staging")
    assert state is not None
    assert state.current_version == "v2"
    assert state.health == "healthy"
    assert [h.version for h in state.history] == ["v1"]
    assert state.previous_version == "v1"


def test_health_check_failures_roll_back_to_previous_version() -> None:
    store = InMemoryEnvironmentStore()
    _seed(store, "staging", "v1")
    health = Mock()
    # Three failed checks for v2, then one confirmation check after re-applying v1.
    health.check.side_effect = [UNHEALTHY, UNHEALTHY, UNHEALTHY, HEALTHY]
    engine, deployer, _, sleep = _engine(store=store, health=health)

    result = engine.promote("staging", "v2")

    assert result.status is PromotionState.ROLLED_BACK
    assert not result.ok
    assert result.health_checks == 3
    assert result.rollback_healthy is True
    assert "Health check failed after 3 attempt(s)" in (result.reason or "")
    assert [c.args for c in deployer.apply.call_args_list] == [("staging", "v2"), ("staging", "v1")]
    assert health.check.call_count == 4
    assert sleep.call_count == 2

    state = store.get("staging")
    assert state is not None
    assert state.current_version == "v1"
    assert state.history == []
    assert state.last_failed_version == "v2"


def test_health_check_recovering_within_attempts_promotes() -> None:
    health = Mock()
    health.check.side_effect = [UNHEALTHY, HEALTHY]
    engine, _, _, sleep = _engine(health=health)

    result = engine.promote("staging", "v2")

    assert result.ok
    assert result.health_checks == 2
    sleep.assert_called_once_with(5.0)


def test_deploy_failure_skips_health_checks_and_restores() -> None:
    store = InMemoryEnvironmentStore()
    _seed(store, "staging", "v1")
    deployer = Mock()
    deployer.apply.side_effect = [
        DeploymentOutcome(ok=False, message="quota"),
        DeploymentOutcome(ok=True),
    ]
    health = Mock()
    health.check.return_value = HEALTHY
    engine, _, _, _ = _engine(store=store, deployer=deployer, health=health)

    result = engine.promote("staging", "v2")

    assert result.status is PromotionState.ROLLED_BACK
    assert result.states == (
        PromotionState.IDLE,
        PromotionState.DEPLOYING,
        PromotionState.ROLLED_BACK,
    )
    assert result.health_checks == 0
    assert "Deployment failed: quota" in (result.reason or "")
    # Only the rollback confirmation check.
    assert health.check.call_count == 1
    assert store.get("staging").current_version == "v1"  # type: ignore[union-attr]


def test_deployer_exception_is_treated_as_failure() -> None:
    deployer = Mock()
    deployer.apply.side_effect = RuntimeError("api down")
    engine, _, health, _ = _engine(deployer=deployer)

    result = engine.promote("staging", "v1")

    assert result.status is PromotionState.ROLLED_BACK
    assert "RuntimeError: api down" in (result.reason or "")
    health.check.assert_not_called()


def test_rollback_without_previous_version_leaves_environment_empty() -> None:
    store = InMemoryEnvironmentStore()
    health = Mock()
    health.check.return_value = UNHEALTHY
    engine, deployer, _, _ = _engine(store=store, health=health, attempts=2)

    result = engine.promote("staging", "v1")

    assert result.status is PromotionState.ROLLED_BACK
    assert result.rollback_healthy is None
    assert "no previous version to restore" in (result.reason or "")
    deployer.apply.assert_called_once_with("staging", "v1")
    state = store.get("staging")
    assert state is not None
    assert state.current_version is None
    assert state.last_failed_version == "v1"


def test_unhealthy_after_rollback_is_reported_not_retried() -> None:
    store = InMemoryEnvironmentStore()
    _seed(store, "staging", "v1")
    health = Mock()
    health.check.return_value = UNHEALTHY
    engine, _, _, _ = _engine(store=store, health=health, attempts=1)

    result = engine.promote("staging", "v2")

    assert result.rollback_healthy is False
    assert health.check.call_count == 2
    assert "'v1' is unhealthy after rollback" in (result.reason or "")
    assert store.get("staging").health == "unhealthy"  # type: ignore[union-attr]
    with pytest.raises(PromotionError):
        result.raise_for_status()


def test_concurrent_promotions_for_one_environment_are_serialised() -> None:
    first_deploying = threading.Event()
    release_first = threading.Event()
    applied: list[str] = []

    def apply(environment: str, version: str) -> DeploymentOutcome:
        applied.append(version)
        if version == "v1":
            first_deploying.set()
            assert release_first.wait(5)
        return DeploymentOutcome(ok=True)

    deployer = Mock()
    deployer.apply.side_effect = apply
    engine, _, _, _ = _engine(deployer=deployer)
    results = {}

    first = threading.Thread(target=lambda: results.update(v1=engine.promote("production", "v1")))
    first.start()
    assert first_deploying.wait(5)

    second = threading.Thread(target=lambda: results.update(v2=engine.promote("production", "v2")))
    second.start()
    second.join(0.2)

    # The second request is queued behind the first and has not started.
    assert second.is_alive()
    assert applied == ["v1"]
    assert engine.queue_depth("production") == 2

    release_first.set()
    first.join(5)
    second.join(5)

    assert applied == ["v1", "v2"]
    assert results["v1"].finished_at <= results["v2"].started_at
    assert results["v2"].previous_version == "v1"
    assert engine.queue_depth("production") == 0


def test_different_environments_do_not_block_each_other() -> None:
    staging_deploying = threading.Event()
    release_staging = threading.Event()

    def apply(environment: str, version: str) -> DeploymentOutcome:
        if environment == "staging":
            staging_deploying.set()
            assert release_staging.wait(5)
        return DeploymentOutcome(ok=True)

    deployer = Mock()
    deployer.apply.side_effect = apply
    engine, _, _, _ = _engine(deployer=deployer)

    blocked = threading.Thread(target=engine.promote, args=("staging", "v1"))
    blocked.start()
    assert staging_deploying.wait(5)

    result = engine.promote("production", "v1")

    assert result.ok
    release_staging.set()
    blocked.join(5)


def test_promote_through_stops_at_first_rollback() -> None:
    health = Mock()
    health.check.side_effect = lambda env: UNHEALTHY if env == "production" else HEALTHY
    engine, deployer, _, _ = _engine(health=health, attempts=1)

    results = engine.promote_through(["dev", "staging", "production", "dr"], "v3")

    assert [r.environment for r in results] == ["dev", "staging", "production"]
    assert [r.ok for r in results] == [True, True, False]
    assert ("dr", "v3") not in [c.args for c in deployer.apply.call_args_list]


def test_promote_from_uses_source_version() -> None:
    store = InMemoryEnvironmentStore()
    _seed(store, "staging", "v7")
    engine, deployer, _, _ = _engine(store=store)

    result = engine.promote_from("staging", "production")

    assert result.ok
    assert result.version == "v7"
    deployer.apply.assert_called_once_with("production", "v7")


def test_promote_from_empty_source_raises() -> None:
    engine, _, _, _ = _engine()

    with pytest.raises(PromotionError):
        engine.promote_from("staging", "production")


def test_manual_rollback_reverts_to_history() -> None:
    store = InMemoryEnvironmentStore()
    engine, deployer, _, _ = _engine(store=store)
    engine.promote("prod", "v1")
    engine.promote("prod", "v2")

    result = engine.rollback("prod")

    assert result.ok
    assert result.version == "v1"
    assert result.previous_version == "v2"
    state = store.get("prod")
    assert state is not None
    assert state.current_version == "v1"
    assert state.history == []
    assert state.last_failed_version == "v2"
    assert deployer.apply.call_args.args == ("prod", "v1")


def test_manual_rollback_without_history_raises() -> None:
    engine, _, _, _ = _engine()

    with pytest.raises(PromotionError):
        engine.rollback("prod")


def test_promotion_events_are_emitted() -> None:
    events: list[PipelineEvent] = []
    sink = Mock()
    sink.emit.side_effect = events.append
    engine, _, _, _ = _engine(events=sink)

    engine.promote("dev", "v1")

    assert [e.type for e in events] == [PROMOTION_FINISHED]
    assert events[0].payload["status"] == "promoted"


def test_blank_arguments_are_rejected() -> None:
    engine, _, _, _ = _engine()

    with pytest.raises(ValueError):
        engine.promote("", "v1")
    with pytest.raises(ValueError):
        engine.promote("dev", "  ")


def test_promotion_state_machine_rejects_skipping_deploy() -> None:
    assert transition(current=PromotionState.IDLE, to=PromotionState.DEPLOYING)
    with pytest.raises(IllegalTransitionError):
        transition(current=PromotionState.IDLE, to=PromotionState.PROMOTED)
    with pytest.raises(IllegalTransitionError):
        transition(current=PromotionState.PROMOTED, to=PromotionState.ROLLED_BACK)
