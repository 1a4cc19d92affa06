"""Unit tests for environment state persistence."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from pipeline_orchestrator.orchestrator.deploy.store import (
    DeploymentRecord,
    EnvironmentState,
    InMemoryEnvironmentStore,
    JsonEnvironmentStore,
)


def _state() -> EnvironmentState:
    return EnvironmentState(
        name="staging",
        current_version="v2",
        deployed_at=datetime(2026, 1, 2, tzinfo=UTC),
        health="healthy",
        history=[DeploymentRecord(version="v1", replaced_at=datetime(2026, 1, 2, tzinfo=UTC))],
    )


def test_json_store_roundtrip(temp_state_dir: Path) -> None:
    path = temp_state_dir / "nested" / "environments.json"
    store = JsonEnvironmentStore(path)
    assert store.get("staging") is None

    store.put("staging", _state())
    store.put("production", EnvironmentState(name="production"))

    reloaded = JsonEnvironmentStore(path)
    state = reloaded.get("staging")
    assert state is not None
    assert state.current_version == "v2"
    assert state.previous_version == "v1"
    assert state.deployed_at == datetime(2026, 1, 2, tzinfo=UTC)
    assert [s.name for s in reloaded.list()] == ["staging", "production"]

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["staging"]["history"][0]["version"] == "v1"


def test_json_store_treats_corrupt_file_as_empty(temp_state_dir: Path) -> None:
    path = temp_state_dir / "environments.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonEnvironmentStore(path)

    assert store.get("staging") is None
    assert store.list() == []
    store.put("staging", _state())
    assert store.get("staging") is not None


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryEnvironmentStore()
    store.put("staging", _state())

    copy = store.get("staging")
    assert copy is not None
    copy.history.clear()

    again = store.get("staging")
    assert again is not None
    assert again.previous_version == "v1"


def test_previous_version_without_history() -> None:
    assert EnvironmentState(name="dev").previous_version is None
