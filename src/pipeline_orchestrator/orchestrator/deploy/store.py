"""Persistence for per-environment deployment state.

The promotion engine only needs `get(environment)` and `put(environment, state)`.
:class:`JsonEnvironmentStore` keeps every environment in one JSON file and is
safe to share between threads.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

HealthLabel = Literal["unknown", "healthy", "unhealthy"]


class DeploymentRecord(BaseModel):
    """A version that used to be current, and when it was deployed."""

    version: str
    deployed_at: datetime | None = None
    replaced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EnvironmentState(BaseModel):
    name: str
    current_version: str | None = None
    deployed_at: datetime | None = None
    health: HealthLabel = "unknown"
    history: list[DeploymentRecord] = Field(default_factory=list)
    last_failed_version: str | None = None

    @property
    def previous_version(self) -> str | None:
        return self.history[-1].version if self.history else None


class EnvironmentStore(Protocol):
    def get(self, environment: str) -> EnvironmentState | None: ...

    def put(self, environment: str, state: EnvironmentState) -> None: ...


class InMemoryEnvironmentStore:
    def __init__(self) -> None:
        self._states: dict[str, EnvironmentState] = {}
        self._lock = threading.Lock()

    def get(self, environment: str) -> EnvironmentState | None:
        with self._lock:
            state = self._states.get(environment)
            return state.model_copy(deep=True) if state is not None else None

    def put(self, environment: str, state: EnvironmentState) -> None:
        with self._lock:
            self._states[environment] = state.model_copy(deep=True)

    def list(self) -> list[EnvironmentState]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._states.values()]


@dataclass
class JsonEnvironmentStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, EnvironmentState]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Environment state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return {}
        if not isinstance(raw, dict):
            logger.warning(
                "Environment state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return {}
        return {name: EnvironmentState.model_validate(item) for name, item in raw.items()}

    def _save_unlocked(self, states: dict[str, EnvironmentState]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {name: state.model_dump(mode="json") for name, state in states.items()}
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def get(self, environment: str) -> EnvironmentState | None:
        with self._lock:
            return self._load_unlocked().get(environment)

    def put(self, environment: str, state: EnvironmentState) -> None:
        with self._lock:
            states = self._load_unlocked()
            states[environment] = state
            self._save_unlocked(states)

    def list(self) -> list[EnvironmentState]:
        with self._lock:
            return list(self._load_unlocked().values())
