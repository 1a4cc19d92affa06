"""Simple persisted job tracking for background promotions.

Jobs are persisted next to the environment state so a restarted server can
still report on promotions it accepted earlier (best-effort).
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel


class PromotionJobRecord(BaseModel):
    job_id: str
    environment: str
    version: str
    status: str
    created_at: str
    updated_at: str

    previous_version: str | None = None
    reason: str | None = None
    health_checks: int = 0
    error: str | None = None


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class JobStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[PromotionJobRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [PromotionJobRecord.model_validate(item) for item in raw]

    def _save_unlocked(self, jobs: list[PromotionJobRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [j.model_dump(mode="json") for j in jobs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def list(self) -> list[PromotionJobRecord]:
        with self._lock:
            return self._load_unlocked()

    def get(self, job_id: str) -> PromotionJobRecord | None:
        with self._lock:
            for job in self._load_unlocked():
                if job.job_id == job_id:
                    return job
            return None

    def create(self, *, job_id: str, environment: str, version: str) -> PromotionJobRecord:
        with self._lock:
            jobs = self._load_unlocked()
            now = _utc_iso_now()
            record = PromotionJobRecord(
                job_id=job_id,
                environment=environment,
                version=version,
                status="queued",
                created_at=now,
                updated_at=now,
            )
            jobs.append(record)
            self._save_unlocked(jobs)
            return record

    def update(self, job_id: str, **updates: object) -> PromotionJobRecord:
        with self._lock:
            jobs = self._load_unlocked()
            for idx, job in enumerate(jobs):
                if job.job_id != job_id:
                    continue
                merged = job.model_copy(update={"updated_at": _utc_iso_now(), **updates})
                jobs[idx] = merged
                self._save_unlocked(jobs)
                return merged
            raise KeyError(job_id)
