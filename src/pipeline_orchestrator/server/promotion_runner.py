"""Background runner for promotion jobs accepted over HTTP."""

from __future__ import annotations

import logging
import threading
import uuid

from pipeline_orchestrator.orchestrator.deploy.promotion import PromotionEngine
from pipeline_orchestrator.server.job_store import JobStore

logger = logging.getLogger(__name__)


def start_promotion_job(
    *,
    environment: str,
    version: str,
    engine: PromotionEngine,
    job_store: JobStore,
) -> str:
    job_id = uuid.uuid4().hex
    job_store.create(job_id=job_id, environment=environment, version=version)

    thread = threading.Thread(
        target=_run_job,
        name=f"promote-{environment}-{job_id}",
        daemon=True,
        kwargs={
            "job_id": job_id,
            "environment": environment,
            "version": version,
            "engine": engine,
            "job_store": job_store,
        },
    )
    thread.start()
    return job_id


def _run_job(
    *,
    job_id: str,
    environment: str,
    version: str,
    engine: PromotionEngine,
    job_store: JobStore,
) -> None:
    job_store.update(job_id, status="running")
    try:
        result = engine.promote(environment, version)
        job_store.update(
            job_id,
            status=result.status.value,
            previous_version=result.previous_version,
            reason=result.reason,
            health_checks=result.health_checks,
        )
    except Exception as e:
        logger.exception(
            "Promotion job failed",
            extra={"job_id": job_id, "environment": environment, "version": version},
        )
        job_store.update(job_id, status="failed", error=str(e))
