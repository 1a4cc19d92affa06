"""FastAPI app factory.

Endpoints are thin wrappers over the promotion engine and environment store.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import cast

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from pipeline_orchestrator import __version__
from pipeline_orchestrator.orchestrator.deploy.promotion import PromotionEngine
from pipeline_orchestrator.orchestrator.deploy.store import (
    EnvironmentState,
    InMemoryEnvironmentStore,
    JsonEnvironmentStore,
)
from pipeline_orchestrator.orchestrator.runner import build_promotion_engine
from pipeline_orchestrator.server.config import ServerSettings
from pipeline_orchestrator.server.job_store import JobStore, PromotionJobRecord
from pipeline_orchestrator.server.models import (
    ApiEnvironment,
    JobStatus,
    PromotionJob,
    PromotionRequest,
)
from pipeline_orchestrator.server.promotion_runner import start_promotion_job

logger = logging.getLogger(__name__)


def _iso_to_dt(value: str) -> datetime:
    # Best-effort parsing; the store always writes ISO format.
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(tz=UTC)


def _to_api_environment(state: EnvironmentState) -> ApiEnvironment:
    payload = state.model_dump(mode="json")
    payload["previous_version"] = state.previous_version
    return ApiEnvironment.model_validate(payload)


def _to_promotion_job(record: PromotionJobRecord) -> PromotionJob:
    return PromotionJob(
        job_id=record.job_id,
        environment=record.environment,
        version=record.version,
        status=cast(JobStatus, record.status),
        created_at=_iso_to_dt(record.created_at),
        updated_at=_iso_to_dt(record.updated_at),
        previous_version=record.previous_version,
        reason=record.reason,
        health_checks=record.health_checks,
        error=record.error,
    )


def create_app(
    *,
    engine: PromotionEngine | None = None,
    store: JsonEnvironmentStore | InMemoryEnvironmentStore | None = None,
) -> FastAPI:
    settings = ServerSettings()

    app = FastAPI(
        title="Pipeline Orchestrator",
        version=__version__,
        description="REST API over environment promotion and rollback.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings for request handlers that want to read it.
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    env_store = store or JsonEnvironmentStore(settings.environments_state_file)
    job_store = JobStore(settings.jobs_state_file)
    engines: list[PromotionEngine] = [engine] if engine is not None else []
    engine_lock = threading.Lock()

    def promotion_engine() -> PromotionEngine:
        # One engine per app so every request shares the per-environment queues.
        with engine_lock:
            if engines:
                return engines[0]
            if not settings.promotion_configured:
                raise HTTPException(
                    status_code=409,
                    detail="PIPELINE_DEPLOY_COMMAND and PIPELINE_HEALTH_CHECK_URL are required "
                    "for this endpoint",
                )
            engines.append(build_promotion_engine(settings, store=env_store))
            return engines[0]

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/v1/environments", response_model=list[ApiEnvironment])
    def list_environments() -> list[ApiEnvironment]:
        return [_to_api_environment(state) for state in env_store.list()]

    @app.get("/api/v1/environments/{name}", response_model=ApiEnvironment)
    def get_environment(name: str) -> ApiEnvironment:
        state = env_store.get(name)
        if state is None:
            raise HTTPException(status_code=404, detail="Environment has no recorded state")
        return _to_api_environment(state)

    @app.post("/api/v1/environments/{name}/promote", response_model=PromotionJob, status_code=202)
    def promote(name: str, req: PromotionRequest) -> PromotionJob:
        if not req.version.strip():
            raise HTTPException(status_code=422, detail="version must not be blank")
        job_id = start_promotion_job(
            environment=name,
            version=req.version.strip(),
            engine=promotion_engine(),
            job_store=job_store,
        )
        record = job_store.get(job_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Job creation failed")
        logger.info(
            "Promotion accepted",
            extra={"job_id": job_id, "environment": name, "version": record.version},
        )
        return _to_promotion_job(record)

    @app.get("/api/v1/promotions", response_model=list[PromotionJob])
    def list_promotions() -> list[PromotionJob]:
        return [_to_promotion_job(record) for record in job_store.list()]

    @app.get("/api/v1/promotions/{job_id}", response_model=PromotionJob)
    def get_promotion(job_id: str) -> PromotionJob:
        record = job_store.get(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return _to_promotion_job(record)

    return app
