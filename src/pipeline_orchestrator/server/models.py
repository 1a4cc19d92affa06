"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ApiDeployment(BaseModel):
    version: str
    deployed_at: datetime | None = None
    replaced_at: datetime


class ApiEnvironment(BaseModel):
    name: str
    current_version: str | None = None
    previous_version: str | None = None
    deployed_at: datetime | None = None
    health: str = "unknown"
    last_failed_version: str | None = None
    history: list[ApiDeployment] = Field(default_factory=list)


class PromotionRequest(BaseModel):
    version: str = Field(min_length=1)


JobStatus = Literal["queued", "running", "promoted", "rolled_back", "failed"]


class PromotionJob(BaseModel):
    job_id: str
    environment: str
    version: str
    status: JobStatus

    created_at: datetime
    updated_at: datetime

    previous_version: str | None = None
    reason: str | None = None
    health_checks: int = 0

    error: str | None = None
