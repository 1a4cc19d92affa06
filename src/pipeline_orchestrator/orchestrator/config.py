"""Configuration for the pipeline orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Anything can be overridden in code (and in tests) by passing keyword
arguments: `OrchestratorSettings(max_concurrent_jobs=1)`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for running workflows and promoting environments.

    Environment variables:
    - LOG_LEVEL
    - PIPELINE_MAX_CONCURRENT_JOBS, PIPELINE_FAIL_FAST, PIPELINE_CANCEL_GRACE_SECONDS
    - PIPELINE_HEALTH_CHECK_ATTEMPTS, PIPELINE_HEALTH_CHECK_INTERVAL_SECONDS
    - PIPELINE_STATE_PATH
    - PIPELINE_DEPLOY_COMMAND, PIPELINE_HEALTH_CHECK_URL, PIPELINE_HEALTH_CHECK_TIMEOUT_SECONDS
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    max_concurrent_jobs: int = Field(
        default=4,
        ge=1,
        validation_alias="PIPELINE_MAX_CONCURRENT_JOBS",
        description="Upper bound on jobs running at once within a layer",
    )
    fail_fast: bool = Field(
        default=False,
        validation_alias="PIPELINE_FAIL_FAST",
        description="Cancel jobs that have not started as soon as any job fails",
    )
    cancel_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        validation_alias="PIPELINE_CANCEL_GRACE_SECONDS",
        description="How long a cancelled step process may take to exit before it is killed",
    )

    health_check_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias="PIPELINE_HEALTH_CHECK_ATTEMPTS",
        description="Health checks made after a deployment before rolling back",
    )
    health_check_interval_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias="PIPELINE_HEALTH_CHECK_INTERVAL_SECONDS",
        description="Wait between health checks",
    )
    health_check_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="PIPELINE_HEALTH_CHECK_TIMEOUT_SECONDS",
        description="HTTP timeout for a single health check",
    )

    state_path: Path = Field(
        default=Path("pipeline_state"),
        validation_alias="PIPELINE_STATE_PATH",
        description="Directory where environment and promotion job state is persisted",
    )

    deploy_command: str = Field(
        default="",
        validation_alias="PIPELINE_DEPLOY_COMMAND",
        description="Shell command template, e.g. './deploy.sh {environment} {version}'",
    )
    health_check_url: str = Field(
        default="",
        validation_alias="PIPELINE_HEALTH_CHECK_URL",
        description="Health endpoint template, e.g. 'https://{environment}.example.com/healthz'",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _deploy_command_needs_version(self) -> OrchestratorSettings:
        if self.deploy_command.strip() and "{version}" not in self.deploy_command:
            raise ValueError("PIPELINE_DEPLOY_COMMAND must reference {version}")
        return self

    @property
    def environments_state_file(self) -> Path:
        """Path where per-environment deployment state is persisted."""

        return self.state_path / "environments.json"

    @property
    def jobs_state_file(self) -> Path:
        """Path where background promotion jobs are persisted."""

        return self.state_path / "promotion_jobs.json"

    @property
    def promotion_configured(self) -> bool:
        return bool(self.deploy_command.strip() and self.health_check_url.strip())
