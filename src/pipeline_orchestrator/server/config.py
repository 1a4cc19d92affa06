"""Configuration for the REST server.

The server can start and report environment state without a deploy command
configured. Endpoints that promote must validate that at request time.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from pipeline_orchestrator.orchestrator.config import OrchestratorSettings


class ServerSettings(OrchestratorSettings):
    """Orchestrator settings plus HTTP-only concerns."""

    # Dev-friendly CORS. Override via PIPELINE_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="PIPELINE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
