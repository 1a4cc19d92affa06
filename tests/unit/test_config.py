"""Unit tests for configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from pipeline_orchestrator.orchestrator.config import OrchestratorSettings
from pipeline_orchestrator.server.config import ServerSettings


def test_settings_defaults() -> None:
    """Defaults apply when nothing is configured."""
    settings = OrchestratorSettings()

    assert settings.log_level == "INFO"
    assert settings.max_concurrent_jobs == 4
    assert settings.fail_fast is False
    assert settings.cancel_grace_seconds == 10.0
    assert settings.health_check_attempts == 3
    assert settings.health_check_interval_seconds == 5.0
    assert settings.state_path == Path("pipeline_state")
    assert settings.environments_state_file == Path("pipeline_state") / "environments.json"
    assert settings.jobs_state_file == Path("pipeline_state") / "promotion_jobs.json"
    assert settings.promotion_configured is False


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PIPELINE_MAX_CONCURRENT_JOBS", "8")
    monkeypatch.setenv("PIPELINE_FAIL_FAST", "true")
    monkeypatch.setenv("PIPELINE_STATE_PATH", str(tmp_path / "state"))
    monkeypatch.setenv("PIPELINE_DEPLOY_COMMAND", "./deploy.sh {environment} {version}")
    monkeypatch.setenv("PIPELINE_HEALTH_CHECK_URL", "https://{environment}.example.com/healthz")

    settings = OrchestratorSettings()

    assert settings.max_concurrent_jobs == 8
    assert settings.fail_fast is True
    assert settings.environments_state_file == tmp_path / "state" / "environments.json"
    assert settings.promotion_configured is True


def test_settings_read_dotenv_file(tmp_path: Path) -> None:
    # The autouse fixture has already chdir'd into tmp_path.
    (tmp_path / ".env").write_text("LOG_LEVEL=DEBUG\nPIPELINE_HEALTH_CHECK_ATTEMPTS=5\n")

    settings = OrchestratorSettings()

    assert settings.log_level == "DEBUG"
    assert settings.health_check_attempts == 5


def test_keyword_overrides_win() -> None:
    settings = OrchestratorSettings(max_concurrent_jobs=1, fail_fast=True)

    assert settings.max_concurrent_jobs == 1
    assert settings.fail_fast is True


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PIPELINE_MAX_CONCURRENT_JOBS", "0")
    with pytest.raises(ValidationError):
        OrchestratorSettings()


def test_deploy_command_must_reference_version() -> None:
    with pytest.raises(ValidationError):
        OrchestratorSettings(deploy_command="./deploy.sh {environment}")


def test_server_settings_parse_cors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PIPELINE_CORS_ORIGINS", "http://a.test, http://b.test,,")

    settings = ServerSettings()

    assert settings.parsed_cors_origins() == ["http://a.test", "http://b.test"]
    assert settings.max_concurrent_jobs == 4
