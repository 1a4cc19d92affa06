from __future__ import annotations

from unittest.mock import Mock

import pytest
import requests

from pipeline_orchestrator.orchestrator.deploy.delegates import (
    CommandDeployer,
    HealthStatus,
    HttpHealthCheck,
)


def test_command_deployer_requires_version_placeholder() -> None:
    with pytest.raises(ValueError):
        CommandDeployer("./deploy.sh {environment}")


def test_command_deployer_success_captures_stdout() -> None:
    deployer = CommandDeployer("printf '%s@%s' {environment} {version}")

    outcome = deployer.apply("staging", "v1 beta")

    assert outcome.ok
    assert outcome.message == "staging@v1 beta"


def test_command_deployer_quotes_arguments() -> None:
    deployer = CommandDeployer("printf '%s' {version}")

    outcome = deployer.apply("staging", "v1; exit 9")

    assert outcome.ok
    assert outcome.message == "v1; exit 9"


def test_command_deployer_reports_nonzero_exit() -> None:
    deployer = CommandDeployer("echo broken {version} >&2; exit 3")

    outcome = deployer.apply("staging", "v2")

    assert not outcome.ok
    assert "exited 3" in outcome.message
    assert "broken v2" in outcome.message


def test_command_deployer_times_out() -> None:
    deployer = CommandDeployer("sleep 5 # {version}", timeout_seconds=0.2)

    outcome = deployer.apply("staging", "v1")

    assert not outcome.ok
    assert "timed out" in outcome.message


def _session(**get_kwargs: object) -> Mock:
    session = Mock()
    session.headers = {}
    session.get.configure_mock(**get_kwargs)
    return session


def test_health_check_treats_2xx_as_healthy() -> None:
    session = _session(return_value=Mock(status_code=204))
    check = HttpHealthCheck(
        "https://{environment}.example.test/healthz", timeout_seconds=2.0, session=session
    )

    assert check.check("staging") is HealthStatus.HEALTHY
    session.get.assert_called_once_with("https://staging.example.test/healthz", timeout=2.0)
    assert session.headers["User-Agent"] == "pipeline-orchestrator"


def test_health_check_treats_server_error_as_unhealthy() -> None:
    session = _session(return_value=Mock(status_code=503))
    check = HttpHealthCheck("https://example.test/{environment}", session=session)

    assert check.check("prod") is HealthStatus.UNHEALTHY


def test_health_check_treats_request_errors_as_unhealthy() -> None:
    session = _session(side_effect=requests.ConnectionError("refused"))
    check = HttpHealthCheck("https://example.test/{environment}", session=session)

    assert check.check("prod") is HealthStatus.UNHEALTHY
    assert check.url_for("prod") == "https://example.test/prod"
