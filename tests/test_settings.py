from __future__ import annotations

from pathlib import Path

import pytest

from deploygate import config
from deploygate.config_adapter import (
    ConfigAdapter,
    DotEnvConfigSource,
    EnvConfigSource,
    YamlConfigSource,
)
from deploygate.contracts.types import Environment, Severity
from deploygate.settings import DEFAULT_POLICY_PATH, get_pipeline_settings


def test_defaults_without_configuration() -> None:
    settings = get_pipeline_settings()
    assert settings.scan_severity is Severity.HIGH
    assert settings.retry_attempts == 3
    assert settings.approval_timeout is None
    assert settings.approval_environments == frozenset({Environment.PRODUCTION})
    assert settings.policy_path == DEFAULT_POLICY_PATH
    assert settings.soft_gates == frozenset()
    assert settings.nats_url is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOYGATE_SCAN_SEVERITY", "critical")
    monkeypatch.setenv("DEPLOYGATE_APPROVAL_TIMEOUT", "90")
    monkeypatch.setenv("DEPLOYGATE_APPROVAL_ENVIRONMENTS", "staging, production")
    monkeypatch.setenv("DEPLOYGATE_SOFT_GATES", "scan")
    monkeypatch.setenv("DEPLOYGATE_IGNORE_UNFIXED", "yes")
    monkeypatch.setenv("DEPLOYGATE_NAMESPACE_PRODUCTION", "my-app-prod")
    monkeypatch.setenv("DEPLOYGATE_HEALTH_URL_STAGING", "https://staging.example/healthz")
    settings = get_pipeline_settings()
    assert settings.scan_severity is Severity.CRITICAL
    assert settings.approval_timeout == 90.0
    assert settings.approval_environments == frozenset(Environment)
    assert settings.soft_gates == frozenset({"scan"})
    assert settings.ignore_unfixed
    assert settings.namespace_for(Environment.PRODUCTION) == "my-app-prod"
    assert settings.namespace_for(Environment.STAGING) == "staging"
    assert settings.health_urls == {Environment.STAGING: "https://staging.example/healthz"}


def test_dotenv_file_is_read(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text(
        "# pipeline\nexport DEPLOYGATE_RETRY_ATTEMPTS=5\nDEPLOYGATE_STATE_DIR='/var/lib/dg'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("DOTENV_PATH", str(dotenv))
    config._config_adapter.cache_clear()  # type: ignore[attr-defined]
    settings = get_pipeline_settings()
    assert settings.retry_attempts == 5
    assert settings.state_dir == Path("/var/lib/dg")


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text('DEPLOYGATE_NOTIFY_WEBHOOK="https://from-file"\n', encoding="utf-8")
    monkeypatch.setenv("DEPLOYGATE_NOTIFY_WEBHOOK", "https://from-env")
    adapter = ConfigAdapter((EnvConfigSource(), DotEnvConfigSource(path=dotenv)))
    assert adapter.get("DEPLOYGATE_NOTIFY_WEBHOOK") == "https://from-env"
    assert DotEnvConfigSource(path=dotenv).get("DEPLOYGATE_NOTIFY_WEBHOOK") == "https://from-file"
    assert adapter.get("MISSING", "fallback") == "fallback"


def test_invalid_numbers_raise(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOYGATE_RETRY_ATTEMPTS", "three")
    with pytest.raises(RuntimeError, match="DEPLOYGATE_RETRY_ATTEMPTS"):
        get_pipeline_settings()


def test_invalid_severity_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOYGATE_SCAN_SEVERITY", "SEVERE")
    with pytest.raises(ValueError):
        get_pipeline_settings()


def test_yaml_config_file_is_flattened(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_file = tmp_path / "deploygate.yaml"
    config_file.write_text(
        "\n".join(
            [
                "scan:",
                "  severity: CRITICAL",
                "ignore-unfixed: true",
                "approval:",
                "  environments: [staging, production]",
                "  timeout: 45",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("DEPLOYGATE_CONFIG", str(config_file))
    monkeypatch.setenv("DEPLOYGATE_APPROVAL_TIMEOUT", "10")
    config._config_adapter.cache_clear()  # type: ignore[attr-defined]
    settings = get_pipeline_settings()
    assert settings.scan_severity is Severity.CRITICAL
    assert settings.ignore_unfixed
    assert settings.approval_environments == frozenset(Environment)
    assert settings.approval_timeout == 10.0


def test_yaml_config_must_be_a_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "deploygate.yaml"
    config_file.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="must contain a mapping"):
        YamlConfigSource(path=config_file).get("DEPLOYGATE_SCAN_SEVERITY")
