"""Centralized pipeline settings for configuration-driven components."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from deploygate.config import get_bool, get_config_value, get_float, get_int
from deploygate.contracts.types import Environment, Severity

PACKAGE_ROOT = Path(__file__).resolve().parent
DEFAULT_POLICY_PATH = PACKAGE_ROOT / "gatekeeper" / "policy.yaml"
DEFAULT_TEMPLATE_PATH = PACKAGE_ROOT / "promoter" / "templates" / "deployment.yaml.j2"
DEFAULT_VALUES_DIR = PACKAGE_ROOT / "promoter" / "values"


def _parse_csv(value: str | None, *, fallback: Iterable[str]) -> list[str]:
    if value is None:
        return list(fallback)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(slots=True)
class PipelineSettings:
    scan_severity: Severity = Severity.HIGH
    ignore_unfixed: bool = False
    soft_gates: frozenset[str] = frozenset()
    retry_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    promotion_timeout: float = 300.0
    poll_interval: float = 5.0
    approval_timeout: float | None = None
    approval_environments: frozenset[Environment] = frozenset({Environment.PRODUCTION})
    policy_path: Path = DEFAULT_POLICY_PATH
    template_path: Path = DEFAULT_TEMPLATE_PATH
    values_dir: Path = DEFAULT_VALUES_DIR
    state_dir: Path = Path(".deploygate")
    notify_webhook: str | None = None
    nats_url: str | None = None
    health_urls: dict[Environment, str] = field(default_factory=dict)
    namespaces: dict[Environment, str] = field(default_factory=dict)
    metrics_port: int | None = None

    def namespace_for(self, environment: Environment) -> str:
        return self.namespaces.get(environment, environment.value)


@lru_cache
def get_pipeline_settings() -> PipelineSettings:
    health_urls: dict[Environment, str] = {}
    namespaces: dict[Environment, str] = {}
    for env in Environment:
        suffix = env.value.upper()
        url = get_config_value(f"DEPLOYGATE_HEALTH_URL_{suffix}")
        if url:
            health_urls[env] = url
        namespace = get_config_value(f"DEPLOYGATE_NAMESPACE_{suffix}")
        if namespace:
            namespaces[env] = namespace
    metrics_port = get_config_value("DEPLOYGATE_METRICS_PORT")
    return PipelineSettings(
        scan_severity=Severity(
            (get_config_value("DEPLOYGATE_SCAN_SEVERITY", "HIGH") or "HIGH").upper()
        ),
        ignore_unfixed=get_bool("DEPLOYGATE_IGNORE_UNFIXED"),
        soft_gates=frozenset(_parse_csv(get_config_value("DEPLOYGATE_SOFT_GATES"), fallback=())),
        retry_attempts=get_int("DEPLOYGATE_RETRY_ATTEMPTS", 3),
        retry_initial_delay=get_float("DEPLOYGATE_RETRY_INITIAL_DELAY", 1.0) or 0.0,
        retry_max_delay=get_float("DEPLOYGATE_RETRY_MAX_DELAY", 30.0) or 0.0,
        promotion_timeout=get_float("DEPLOYGATE_PROMOTION_TIMEOUT", 300.0) or 0.0,
        poll_interval=get_float("DEPLOYGATE_POLL_INTERVAL", 5.0) or 0.0,
        approval_timeout=get_float("DEPLOYGATE_APPROVAL_TIMEOUT", None),
        approval_environments=frozenset(
            Environment(name.lower())
            for name in _parse_csv(
                get_config_value("DEPLOYGATE_APPROVAL_ENVIRONMENTS"), fallback=("production",)
            )
        ),
        policy_path=Path(get_config_value("DEPLOYGATE_POLICY_PATH") or DEFAULT_POLICY_PATH),
        template_path=Path(get_config_value("DEPLOYGATE_TEMPLATE_PATH") or DEFAULT_TEMPLATE_PATH),
        values_dir=Path(get_config_value("DEPLOYGATE_VALUES_DIR") or DEFAULT_VALUES_DIR),
        state_dir=Path(get_config_value("DEPLOYGATE_STATE_DIR") or ".deploygate"),
        notify_webhook=get_config_value("DEPLOYGATE_NOTIFY_WEBHOOK") or None,
        nats_url=get_config_value("DEPLOYGATE_NATS_URL") or None,
        health_urls=health_urls,
        namespaces=namespaces,
        metrics_port=int(metrics_port) if metrics_port else None,
    )
