"""Process-wide configuration lookup with typed accessors."""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from deploygate.config_adapter import (
    ConfigAdapter,
    ConfigSource,
    DotEnvConfigSource,
    EnvConfigSource,
    SecretsManagerConfigSource,
    YamlConfigSource,
)

_TRUE = frozenset({"1", "true", "yes", "on"})


@lru_cache
def _config_adapter() -> ConfigAdapter:
    """Environment, then .env, then deploygate.yaml, then an optional AWS secret."""
    sources: list[ConfigSource] = [
        EnvConfigSource(),
        DotEnvConfigSource(path=Path(os.getenv("DOTENV_PATH", ".env"))),
        YamlConfigSource(path=Path(os.getenv("DEPLOYGATE_CONFIG", "deploygate.yaml"))),
    ]
    secret_id = os.getenv("AWS_SECRETSMANAGER_CONFIG_ID")
    if secret_id:
        sources.append(
            SecretsManagerConfigSource(
                secret_id=secret_id,
                region_name=os.getenv("AWS_REGION"),
                profile_name=os.getenv("AWS_PROFILE"),
            )
        )
    return ConfigAdapter(tuple(sources))


def get_config_value(key: str, default: str | None = None) -> str | None:
    return _config_adapter().get(key, default)


def _raw(key: str) -> str | None:
    value = get_config_value(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def get_float(key: str, default: float | None) -> float | None:
    raw = _raw(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be a number, got {raw!r}") from exc


def get_int(key: str, default: int) -> int:
    raw = _raw(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}") from exc


def get_bool(key: str, default: bool = False) -> bool:
    raw = _raw(key)
    if raw is None:
        return default
    return raw.lower() in _TRUE
