"""Layered configuration sources for DeployGate settings.

Lookup order is decided by the caller; each source only answers ``get(key)``
with a string or None. File and secret backed sources load once, lazily.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import os
from pathlib import Path
from typing import Any, Protocol

import yaml  # type: ignore[import-untyped]

try:
    import boto3
except ImportError:  # pragma: no cover - optional dependency for local usage
    boto3 = None


class ConfigSource(Protocol):
    """Anything that can answer a configuration key."""

    def get(self, key: str) -> str | None: ...


@dataclass(slots=True)
class EnvConfigSource:
    """Process environment variables."""

    def get(self, key: str) -> str | None:
        return os.environ.get(key)


@dataclass(slots=True)
class _LoadedSource:
    """Shared lazy-load cache for sources backed by a file or a remote secret."""

    _values: dict[str, str] | None = field(default=None, init=False, repr=False)

    def _read(self) -> dict[str, str]:
        raise NotImplementedError

    def get(self, key: str) -> str | None:
        if self._values is None:
            self._values = self._read()
        return self._values.get(key)


@dataclass(slots=True)
class DotEnvConfigSource(_LoadedSource):
    """``KEY=VALUE`` lines from a .env file; a missing file is simply empty."""

    path: Path = Path(".env")

    def _read(self) -> dict[str, str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        values: dict[str, str] = {}
        for raw in text.splitlines():
            line = raw.strip()
            if line.startswith("export "):
                line = line[len("export ") :].lstrip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = _unquote(value.strip())
        return values


@dataclass(slots=True)
class YamlConfigSource(_LoadedSource):
    """Nested YAML file flattened onto ``DEPLOYGATE_*`` keys.

    ``scan: {severity: CRITICAL}`` answers ``DEPLOYGATE_SCAN_SEVERITY``; lists
    become comma separated strings.
    """

    path: Path = Path("deploygate.yaml")
    prefix: str = "DEPLOYGATE"

    def _read(self) -> dict[str, str]:
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"invalid config file {self.path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise RuntimeError(f"config file {self.path} must contain a mapping")
        return dict(_flatten(data, self.prefix))


@dataclass(slots=True)
class SecretsManagerConfigSource(_LoadedSource):
    """A JSON object stored in AWS Secrets Manager; non-JSON secrets are ignored."""

    secret_id: str
    region_name: str | None = None
    profile_name: str | None = None

    def _client(self) -> Any:
        if boto3 is None:
            raise RuntimeError("boto3 is required for SecretsManagerConfigSource")
        if self.profile_name:
            session = boto3.session.Session(profile_name=self.profile_name)
        else:
            session = boto3.session.Session()
        return session.client("secretsmanager", region_name=self.region_name)

    def _read(self) -> dict[str, str]:
        response = self._client().get_secret_value(SecretId=self.secret_id)
        secret = response.get("SecretString")
        if not secret and response.get("SecretBinary"):
            secret = base64.b64decode(response["SecretBinary"]).decode("utf-8")
        if not secret:
            return {}
        try:
            parsed = json.loads(secret)
        except json.JSONDecodeError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(key): str(value) for key, value in parsed.items()}


@dataclass(slots=True)
class ConfigAdapter:
    """First source with an answer wins."""

    sources: tuple[ConfigSource, ...]

    def get(self, key: str, default: str | None = None) -> str | None:
        for source in self.sources:
            value = source.get(key)
            if value is not None:
                return value
        return default


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _flatten(data: Mapping[Any, Any], prefix: str) -> list[tuple[str, str]]:
    items: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}_{str(key).upper().replace('-', '_')}"
        if isinstance(value, Mapping):
            items.extend(_flatten(value, name))
        elif isinstance(value, list):
            items.append((name, ",".join(str(item) for item in value)))
        elif isinstance(value, bool):
            items.append((name, "true" if value else "false"))
        elif value is not None:
            items.append((name, str(value)))
    return items
