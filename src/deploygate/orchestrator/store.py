"""Pluggable persistence for pipeline runs and environment states.

The RunStore protocol lets different backends keep the audit trail of each
PipelineRun and the last known deployment state of every environment. The gate
controller and orchestrator save the run synchronously after every append, so a
crash right after a gate decision does not lose it.
"""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Protocol
from uuid import UUID

from deploygate.contracts.models import EnvironmentState, PipelineRun
from deploygate.contracts.types import Environment


class RunStore(Protocol):
    """Abstract storage for run records and environment snapshots."""

    def save_run(self, run: PipelineRun) -> None:
        """Persist the current snapshot of a run."""

    def load_run(self, run_id: UUID) -> PipelineRun | None:
        """Return the stored run, or None if not found."""

    def list_runs(self, limit: int = 50) -> list[PipelineRun]:
        """Return up to ``limit`` runs, most recent first."""

    def save_environment(self, state: EnvironmentState) -> None:
        """Persist the state of one environment."""

    def load_environment(self, environment: Environment) -> EnvironmentState | None:
        """Return the stored environment state, or None."""


class InMemoryRunStore:
    """In-memory RunStore for dev/test; not durable across restarts."""

    def __init__(self) -> None:
        self._runs: dict[UUID, str] = {}
        self._environments: dict[Environment, EnvironmentState] = {}
        self._lock = Lock()
        self.saves = 0

    def save_run(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run.model_dump_json()
            self.saves += 1

    def load_run(self, run_id: UUID) -> PipelineRun | None:
        with self._lock:
            raw = self._runs.get(run_id)
        return PipelineRun.model_validate_json(raw) if raw is not None else None

    def list_runs(self, limit: int = 50) -> list[PipelineRun]:
        with self._lock:
            raws = list(self._runs.values())
        runs = [PipelineRun.model_validate_json(raw) for raw in raws]
        runs.sort(key=lambda run: run.created_at, reverse=True)
        return runs[:limit]

    def save_environment(self, state: EnvironmentState) -> None:
        with self._lock:
            self._environments[state.environment] = state

    def load_environment(self, environment: Environment) -> EnvironmentState | None:
        with self._lock:
            return self._environments.get(environment)


class JsonFileRunStore:
    """Persist runs and environment states as JSON files in a local directory.

    Runs live in ``<root>/runs/<run_id>.json`` and environments in
    ``<root>/environments/<name>.json``. Writes go through a temp file and an
    atomic rename.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._runs_dir = root / "runs"
        self._env_dir = root / "environments"
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self._env_dir.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _write(self, path: Path, payload: str) -> None:
        tmp = path.with_suffix(".json.tmp")
        with self._lock:
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(path)

    def save_run(self, run: PipelineRun) -> None:
        self._write(self._runs_dir / f"{run.run_id}.json", run.model_dump_json(indent=2))

    def load_run(self, run_id: UUID) -> PipelineRun | None:
        path = self._runs_dir / f"{run_id}.json"
        if not path.exists():
            return None
        return PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))

    def list_runs(self, limit: int = 50) -> list[PipelineRun]:
        paths = sorted(
            self._runs_dir.glob("*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        runs: list[PipelineRun] = []
        for path in paths[:limit]:
            try:
                runs.append(PipelineRun.model_validate_json(path.read_text(encoding="utf-8")))
            except ValueError:
                continue
        return runs

    def save_environment(self, state: EnvironmentState) -> None:
        path = self._env_dir / f"{state.environment.value}.json"
        self._write(path, state.model_dump_json(indent=2))

    def load_environment(self, environment: Environment) -> EnvironmentState | None:
        path = self._env_dir / f"{environment.value}.json"
        if not path.exists():
            return None
        return EnvironmentState.model_validate_json(path.read_text(encoding="utf-8"))
