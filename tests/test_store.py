from __future__ import annotations

from pathlib import Path

from deploygate.contracts.models import (
    ArtifactReference,
    EnvironmentState,
    GateResult,
    PipelineRun,
    Violation,
)
from deploygate.contracts.types import Environment, RolloutStatus, RunStatus
from deploygate.orchestrator.store import InMemoryRunStore, JsonFileRunStore


def _finished_run(artifact: ArtifactReference) -> PipelineRun:
    run = PipelineRun(artifact=artifact, environments=[Environment.STAGING])
    run.record_gate(
        GateResult.from_violations(
            "policy",
            [Violation(rule_id="privileged", message="no", container="app")],
            "1 violation",
        )
    )
    run.finish(RunStatus.FAILED, "1 violation")
    return run


def test_json_store_round_trips_runs(tmp_path: Path, artifact: ArtifactReference) -> None:
    store = JsonFileRunStore(tmp_path)
    run = _finished_run(artifact)
    store.save_run(run)

    loaded = JsonFileRunStore(tmp_path).load_run(run.run_id)
    assert loaded == run
    assert (tmp_path / "runs" / f"{run.run_id}.json").exists()
    assert not list((tmp_path / "runs").glob("*.tmp"))


def test_json_store_lists_runs_and_skips_corrupt_files(
    tmp_path: Path, artifact: ArtifactReference
) -> None:
    store = JsonFileRunStore(tmp_path)
    run = _finished_run(artifact)
    store.save_run(run)
    (tmp_path / "runs" / "broken.json").write_text("{not json", encoding="utf-8")
    assert [item.run_id for item in store.list_runs()] == [run.run_id]


def test_json_store_keeps_environment_state(tmp_path: Path, artifact: ArtifactReference) -> None:
    store = JsonFileRunStore(tmp_path)
    state = EnvironmentState(
        environment=Environment.PRODUCTION,
        current_artifact=artifact,
        last_known_good_artifact=artifact,
        rollout_status=RolloutStatus.HEALTHY,
        last_apply_id="production/deployment/my-app",
    )
    store.save_environment(state)
    assert store.load_environment(Environment.PRODUCTION) == state
    assert store.load_environment(Environment.STAGING) is None


def test_memory_store_returns_copies(artifact: ArtifactReference) -> None:
    store = InMemoryRunStore()
    run = PipelineRun(artifact=artifact, environments=[Environment.STAGING])
    store.save_run(run)
    loaded = store.load_run(run.run_id)
    assert loaded is not None and loaded is not run
    run.finish(RunStatus.SUCCEEDED)
    assert store.load_run(run.run_id).status is None  # type: ignore[union-attr]
    assert store.saves == 1
