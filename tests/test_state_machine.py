from __future__ import annotations

import pytest

from deploygate.contracts.errors import InvalidTransitionError, RunFinalizedError
from deploygate.contracts.models import ArtifactReference, PipelineRun
from deploygate.contracts.types import TERMINAL_STAGES, Environment, PipelineStage, RunStatus
from deploygate.orchestrator.state import TRANSITIONS, RunStateMachine


def _run(artifact: ArtifactReference) -> PipelineRun:
    chain = [Environment.STAGING, Environment.PRODUCTION]
    return PipelineRun(artifact=artifact, environments=chain)


def test_happy_path_walks_the_graph(artifact: ArtifactReference) -> None:
    seen: list[tuple[PipelineStage, PipelineStage]] = []
    machine = RunStateMachine(_run(artifact), on_transition=lambda a, b: seen.append((a, b)))
    path = [
        PipelineStage.BUILT,
        PipelineStage.SCANNING,
        PipelineStage.POLICY_EVALUATING,
        PipelineStage.STAGING_PROMOTING,
        PipelineStage.AWAITING_APPROVAL,
        PipelineStage.PRODUCTION_PROMOTING,
        PipelineStage.SUCCEEDED,
    ]
    for stage in path:
        machine.move(stage)
    assert machine.stage is PipelineStage.SUCCEEDED
    assert [dest for _, dest in seen] == path
    assert seen[0][0] is PipelineStage.PENDING


@pytest.mark.parametrize(
    ("source", "dest"),
    [
        (PipelineStage.PENDING, PipelineStage.SCANNING),
        (PipelineStage.SCANNING, PipelineStage.STAGING_PROMOTING),
        (PipelineStage.BUILT, PipelineStage.SUCCEEDED),
        (PipelineStage.AWAITING_APPROVAL, PipelineStage.SUCCEEDED),
    ],
)
def test_skipping_stages_is_rejected(source: PipelineStage, dest: PipelineStage) -> None:
    assert not RunStateMachine.can_move(source, dest)


def test_invalid_move_raises_and_keeps_stage(artifact: ArtifactReference) -> None:
    machine = RunStateMachine(_run(artifact))
    with pytest.raises(InvalidTransitionError):
        machine.move(PipelineStage.PRODUCTION_PROMOTING)
    assert machine.stage is PipelineStage.PENDING


def test_terminal_stages_have_no_exits() -> None:
    for stage in TERMINAL_STAGES:
        assert stage not in TRANSITIONS
        assert not any(RunStateMachine.can_move(stage, dest) for dest in PipelineStage)


def test_every_live_stage_can_be_cancelled() -> None:
    for stage in TRANSITIONS:
        assert RunStateMachine.can_move(stage, PipelineStage.CANCELLED)


def test_finished_run_is_append_only(artifact: ArtifactReference) -> None:
    run = _run(artifact)
    machine = RunStateMachine(run)
    machine.move(PipelineStage.INVALID_REQUEST)
    run.finish(RunStatus.FAILED, "bad request")
    assert run.failure_reason == "bad request"
    with pytest.raises(RunFinalizedError):
        run.advance(PipelineStage.BUILT)
    with pytest.raises(RunFinalizedError):
        run.finish(RunStatus.SUCCEEDED)
