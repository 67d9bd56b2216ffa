"""State graph for a single pipeline run."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from deploygate.contracts.errors import InvalidTransitionError
from deploygate.contracts.models import PipelineRun
from deploygate.contracts.types import PipelineStage as S

TRANSITIONS: dict[S, frozenset[S]] = {
    S.PENDING: frozenset({S.BUILT, S.INVALID_REQUEST, S.ARTIFACT_NOT_FOUND, S.CANCELLED}),
    S.BUILT: frozenset({S.SCANNING, S.CANCELLED}),
    S.SCANNING: frozenset({S.SCAN_GATE_FAILED, S.POLICY_EVALUATING, S.CANCELLED}),
    S.POLICY_EVALUATING: frozenset(
        {
            S.POLICY_GATE_FAILED,
            S.STAGING_PROMOTING,
            # Production-only chains check staging instead of promoting to it.
            S.STAGING_FAILED,
            S.AWAITING_APPROVAL,
            S.PRODUCTION_PROMOTING,
            S.CANCELLED,
        }
    ),
    S.STAGING_PROMOTING: frozenset(
        {S.STAGING_FAILED, S.AWAITING_APPROVAL, S.PRODUCTION_PROMOTING, S.SUCCEEDED, S.CANCELLED}
    ),
    S.AWAITING_APPROVAL: frozenset(
        {S.APPROVAL_DENIED, S.STAGING_PROMOTING, S.PRODUCTION_PROMOTING, S.CANCELLED}
    ),
    S.PRODUCTION_PROMOTING: frozenset({S.PRODUCTION_FAILED, S.SUCCEEDED, S.CANCELLED}),
}


@dataclass(slots=True)
class RunStateMachine:
    """Moves a run between stages, rejecting moves the graph does not allow.

    Terminal stages have no outgoing transitions.
    """

    run: PipelineRun
    on_transition: Callable[[S, S], None] | None = None

    @property
    def stage(self) -> S:
        return self.run.stage

    @staticmethod
    def can_move(source: S, dest: S) -> bool:
        return dest in TRANSITIONS.get(source, frozenset())

    def move(self, dest: S) -> None:
        source = self.run.stage
        if not self.can_move(source, dest):
            raise InvalidTransitionError(f"no transition from {source.value} to {dest.value}")
        self.run.advance(dest)
        if self.on_transition is not None:
            self.on_transition(source, dest)
