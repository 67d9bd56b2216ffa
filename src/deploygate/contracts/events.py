"""Event contracts for pipeline notifications and approval signals."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from deploygate.contracts.models import PipelineRun, utcnow
from deploygate.contracts.types import ApprovalDecision, Environment, RunStatus


class PipelineTerminated(BaseModel):
    """Payload sent to notification sinks when a run reaches a terminal status."""

    run_id: UUID
    status: RunStatus
    stage: str
    artifact: str
    environments: list[Environment]
    rollback_failed: bool = False
    reason: str | None = None
    violations: list[str] = Field(default_factory=list)
    finished_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_run(cls, run: PipelineRun) -> PipelineTerminated:
        if run.status is None:
            raise ValueError("run has no terminal status yet")
        summary = run.failure_summary()
        return cls(
            run_id=run.run_id,
            status=run.status,
            stage=run.stage.value,
            artifact=run.artifact.pinned,
            environments=list(run.environments),
            rollback_failed=run.rollback_failed,
            reason=summary.get("reason"),
            violations=summary.get("violations", []),
            finished_at=run.finished_at or utcnow(),
        )

    @property
    def event_type(self) -> str:
        return TERMINAL_EVENT_TYPES[self.status]

    def headline(self) -> str:
        envs = ",".join(env.value for env in self.environments)
        text = f"{self.status.value}: {self.artifact} -> {envs} (stage {self.stage})"
        if self.rollback_failed:
            text += " ROLLBACK FAILED, operator intervention required"
        return text


class ApprovalSignal(BaseModel):
    """External approval decision for one artifact digest and environment."""

    digest: str
    environment: Environment
    decision: ApprovalDecision
    approver: str | None = None
    comment: str | None = None


PIPELINE_SUCCEEDED = "pipeline.succeeded"
PIPELINE_FAILED = "pipeline.failed"
PIPELINE_ROLLED_BACK = "pipeline.rolled_back"
APPROVAL_DECIDED = "approval.decided"

TERMINAL_EVENT_TYPES = {
    RunStatus.SUCCEEDED: PIPELINE_SUCCEEDED,
    RunStatus.FAILED: PIPELINE_FAILED,
    RunStatus.ROLLED_BACK: PIPELINE_ROLLED_BACK,
}
