"""Domain models for deployment gating and promotion."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deploygate.contracts.errors import (
    ApprovalDeniedError,
    ApprovalTimeoutError,
    ArtifactNotFoundError,
    DeployGateError,
    InvalidRequestError,
    PolicyViolationError,
    RollbackFailureError,
    RolloutFailureError,
    RunCancelledError,
    RunFinalizedError,
    ScanThresholdExceededError,
)
from deploygate.contracts.types import (
    Environment,
    PipelineStage,
    PromotionKind,
    RolloutStatus,
    RunStatus,
    Severity,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_STAGE_ERRORS: dict[PipelineStage, type[DeployGateError]] = {
    PipelineStage.SCAN_GATE_FAILED: ScanThresholdExceededError,
    PipelineStage.POLICY_GATE_FAILED: PolicyViolationError,
    PipelineStage.STAGING_FAILED: RolloutFailureError,
    PipelineStage.APPROVAL_DENIED: ApprovalDeniedError,
    PipelineStage.PRODUCTION_FAILED: RolloutFailureError,
    PipelineStage.INVALID_REQUEST: InvalidRequestError,
    PipelineStage.ARTIFACT_NOT_FOUND: ArtifactNotFoundError,
    PipelineStage.CANCELLED: RunCancelledError,
}


class ArtifactReference(BaseModel):
    """Reference to a built, addressable container image."""

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: str
    digest: str | None = None

    @property
    def image(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @property
    def pinned(self) -> str:
        """Image reference pinned to the digest when one is known."""
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return self.image

    def with_digest(self, digest: str) -> ArtifactReference:
        return self.model_copy(update={"digest": digest})

    @classmethod
    def parse(cls, ref: str, default_registry: str = "docker.io") -> ArtifactReference:
        """Parse ``registry/repository:tag`` (tag defaults to ``latest``)."""
        name, _, digest = ref.partition("@")
        head, _, last = name.rpartition("/")
        if ":" in last:
            last, tag = last.split(":", 1)
        else:
            tag = "latest"
        path = f"{head}/{last}" if head else last
        first, _, rest = path.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry, repository = default_registry, path
        return cls(registry=registry, repository=repository, tag=tag, digest=digest or None)

    def __str__(self) -> str:
        return self.pinned


class PipelineRequest(BaseModel):
    """Request to push one repository tag through an environment chain."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    registry: str = "docker.io"
    environments: tuple[Environment, ...] = (Environment.STAGING, Environment.PRODUCTION)

    @field_validator("environments")
    @classmethod
    def _ordered_chain(cls, value: tuple[Environment, ...]) -> tuple[Environment, ...]:
        return Environment.parse_chain(",".join(env.value for env in value))

    @property
    def reference(self) -> ArtifactReference:
        return ArtifactReference(registry=self.registry, repository=self.repository, tag=self.tag)


class ContainerDescriptor(BaseModel):
    """Security-relevant properties of one container in a workload."""

    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    privileged: bool | None = None
    allow_privilege_escalation: bool | None = None
    run_as_root: bool | None = None
    resource_limits: dict[str, str] | None = None


class DeploymentDescriptor(BaseModel):
    """Rendered, environment specific workload description evaluated by policy rules."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str = "Deployment"
    namespace: str
    environment: Environment
    runs_as_root: bool | None = None
    containers: list[ContainerDescriptor] = Field(default_factory=list)
    network_policies: list[str] = Field(default_factory=list)
    manifest: str = ""


class Violation(BaseModel):
    """A single gate finding."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    message: str
    container: str | None = None
    environment: str | None = None

    def describe(self) -> str:
        prefix = ""
        if self.environment:
            prefix += f"[{self.environment}] "
        if self.container:
            prefix += f"container '{self.container}': "
        return f"{prefix}{self.message} ({self.rule_id})"


class GateResult(BaseModel):
    """Outcome of one gate."""

    model_config = ConfigDict(frozen=True)

    gate_name: str
    passed: bool
    violations: list[Violation] = Field(default_factory=list)
    warnings: list[Violation] = Field(default_factory=list)
    reason: str | None = None

    @classmethod
    def from_violations(
        cls, gate_name: str, violations: list[Violation], reason: str | None = None
    ) -> GateResult:
        return cls(
            gate_name=gate_name,
            passed=not violations,
            violations=list(violations),
            reason=reason,
        )

    def softened(self) -> GateResult:
        """Downgrade violations to warnings for warn-only gates."""
        if self.passed:
            return self
        return self.model_copy(
            update={
                "passed": True,
                "violations": [],
                "warnings": [*self.warnings, *self.violations],
            }
        )


class ScanFinding(BaseModel):
    """A single vulnerability reported by the scanner."""

    model_config = ConfigDict(frozen=True)

    finding_id: str
    severity: Severity
    package: str | None = None
    fixed_version: str | None = None

    @property
    def has_fix(self) -> bool:
        return bool(self.fixed_version and self.fixed_version.strip())


class EnvironmentState(BaseModel):
    """Deployment state of one environment."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    current_artifact: ArtifactReference | None = None
    last_known_good_artifact: ArtifactReference | None = None
    rollout_status: RolloutStatus = RolloutStatus.PENDING
    pending_artifact: ArtifactReference | None = None
    last_apply_id: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def diverged(self) -> bool:
        """True when an unconfirmed artifact may be live in the cluster."""
        return (
            self.pending_artifact is not None
            and self.pending_artifact != self.last_known_good_artifact
        )

    def is_healthy_with(self, artifact: ArtifactReference) -> bool:
        return self.rollout_status is RolloutStatus.HEALTHY and self.current_artifact == artifact


class PromotionAttempt(BaseModel):
    """One apply/verify cycle against an environment."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    artifact: ArtifactReference | None
    kind: PromotionKind
    rollout_status: RolloutStatus
    apply_id: str | None = None
    reason: str | None = None
    started_at: datetime
    finished_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.rollout_status is RolloutStatus.HEALTHY


class PipelineRun(BaseModel):
    """Append-only record of one artifact's trip through the pipeline."""

    run_id: UUID = Field(default_factory=uuid4)
    artifact: ArtifactReference
    environments: list[Environment]
    stage: PipelineStage = PipelineStage.PENDING
    gate_results: list[GateResult] = Field(default_factory=list)
    promotions: list[PromotionAttempt] = Field(default_factory=list)
    status: RunStatus | None = None
    failure_reason: str | None = None
    rollback_failed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status is not None

    def _ensure_open(self) -> None:
        if self.is_finished:
            raise RunFinalizedError(f"run {self.run_id} already finished as {self.status}")

    def record_gate(self, result: GateResult) -> None:
        self._ensure_open()
        self.gate_results.append(result)

    def record_promotion(self, attempt: PromotionAttempt) -> None:
        self._ensure_open()
        self.promotions.append(attempt)

    def advance(self, stage: PipelineStage) -> None:
        self._ensure_open()
        self.stage = stage

    def finish(self, status: RunStatus, reason: str | None = None) -> None:
        self._ensure_open()
        self.status = status
        if reason and not self.failure_reason:
            self.failure_reason = reason
        self.finished_at = utcnow()

    def first_failed_gate(self) -> GateResult | None:
        return next((result for result in self.gate_results if not result.passed), None)

    def promotion_attempts(self, kind: PromotionKind | None = None) -> list[PromotionAttempt]:
        if kind is None:
            return list(self.promotions)
        return [attempt for attempt in self.promotions if attempt.kind is kind]

    def failure_kind(self) -> type[DeployGateError] | None:
        """Error class describing why the run did not succeed, if it failed."""
        if self.rollback_failed:
            return RollbackFailureError
        failed_gate = self.first_failed_gate()
        if failed_gate is not None and any(
            violation.rule_id == "approval-timeout" for violation in failed_gate.violations
        ):
            return ApprovalTimeoutError
        return _STAGE_ERRORS.get(self.stage)

    def failure_summary(self) -> dict[str, Any]:
        """Terminal status together with the first failing gate or rollout reason."""
        summary: dict[str, Any] = {
            "run_id": str(self.run_id),
            "artifact": self.artifact.pinned,
            "stage": self.stage.value,
            "status": self.status.value if self.status else None,
            "rollback_failed": self.rollback_failed,
        }
        kind = self.failure_kind()
        if kind is not None:
            summary["error"] = kind.__name__
        failed_gate = self.first_failed_gate()
        if failed_gate is not None:
            summary["failed_gate"] = failed_gate.gate_name
            summary["violations"] = [violation.describe() for violation in failed_gate.violations]
        if self.failure_reason:
            summary["reason"] = self.failure_reason
        return summary
