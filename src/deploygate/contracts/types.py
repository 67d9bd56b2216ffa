"""Shared enums for DeployGate contracts."""

from __future__ import annotations

from enum import Enum


class Environment(str, Enum):
    """Deployment environments, in promotion order."""

    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def parse_chain(cls, raw: str) -> tuple[Environment, ...]:
        """Parse a comma separated environment chain such as ``staging,production``."""
        names = [item.strip().lower() for item in raw.split(",") if item.strip()]
        if not names:
            raise ValueError("environment chain must not be empty")
        chain = tuple(cls(name) for name in names)
        if len(set(chain)) != len(chain):
            raise ValueError(f"environment chain has duplicates: {raw}")
        order = list(cls)
        if list(chain) != sorted(chain, key=order.index):
            raise ValueError(f"environment chain must follow promotion order: {raw}")
        return chain


class RolloutStatus(str, Enum):
    """Rollout status reported by the cluster for an apply."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RolloutStatus.HEALTHY, RolloutStatus.FAILED)


class RunStatus(str, Enum):
    """Terminal status of a pipeline run."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


class PipelineStage(str, Enum):
    """States of the pipeline run state machine."""

    BUILT = "Built"
    SCANNING = "Scanning"
    SCAN_GATE_FAILED = "ScanGateFailed"
    POLICY_EVALUATING = "PolicyEvaluating"
    POLICY_GATE_FAILED = "PolicyGateFailed"
    STAGING_PROMOTING = "StagingPromoting"
    STAGING_FAILED = "StagingFailed"
    AWAITING_APPROVAL = "AwaitingApproval"
    APPROVAL_DENIED = "ApprovalDenied"
    PRODUCTION_PROMOTING = "ProductionPromoting"
    PRODUCTION_FAILED = "ProductionFailed"
    SUCCEEDED = "Succeeded"
    # Stages reached before or outside the gate sequence.
    PENDING = "Pending"
    INVALID_REQUEST = "InvalidRequest"
    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset(
    {
        PipelineStage.SCAN_GATE_FAILED,
        PipelineStage.POLICY_GATE_FAILED,
        PipelineStage.STAGING_FAILED,
        PipelineStage.APPROVAL_DENIED,
        PipelineStage.PRODUCTION_FAILED,
        PipelineStage.SUCCEEDED,
        PipelineStage.INVALID_REQUEST,
        PipelineStage.ARTIFACT_NOT_FOUND,
        PipelineStage.CANCELLED,
    }
)


class Severity(str, Enum):
    """Vulnerability severity, ordered from least to most severe."""

    UNKNOWN = "UNKNOWN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_or_above(self, threshold: Severity) -> bool:
        return self.rank >= threshold.rank

    @classmethod
    def parse(cls, raw: str | None) -> Severity:
        if not raw:
            return cls.UNKNOWN
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return cls.UNKNOWN


_SEVERITY_ORDER = list(Severity)


class ApprovalDecision(str, Enum):
    """External approval signal outcome."""

    APPROVED = "Approved"
    DENIED = "Denied"


class GateName(str, Enum):
    """Gates known to the gate controller."""

    SCAN = "scan"
    POLICY = "policy"
    APPROVAL = "approval"


class PromotionKind(str, Enum):
    """Kind of environment promotion attempt."""

    PROMOTE = "promote"
    ROLLBACK = "rollback"
    VERIFY = "verify"
