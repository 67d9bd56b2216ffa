"""Error taxonomy and CLI exit codes for DeployGate."""

from __future__ import annotations

from enum import IntEnum


class DeployGateError(Exception):
    """Base class for DeployGate errors."""


class TransientInfraError(DeployGateError):
    """Network or timeout failure talking to the builder, scanner or cluster.

    The only error class that is retried.
    """


class ApplyRejectedError(DeployGateError):
    """The cluster refused the manifest (admission denial, invalid object); never retried."""


class ArtifactNotFoundError(DeployGateError):
    """The registry has no image for the requested repository and tag."""

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(f"artifact not found: {image}")


class InvalidRequestError(DeployGateError):
    """The pipeline request is malformed or not allowed."""


class RenderError(DeployGateError):
    """A deployment descriptor could not be rendered."""


class PolicyViolationError(DeployGateError):
    """A descriptor fails admission rules."""


class ScanThresholdExceededError(DeployGateError):
    """The scanner reported findings at or above the severity threshold."""


class ApprovalDeniedError(DeployGateError):
    """Production approval was explicitly denied."""


class ApprovalTimeoutError(ApprovalDeniedError):
    """No approval signal arrived within the configured timeout."""


class RolloutFailureError(DeployGateError):
    """A promotion did not reach Healthy within the promotion timeout."""


class RollbackFailureError(DeployGateError):
    """Rollback was impossible or failed; the environment state is unknown."""

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"rollback failed for {environment}: {reason}")


class RunFinalizedError(DeployGateError):
    """Attempt to append to a pipeline run that already has a terminal status."""


class InvalidTransitionError(DeployGateError):
    """The run state machine has no transition for the requested move."""


class RunCancelledError(DeployGateError):
    """The run was cancelled before a promotion started applying."""


class ExitCode(IntEnum):
    """Process exit codes for the ``deploygate`` CLI."""

    SUCCEEDED = 0
    VIOLATIONS = 1
    USAGE = 2
    SCAN_GATE_FAILED = 10
    POLICY_GATE_FAILED = 11
    STAGING_FAILED = 12
    APPROVAL_DENIED = 13
    PRODUCTION_FAILED = 14
    ROLLBACK_FAILED = 15
    ARTIFACT_NOT_FOUND = 16
    CANCELLED = 17
