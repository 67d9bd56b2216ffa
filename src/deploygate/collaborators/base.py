"""Interfaces for the external systems the pipeline talks to."""

from __future__ import annotations

from typing import Protocol

from deploygate.contracts.events import PipelineTerminated
from deploygate.contracts.models import ArtifactReference, DeploymentDescriptor, ScanFinding
from deploygate.contracts.types import ApprovalDecision, Environment, RolloutStatus


class ArtifactRegistry(Protocol):
    """Builder/registry: turns a repository and tag into a digest-pinned reference."""

    def resolve_digest(self, registry: str, repository: str, tag: str) -> ArtifactReference:
        """Return the reference with its digest, or raise ArtifactNotFoundError."""


class VulnerabilityScanner(Protocol):
    def scan(self, artifact: ArtifactReference) -> list[ScanFinding]:
        """Return every finding for the artifact."""


class ClusterApply(Protocol):
    def apply(self, environment: Environment, descriptor: DeploymentDescriptor) -> str:
        """Apply the descriptor and return an apply id for status polling."""

    def rollout_status(self, environment: Environment, apply_id: str) -> RolloutStatus:
        """Return the current rollout status of an apply."""


class ApprovalSource(Protocol):
    def await_approval(
        self,
        artifact: ArtifactReference,
        environment: Environment,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        """Block until a decision for this digest and environment arrives.

        Returns None when ``timeout`` elapses first.
        """


class NotificationSink(Protocol):
    def notify(self, event: PipelineTerminated) -> None:
        """Deliver a terminal pipeline event; failures are the caller's to log."""


class HealthProbe(Protocol):
    def check(self, environment: Environment, artifact: ArtifactReference) -> bool:
        """Return True when the deployed service answers its health check."""
