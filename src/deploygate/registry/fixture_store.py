"""Deterministic in-memory collaborators for demos and tests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from threading import Condition, Lock
import time

from deploygate.contracts.errors import (
    ApplyRejectedError,
    ArtifactNotFoundError,
    TransientInfraError,
)
from deploygate.contracts.events import PipelineTerminated
from deploygate.contracts.models import ArtifactReference, DeploymentDescriptor, ScanFinding
from deploygate.contracts.types import ApprovalDecision, Environment, RolloutStatus


def _digest_of(descriptor: DeploymentDescriptor) -> str | None:
    for container in descriptor.containers:
        _, _, digest = container.image.partition("@")
        if digest:
            return digest
    return None


@dataclass(slots=True)
class FixtureRegistry:
    """Maps ``(repository, tag)`` to a digest."""

    images: dict[tuple[str, str], str] = field(default_factory=dict)
    transient_failures: int = 0
    calls: int = 0

    def register(self, repository: str, tag: str, digest: str) -> None:
        self.images[(repository, tag)] = digest

    def resolve_digest(self, registry: str, repository: str, tag: str) -> ArtifactReference:
        self.calls += 1
        reference = ArtifactReference(registry=registry, repository=repository, tag=tag)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientInfraError("registry timed out")
        digest = self.images.get((repository, tag))
        if digest is None:
            raise ArtifactNotFoundError(reference.image)
        return reference.with_digest(digest)


@dataclass(slots=True)
class FixtureScanner:
    """Returns canned findings per digest."""

    findings: dict[str, list[ScanFinding]] = field(default_factory=dict)
    transient_failures: int = 0
    calls: int = 0

    def scan(self, artifact: ArtifactReference) -> list[ScanFinding]:
        self.calls += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientInfraError("scanner timed out")
        return list(self.findings.get(artifact.digest or "", []))


@dataclass(slots=True)
class FixtureCluster:
    """Scripted cluster: each digest rolls out through a fixed status sequence.

    The last status of a script repeats forever. Unscripted digests become
    Healthy on the first poll.
    """

    scripts: dict[tuple[Environment, str], Sequence[RolloutStatus]] = field(default_factory=dict)
    apply_delay: float = 0.0
    transient_failures: int = 0
    rejections: dict[Environment, str] = field(default_factory=dict)
    apply_calls: int = 0
    applies: list[tuple[Environment, str | None]] = field(default_factory=list)
    max_concurrent: dict[Environment, int] = field(default_factory=dict)
    _polls: dict[str, tuple[Environment, str | None, int]] = field(default_factory=dict)
    _active: dict[Environment, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def script(self, environment: Environment, digest: str, *statuses: RolloutStatus) -> None:
        self.scripts[(environment, digest)] = statuses

    def apply(self, environment: Environment, descriptor: DeploymentDescriptor) -> str:
        digest = _digest_of(descriptor)
        with self._lock:
            self.apply_calls += 1
            if environment in self.rejections:
                raise ApplyRejectedError(self.rejections[environment])
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientInfraError("cluster API timed out")
            self._active[environment] = self._active.get(environment, 0) + 1
            self.max_concurrent[environment] = max(
                self.max_concurrent.get(environment, 0), self._active[environment]
            )
        try:
            if self.apply_delay:
                time.sleep(self.apply_delay)
            with self._lock:
                self.applies.append((environment, digest))
                apply_id = f"{environment.value}-{len(self.applies)}"
                self._polls[apply_id] = (environment, digest, 0)
            return apply_id
        finally:
            with self._lock:
                self._active[environment] -= 1

    def rollout_status(self, environment: Environment, apply_id: str) -> RolloutStatus:
        with self._lock:
            env, digest, polls = self._polls[apply_id]
            self._polls[apply_id] = (env, digest, polls + 1)
        script = self.scripts.get((env, digest or ""), (RolloutStatus.HEALTHY,))
        return script[min(polls, len(script) - 1)]

    def applies_to(self, environment: Environment) -> list[str | None]:
        return [digest for env, digest in self.applies if env is environment]


@dataclass(slots=True)
class FixtureApprovals:
    """Approval source fed by ``decide``; waits on a condition until a decision lands."""

    decisions: dict[tuple[str, Environment], ApprovalDecision] = field(default_factory=dict)
    requests: list[tuple[str | None, Environment]] = field(default_factory=list)
    _condition: Condition = field(default_factory=Condition)

    def decide(self, digest: str, environment: Environment, decision: ApprovalDecision) -> None:
        with self._condition:
            self.decisions[(digest, environment)] = decision
            self._condition.notify_all()

    def await_approval(
        self,
        artifact: ArtifactReference,
        environment: Environment,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        key = (artifact.digest or "", environment)
        with self._condition:
            self.requests.append((artifact.digest, environment))
            self._condition.wait_for(lambda: key in self.decisions, timeout=timeout)
            return self.decisions.get(key)


@dataclass(slots=True)
class FixtureHealthProbe:
    """Reports every ``(environment, digest)`` pair healthy unless marked otherwise."""

    unhealthy: set[tuple[Environment, str]] = field(default_factory=set)
    checks: list[tuple[Environment, str | None]] = field(default_factory=list)

    def check(self, environment: Environment, artifact: ArtifactReference) -> bool:
        self.checks.append((environment, artifact.digest))
        return (environment, artifact.digest or "") not in self.unhealthy


@dataclass(slots=True)
class CollectingSink:
    """Notification sink that keeps every terminal event."""

    events: list[PipelineTerminated] = field(default_factory=list)

    def notify(self, event: PipelineTerminated) -> None:
        self.events.append(event)
