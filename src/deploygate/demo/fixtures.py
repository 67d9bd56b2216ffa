"""Fixture data for demo scenarios."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from deploygate.contracts.models import (
    ArtifactReference,
    EnvironmentState,
    PipelineRequest,
    ScanFinding,
)
from deploygate.contracts.types import (
    ApprovalDecision,
    Environment,
    PipelineStage,
    RolloutStatus,
    Severity,
)

REGISTRY = "ghcr.io"
REPOSITORY = "acme/my-app"
CANDIDATE_DIGEST = "sha256:" + "a" * 64
BASELINE_DIGEST = "sha256:" + "b" * 64


@dataclass(slots=True)
class ScenarioFixtures:
    """Container for fixture data for a scenario."""

    name: str
    request: PipelineRequest
    digest: str
    expected_stage: PipelineStage
    findings: list[ScanFinding] = field(default_factory=list)
    rollouts: dict[Environment, list[RolloutStatus]] = field(default_factory=dict)
    approval: ApprovalDecision | None = ApprovalDecision.APPROVED
    values: dict[str, Any] = field(default_factory=dict)
    baseline: list[EnvironmentState] = field(default_factory=list)


def _request(tag: str = "1.4.0") -> PipelineRequest:
    return PipelineRequest(registry=REGISTRY, repository=REPOSITORY, tag=tag)


def _baseline() -> list[EnvironmentState]:
    previous = ArtifactReference(
        registry=REGISTRY, repository=REPOSITORY, tag="1.3.2", digest=BASELINE_DIGEST
    )
    return [
        EnvironmentState(
            environment=env,
            current_artifact=previous,
            last_known_good_artifact=previous,
            rollout_status=RolloutStatus.HEALTHY,
            last_apply_id=f"{env.value}-baseline",
        )
        for env in Environment
    ]


def happy_path() -> ScenarioFixtures:
    return ScenarioFixtures(
        name="happy",
        request=_request(),
        digest=CANDIDATE_DIGEST,
        expected_stage=PipelineStage.SUCCEEDED,
        findings=[
            ScanFinding(
                finding_id="CVE-2024-0001",
                severity=Severity.MEDIUM,
                package="openssl",
                fixed_version="3.0.14",
            )
        ],
        rollouts={
            Environment.STAGING: [RolloutStatus.PROGRESSING, RolloutStatus.HEALTHY],
            Environment.PRODUCTION: [
                RolloutStatus.PENDING,
                RolloutStatus.PROGRESSING,
                RolloutStatus.HEALTHY,
            ],
        },
        baseline=_baseline(),
    )


def scan_blocked_path() -> ScenarioFixtures:
    return ScenarioFixtures(
        name="scan-blocked",
        request=_request(),
        digest=CANDIDATE_DIGEST,
        expected_stage=PipelineStage.SCAN_GATE_FAILED,
        findings=[
            ScanFinding(
                finding_id="CVE-2024-3094",
                severity=Severity.CRITICAL,
                package="xz-utils",
                fixed_version="5.6.1-r2",
            ),
            ScanFinding(finding_id="CVE-2023-4911", severity=Severity.HIGH, package="glibc"),
        ],
        baseline=_baseline(),
    )


def policy_blocked_path() -> ScenarioFixtures:
    return ScenarioFixtures(
        name="policy-blocked",
        request=_request(),
        digest=CANDIDATE_DIGEST,
        expected_stage=PipelineStage.POLICY_GATE_FAILED,
        values={"allow_privilege_escalation": True},
        baseline=_baseline(),
    )


def rollback_path() -> ScenarioFixtures:
    return ScenarioFixtures(
        name="rollback",
        request=_request(),
        digest=CANDIDATE_DIGEST,
        expected_stage=PipelineStage.PRODUCTION_FAILED,
        rollouts={
            Environment.PRODUCTION: [RolloutStatus.PROGRESSING, RolloutStatus.FAILED],
        },
        baseline=_baseline(),
    )


def first_deploy_failure_path() -> ScenarioFixtures:
    return ScenarioFixtures(
        name="first-deploy-failure",
        request=_request("0.1.0"),
        digest=CANDIDATE_DIGEST,
        expected_stage=PipelineStage.STAGING_FAILED,
        rollouts={Environment.STAGING: [RolloutStatus.PROGRESSING, RolloutStatus.FAILED]},
    )


SCENARIOS = {
    "happy": happy_path,
    "scan-blocked": scan_blocked_path,
    "policy-blocked": policy_blocked_path,
    "rollback": rollback_path,
    "first-deploy-failure": first_deploy_failure_path,
}
