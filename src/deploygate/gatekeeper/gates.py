"""Named gates an artifact must clear before it may advance."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
import logging
from threading import Event as ThreadEvent
import time
from typing import Protocol

from deploygate.collaborators.base import ApprovalSource, VulnerabilityScanner
from deploygate.contracts.errors import RenderError, RunCancelledError, TransientInfraError
from deploygate.contracts.models import (
    ArtifactReference,
    GateResult,
    PipelineRun,
    ScanFinding,
    Violation,
)
from deploygate.contracts.types import ApprovalDecision, Environment, GateName, Severity
from deploygate.gatekeeper.policy import Evaluator, RuleSet, evaluate, load_ruleset
from deploygate.observability.metrics import GATE_RESULTS
from deploygate.observability.telemetry import span
from deploygate.orchestrator.retry import RetryPolicy
from deploygate.orchestrator.store import RunStore
from deploygate.promoter.renderer import DescriptorRenderer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GateInput:
    """Everything a gate may look at for one run."""

    artifact: ArtifactReference
    run: PipelineRun
    environments: tuple[Environment, ...] = ()
    environment: Environment | None = None
    cancel: ThreadEvent | None = None

    def for_environment(self, environment: Environment) -> GateInput:
        return GateInput(
            artifact=self.artifact,
            run=self.run,
            environments=self.environments,
            environment=environment,
            cancel=self.cancel,
        )


class Gate(Protocol):
    name: str

    def check(self, gate_input: GateInput) -> GateResult:
        """Return the gate outcome; never raises for gate failures."""


@dataclass(slots=True)
class ScanGate:
    """Fails when the scanner reports findings at or above the threshold."""

    scanner: VulnerabilityScanner
    threshold: Severity = Severity.HIGH
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    ignore_unfixed: bool = False
    name: str = GateName.SCAN.value

    def check(self, gate_input: GateInput) -> GateResult:
        artifact = gate_input.artifact
        if not artifact.digest:
            return GateResult.from_violations(
                self.name,
                [
                    Violation(
                        rule_id="artifact-digest",
                        message=f"{artifact.image} has no digest; scans need a pinned image",
                    )
                ],
                reason="artifact has no digest",
            )
        try:
            findings = self.retry.call("scan", self.scanner.scan, artifact)
        except TransientInfraError as exc:
            return GateResult.from_violations(
                self.name,
                [Violation(rule_id="scanner-unavailable", message=f"scanner unavailable: {exc}")],
                reason=str(exc),
            )
        blocking = self.blocking_findings(findings)
        violations = [
            Violation(
                rule_id=finding.finding_id,
                message=(
                    f"{finding.severity.value} vulnerability {finding.finding_id} "
                    f"in {finding.package or 'unknown package'}"
                ),
            )
            for finding in blocking
        ]
        reason = None
        if violations:
            reason = f"{len(violations)} finding(s) at or above {self.threshold.value}"
        return GateResult.from_violations(self.name, violations, reason=reason)

    def blocking_findings(self, findings: Iterable[ScanFinding]) -> list[ScanFinding]:
        """Findings at or above the threshold, first occurrence of each id and package."""
        seen: set[tuple[str, str | None]] = set()
        blocking: list[ScanFinding] = []
        for finding in findings:
            if not finding.severity.at_or_above(self.threshold):
                continue
            if self.ignore_unfixed and not finding.has_fix:
                continue
            key = (finding.finding_id, finding.package)
            if key in seen:
                continue
            seen.add(key)
            blocking.append(finding)
        return blocking


@dataclass(slots=True)
class PolicyGate:
    """Renders the descriptor for every target environment and evaluates it."""

    renderer: DescriptorRenderer
    ruleset: RuleSet = field(default_factory=load_ruleset)
    evaluator: Evaluator = evaluate
    name: str = GateName.POLICY.value

    def check(self, gate_input: GateInput) -> GateResult:
        environments = gate_input.environments or tuple(Environment)
        violations: list[Violation] = []
        for environment in environments:
            try:
                descriptor = self.renderer.render(environment, gate_input.artifact)
            except RenderError as exc:
                violations.append(
                    Violation(
                        rule_id="render-error",
                        message=str(exc),
                        environment=environment.value,
                    )
                )
                continue
            violations.extend(self.evaluator(descriptor, self.ruleset).violations)
        reason = None
        if violations:
            reason = f"{len(violations)} policy violation(s)"
        return GateResult.from_violations(self.name, violations, reason=reason)


@dataclass(slots=True)
class ApprovalGate:
    """Waits for an external decision tagged with the artifact digest and environment.

    Without a timeout the gate waits indefinitely; the wait is sliced into
    ``poll_interval`` chunks so a cancellation is noticed promptly.
    """

    source: ApprovalSource
    timeout: float | None = None
    poll_interval: float = 0.5
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    name: str = GateName.APPROVAL.value

    def check(self, gate_input: GateInput) -> GateResult:
        environment = gate_input.environment or Environment.PRODUCTION
        artifact = gate_input.artifact
        deadline = None if self.timeout is None else self.clock() + self.timeout
        logger.info(
            "approval.waiting",
            extra={
                "extra": {
                    "artifact": artifact.pinned,
                    "environment": environment.value,
                    "timeout_s": self.timeout,
                }
            },
        )
        while True:
            if gate_input.cancel is not None and gate_input.cancel.is_set():
                raise RunCancelledError(
                    f"cancelled while awaiting approval for {environment.value}"
                )
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return self._timed_out(environment)
                wait = min(wait, remaining)
            decision = self.source.await_approval(artifact, environment, timeout=wait)
            if decision is None:
                continue
            if decision is ApprovalDecision.APPROVED:
                return GateResult.from_violations(self.name, [])
            return GateResult.from_violations(
                self.name,
                [
                    Violation(
                        rule_id="approval-denied",
                        message=f"promotion to {environment.value} was denied",
                        environment=environment.value,
                    )
                ],
                reason="approval denied",
            )

    def _timed_out(self, environment: Environment) -> GateResult:
        return GateResult.from_violations(
            self.name,
            [
                Violation(
                    rule_id="approval-timeout",
                    message=f"no approval for {environment.value} within {self.timeout:g}s",
                    environment=environment.value,
                )
            ],
            reason="approval timed out",
        )


@dataclass(slots=True)
class GateController:
    """Runs gates by name and appends every result to the run's history."""

    gates: Mapping[str, Gate]
    store: RunStore | None = None
    soft_gates: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        *gates: Gate,
        store: RunStore | None = None,
        soft_gates: Iterable[str] = (),
    ) -> GateController:
        return cls(
            gates={gate.name: gate for gate in gates},
            store=store,
            soft_gates=frozenset(soft_gates),
        )

    def run_gate(self, name: str, gate_input: GateInput) -> GateResult:
        try:
            gate = self.gates[name]
        except KeyError as exc:
            raise ValueError(f"unknown gate: {name}") from exc
        with span(
            "gatekeeper",
            f"gate.{name}",
            run_id=str(gate_input.run.run_id),
            artifact=gate_input.artifact.pinned,
        ) as current:
            result = gate.check(gate_input)
            if not result.passed and name in self.soft_gates:
                logger.warning(
                    "gate.softened",
                    extra={
                        "extra": {
                            "gate": name,
                            "run_id": str(gate_input.run.run_id),
                            "warnings": [violation.describe() for violation in result.violations],
                        }
                    },
                )
                result = result.softened()
            current.set_attribute("passed", result.passed)

        gate_input.run.record_gate(result)
        if self.store is not None:
            self.store.save_run(gate_input.run)

        outcome = "passed" if result.passed else "failed"
        if result.warnings:
            outcome = "warned"
        GATE_RESULTS.labels(gate=name, outcome=outcome).inc()
        log = logger.info if result.passed else logger.warning
        log(
            "gate.completed",
            extra={
                "extra": {
                    "gate": name,
                    "run_id": str(gate_input.run.run_id),
                    "artifact": gate_input.artifact.pinned,
                    "passed": result.passed,
                    "violations": [violation.describe() for violation in result.violations],
                }
            },
        )
        return result

    def run_sequence(self, names: Iterable[str], gate_input: GateInput) -> list[GateResult]:
        """Run gates in order, stopping at the first failure."""
        results: list[GateResult] = []
        for name in names:
            if gate_input.cancel is not None and gate_input.cancel.is_set():
                raise RunCancelledError(f"cancelled before gate {name}")
            result = self.run_gate(name, gate_input)
            results.append(result)
            if not result.passed:
                break
        return results
