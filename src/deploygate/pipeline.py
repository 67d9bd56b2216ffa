"""Assemble a PipelineOrchestrator from settings and collaborators."""

from __future__ import annotations

from collections.abc import Callable, Sequence
import time

from deploygate.collaborators.base import (
    ApprovalSource,
    ArtifactRegistry,
    ClusterApply,
    HealthProbe,
    NotificationSink,
    VulnerabilityScanner,
)
from deploygate.gatekeeper.gates import ApprovalGate, GateController, PolicyGate, ScanGate
from deploygate.gatekeeper.policy import Evaluator, RuleSet, evaluate, load_ruleset
from deploygate.orchestrator.orchestrator import PipelineOrchestrator
from deploygate.orchestrator.retry import RetryPolicy
from deploygate.orchestrator.store import RunStore
from deploygate.promoter.environments import EnvironmentRegistry
from deploygate.promoter.promoter import EnvironmentPromoter
from deploygate.promoter.renderer import DescriptorRenderer
from deploygate.settings import PipelineSettings


def build_orchestrator(
    settings: PipelineSettings,
    *,
    registry: ArtifactRegistry,
    scanner: VulnerabilityScanner,
    cluster: ClusterApply,
    approvals: ApprovalSource,
    sinks: Sequence[NotificationSink] = (),
    health_probe: HealthProbe | None = None,
    store: RunStore | None = None,
    renderer: DescriptorRenderer | None = None,
    ruleset: RuleSet | None = None,
    evaluator: Evaluator = evaluate,
    environments: EnvironmentRegistry | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineOrchestrator:
    retry = RetryPolicy(
        max_attempts=settings.retry_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_initial_delay > 0,
        sleep=sleep,
    )
    renderer = renderer or DescriptorRenderer.from_paths(
        settings.template_path, settings.values_dir, settings.namespaces
    )
    gates = GateController.of(
        ScanGate(
            scanner=scanner,
            threshold=settings.scan_severity,
            retry=retry,
            ignore_unfixed=settings.ignore_unfixed,
        ),
        PolicyGate(
            renderer=renderer,
            ruleset=ruleset or load_ruleset(settings.policy_path),
            evaluator=evaluator,
        ),
        ApprovalGate(source=approvals, timeout=settings.approval_timeout, clock=clock),
        store=store,
        soft_gates=settings.soft_gates,
    )
    promoter = EnvironmentPromoter(
        renderer=renderer,
        cluster=cluster,
        environments=environments or EnvironmentRegistry(store=store),
        health_probe=health_probe,
        retry=retry,
        promotion_timeout=settings.promotion_timeout,
        poll_interval=settings.poll_interval,
        clock=clock,
        sleep=sleep,
    )
    return PipelineOrchestrator(
        registry=registry,
        gates=gates,
        promoter=promoter,
        store=store,
        sinks=sinks,
        retry=retry,
        approval_environments=settings.approval_environments,
    )
