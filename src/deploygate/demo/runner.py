"""Scenario runner for DeployGate demos."""

from __future__ import annotations

from dataclasses import dataclass, replace
import os

from deploygate.collaborators.bus import BusApprovalSource, BusNotificationSink, publish_approval
from deploygate.contracts.events import ApprovalSignal
from deploygate.contracts.models import EnvironmentState, PipelineRun
from deploygate.contracts.types import Environment
from deploygate.demo.fixtures import ScenarioFixtures
from deploygate.observability.logging import configure_logging
from deploygate.observability.metrics import start_metrics_server
from deploygate.observability.telemetry import setup_tracing
from deploygate.orchestrator.event_bus import Event, InMemoryEventBus
from deploygate.orchestrator.recorder import RecordingEventBus
from deploygate.orchestrator.store import InMemoryRunStore
from deploygate.pipeline import build_orchestrator
from deploygate.promoter.environments import EnvironmentRegistry
from deploygate.promoter.renderer import DescriptorRenderer
from deploygate.registry.fixture_store import (
    FixtureCluster,
    FixtureHealthProbe,
    FixtureRegistry,
    FixtureScanner,
)
from deploygate.settings import PipelineSettings


@dataclass(slots=True)
class ScenarioResult:
    """Result from running a scenario."""

    run: PipelineRun
    events: list[Event]
    environments: dict[Environment, EnvironmentState]
    applies: list[tuple[Environment, str | None]]


def run_scenario(
    fixtures: ScenarioFixtures,
    *,
    settings: PipelineSettings | None = None,
    start_metrics: bool = False,
    enable_tracing: bool = False,
) -> ScenarioResult:
    """Run a scenario end-to-end against fixture collaborators and an in-memory bus."""
    configure_logging()
    if not enable_tracing:
        os.environ["DEPLOYGATE_DISABLE_TRACING"] = "1"
    setup_tracing("deploygate-demo")
    if start_metrics:
        start_metrics_server()

    settings = settings or PipelineSettings(
        retry_initial_delay=0.0,
        poll_interval=0.0,
        approval_timeout=2.0,
    )
    request = fixtures.request

    registry = FixtureRegistry()
    registry.register(request.repository, request.tag, fixtures.digest)
    scanner = FixtureScanner(findings={fixtures.digest: fixtures.findings})
    cluster = FixtureCluster()
    for environment, statuses in fixtures.rollouts.items():
        cluster.script(environment, fixtures.digest, *statuses)

    renderer = DescriptorRenderer.from_paths(settings.template_path, settings.values_dir)
    if fixtures.values:
        renderer = replace(
            renderer,
            values={
                env: {**renderer.values.get(env, {}), **fixtures.values} for env in Environment
            },
        )

    store = InMemoryRunStore()
    environments = EnvironmentRegistry(store=store)
    for state in fixtures.baseline:
        environments.seed(state)

    bus = RecordingEventBus(InMemoryEventBus())
    approvals = BusApprovalSource(bus, poll_interval=0.05)
    if fixtures.approval is not None:
        for environment in settings.approval_environments:
            publish_approval(
                bus,
                ApprovalSignal(
                    digest=fixtures.digest,
                    environment=environment,
                    decision=fixtures.approval,
                    approver="demo",
                ),
            )

    orchestrator = build_orchestrator(
        settings,
        registry=registry,
        scanner=scanner,
        cluster=cluster,
        approvals=approvals,
        sinks=[BusNotificationSink(bus)],
        health_probe=FixtureHealthProbe(),
        store=store,
        renderer=renderer,
        environments=environments,
    )
    try:
        run = orchestrator.run(request)
    finally:
        approvals.close()
    return ScenarioResult(
        run=run,
        events=list(bus.events),
        environments=environments.snapshot(),
        applies=list(cluster.applies),
    )
