"""Integration tests for the DeployGate demo scenarios."""

from __future__ import annotations

import pytest

from deploygate.contracts.events import (
    PIPELINE_FAILED,
    PIPELINE_ROLLED_BACK,
    PIPELINE_SUCCEEDED,
    TERMINAL_EVENT_TYPES,
)
from deploygate.contracts.types import Environment, PipelineStage, PromotionKind, RunStatus
from deploygate.demo import fixtures
from deploygate.demo.runner import ScenarioResult, run_scenario
from deploygate.orchestrator.event_bus import Event


def _terminal_events(events: list[Event]) -> list[Event]:
    terminal = set(TERMINAL_EVENT_TYPES.values())
    return [event for event in events if event.event_type in terminal]


def _run(scenario: fixtures.ScenarioFixtures) -> ScenarioResult:
    return run_scenario(scenario, start_metrics=False, enable_tracing=False)


@pytest.mark.parametrize("name", sorted(fixtures.SCENARIOS))
def test_scenario_reaches_expected_stage(name: str) -> None:
    scenario = fixtures.SCENARIOS[name]()
    result = _run(scenario)
    assert result.run.stage is scenario.expected_stage
    assert len(_terminal_events(result.events)) == 1


def test_happy_path_promotes_both_environments() -> None:
    result = _run(fixtures.happy_path())
    assert result.run.status is RunStatus.SUCCEEDED
    assert [event.event_type for event in _terminal_events(result.events)] == [PIPELINE_SUCCEEDED]
    for environment in Environment:
        state = result.environments[environment]
        assert state.current_artifact is not None
        assert state.current_artifact.digest == fixtures.CANDIDATE_DIGEST


def test_scan_blocked_path_never_deploys() -> None:
    result = _run(fixtures.scan_blocked_path())
    assert result.applies == []
    event = _terminal_events(result.events)[0]
    assert event.event_type == PIPELINE_FAILED
    assert event.payload["violations"][0].startswith("CRITICAL vulnerability CVE-2024-3094")


def test_policy_blocked_path_reports_every_environment() -> None:
    result = _run(fixtures.policy_blocked_path())
    failed = result.run.first_failed_gate()
    assert failed is not None
    assert {violation.environment for violation in failed.violations} == {"staging", "production"}
    assert result.applies == []


def test_rollback_path_restores_production_baseline() -> None:
    result = _run(fixtures.rollback_path())
    assert result.run.status is RunStatus.ROLLED_BACK
    assert [event.event_type for event in _terminal_events(result.events)] == [PIPELINE_ROLLED_BACK]
    production = result.environments[Environment.PRODUCTION]
    assert production.current_artifact is not None
    assert production.current_artifact.digest == fixtures.BASELINE_DIGEST
    assert result.run.promotion_attempts(PromotionKind.ROLLBACK)[0].environment is (
        Environment.PRODUCTION
    )


def test_first_deploy_failure_escalates_rollback_failure() -> None:
    result = _run(fixtures.first_deploy_failure_path())
    assert result.run.stage is PipelineStage.STAGING_FAILED
    assert result.run.rollback_failed
    event = _terminal_events(result.events)[0]
    assert event.payload["rollback_failed"] is True
