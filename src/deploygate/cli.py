"""Command line entrypoint for DeployGate."""

from __future__ import annotations

from argparse import ArgumentParser, Namespace
from dataclasses import replace
import json
from pathlib import Path
import signal
import sys
from typing import Any

from pydantic import ValidationError

from deploygate.collaborators.base import ApprovalSource, NotificationSink, VulnerabilityScanner
from deploygate.collaborators.bus import BusApprovalSource, BusNotificationSink, publish_approval
from deploygate.collaborators.console import AutoApprovalSource, ConsoleApprovalSource
from deploygate.collaborators.docker import DockerRegistry
from deploygate.collaborators.http_client import HttpHealthProbe, WebhookNotificationSink
from deploygate.collaborators.kubectl import KubectlCluster
from deploygate.collaborators.trivy import TrivyReportScanner, TrivyScanner
from deploygate.contracts.errors import ExitCode, RenderError
from deploygate.contracts.events import ApprovalSignal
from deploygate.contracts.models import PipelineRequest, PipelineRun
from deploygate.contracts.types import ApprovalDecision, Environment, PipelineStage, Severity
from deploygate.demo.fixtures import SCENARIOS
from deploygate.demo.runner import run_scenario
from deploygate.gatekeeper.policy import RuleSet, evaluate, load_ruleset
from deploygate.observability.logging import configure_logging
from deploygate.observability.metrics import start_metrics_server
from deploygate.observability.telemetry import setup_tracing
from deploygate.orchestrator.nats_bus import NATSEventBus
from deploygate.orchestrator.orchestrator import CancellationToken
from deploygate.orchestrator.store import JsonFileRunStore
from deploygate.pipeline import build_orchestrator
from deploygate.promoter.environments import EnvironmentRegistry
from deploygate.promoter.renderer import descriptor_from_manifest
from deploygate.settings import PipelineSettings, get_pipeline_settings

_STAGE_EXIT_CODES = {
    PipelineStage.SUCCEEDED: ExitCode.SUCCEEDED,
    PipelineStage.SCAN_GATE_FAILED: ExitCode.SCAN_GATE_FAILED,
    PipelineStage.POLICY_GATE_FAILED: ExitCode.POLICY_GATE_FAILED,
    PipelineStage.STAGING_FAILED: ExitCode.STAGING_FAILED,
    PipelineStage.APPROVAL_DENIED: ExitCode.APPROVAL_DENIED,
    PipelineStage.PRODUCTION_FAILED: ExitCode.PRODUCTION_FAILED,
    PipelineStage.ARTIFACT_NOT_FOUND: ExitCode.ARTIFACT_NOT_FOUND,
    PipelineStage.CANCELLED: ExitCode.CANCELLED,
    PipelineStage.INVALID_REQUEST: ExitCode.USAGE,
}

_PATH_OVERRIDES = {
    "policy": "policy_path",
    "template": "template_path",
    "values_dir": "values_dir",
    "state_dir": "state_dir",
}


def exit_code_for(run: PipelineRun) -> ExitCode:
    """Map a finished run to its process exit code; a failed rollback wins."""
    if run.rollback_failed:
        return ExitCode.ROLLBACK_FAILED
    return _STAGE_EXIT_CODES.get(run.stage, ExitCode.VIOLATIONS)


def run_summary(run: PipelineRun) -> dict[str, Any]:
    summary = run.failure_summary()
    summary["promotions"] = [
        {
            "environment": attempt.environment.value,
            "kind": attempt.kind.value,
            "rollout_status": attempt.rollout_status.value,
            "reason": attempt.reason,
        }
        for attempt in run.promotions
    ]
    return summary


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="deploygate", description="Gate and promote container artifacts.")
    parser.add_argument("--log-level", help="Logging level (default DEPLOYGATE_LOG_LEVEL or INFO).")
    sub = parser.add_subparsers(dest="command", required=True)

    promote = sub.add_parser("promote", help="Run the full pipeline for one artifact.")
    promote.add_argument("--repository", required=True, help="Image repository, e.g. acme/my-app.")
    promote.add_argument("--tag", required=True, help="Image tag to promote.")
    promote.add_argument("--registry", default="ghcr.io", help="Registry host.")
    promote.add_argument(
        "--environments",
        default="staging,production",
        help="Comma separated environment chain.",
    )
    promote.add_argument(
        "--severity",
        choices=[severity.value for severity in Severity],
        help="Scan gate threshold (default from DEPLOYGATE_SCAN_SEVERITY).",
    )
    promote.add_argument("--approval-timeout", type=float, help="Seconds to wait for approval.")
    promote.add_argument(
        "--auto-approve", action="store_true", help="Approve without prompting."
    )
    promote.add_argument("--scan-report", type=Path, help="Use an existing Trivy JSON report.")
    promote.add_argument("--policy", type=Path, help="Policy rule file.")
    promote.add_argument("--template", type=Path, help="Manifest template.")
    promote.add_argument("--values-dir", type=Path, help="Directory of <env>.yaml values.")
    promote.add_argument("--state-dir", type=Path, help="Run and environment state directory.")

    approve = sub.add_parser("approve", help="Publish an approval decision over NATS.")
    approve.add_argument("--digest", required=True, help="Digest awaiting approval.")
    approve.add_argument(
        "--environment",
        default=Environment.PRODUCTION.value,
        choices=[env.value for env in Environment],
    )
    approve.add_argument("--deny", action="store_true", help="Deny instead of approve.")
    approve.add_argument("--approver", help="Who made the decision.")
    approve.add_argument("--comment", help="Free-form note attached to the decision.")

    check = sub.add_parser("evaluate", help="Evaluate a manifest against the policy rules.")
    check.add_argument("manifest", type=Path, help="Rendered Kubernetes manifest.")
    check.add_argument("--policy", type=Path, help="Policy rule file.")
    check.add_argument(
        "--environment",
        default=Environment.STAGING.value,
        choices=[env.value for env in Environment],
        help="Environment tag for reported violations.",
    )

    demo = sub.add_parser("demo", help="Run a fixture-backed scenario.")
    demo.add_argument("scenario", choices=sorted(SCENARIOS), help="Scenario to run.")
    return parser


def _apply_overrides(settings: PipelineSettings, args: Namespace) -> PipelineSettings:
    overrides: dict[str, Any] = {}
    if args.severity:
        overrides["scan_severity"] = Severity(args.severity)
    if args.approval_timeout is not None:
        overrides["approval_timeout"] = args.approval_timeout
    for option, setting in _PATH_OVERRIDES.items():
        value = getattr(args, option)
        if value is not None:
            overrides[setting] = value
    return replace(settings, **overrides)


def _promote(args: Namespace) -> int:
    try:
        request = PipelineRequest(
            repository=args.repository,
            tag=args.tag,
            registry=args.registry,
            environments=Environment.parse_chain(args.environments),
        )
    except (ValueError, ValidationError) as exc:
        print(f"invalid request: {exc}", file=sys.stderr)
        return ExitCode.USAGE

    settings = _apply_overrides(get_pipeline_settings(), args)
    setup_tracing("deploygate")
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)

    scanner: VulnerabilityScanner = (
        TrivyReportScanner(args.scan_report) if args.scan_report else TrivyScanner()
    )
    bus = NATSEventBus(settings.nats_url) if settings.nats_url else None
    approvals: ApprovalSource
    if args.auto_approve:
        approvals = AutoApprovalSource()
    elif bus is not None:
        approvals = BusApprovalSource(bus)
    else:
        approvals = ConsoleApprovalSource()
    sinks: list[NotificationSink] = []
    if settings.notify_webhook:
        sinks.append(WebhookNotificationSink(settings.notify_webhook))
    if bus is not None:
        sinks.append(BusNotificationSink(bus))
    store = JsonFileRunStore(settings.state_dir)
    orchestrator = build_orchestrator(
        settings,
        registry=DockerRegistry(),
        scanner=scanner,
        cluster=KubectlCluster(),
        approvals=approvals,
        sinks=sinks,
        health_probe=HttpHealthProbe(settings.health_urls) if settings.health_urls else None,
        store=store,
        environments=EnvironmentRegistry(store=store),
    )

    cancel = CancellationToken()
    signal.signal(signal.SIGINT, lambda *_: cancel.cancel())
    signal.signal(signal.SIGTERM, lambda *_: cancel.cancel())
    try:
        run = orchestrator.run(request, cancel=cancel)
    finally:
        if bus is not None:
            bus.close()
    _print_json(run_summary(run))
    return exit_code_for(run)


def _approve(args: Namespace) -> int:
    settings = get_pipeline_settings()
    if not settings.nats_url:
        print("DEPLOYGATE_NATS_URL is not configured", file=sys.stderr)
        return ExitCode.USAGE
    approval = ApprovalSignal(
        digest=args.digest,
        environment=Environment(args.environment),
        decision=ApprovalDecision.DENIED if args.deny else ApprovalDecision.APPROVED,
        approver=args.approver,
        comment=args.comment,
    )
    bus = NATSEventBus(settings.nats_url)
    try:
        publish_approval(bus, approval)
    finally:
        bus.close()
    _print_json(approval.model_dump(mode="json"))
    return ExitCode.SUCCEEDED


def _evaluate(args: Namespace) -> int:
    try:
        ruleset: RuleSet = RuleSet.load(args.policy) if args.policy else load_ruleset()
    except (OSError, ValueError) as exc:
        print(f"cannot load policy: {exc}", file=sys.stderr)
        return ExitCode.USAGE
    try:
        descriptor = descriptor_from_manifest(
            args.manifest.read_text(encoding="utf-8"), Environment(args.environment)
        )
    except (OSError, RenderError) as exc:
        print(f"cannot read manifest: {exc}", file=sys.stderr)
        return ExitCode.USAGE
    result = evaluate(descriptor, ruleset)
    _print_json(
        {
            "manifest": str(args.manifest),
            "rules": ruleset.source,
            "passed": result.passed,
            "violations": [violation.describe() for violation in result.violations],
        }
    )
    return ExitCode.SUCCEEDED if result.passed else ExitCode.VIOLATIONS


def _demo(args: Namespace) -> int:
    scenario = SCENARIOS[args.scenario]()
    result = run_scenario(scenario)
    _print_json(run_summary(result.run))
    return exit_code_for(result.run)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    if args.command == "promote":
        return int(_promote(args))
    if args.command == "approve":
        return int(_approve(args))
    if args.command == "evaluate":
        return int(_evaluate(args))
    return int(_demo(args))


if __name__ == "__main__":
    sys.exit(main())
