"""Tests for the bus, HTTP, console and CLI-backed collaborators."""

from __future__ import annotations

import json
import subprocess
import threading
from uuid import uuid4

import httpx
import pytest

from deploygate.collaborators import docker, kubectl
from deploygate.collaborators.bus import BusApprovalSource, BusNotificationSink, publish_approval
from deploygate.collaborators.console import ConsoleApprovalSource
from deploygate.collaborators.docker import DockerRegistry
from deploygate.collaborators.http_client import HttpHealthProbe, WebhookNotificationSink
from deploygate.collaborators.kubectl import KubectlCluster
from deploygate.contracts.errors import (
    ApplyRejectedError,
    ArtifactNotFoundError,
    TransientInfraError,
)
from deploygate.contracts.events import (
    APPROVAL_DECIDED,
    PIPELINE_ROLLED_BACK,
    ApprovalSignal,
    PipelineTerminated,
)
from deploygate.contracts.models import ArtifactReference, DeploymentDescriptor
from deploygate.contracts.types import ApprovalDecision, Environment, RolloutStatus, RunStatus
from deploygate.orchestrator.event_bus import Event, InMemoryEventBus
from deploygate.orchestrator.recorder import RecordingEventBus
from deploygate.orchestrator.retry import RetryPolicy

PRODUCTION = Environment.PRODUCTION


def _terminated(**overrides: object) -> PipelineTerminated:
    fields: dict[str, object] = {
        "run_id": uuid4(),
        "status": RunStatus.ROLLED_BACK,
        "stage": "ProductionFailed",
        "artifact": "ghcr.io/acme/my-app@sha256:abc",
        "environments": [Environment.STAGING, PRODUCTION],
        "reason": "rollout reported Failed",
    }
    fields.update(overrides)
    return PipelineTerminated.model_validate(fields)


def test_event_decodes_what_it_encodes() -> None:
    event = Event(event_type="pipeline.failed", payload={"a": 1}, key="k")
    assert Event.decode(event.encode()) == event


@pytest.mark.parametrize("raw", [b"not json", b"[]", b'{"event_type": "x"}', b"\xff"])
def test_event_decode_rejects_malformed_bytes(raw: bytes) -> None:
    with pytest.raises(ValueError):
        Event.decode(raw)


def test_recording_bus_keeps_payloads_by_type() -> None:
    bus = RecordingEventBus(InMemoryEventBus())
    subscription = bus.subscribe("b")
    bus.publish(Event(event_type="a", payload={"n": 1}))
    bus.publish(Event(event_type="b", payload={"n": 2}))
    assert bus.payloads("a") == [{"n": 1}]
    received = subscription.next(timeout=0.1)
    assert received is not None and received.payload == {"n": 2}
    assert len(bus.events) == 2


def test_in_memory_bus_fans_out_to_every_subscriber() -> None:
    bus = InMemoryEventBus()
    bus.publish(Event(event_type="a", payload={"n": 0}))
    first, second = bus.subscribe("a"), bus.subscribe("a")
    bus.publish(Event(event_type="a", payload={"n": 1}))
    second.close()
    bus.publish(Event(event_type="a", payload={"n": 2}))

    assert [first.next(timeout=0.1).payload for _ in range(2)] == [{"n": 1}, {"n": 2}]
    assert first.next(timeout=0.01) is None
    assert second.pending() == 1


def _signal(digest: str, decision: ApprovalDecision) -> ApprovalSignal:
    return ApprovalSignal(digest=digest, environment=PRODUCTION, decision=decision)


def test_bus_approval_ignores_other_artifacts_without_republishing(
    artifact: ArtifactReference,
) -> None:
    bus = RecordingEventBus(InMemoryEventBus())
    source = BusApprovalSource(bus, poll_interval=0.05)
    publish_approval(bus, _signal("sha256:other", ApprovalDecision.APPROVED))
    publish_approval(bus, _signal(artifact.digest or "", ApprovalDecision.DENIED))

    assert source.await_approval(artifact, PRODUCTION, timeout=2.0) is ApprovalDecision.DENIED
    assert len(bus.of_type(APPROVAL_DECIDED)) == 2


def test_bus_approval_published_before_waiting_is_seen(artifact: ArtifactReference) -> None:
    bus = InMemoryEventBus()
    source = BusApprovalSource(bus, poll_interval=0.05)
    publish_approval(bus, _signal(artifact.digest or "", ApprovalDecision.APPROVED))

    assert source.await_approval(artifact, PRODUCTION, timeout=1.0) is ApprovalDecision.APPROVED


def test_concurrent_bus_approvals_each_get_their_own_signal() -> None:
    bus = RecordingEventBus(InMemoryEventBus())
    first = ArtifactReference.parse("ghcr.io/acme/a:1").with_digest("sha256:a")
    second = ArtifactReference.parse("ghcr.io/acme/b:1").with_digest("sha256:b")
    sources = {
        first: BusApprovalSource(bus, poll_interval=0.02),
        second: BusApprovalSource(bus, poll_interval=0.02),
    }
    decisions: dict[str, ApprovalDecision | None] = {}

    def wait(artifact: ArtifactReference) -> None:
        decisions[artifact.repository] = sources[artifact].await_approval(
            artifact, PRODUCTION, timeout=2.0
        )

    threads = [threading.Thread(target=wait, args=(artifact,)) for artifact in sources]
    for thread in threads:
        thread.start()
    publish_approval(bus, _signal("sha256:b", ApprovalDecision.DENIED))
    publish_approval(bus, _signal("sha256:a", ApprovalDecision.APPROVED))
    for thread in threads:
        thread.join(timeout=5.0)

    assert decisions == {"acme/a": ApprovalDecision.APPROVED, "acme/b": ApprovalDecision.DENIED}
    assert len(bus.of_type(APPROVAL_DECIDED)) == 2


def test_bus_approval_times_out(artifact: ArtifactReference) -> None:
    source = BusApprovalSource(InMemoryEventBus(), poll_interval=0.05)
    assert source.await_approval(artifact, PRODUCTION, timeout=0.1) is None


def test_bus_approval_skips_malformed_signals(artifact: ArtifactReference) -> None:
    bus = InMemoryEventBus()
    source = BusApprovalSource(bus, poll_interval=0.05)
    bus.publish(Event(event_type=APPROVAL_DECIDED, payload={"digest": artifact.digest}))
    assert source.await_approval(artifact, PRODUCTION, timeout=0.2) is None


def test_bus_notification_sink_publishes_terminal_event() -> None:
    bus = RecordingEventBus(InMemoryEventBus())
    event = _terminated()
    BusNotificationSink(bus).notify(event)
    [published] = bus.of_type(PIPELINE_ROLLED_BACK)
    assert published.key == str(event.run_id)
    assert published.payload["status"] == "RolledBack"


def test_webhook_posts_headline_reason_and_violations() -> None:
    captured: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    sink = WebhookNotificationSink("https://hooks.example/deploy", client=client)
    sink.notify(_terminated(violations=["[production] bad (privileged)"], rollback_failed=True))

    text = captured[0]["text"]
    assert text.startswith(":rewind: RolledBack: ghcr.io/acme/my-app@sha256:abc")
    assert "ROLLBACK FAILED" in text
    assert "Reason: rollout reported Failed" in text
    assert text.endswith("- [production] bad (privileged)")


def test_webhook_errors_propagate() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    with pytest.raises(httpx.HTTPStatusError):
        WebhookNotificationSink("https://hooks.example/deploy", client=client).notify(_terminated())


@pytest.mark.parametrize(("status", "healthy"), [(200, True), (204, True), (503, False)])
def test_health_probe_status_codes(
    artifact: ArtifactReference, status: int, healthy: bool
) -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
    probe = HttpHealthProbe({PRODUCTION: "https://my-app.example/healthz"}, client=client)
    assert probe.check(PRODUCTION, artifact) is healthy
    assert probe.check(Environment.STAGING, artifact) is True


def test_health_probe_connection_error_is_unhealthy(artifact: ArtifactReference) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    probe = HttpHealthProbe({PRODUCTION: "https://my-app.example/healthz"}, client=client)
    assert probe.check(PRODUCTION, artifact) is False


@pytest.mark.parametrize(
    ("answer", "decision"),
    [
        ("y", ApprovalDecision.APPROVED),
        ("YES\n", ApprovalDecision.APPROVED),
        ("n", ApprovalDecision.DENIED),
    ],
)
def test_console_approval(
    artifact: ArtifactReference, answer: str, decision: ApprovalDecision
) -> None:
    prompts: list[str] = []

    def reader(question: str) -> str:
        prompts.append(question)
        return answer

    source = ConsoleApprovalSource(reader=reader)
    assert source.await_approval(artifact, PRODUCTION, timeout=2.0) is decision
    assert prompts == [f"Deploy {artifact.pinned} to production? [y/N] "]


def _completed(
    returncode: int, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def test_docker_registry_resolves_digest(monkeypatch: pytest.MonkeyPatch, digest: str) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _completed(0, json.dumps({"digest": digest, "mediaType": "x"}))

    monkeypatch.setattr(docker, "run_tool", fake_run)
    reference = DockerRegistry().resolve_digest("ghcr.io", "acme/my-app", "1.4.0")
    assert reference.pinned == f"ghcr.io/acme/my-app@{digest}"
    assert "ghcr.io/acme/my-app:1.4.0" in calls[0]


@pytest.mark.parametrize(
    ("stderr", "error"),
    [
        ("ERROR: ghcr.io/acme/my-app:9.9.9: not found", ArtifactNotFoundError),
        ("ERROR: failed to do request: i/o timeout", TransientInfraError),
    ],
)
def test_docker_registry_failures(
    monkeypatch: pytest.MonkeyPatch, stderr: str, error: type[Exception]
) -> None:
    monkeypatch.setattr(docker, "run_tool", lambda cmd, **kwargs: _completed(1, stderr=stderr))
    with pytest.raises(error):
        DockerRegistry().resolve_digest("ghcr.io", "acme/my-app", "9.9.9")


def test_kubectl_apply_pipes_manifest(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def fake_run(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen["cmd"] = cmd
        seen["stdin"] = kwargs.get("stdin")
        return _completed(0, "deployment.apps/my-app configured")

    monkeypatch.setattr(kubectl, "run_tool", fake_run)
    descriptor = DeploymentDescriptor(
        name="my-app", namespace="prod", environment=PRODUCTION, manifest="kind: Deployment\n"
    )
    cluster = KubectlCluster(contexts={PRODUCTION: "prod-cluster"})
    assert cluster.apply(PRODUCTION, descriptor) == "prod/deployment/my-app"
    assert seen["cmd"] == [
        "kubectl", "--context", "prod-cluster", "apply", "-n", "prod", "-f", "-"
    ]
    assert seen["stdin"] == "kind: Deployment\n"


def test_kubectl_apply_id_follows_workload_kind(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(kubectl, "run_tool", lambda cmd, **kwargs: _completed(0))
    descriptor = DeploymentDescriptor(
        name="db", kind="StatefulSet", namespace="prod", environment=PRODUCTION, manifest=""
    )
    assert KubectlCluster().apply(PRODUCTION, descriptor) == "prod/statefulset/db"


@pytest.mark.parametrize(
    "stderr",
    [
        'Error from server: admission webhook "policy.acme.io" denied the request: no latest tags',
        'The Deployment "my-app" is invalid: spec.template.spec.containers[0].image: Required',
        'error: error validating "STDIN": unknown field "replica"',
    ],
)
def test_kubectl_rejections_are_not_transient(
    monkeypatch: pytest.MonkeyPatch, stderr: str
) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _completed(1, stderr=stderr)

    monkeypatch.setattr(kubectl, "run_tool", fake_run)
    descriptor = DeploymentDescriptor(
        name="my-app", namespace="prod", environment=PRODUCTION, manifest=""
    )
    policy = RetryPolicy.no_wait(max_attempts=4)
    with pytest.raises(ApplyRejectedError):
        policy.call("apply.production", KubectlCluster().apply, PRODUCTION, descriptor)
    assert len(calls) == 1


def test_kubectl_apply_connection_errors_are_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        kubectl,
        "run_tool",
        lambda cmd, **kwargs: _completed(1, stderr="Unable to connect to the server: EOF"),
    )
    descriptor = DeploymentDescriptor(
        name="my-app", namespace="prod", environment=PRODUCTION, manifest=""
    )
    with pytest.raises(TransientInfraError):
        KubectlCluster().apply(PRODUCTION, descriptor)


@pytest.mark.parametrize(
    ("obj", "status"),
    [
        (
            {"kind": "Job", "status": {"conditions": [{"type": "Complete", "status": "True"}]}},
            RolloutStatus.HEALTHY,
        ),
        (
            {"kind": "Job", "status": {"conditions": [{"type": "Failed", "status": "True"}]}},
            RolloutStatus.FAILED,
        ),
        ({"kind": "Job", "status": {"active": 1}}, RolloutStatus.PROGRESSING),
        ({"kind": "Pod", "status": {"phase": "Running"}}, RolloutStatus.HEALTHY),
        ({"kind": "Pod", "status": {"phase": "Pending"}}, RolloutStatus.PENDING),
        (
            {"kind": "ReplicaSet", "spec": {"replicas": 3}, "status": {"readyReplicas": 1}},
            RolloutStatus.PROGRESSING,
        ),
    ],
)
def test_kubectl_status_of_kinds_without_rollouts(
    monkeypatch: pytest.MonkeyPatch, obj: dict[str, object], status: RolloutStatus
) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _completed(0, json.dumps(obj))

    monkeypatch.setattr(kubectl, "run_tool", fake_run)
    kind = str(obj["kind"]).lower()
    assert KubectlCluster().rollout_status(PRODUCTION, f"prod/{kind}/my-app") is status
    assert calls[0] == ["kubectl", "get", f"{kind}/my-app", "-n", "prod", "-o", "json"]


@pytest.mark.parametrize(
    ("result", "status"),
    [
        (_completed(0, 'deployment "my-app" successfully rolled out'), RolloutStatus.HEALTHY),
        (
            _completed(0, "Waiting for deployment rollout to finish: 1 of 3 updated replicas"),
            RolloutStatus.PROGRESSING,
        ),
        (_completed(0, ""), RolloutStatus.PENDING),
        (
            _completed(1, stderr='error: deployment "my-app" exceeded its progress deadline'),
            RolloutStatus.FAILED,
        ),
    ],
)
def test_kubectl_rollout_status(
    monkeypatch: pytest.MonkeyPatch,
    result: subprocess.CompletedProcess[str],
    status: RolloutStatus,
) -> None:
    monkeypatch.setattr(kubectl, "run_tool", lambda cmd, **kwargs: result)
    assert KubectlCluster().rollout_status(PRODUCTION, "prod/deployment/my-app") is status


def test_kubectl_rollout_status_errors_are_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        kubectl, "run_tool", lambda cmd, **kwargs: _completed(1, stderr="connection refused")
    )
    with pytest.raises(TransientInfraError):
        KubectlCluster().rollout_status(PRODUCTION, "prod/deployment/my-app")
