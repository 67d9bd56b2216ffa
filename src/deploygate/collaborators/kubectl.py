"""Cluster apply and rollout status through ``kubectl``."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import logging
from typing import Any

from deploygate.collaborators.process import run_tool, tool_error
from deploygate.contracts.errors import ApplyRejectedError, TransientInfraError
from deploygate.contracts.models import DeploymentDescriptor
from deploygate.contracts.types import Environment, RolloutStatus

logger = logging.getLogger(__name__)

# apply output that means the object itself is wrong; retrying cannot help
_REJECTION_MARKERS = (
    "denied the request",
    "is invalid",
    "error validating",
    "forbidden",
    "is immutable",
)

# kinds `kubectl rollout status` understands
_ROLLOUT_KINDS = frozenset({"deployment", "statefulset", "daemonset"})


@dataclass(slots=True)
class KubectlCluster:
    """Applies rendered manifests and reads workload rollout status.

    The apply id is ``<namespace>/<kind>/<name>``. Deployments, StatefulSets
    and DaemonSets are polled with ``kubectl rollout status --watch=false``;
    other kinds are read from ``kubectl get -o json``.
    """

    kubectl_bin: str = "kubectl"
    contexts: Mapping[Environment, str] = field(default_factory=dict)
    timeout: float = 120.0

    def _base(self, environment: Environment) -> list[str]:
        cmd = [self.kubectl_bin]
        context = self.contexts.get(environment)
        if context:
            cmd += ["--context", context]
        return cmd

    def apply(self, environment: Environment, descriptor: DeploymentDescriptor) -> str:
        namespace = descriptor.namespace or environment.value
        result = run_tool(
            [*self._base(environment), "apply", "-n", namespace, "-f", "-"],
            stdin=descriptor.manifest,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            error = tool_error(result)
            if any(marker in error.lower() for marker in _REJECTION_MARKERS):
                raise ApplyRejectedError(f"{environment.value} rejected the manifest: {error}")
            raise TransientInfraError(f"kubectl apply to {environment.value} failed: {error}")
        apply_id = f"{namespace}/{descriptor.kind.lower()}/{descriptor.name}"
        logger.info(
            "cluster.applied",
            extra={"extra": {"environment": environment.value, "apply_id": apply_id}},
        )
        return apply_id

    def rollout_status(self, environment: Environment, apply_id: str) -> RolloutStatus:
        namespace, _, resource = apply_id.partition("/")
        kind = resource.partition("/")[0]
        if kind not in _ROLLOUT_KINDS:
            return self._object_status(environment, namespace, resource)
        result = run_tool(
            [
                *self._base(environment),
                "rollout",
                "status",
                resource,
                "-n",
                namespace,
                "--watch=false",
            ],
            timeout=self.timeout,
        )
        output = f"{result.stdout}\n{result.stderr}".lower()
        if result.returncode != 0:
            if "exceeded its progress deadline" in output:
                return RolloutStatus.FAILED
            raise TransientInfraError(
                f"kubectl rollout status in {environment.value} failed: {tool_error(result)}"
            )
        if "successfully rolled out" in output:
            return RolloutStatus.HEALTHY
        if "waiting for" in output:
            return RolloutStatus.PROGRESSING
        return RolloutStatus.PENDING

    def _object_status(
        self, environment: Environment, namespace: str, resource: str
    ) -> RolloutStatus:
        result = run_tool(
            [*self._base(environment), "get", resource, "-n", namespace, "-o", "json"],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise TransientInfraError(
                f"kubectl get {resource} in {environment.value} failed: {tool_error(result)}"
            )
        try:
            obj = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise TransientInfraError(f"kubectl get {resource} returned invalid JSON") from exc
        return _status_from_object(obj)


def _status_from_object(obj: Mapping[str, Any]) -> RolloutStatus:
    kind = str(obj.get("kind", "")).lower()
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if kind == "job":
        for condition in status.get("conditions") or []:
            if condition.get("status") != "True":
                continue
            if condition.get("type") == "Complete":
                return RolloutStatus.HEALTHY
            if condition.get("type") == "Failed":
                return RolloutStatus.FAILED
        return RolloutStatus.PROGRESSING if status.get("active") else RolloutStatus.PENDING
    if kind == "pod":
        phase = status.get("phase")
        if phase in ("Running", "Succeeded"):
            return RolloutStatus.HEALTHY
        if phase == "Failed":
            return RolloutStatus.FAILED
        return RolloutStatus.PENDING
    desired = spec.get("replicas", 1)
    if status.get("readyReplicas", 0) >= desired:
        return RolloutStatus.HEALTHY
    return RolloutStatus.PROGRESSING
