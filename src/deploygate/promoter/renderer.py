"""Render environment specific manifests and extract deployment descriptors."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import ChainableUndefined, Environment as JinjaEnvironment, TemplateError
import yaml  # type: ignore[import-untyped]

from deploygate.contracts.errors import RenderError
from deploygate.contracts.models import (
    ArtifactReference,
    ContainerDescriptor,
    DeploymentDescriptor,
)
from deploygate.contracts.types import Environment

_WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job"}


def _jinja_env() -> JinjaEnvironment:
    return JinjaEnvironment(
        undefined=ChainableUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


@dataclass(slots=True)
class DescriptorRenderer:
    """Renders a Jinja2 manifest template with per-environment values."""

    template: str
    values: Mapping[Environment, Mapping[str, Any]] = field(default_factory=dict)
    namespaces: Mapping[Environment, str] = field(default_factory=dict)

    @classmethod
    def from_paths(
        cls,
        template_path: Path,
        values_dir: Path | None = None,
        namespaces: Mapping[Environment, str] | None = None,
    ) -> DescriptorRenderer:
        values: dict[Environment, Mapping[str, Any]] = {}
        if values_dir is not None:
            for env in Environment:
                path = values_dir / f"{env.value}.yaml"
                if path.exists():
                    values[env] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls(
            template=template_path.read_text(encoding="utf-8"),
            values=values,
            namespaces=dict(namespaces or {}),
        )

    def namespace_for(self, environment: Environment) -> str:
        return self.namespaces.get(environment, environment.value)

    def render_manifest(self, environment: Environment, artifact: ArtifactReference) -> str:
        context = {
            "artifact": artifact,
            "image": artifact.pinned,
            "environment": environment.value,
            "namespace": self.namespace_for(environment),
            "values": dict(self.values.get(environment, {})),
        }
        try:
            return _jinja_env().from_string(self.template).render(**context)
        except TemplateError as exc:
            raise RenderError(f"template rendering failed for {environment.value}: {exc}") from exc

    def render(self, environment: Environment, artifact: ArtifactReference) -> DeploymentDescriptor:
        manifest = self.render_manifest(environment, artifact)
        return descriptor_from_manifest(manifest, environment, self.namespace_for(environment))


def descriptor_from_manifest(
    manifest: str, environment: Environment, namespace: str | None = None
) -> DeploymentDescriptor:
    """Extract the policy-relevant view of a (multi-document) Kubernetes manifest."""
    try:
        documents = [doc for doc in yaml.safe_load_all(manifest) if isinstance(doc, dict)]
    except yaml.YAMLError as exc:
        raise RenderError(f"manifest is not valid YAML: {exc}") from exc

    workload: dict[str, Any] | None = None
    pod_spec: dict[str, Any] | None = None
    network_policies: list[str] = []
    for doc in documents:
        kind = doc.get("kind")
        if kind == "NetworkPolicy":
            network_policies.append(str(_get(doc, "metadata", "name", default="")))
        elif workload is None and kind == "Pod":
            workload, pod_spec = doc, doc.get("spec") or {}
        elif workload is None and kind in _WORKLOAD_KINDS:
            workload, pod_spec = doc, _get(doc, "spec", "template", "spec") or {}
    if workload is None or pod_spec is None:
        raise RenderError("manifest contains no workload (Deployment, Pod, ...)")

    pod_security = pod_spec.get("securityContext") or {}
    containers = [
        _container(item)
        for key in ("initContainers", "containers")
        for item in pod_spec.get(key) or []
    ]
    return DeploymentDescriptor(
        name=str(_get(workload, "metadata", "name", default="")),
        kind=str(workload["kind"]),
        namespace=str(_get(workload, "metadata", "namespace", default=None) or namespace or ""),
        environment=environment,
        runs_as_root=_runs_as_root(pod_security),
        containers=containers,
        network_policies=network_policies,
        manifest=manifest,
    )


def _container(spec: Mapping[str, Any]) -> ContainerDescriptor:
    security = spec.get("securityContext") or {}
    limits = _get(spec, "resources", "limits", default=None)
    return ContainerDescriptor(
        name=str(spec.get("name", "")),
        image=str(spec.get("image", "")),
        privileged=_optional_bool(security.get("privileged")),
        allow_privilege_escalation=_optional_bool(security.get("allowPrivilegeEscalation")),
        run_as_root=_runs_as_root(security),
        resource_limits={str(k): str(v) for k, v in limits.items()} if limits else None,
    )


def _runs_as_root(security: Mapping[str, Any]) -> bool | None:
    if "runAsRoot" in security:
        return _optional_bool(security["runAsRoot"])
    if "runAsNonRoot" in security and security["runAsNonRoot"] is not None:
        return not bool(security["runAsNonRoot"])
    user = security.get("runAsUser")
    if user is not None:
        try:
            return int(user) == 0
        except (TypeError, ValueError) as exc:
            raise RenderError(f"runAsUser must be an integer, got {user!r}") from exc
    return None


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def _get(data: Mapping[str, Any], *path: str, default: Any = None) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current
