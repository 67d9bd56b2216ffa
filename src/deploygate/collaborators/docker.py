"""Digest resolution through ``docker buildx imagetools``."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging

from deploygate.collaborators.process import run_tool, tool_error
from deploygate.contracts.errors import ArtifactNotFoundError, TransientInfraError
from deploygate.contracts.models import ArtifactReference

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "manifest unknown", "name unknown", "no such manifest")


@dataclass(slots=True)
class DockerRegistry:
    """Resolves ``registry/repository:tag`` to its manifest digest."""

    docker_bin: str = "docker"
    timeout: float = 60.0

    def resolve_digest(self, registry: str, repository: str, tag: str) -> ArtifactReference:
        reference = ArtifactReference(registry=registry, repository=repository, tag=tag)
        result = run_tool(
            [
                self.docker_bin,
                "buildx",
                "imagetools",
                "inspect",
                reference.image,
                "--format",
                "{{json .Manifest}}",
            ],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            message = tool_error(result)
            if any(marker in message.lower() for marker in _NOT_FOUND_MARKERS):
                raise ArtifactNotFoundError(reference.image)
            raise TransientInfraError(f"digest lookup for {reference.image} failed: {message}")
        try:
            digest = json.loads(result.stdout)["digest"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise TransientInfraError(
                f"unexpected imagetools output for {reference.image}"
            ) from exc
        logger.info(
            "artifact.resolved",
            extra={"extra": {"image": reference.image, "digest": digest}},
        )
        return reference.with_digest(digest)
