"""HTTP collaborators: post-deploy health probe and webhook notifications."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging

import httpx

from deploygate.contracts.events import PipelineTerminated
from deploygate.contracts.models import ArtifactReference
from deploygate.contracts.types import Environment, RunStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HttpHealthProbe:
    """GETs a per-environment health URL; any 2xx answer counts as healthy."""

    urls: Mapping[Environment, str]
    timeout: float = 10.0
    client: httpx.Client | None = None

    def check(self, environment: Environment, artifact: ArtifactReference) -> bool:
        url = self.urls.get(environment)
        if not url:
            return True
        client = self.client or httpx.Client(timeout=self.timeout)
        try:
            response = client.get(url)
        except httpx.HTTPError as exc:
            logger.warning(
                "health.unreachable",
                extra={"extra": {"environment": environment.value, "url": url, "error": str(exc)}},
            )
            return False
        finally:
            if self.client is None:
                client.close()
        healthy = response.is_success
        log = logger.info if healthy else logger.warning
        log(
            "health.checked",
            extra={
                "extra": {
                    "environment": environment.value,
                    "artifact": artifact.pinned,
                    "status_code": response.status_code,
                }
            },
        )
        return healthy


_EMOJI = {
    RunStatus.SUCCEEDED: ":white_check_mark:",
    RunStatus.FAILED: ":x:",
    RunStatus.ROLLED_BACK: ":rewind:",
}


@dataclass(slots=True)
class WebhookNotificationSink:
    """Posts a Slack-compatible ``{"text": ...}`` message for each terminal event."""

    url: str
    timeout: float = 10.0
    client: httpx.Client | None = field(default=None, repr=False)

    def message(self, event: PipelineTerminated) -> dict[str, str]:
        lines = [f"{_EMOJI[event.status]} {event.headline()}"]
        if event.reason:
            lines.append(f"Reason: {event.reason}")
        lines.extend(f"- {violation}" for violation in event.violations)
        return {"text": "\n".join(lines)}

    def notify(self, event: PipelineTerminated) -> None:
        client = self.client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(self.url, json=self.message(event))
            response.raise_for_status()
        finally:
            if self.client is None:
                client.close()
