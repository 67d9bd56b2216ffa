"""Approval signals and notifications carried over the event bus."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time

from pydantic import ValidationError

from deploygate.contracts.events import APPROVAL_DECIDED, ApprovalSignal, PipelineTerminated
from deploygate.contracts.models import ArtifactReference
from deploygate.contracts.types import ApprovalDecision, Environment
from deploygate.orchestrator.event_bus import Event, EventBus, Subscription

logger = logging.getLogger(__name__)


def publish_approval(bus: EventBus, signal: ApprovalSignal) -> None:
    bus.publish(
        Event(
            event_type=APPROVAL_DECIDED,
            key=signal.digest,
            payload=signal.model_dump(mode="json"),
        )
    )


@dataclass(slots=True)
class BusApprovalSource:
    """Waits for an ``approval.decided`` event matching digest and environment.

    The subscription opens when the source is built, so a decision published
    before the run reaches its approval step is still seen. Every subscriber
    gets its own copy of each signal; signals for other artifacts are ignored.
    """

    bus: EventBus
    poll_interval: float = 0.2
    subscription: Subscription = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.subscription = self.bus.subscribe(APPROVAL_DECIDED)

    def await_approval(
        self,
        artifact: ArtifactReference,
        environment: Environment,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            event = self.subscription.next(timeout=wait)
            if event is None:
                continue
            try:
                signal = ApprovalSignal.model_validate(event.payload)
            except ValidationError:
                logger.warning(
                    "approval.malformed",
                    extra={"extra": {"event_id": str(event.event_id)}},
                )
                continue
            if signal.digest != artifact.digest or signal.environment is not environment:
                logger.debug(
                    "approval.ignored",
                    extra={
                        "extra": {
                            "digest": signal.digest,
                            "environment": signal.environment.value,
                        }
                    },
                )
                continue
            logger.info(
                "approval.received",
                extra={
                    "extra": {
                        "artifact": artifact.pinned,
                        "environment": environment.value,
                        "decision": signal.decision.value,
                        "approver": signal.approver,
                    }
                },
            )
            return signal.decision

    def close(self) -> None:
        self.subscription.close()

@dataclass(slots=True)
class BusNotificationSink:
    """Publishes terminal run events on the bus (``pipeline.succeeded`` etc.)."""

    bus: EventBus

    def notify(self, event: PipelineTerminated) -> None:
        self.bus.publish(
            Event(
                event_type=event.event_type,
                key=str(event.run_id),
                payload=event.model_dump(mode="json"),
            )
        )
