"""Apply artifacts to environments, wait for rollout and roll back on failure."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging
from threading import Event as ThreadEvent
import time

from deploygate.collaborators.base import ClusterApply, HealthProbe
from deploygate.contracts.errors import (
    ApplyRejectedError,
    RenderError,
    RollbackFailureError,
    RunCancelledError,
    TransientInfraError,
)
from deploygate.contracts.models import (
    ArtifactReference,
    EnvironmentState,
    PromotionAttempt,
    utcnow,
)
from deploygate.contracts.types import Environment, PromotionKind, RolloutStatus
from deploygate.observability.metrics import PROMOTION_DURATION, PROMOTIONS
from deploygate.observability.telemetry import span
from deploygate.orchestrator.retry import RetryPolicy
from deploygate.promoter.environments import EnvironmentRegistry
from deploygate.promoter.renderer import DescriptorRenderer

logger = logging.getLogger(__name__)

AttemptRecorder = Callable[[PromotionAttempt], None]


@dataclass(slots=True)
class _Cycle:
    environment: Environment
    artifact: ArtifactReference
    kind: PromotionKind
    started_at: datetime
    started: float
    apply_id: str | None = None


@dataclass(slots=True)
class EnvironmentPromoter:
    """Promotes one artifact at a time into an environment.

    Every write to an environment happens while its promotion lock is held. A
    promotion whose artifact is already live and Healthy only re-verifies the
    rollout instead of applying again.
    """

    renderer: DescriptorRenderer
    cluster: ClusterApply
    environments: EnvironmentRegistry
    health_probe: HealthProbe | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    promotion_timeout: float = 300.0
    poll_interval: float = 5.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def promote(
        self,
        environment: Environment,
        artifact: ArtifactReference,
        *,
        record: AttemptRecorder | None = None,
        cancel: ThreadEvent | None = None,
    ) -> EnvironmentState:
        """Apply ``artifact`` and wait until it is Healthy or Failed.

        Returns the resulting environment state. Raises RunCancelledError when
        ``cancel`` is set before the lock could be taken.
        """
        if not self.environments.acquire(environment, cancel=cancel):
            raise RunCancelledError(f"cancelled while waiting for {environment.value}")
        try:
            if cancel is not None and cancel.is_set():
                raise RunCancelledError(f"cancelled before promoting {environment.value}")
            state = self.environments.get(environment)
            if state.is_healthy_with(artifact):
                if self._verify(state, artifact, record):
                    return state
            return self._apply_cycle(environment, artifact, PromotionKind.PROMOTE, record)
        finally:
            self.environments.release(environment)

    def rollback(
        self, environment: Environment, *, record: AttemptRecorder | None = None
    ) -> EnvironmentState:
        """Re-apply the last known good artifact of ``environment``.

        Raises RollbackFailureError when there is nothing to roll back to or the
        rollback itself does not become Healthy.
        """
        with self.environments.lock(environment) as state:
            target = state.last_known_good_artifact
            if target is None:
                logger.error(
                    "rollback.impossible",
                    extra={"extra": {"environment": environment.value}},
                )
                raise RollbackFailureError(environment.value, "no last known good artifact")
            logger.warning(
                "rollback.started",
                extra={
                    "extra": {
                        "environment": environment.value,
                        "target": target.pinned,
                        "from": state.current_artifact.pinned if state.current_artifact else None,
                    }
                },
            )
            result = self._apply_cycle(environment, target, PromotionKind.ROLLBACK, record)
            if result.rollout_status is not RolloutStatus.HEALTHY:
                raise RollbackFailureError(environment.value, "rollback did not become healthy")
            return result

    def _verify(
        self,
        state: EnvironmentState,
        artifact: ArtifactReference,
        record: AttemptRecorder | None,
    ) -> bool:
        cycle = self._start(state.environment, artifact, PromotionKind.VERIFY)
        cycle.apply_id = state.last_apply_id
        status = RolloutStatus.HEALTHY
        reason = None
        if state.last_apply_id is not None:
            try:
                status = self.retry.call(
                    f"rollout_status.{state.environment.value}",
                    self.cluster.rollout_status,
                    state.environment,
                    state.last_apply_id,
                )
            except TransientInfraError as exc:
                status, reason = RolloutStatus.FAILED, str(exc)
        if status is RolloutStatus.HEALTHY and not self._probe(state.environment, artifact):
            status, reason = RolloutStatus.FAILED, "health check failed"
        elif status is not RolloutStatus.HEALTHY and reason is None:
            reason = f"rollout is {status.value}"
        self._finish(cycle, status, reason, record)
        if status is not RolloutStatus.HEALTHY:
            logger.warning(
                "promotion.verify_failed",
                extra={
                    "extra": {
                        "environment": state.environment.value,
                        "artifact": artifact.pinned,
                        "reason": reason,
                    }
                },
            )
        return status is RolloutStatus.HEALTHY

    def _apply_cycle(
        self,
        environment: Environment,
        artifact: ArtifactReference,
        kind: PromotionKind,
        record: AttemptRecorder | None,
    ) -> EnvironmentState:
        with span(
            "promoter",
            f"promotion.{kind.value}",
            environment=environment,
            artifact=artifact.pinned,
        ) as current:
            state = self._cycle(environment, artifact, kind, record)
            current.set_attribute("rollout_status", state.rollout_status.value)
        return state

    def _cycle(
        self,
        environment: Environment,
        artifact: ArtifactReference,
        kind: PromotionKind,
        record: AttemptRecorder | None,
    ) -> EnvironmentState:
        cycle = self._start(environment, artifact, kind)
        try:
            descriptor = self.renderer.render(environment, artifact)
        except RenderError as exc:
            self._finish(cycle, RolloutStatus.FAILED, str(exc), record)
            if kind is PromotionKind.PROMOTE:
                # nothing reached the cluster; the stored state stays as it was
                return self.environments.get(environment).model_copy(
                    update={"rollout_status": RolloutStatus.FAILED}
                )
            return self.environments.update(environment, rollout_status=RolloutStatus.FAILED)

        # current_artifact only moves once the rollout is Healthy.
        changes: dict[str, object] = {"rollout_status": RolloutStatus.PROGRESSING}
        if kind is PromotionKind.PROMOTE:
            changes["pending_artifact"] = artifact
        self.environments.update(environment, **changes)

        try:
            cycle.apply_id = self.retry.call(
                f"apply.{environment.value}", self.cluster.apply, environment, descriptor
            )
        except (ApplyRejectedError, TransientInfraError) as exc:
            self._finish(cycle, RolloutStatus.FAILED, str(exc), record)
            return self.environments.update(environment, rollout_status=RolloutStatus.FAILED)

        self.environments.update(environment, last_apply_id=cycle.apply_id)
        status, reason = self._await_rollout(environment, cycle.apply_id)
        if status is RolloutStatus.HEALTHY and not self._probe(environment, artifact):
            status, reason = RolloutStatus.FAILED, "health check failed"
        self._finish(cycle, status, reason, record)

        if status is RolloutStatus.HEALTHY:
            return self.environments.update(
                environment,
                current_artifact=artifact,
                last_known_good_artifact=artifact,
                pending_artifact=None,
                rollout_status=RolloutStatus.HEALTHY,
            )
        return self.environments.update(environment, rollout_status=RolloutStatus.FAILED)

    def _await_rollout(
        self, environment: Environment, apply_id: str
    ) -> tuple[RolloutStatus, str | None]:
        deadline = self.clock() + self.promotion_timeout
        while True:
            try:
                status = self.retry.call(
                    f"rollout_status.{environment.value}",
                    self.cluster.rollout_status,
                    environment,
                    apply_id,
                )
            except TransientInfraError as exc:
                return RolloutStatus.FAILED, str(exc)
            if status is RolloutStatus.FAILED:
                return status, "rollout reported Failed"
            if status is RolloutStatus.HEALTHY:
                return status, None
            if self.clock() >= deadline:
                return (
                    RolloutStatus.FAILED,
                    f"rollout not healthy within {self.promotion_timeout:g}s",
                )
            self.sleep(self.poll_interval)

    def _probe(self, environment: Environment, artifact: ArtifactReference) -> bool:
        if self.health_probe is None:
            return True
        return self.health_probe.check(environment, artifact)

    def _start(
        self, environment: Environment, artifact: ArtifactReference, kind: PromotionKind
    ) -> _Cycle:
        logger.info(
            "promotion.started",
            extra={
                "extra": {
                    "environment": environment.value,
                    "artifact": artifact.pinned,
                    "kind": kind.value,
                }
            },
        )
        return _Cycle(
            environment=environment,
            artifact=artifact,
            kind=kind,
            started_at=utcnow(),
            started=self.clock(),
        )

    def _finish(
        self,
        cycle: _Cycle,
        status: RolloutStatus,
        reason: str | None,
        record: AttemptRecorder | None,
    ) -> PromotionAttempt:
        attempt = PromotionAttempt(
            environment=cycle.environment,
            artifact=cycle.artifact,
            kind=cycle.kind,
            rollout_status=status,
            apply_id=cycle.apply_id,
            reason=reason,
            started_at=cycle.started_at,
        )
        labels = {"environment": cycle.environment.value, "kind": cycle.kind.value}
        PROMOTIONS.labels(**labels, status=status.value).inc()
        PROMOTION_DURATION.labels(**labels).observe(max(self.clock() - cycle.started, 0.0))
        log = logger.info if attempt.succeeded else logger.error
        log(
            "promotion.finished",
            extra={
                "extra": {
                    "environment": cycle.environment.value,
                    "artifact": cycle.artifact.pinned,
                    "kind": cycle.kind.value,
                    "status": status.value,
                    "apply_id": cycle.apply_id,
                    "reason": reason,
                }
            },
        )
        if record is not None:
            record(attempt)
        return attempt
