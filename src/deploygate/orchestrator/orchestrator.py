"""Pipeline orchestrator: gates, promotions, rollback and terminal reporting."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
from threading import Event as ThreadEvent

from deploygate.collaborators.base import ArtifactRegistry, NotificationSink
from deploygate.contracts.errors import (
    ArtifactNotFoundError,
    RollbackFailureError,
    RunCancelledError,
    TransientInfraError,
)
from deploygate.contracts.events import PipelineTerminated
from deploygate.contracts.models import PipelineRequest, PipelineRun, PromotionAttempt
from deploygate.contracts.types import Environment, GateName, PipelineStage, RunStatus
from deploygate.gatekeeper.gates import GateController, GateInput
from deploygate.observability.metrics import RUNS
from deploygate.observability.telemetry import span
from deploygate.orchestrator.retry import RetryPolicy
from deploygate.orchestrator.state import RunStateMachine
from deploygate.orchestrator.store import RunStore
from deploygate.promoter.promoter import AttemptRecorder, EnvironmentPromoter

logger = logging.getLogger(__name__)

_GATE_STAGES = (
    (GateName.SCAN, PipelineStage.SCANNING, PipelineStage.SCAN_GATE_FAILED),
    (GateName.POLICY, PipelineStage.POLICY_EVALUATING, PipelineStage.POLICY_GATE_FAILED),
)

_PROMOTING = {
    Environment.STAGING: PipelineStage.STAGING_PROMOTING,
    Environment.PRODUCTION: PipelineStage.PRODUCTION_PROMOTING,
}

_PROMOTION_FAILED = {
    Environment.STAGING: PipelineStage.STAGING_FAILED,
    Environment.PRODUCTION: PipelineStage.PRODUCTION_FAILED,
}


class CancellationToken(ThreadEvent):
    """Set from any thread to cancel a run at its next step boundary."""

    def cancel(self) -> None:
        self.set()

    @property
    def cancelled(self) -> bool:
        return self.is_set()


@dataclass(slots=True)
class _RunContext:
    run: PipelineRun
    machine: RunStateMachine
    cancel: ThreadEvent
    touched: list[Environment] = field(default_factory=list)
    rolled_back: list[Environment] = field(default_factory=list)
    rollback_failed: bool = False


@dataclass(slots=True)
class PipelineOrchestrator:
    """Drives one artifact from Built to a terminal status.

    Gate and rollout failures end up on the returned run rather than being
    raised; only programming errors escape ``run``.
    """

    registry: ArtifactRegistry
    gates: GateController
    promoter: EnvironmentPromoter
    store: RunStore | None = None
    sinks: Sequence[NotificationSink] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    approval_environments: frozenset[Environment] = frozenset({Environment.PRODUCTION})

    def run(self, request: PipelineRequest, cancel: ThreadEvent | None = None) -> PipelineRun:
        run = PipelineRun(artifact=request.reference, environments=list(request.environments))
        ctx = _RunContext(
            run=run,
            machine=RunStateMachine(run, on_transition=self._transition_hook(run)),
            cancel=cancel if cancel is not None else CancellationToken(),
        )
        with span(
            "orchestrator", "pipeline.run", run_id=str(run.run_id), image=request.reference.image
        ) as current:
            logger.info(
                "pipeline.started",
                extra={
                    "extra": {
                        "run_id": str(run.run_id),
                        "image": request.reference.image,
                        "environments": [env.value for env in request.environments],
                    }
                },
            )
            try:
                self._execute(request, ctx)
            except RunCancelledError as exc:
                logger.warning(
                    "pipeline.cancelled",
                    extra={"extra": {"run_id": str(run.run_id), "stage": run.stage.value}},
                )
                run.failure_reason = str(exc)
                ctx.machine.move(PipelineStage.CANCELLED)
                self._recover(ctx)
            self._finalize(ctx)
            current.set_attribute("status", run.status.value if run.status else "")
        return run

    def _execute(self, request: PipelineRequest, ctx: _RunContext) -> None:
        run = ctx.run
        if Environment.PRODUCTION in request.environments and request.tag == "latest":
            run.failure_reason = "production deployments require an immutable tag, not 'latest'"
            ctx.machine.move(PipelineStage.INVALID_REQUEST)
            return

        self._check_cancel(ctx, "resolving the artifact")
        try:
            run.artifact = self.retry.call(
                "resolve_digest",
                self.registry.resolve_digest,
                request.registry,
                request.repository,
                request.tag,
            )
        except (ArtifactNotFoundError, TransientInfraError) as exc:
            run.failure_reason = str(exc)
            ctx.machine.move(PipelineStage.ARTIFACT_NOT_FOUND)
            return
        ctx.machine.move(PipelineStage.BUILT)

        gate_input = GateInput(
            artifact=run.artifact,
            run=run,
            environments=tuple(request.environments),
            cancel=ctx.cancel,
        )
        for gate, running, failed in _GATE_STAGES:
            self._check_cancel(ctx, f"the {gate.value} gate")
            ctx.machine.move(running)
            if not self.gates.run_gate(gate.value, gate_input).passed:
                ctx.machine.move(failed)
                return

        for environment in request.environments:
            production_only = Environment.STAGING not in request.environments
            if environment is Environment.PRODUCTION and production_only:
                staging = self.promoter.environments.get(Environment.STAGING)
                if not staging.is_healthy_with(run.artifact):
                    run.failure_reason = f"staging is not Healthy with {run.artifact.pinned}"
                    ctx.machine.move(PipelineStage.STAGING_FAILED)
                    return
            if environment in self.approval_environments:
                self._check_cancel(ctx, f"approval for {environment.value}")
                ctx.machine.move(PipelineStage.AWAITING_APPROVAL)
                approval = self.gates.run_gate(
                    GateName.APPROVAL.value, gate_input.for_environment(environment)
                )
                if not approval.passed:
                    ctx.machine.move(PipelineStage.APPROVAL_DENIED)
                    return
            self._check_cancel(ctx, f"promoting {environment.value}")
            ctx.machine.move(_PROMOTING[environment])
            if not self._promote(environment, ctx):
                return
        ctx.machine.move(PipelineStage.SUCCEEDED)

    def _promote(self, environment: Environment, ctx: _RunContext) -> bool:
        run = ctx.run
        environments = self.promoter.environments
        if not environments.acquire(environment, cancel=ctx.cancel):
            raise RunCancelledError(f"cancelled while waiting to promote {environment.value}")
        try:
            ctx.touched.append(environment)
            state = self.promoter.promote(
                environment, run.artifact, record=self._recorder(run), cancel=ctx.cancel
            )
            if state.is_healthy_with(run.artifact):
                return True
            last = run.promotion_attempts()[-1] if run.promotions else None
            run.failure_reason = (last.reason if last else None) or (
                f"{environment.value} rollout did not become Healthy"
            )
            ctx.machine.move(_PROMOTION_FAILED[environment])
            # Roll back while still holding the lock so no other run slips in.
            self._recover(ctx)
            return False
        finally:
            environments.release(environment)

    def _recover(self, ctx: _RunContext) -> None:
        """Roll back every environment this run touched that has diverged."""
        for environment in reversed(ctx.touched):
            if environment in ctx.rolled_back:
                continue
            if not self.promoter.environments.get(environment).diverged:
                continue
            try:
                self.promoter.rollback(environment, record=self._recorder(ctx.run))
            except RollbackFailureError as exc:
                ctx.rollback_failed = True
                logger.error(
                    "rollback.failed",
                    extra={
                        "extra": {
                            "run_id": str(ctx.run.run_id),
                            "environment": environment.value,
                            "reason": exc.reason,
                            "action": "operator intervention required",
                        }
                    },
                )
                continue
            ctx.rolled_back.append(environment)

    def _finalize(self, ctx: _RunContext) -> None:
        run = ctx.run
        if run.stage is PipelineStage.SUCCEEDED:
            status = RunStatus.SUCCEEDED
        elif ctx.rolled_back and not ctx.rollback_failed:
            status = RunStatus.ROLLED_BACK
        else:
            status = RunStatus.FAILED
        run.rollback_failed = ctx.rollback_failed
        failed_gate = run.first_failed_gate()
        run.finish(status, failed_gate.reason if failed_gate else None)
        self._save(run)
        RUNS.labels(status=status.value, stage=run.stage.value).inc()
        log = logger.info if status is RunStatus.SUCCEEDED else logger.error
        log("pipeline.finished", extra={"extra": run.failure_summary()})
        self._notify(PipelineTerminated.from_run(run))

    def _notify(self, event: PipelineTerminated) -> None:
        for sink in self.sinks:
            try:
                sink.notify(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "notification.failed",
                    extra={
                        "extra": {
                            "run_id": str(event.run_id),
                            "sink": type(sink).__name__,
                            "error": str(exc),
                        }
                    },
                )

    def _check_cancel(self, ctx: _RunContext, step: str) -> None:
        if ctx.cancel.is_set():
            raise RunCancelledError(f"cancelled before {step}")

    def _recorder(self, run: PipelineRun) -> AttemptRecorder:
        def record(attempt: PromotionAttempt) -> None:
            run.record_promotion(attempt)
            self._save(run)

        return record

    def _transition_hook(
        self, run: PipelineRun
    ) -> Callable[[PipelineStage, PipelineStage], None]:
        def on_transition(source: PipelineStage, dest: PipelineStage) -> None:
            logger.info(
                "pipeline.stage",
                extra={
                    "extra": {
                        "run_id": str(run.run_id),
                        "from": source.value,
                        "to": dest.value,
                    }
                },
            )
            self._save(run)

        return on_transition

    def _save(self, run: PipelineRun) -> None:
        if self.store is not None:
            self.store.save_run(run)
