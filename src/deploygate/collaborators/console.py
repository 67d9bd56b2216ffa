"""Approval sources for interactive and unattended CLI runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from queue import Empty, Queue
from threading import Lock, Thread

from deploygate.contracts.models import ArtifactReference
from deploygate.contracts.types import ApprovalDecision, Environment


@dataclass(slots=True)
class AutoApprovalSource:
    """Approves every request; for pipelines where production is not gated by a human."""

    decision: ApprovalDecision = ApprovalDecision.APPROVED

    def await_approval(
        self,
        artifact: ArtifactReference,
        environment: Environment,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        return self.decision


@dataclass(slots=True)
class ConsoleApprovalSource:
    """Asks on the terminal, mirroring a manual "Deploy to production?" input step.

    The prompt is read on a daemon thread so a timeout can expire while the
    operator has not answered yet; one prompt is shown per artifact and environment.
    """

    reader: Callable[[str], str] = input
    _answers: dict[tuple[str, Environment], Queue[str]] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def _prompt(self, artifact: ArtifactReference, environment: Environment) -> Queue[str]:
        key = (artifact.pinned, environment)
        with self._lock:
            if key not in self._answers:
                answers: Queue[str] = Queue()
                self._answers[key] = answers
                question = f"Deploy {artifact.pinned} to {environment.value}? [y/N] "
                Thread(target=lambda: answers.put(self.reader(question)), daemon=True).start()
            return self._answers[key]

    def await_approval(
        self,
        artifact: ArtifactReference,
        environment: Environment,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        answers = self._prompt(artifact, environment)
        try:
            answer = answers.get(timeout=timeout)
        except Empty:
            return None
        with self._lock:
            self._answers.pop((artifact.pinned, environment), None)
        if answer.strip().lower() in {"y", "yes"}:
            return ApprovalDecision.APPROVED
        return ApprovalDecision.DENIED
