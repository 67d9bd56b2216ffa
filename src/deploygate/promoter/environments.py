"""Shared per-environment deployment state and promotion locks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from threading import Event as ThreadEvent, Lock, RLock, get_ident
from typing import Any

from deploygate.contracts.models import EnvironmentState, utcnow
from deploygate.contracts.types import Environment
from deploygate.orchestrator.store import RunStore


class PromotionLock:
    """Reentrant lock that knows which thread owns it."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._owner: int | None = None
        self._depth = 0

    def acquire(self, timeout: float = -1) -> bool:
        if not self._lock.acquire(timeout=timeout):
            return False
        self._owner = get_ident()
        self._depth += 1
        return True

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
        self._lock.release()

    def locked(self) -> bool:
        return self._owner is not None

    def held_by_current_thread(self) -> bool:
        return self._owner == get_ident()


class EnvironmentRegistry:
    """Owns one EnvironmentState per environment and the lock guarding it.

    Readers get immutable snapshots at any time. Writes go through ``update`` and
    are only accepted from the thread holding that environment's promotion lock,
    which serializes promotions so two runs never apply to the same environment
    at once.
    """

    def __init__(
        self,
        store: RunStore | None = None,
        environments: Iterable[Environment] = tuple(Environment),
    ) -> None:
        self._store = store
        self._guard = Lock()
        self._states: dict[Environment, EnvironmentState] = {}
        self._locks: dict[Environment, PromotionLock] = {}
        for env in environments:
            stored = store.load_environment(env) if store is not None else None
            self._states[env] = stored or EnvironmentState(environment=env)
            self._locks[env] = PromotionLock()

    def get(self, environment: Environment) -> EnvironmentState:
        with self._guard:
            return self._states[environment]

    def snapshot(self) -> dict[Environment, EnvironmentState]:
        with self._guard:
            return dict(self._states)

    def is_locked(self, environment: Environment) -> bool:
        return self._locks[environment].locked()

    def acquire(
        self,
        environment: Environment,
        cancel: ThreadEvent | None = None,
        poll_interval: float = 0.1,
    ) -> bool:
        """Block until the promotion lock is held; False if cancelled while waiting."""
        lock = self._locks[environment]
        if cancel is None:
            return lock.acquire()
        while not cancel.is_set():
            if lock.acquire(timeout=poll_interval):
                return True
        return False

    def release(self, environment: Environment) -> None:
        self._locks[environment].release()

    @contextmanager
    def lock(self, environment: Environment) -> Iterator[EnvironmentState]:
        self.acquire(environment)
        try:
            yield self.get(environment)
        finally:
            self.release(environment)

    def update(self, environment: Environment, **changes: Any) -> EnvironmentState:
        if not self._locks[environment].held_by_current_thread():
            raise RuntimeError(f"promotion lock for {environment.value} is not held")
        with self._guard:
            state = self._states[environment].model_copy(
                update={**changes, "updated_at": utcnow()}
            )
            self._states[environment] = state
        if self._store is not None:
            self._store.save_environment(state)
        return state

    def seed(self, state: EnvironmentState) -> None:
        """Install a known state, e.g. the production baseline in demos and tests."""
        with self.lock(state.environment):
            self.update(
                state.environment,
                current_artifact=state.current_artifact,
                last_known_good_artifact=state.last_known_good_artifact,
                rollout_status=state.rollout_status,
                pending_artifact=state.pending_artifact,
                last_apply_id=state.last_apply_id,
            )
