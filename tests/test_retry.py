from __future__ import annotations

import pytest

from deploygate.contracts.errors import ArtifactNotFoundError, TransientInfraError
from deploygate.orchestrator.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or TransientInfraError("timeout")
        self.calls = 0

    def __call__(self, value: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


def test_retries_until_success() -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=4, initial_delay=1.0, jitter=False, sleep=sleeps.append)
    fn = Flaky(failures=3)
    assert policy.call("op", fn, "ok") == "ok"
    assert fn.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_delay_is_capped() -> None:
    policy = RetryPolicy(initial_delay=10.0, max_delay=15.0, jitter=False)
    assert [policy.delay_for(n) for n in range(3)] == [10.0, 15.0, 15.0]


def test_jitter_stays_within_a_quarter() -> None:
    policy = RetryPolicy(initial_delay=4.0, jitter=True)
    for _ in range(20):
        assert 4.0 <= policy.delay_for(0) <= 5.0


def test_exhausted_retries_raise_transient_error() -> None:
    fn = Flaky(failures=5)
    with pytest.raises(TransientInfraError):
        RetryPolicy.no_wait(3).call("op", fn, "x")
    assert fn.calls == 3


def test_builtin_timeouts_are_wrapped() -> None:
    fn = Flaky(failures=5, error=TimeoutError("read timed out"))
    with pytest.raises(TransientInfraError, match="op: read timed out"):
        RetryPolicy.no_wait(2).call("op", fn, "x")


def test_non_transient_errors_propagate_immediately() -> None:
    fn = Flaky(failures=1, error=ArtifactNotFoundError("ghcr.io/acme/my-app:9.9.9"))
    with pytest.raises(ArtifactNotFoundError):
        RetryPolicy.no_wait(3).call("op", fn, "x")
    assert fn.calls == 1


def test_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
