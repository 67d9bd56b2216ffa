"""Event envelope and the bus interface carrying approvals and run notifications."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from queue import Empty, Queue
from threading import Lock
from typing import Any, Protocol
from uuid import UUID, uuid4


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Event:
    """One message on the bus.

    ``key`` groups related events: the run id of a terminal notification or the
    artifact digest of an approval signal.
    """

    event_type: str
    payload: dict[str, Any]
    key: str | None = None
    event_id: UUID = field(default_factory=uuid4)
    published_at: datetime = field(default_factory=_now)

    def encode(self) -> bytes:
        return json.dumps(
            {
                "event_id": str(self.event_id),
                "event_type": self.event_type,
                "key": self.key,
                "published_at": self.published_at.isoformat(),
                "payload": self.payload,
            },
            default=str,
        ).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> Event:
        """Parse bytes produced by ``encode``; raises ValueError on anything else."""
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                event_type=str(data["event_type"]),
                payload=dict(data.get("payload") or {}),
                key=data.get("key"),
                event_id=UUID(data["event_id"]),
                published_at=datetime.fromisoformat(data["published_at"]),
            )
        except (UnicodeDecodeError, KeyError, TypeError) as exc:
            raise ValueError(f"malformed event: {exc}") from exc


class Subscription:
    """One subscriber's private queue; every subscriber sees every event of its type."""

    def __init__(
        self, event_type: str, on_close: Callable[[Subscription], None] | None = None
    ) -> None:
        self.event_type = event_type
        self._queue: Queue[Event] = Queue()
        self._on_close = on_close
        self.closed = False

    def deliver(self, event: Event) -> None:
        if not self.closed:
            self._queue.put(event)

    def next(self, timeout: float | None = None) -> Event | None:
        """Return the next event, or None after ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close(self)


class EventBus(Protocol):
    def publish(self, event: Event) -> None:
        """Publish an event to every current subscriber of its type."""

    def subscribe(self, event_type: str) -> Subscription:
        """Start receiving ``event_type``; earlier events are not replayed."""


class InMemoryEventBus:
    """Fan-out bus inside one process, with the same delivery rules as NATS core."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, event_type: str) -> Subscription:
        subscription = Subscription(event_type, on_close=self._remove)
        with self._lock:
            self._subscriptions.setdefault(event_type, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._subscriptions.get(subscription.event_type, [])
            if subscription in current:
                current.remove(subscription)

    def publish(self, event: Event) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(event.event_type, []))
        for subscription in targets:
            subscription.deliver(event)
