"""Bus wrapper that keeps a copy of everything published through it."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from deploygate.orchestrator.event_bus import Event, EventBus, Subscription


@dataclass(slots=True)
class RecordingEventBus:
    bus: EventBus
    _events: list[Event] = field(default_factory=list, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def publish(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
        self.bus.publish(event)

    def subscribe(self, event_type: str) -> Subscription:
        return self.bus.subscribe(event_type)

    @property
    def events(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> list[Event]:
        return [event for event in self.events if event.event_type == event_type]

    def payloads(self, event_type: str) -> list[dict[str, Any]]:
        return [event.payload for event in self.of_type(event_type)]
