"""NATS transport for approval signals and run notifications.

nats-py is asyncio only; the bus owns a private event loop on a daemon thread
so the synchronous pipeline can publish and wait without an outer loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from threading import Thread
from typing import Any, TypeVar

from nats.aio.client import Client as NATS

from deploygate.contracts.errors import TransientInfraError
from deploygate.orchestrator.event_bus import Event, Subscription

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class NATSEventBus:
    """Subjects are ``<prefix>.<event_type>``, e.g. ``deploygate.approval.decided``."""

    def __init__(
        self, url: str, subject_prefix: str = "deploygate", connect_timeout: float = 10.0
    ) -> None:
        self._url = url
        self._prefix = subject_prefix
        self._timeout = connect_timeout
        self._loop = asyncio.new_event_loop()
        self._client = NATS()
        self._thread = Thread(target=self._loop.run_forever, name="deploygate-nats", daemon=True)
        self._thread.start()
        try:
            self._call(self._client.connect(servers=[url], connect_timeout=connect_timeout))
        except Exception as exc:
            self._loop.call_soon_threadsafe(self._loop.stop)
            raise TransientInfraError(f"cannot connect to NATS at {url}: {exc}") from exc
        logger.info("nats.connected", extra={"extra": {"url": url, "prefix": subject_prefix}})

    def _call(self, coro: Coroutine[Any, Any, _T]) -> _T:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=self._timeout)

    def subject_for(self, event_type: str) -> str:
        return f"{self._prefix}.{event_type}"

    def subscribe(self, event_type: str) -> Subscription:
        """Subscribe now; messages published before this call are not delivered."""
        subject = self.subject_for(event_type)
        handles: dict[str, Any] = {}
        subscription = Subscription(
            event_type, on_close=lambda _: self._unsubscribe(handles["sub"])
        )
        handles["sub"] = self._call(self._client.subscribe(subject, cb=self._handler(subscription)))
        logger.debug("nats.subscribed", extra={"extra": {"subject": subject}})
        return subscription

    def _unsubscribe(self, nats_sub: Any) -> None:
        if self._loop.is_running():
            self._call(nats_sub.unsubscribe())

    def _handler(self, subscription: Subscription) -> Any:
        async def handle(msg: Any) -> None:
            try:
                subscription.deliver(Event.decode(msg.data))
            except ValueError as exc:
                logger.warning(
                    "nats.malformed_event",
                    extra={"extra": {"subject": msg.subject, "error": str(exc)}},
                )

        return handle

    def publish(self, event: Event) -> None:
        subject = self.subject_for(event.event_type)
        self._call(self._client.publish(subject, event.encode()))
        self._call(self._client.flush(timeout=self._timeout))
        logger.debug(
            "nats.published",
            extra={"extra": {"subject": subject, "event_id": str(event.event_id)}},
        )

    def close(self) -> None:
        try:
            self._call(self._client.drain())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=self._timeout)
