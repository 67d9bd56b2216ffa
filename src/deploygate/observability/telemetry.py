"""OpenTelemetry tracing for pipeline runs, gates and promotions.

Tracing is on unless ``DEPLOYGATE_DISABLE_TRACING=1``; when disabled every span
is a no-op and OpenTelemetry is never imported.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

_DISABLE_ENV = "DEPLOYGATE_DISABLE_TRACING"
_configured = False


class _NoOpSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        return None

    def record_exception(self, exception: BaseException) -> None:
        return None


_NOOP_SPAN = _NoOpSpan()


def tracing_disabled() -> bool:
    return os.getenv(_DISABLE_ENV) == "1"


def setup_tracing(service_name: str, exporter: Any | None = None) -> None:
    """Install a tracer provider once per process; spans go to ``exporter`` or the console."""
    global _configured
    if tracing_disabled():
        logger.info("tracing.disabled", extra={"extra": {"service": service_name}})
        return
    if _configured:
        return
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter or ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    _configured = True
    logger.info("tracing.configured", extra={"extra": {"service": service_name}})


def _attribute(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


@contextmanager
def span(component: str, name: str, **attributes: Any) -> Iterator[Any]:
    """Open a span named ``name`` on the ``deploygate.<component>`` tracer.

    None-valued attributes are skipped; enums are recorded by value.
    """
    if tracing_disabled():
        yield _NOOP_SPAN
        return
    from opentelemetry import trace

    tracer = trace.get_tracer(f"deploygate.{component}")
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(key, _attribute(value))
        yield current
