"""OpenTelemetry tracing for Sluice.

Spans cover one exchange (``sluice.exchange``) or one revocation cascade
(``sluice.revoke``). An OTLP exporter is installed only when an endpoint is
configured; otherwise spans go to the OTel API's no-op tracer, or to a
local stub when opentelemetry is not installed at all.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

TRACER_NAME = "sluice"
TRACER_VERSION = "0.1.0"

_tracer: Tracer | None = None
_provider = None
_initialized = False


def init_tracing(
    endpoint: str | None = None,
    service_name: str | None = None,
) -> bool:
    """Install a batching OTLP span exporter.

    Called once by the API lifespan. Later calls report the first outcome.

    Returns:
        True if an exporter was installed, False if skipped (no endpoint or missing deps).
    """
    global _tracer, _provider, _initialized

    if _initialized:
        return _tracer is not None
    _initialized = True

    endpoint = endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        return False

    name = service_name or os.environ.get("OTEL_SERVICE_NAME", "sluice")
    provider = TracerProvider(resource=Resource.create({"service.name": name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _provider = provider

    _tracer = trace.get_tracer(TRACER_NAME, TRACER_VERSION)
    return True


def get_tracer() -> Tracer:
    if _tracer is not None:
        return _tracer
    try:
        from opentelemetry import trace
    except ImportError:
        return _NoOpTracer()
    return trace.get_tracer(TRACER_NAME, TRACER_VERSION)


def start_span(name: str, **attributes: Any):
    """Context manager for a span with ``sluice.``-prefixed attributes set up front."""
    return get_tracer().start_as_current_span(
        name, attributes={f"sluice.{key}": value for key, value in attributes.items()}
    )


def shutdown() -> None:
    """Flush pending spans and forget the installed tracer."""
    global _tracer, _provider, _initialized
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None
    _initialized = False


class _NoOpSpan:
    """Stands in for an OTel span; only what Sluice calls on spans."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def set_attribute(self, key: str, value: object) -> None:
        return None


class _NoOpTracer:
    def start_as_current_span(self, name: str, attributes: dict | None = None, **kwargs):
        return _NoOpSpan()
