"""Sluice Observability: OpenTelemetry tracing and metrics.

Opt-in via OTEL_EXPORTER_OTLP_ENDPOINT env var.
Without it, all tracing/metrics calls are no-ops.
"""

from sluice.observability.metrics import (
    record_exchange,
    record_exchange_duration,
    record_revocation,
)
from sluice.observability.tracing import get_tracer, init_tracing, shutdown, start_span

__all__ = [
    "init_tracing",
    "get_tracer",
    "start_span",
    "shutdown",
    "record_exchange",
    "record_exchange_duration",
    "record_revocation",
]
