"""OpenTelemetry metrics for Sluice.

Counters for exchange outcomes and revocation cascades, plus an exchange
latency histogram. All functions are no-ops if opentelemetry is not
installed.
"""

from __future__ import annotations


_meter = None
_exchanges_total = None
_exchange_duration = None
_revocations_total = None
_revoked_tokens_total = None
_initialized = False


def _ensure_meter() -> bool:
    """Lazily initialize the meter and instruments."""
    global _meter, _exchanges_total, _exchange_duration, _revocations_total, _revoked_tokens_total, _initialized

    if _initialized:
        return _meter is not None

    _initialized = True

    try:
        from opentelemetry import metrics
    except ImportError:
        return False

    _meter = metrics.get_meter("sluice", "0.1.0")
    _exchanges_total = _meter.create_counter(
        "sluice.exchanges.total",
        description="Token exchange attempts by outcome",
        unit="1",
    )
    _exchange_duration = _meter.create_histogram(
        "sluice.exchange.duration_seconds",
        description="Token exchange latency in seconds",
        unit="s",
    )
    _revocations_total = _meter.create_counter(
        "sluice.revocations.total",
        description="Revocation cascades started",
        unit="1",
    )
    _revoked_tokens_total = _meter.create_counter(
        "sluice.revoked_tokens.total",
        description="Tokens newly revoked by cascades",
        unit="1",
    )
    return True


def record_exchange(*, client_id: str, outcome: str, reason: str) -> None:
    if not _ensure_meter() or _exchanges_total is None:
        return
    _exchanges_total.add(
        1,
        {"sluice.client_id": client_id, "sluice.outcome": outcome, "sluice.reason": reason},
    )


def record_exchange_duration(*, outcome: str, duration_seconds: float) -> None:
    if not _ensure_meter() or _exchange_duration is None:
        return
    _exchange_duration.record(duration_seconds, {"sluice.outcome": outcome})


def record_revocation(*, newly_revoked: int, attempts: int) -> None:
    """Record a finished revocation cascade."""
    if not _ensure_meter() or _revocations_total is None:
        return
    _revocations_total.add(1, {"sluice.attempts": str(attempts)})
    if newly_revoked and _revoked_tokens_total is not None:
        _revoked_tokens_total.add(newly_revoked)
