"""
Sluice Revocation Propagator

Revoking a token revokes every token derived from it, transitively.

The cascade is a breadth-first walk over ``source_token_id`` edges,
bounded by the maximum chain depth. Each token is flipped with a
compare-and-set, so concurrent revokers never double-count and a token
is never un-revoked.

The walk always continues through tokens that are already revoked. A
cascade interrupted by a storage failure is therefore finished simply by
starting over from the root: every attempt marks what is still unmarked
and skips the rest.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from sluice.config import DEFAULT_MAX_CHAIN_DEPTH, ExchangeSettings
from sluice.core.clock import ClockSource, SystemClock
from sluice.core.models import RevocationResult, Token
from sluice.exceptions import StorageError, TokenNotFoundError
from sluice.logging import get_logger
from sluice.observability.metrics import record_revocation
from sluice.observability.tracing import start_span
from sluice.utils.retry import compute_backoff

logger = get_logger("sluice.revocation")


class RevocationStore(Protocol):
    def get_token(self, token_id: str) -> Token | None: ...

    def children_of(self, token_id: str) -> list[str]: ...

    def mark_revoked(self, token_id: str, revoked_at: datetime) -> bool: ...


class _Progress:
    """State carried across retry attempts of one cascade."""

    def __init__(self) -> None:
        self.already_revoked: bool | None = None
        self.newly_revoked: list[str] = []
        self.visited = 0

    def flipped(self, token_id: str) -> None:
        if token_id not in self.newly_revoked:
            self.newly_revoked.append(token_id)


class RevocationPropagator:
    """Revokes a token and all of its descendants."""

    def __init__(
        self,
        store: RevocationStore,
        clock: ClockSource | None = None,
        max_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
        max_attempts: int = 5,
        backoff_base: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._clock = clock or SystemClock()
        self._max_depth = max_depth
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        store: RevocationStore,
        settings: ExchangeSettings,
        clock: ClockSource | None = None,
    ) -> RevocationPropagator:
        return cls(
            store,
            clock=clock,
            max_depth=settings.max_chain_depth,
            max_attempts=settings.revocation_max_attempts,
            backoff_base=settings.revocation_backoff_base,
        )

    async def revoke(self, token_id: str) -> RevocationResult:
        """Revoke ``token_id`` and cascade to its descendants.

        Idempotent: revoking an already-revoked token succeeds and still
        finishes any cascade left incomplete by an earlier failure.

        Raises:
            TokenNotFoundError: No token with this identifier exists.
            StorageError: The store kept failing for every attempt.
        """
        progress = _Progress()
        with start_span("sluice.revoke", token_id=token_id) as span:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    await asyncio.to_thread(self._cascade, token_id, progress)
                except StorageError as e:
                    if attempt == self._max_attempts:
                        logger.error(
                            "Revocation cascade gave up after %d attempts",
                            attempt,
                            extra={"token_id": token_id, "attempt": attempt},
                        )
                        raise
                    delay = compute_backoff(attempt, base=self._backoff_base)
                    logger.warning(
                        "Revocation cascade interrupted, retrying from root in %.3fs: %s",
                        delay,
                        e,
                        extra={"token_id": token_id, "attempt": attempt},
                    )
                    await self._sleep(delay)
                    continue

                span.set_attribute("sluice.revoked", len(progress.newly_revoked))
                span.set_attribute("sluice.attempts", attempt)
                record_revocation(newly_revoked=len(progress.newly_revoked), attempts=attempt)
                logger.info(
                    "Revoked %d token(s)",
                    len(progress.newly_revoked),
                    extra={"token_id": token_id, "attempt": attempt},
                )
                return RevocationResult(
                    root_token_id=token_id,
                    newly_revoked=list(progress.newly_revoked),
                    already_revoked=bool(progress.already_revoked),
                    visited=progress.visited,
                    attempts=attempt,
                )
        raise AssertionError("unreachable")

    def _cascade(self, token_id: str, progress: _Progress) -> None:
        if self._store.get_token(token_id) is None:
            raise TokenNotFoundError(token_id)

        now = self._clock.now()
        flipped = self._store.mark_revoked(token_id, now)
        if progress.already_revoked is None:
            progress.already_revoked = not flipped
        if flipped:
            progress.flipped(token_id)

        seen = {token_id}
        queue: deque[tuple[str, int]] = deque([(token_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= self._max_depth:
                continue
            for child in self._store.children_of(current):
                if child in seen:
                    continue
                seen.add(child)
                if self._store.mark_revoked(child, now):
                    progress.flipped(child)
                queue.append((child, depth + 1))
        progress.visited = len(seen)
