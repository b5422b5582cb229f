"""
Sluice Scope Policy Engine

Decides whether a requesting client may exchange a subject token, and for
which scopes and audiences.

The decision itself is ``evaluate(request, policies)``: a pure function of
its inputs with no I/O and no logging, so it can be exercised exhaustively
without a database. ``ScopePolicyEngine`` wraps it with policy loading and
a short-TTL decision cache.

Rules:
1. Policies matching (requesting client, subject issuing client) are
   ordered by priority descending, then id ascending; the first match is
   authoritative. No match denies (``PolicyDenied``). Default deny is not
   configurable.
2. Candidate scope is the intersection of the requested scope (if any),
   the subject token's scopes, the policy's allowed scopes and the
   client's allowed scopes.
3. A non-empty request with an empty candidate denies (``InsufficientScope``).
4. Every requested audience/resource must match an allowed audience
   pattern (``AudienceNotAllowed``).
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from fnmatch import fnmatchcase
from typing import Protocol

from sluice.core.clock import ClockSource, SystemClock
from sluice.core.models import (
    Decision,
    ExchangePolicy,
    PolicyAction,
    PolicyRequest,
)
from sluice.exceptions import (
    AudienceNotAllowedError,
    InsufficientScopeError,
    PolicyDeniedError,
    PolicyError,
)

WILDCARD = "*"

ALLOWED = "Allowed"
POLICY_DENIED = PolicyDeniedError.reason
INSUFFICIENT_SCOPE = InsufficientScopeError.reason
AUDIENCE_NOT_ALLOWED = AudienceNotAllowedError.reason

_DENIAL_ERRORS: dict[str, type[PolicyError]] = {
    POLICY_DENIED: PolicyDeniedError,
    INSUFFICIENT_SCOPE: InsufficientScopeError,
    AUDIENCE_NOT_ALLOWED: AudienceNotAllowedError,
}


# ─── Pure Decision Function ─────────────────────────────────


def policy_matches(policy: ExchangePolicy, requesting_client: str, subject_client: str) -> bool:
    return fnmatchcase(requesting_client, policy.requesting_client) and fnmatchcase(
        subject_client, policy.subject_client
    )


def order_policies(policies: Iterable[ExchangePolicy]) -> list[ExchangePolicy]:
    """Priority descending; equal priorities fall back to the lowest id."""
    return sorted(policies, key=lambda p: (-p.priority, p.id))


def select_policy(
    policies: Iterable[ExchangePolicy], requesting_client: str, subject_client: str
) -> ExchangePolicy | None:
    for policy in order_policies(policies):
        if policy_matches(policy, requesting_client, subject_client):
            return policy
    return None


def restrict_scopes(scopes: frozenset[str], allowed: Iterable[str]) -> frozenset[str]:
    allowed = frozenset(allowed)
    if WILDCARD in allowed:
        return scopes
    return scopes & allowed


def audience_allowed(value: str, patterns: Iterable[str]) -> bool:
    return any(value == pattern or fnmatchcase(value, pattern) for pattern in patterns)


def evaluate(request: PolicyRequest, policies: Sequence[ExchangePolicy]) -> Decision:
    """Decide an exchange request against an ordered rule set.

    Identical inputs always produce identical decisions.
    """
    subject = request.subject
    policy = select_policy(policies, request.client.client_id, subject.client_id)
    if policy is None:
        return Decision(allowed=False, reason=POLICY_DENIED)
    if policy.action == PolicyAction.DENY:
        return Decision(allowed=False, reason=POLICY_DENIED, policy=policy)

    candidate = subject.scopes
    if request.requested_scopes:
        candidate = candidate & request.requested_scopes
    candidate = restrict_scopes(candidate, policy.allowed_scopes)
    candidate = restrict_scopes(candidate, request.client.allowed_scopes)

    if request.requested_scopes and not candidate:
        return Decision(allowed=False, reason=INSUFFICIENT_SCOPE, policy=policy)

    for target in request.audiences:
        if not audience_allowed(target, policy.allowed_audiences):
            return Decision(allowed=False, reason=AUDIENCE_NOT_ALLOWED, policy=policy)

    audience = tuple(dict.fromkeys(request.audiences)) if request.audiences else subject.audience
    return Decision(
        allowed=True,
        granted_scopes=candidate,
        audience=audience,
        reason=ALLOWED,
        policy=policy,
    )


def raise_for_decision(decision: Decision) -> None:
    """Turn a deny decision into the matching ``PolicyError``."""
    if decision.allowed:
        return
    error_cls = _DENIAL_ERRORS.get(decision.reason, PolicyDeniedError)
    raise error_cls(
        "Token exchange not permitted",
        details={
            "reason": decision.reason,
            "policy_id": decision.policy.id if decision.policy else None,
        },
    )


# ─── Decision Cache ─────────────────────────────────────────


def cache_key(request: PolicyRequest) -> tuple:
    """Everything the pure decision depends on, apart from the rule set."""
    return (
        request.client.client_id,
        frozenset(request.client.allowed_scopes),
        request.subject.client_id,
        request.subject.scopes,
        request.subject.audience,
        request.requested_scopes,
        request.audiences,
    )


class DecisionCache:
    """Bounded, short-TTL memo of policy decisions.

    An entry never outlives the shortest-lived token that fed into it, so a
    cached allow cannot be replayed after the subject or actor expires.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 1024, clock: ClockSource | None = None):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._entries: OrderedDict[tuple, tuple[Decision, datetime]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, request: PolicyRequest) -> Decision | None:
        key = cache_key(request)
        now = self._clock.now()
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            decision, expires_at = hit
            if now >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return decision

    def put(self, request: PolicyRequest, decision: Decision) -> None:
        now = self._clock.now()
        expires_at = now + self._ttl
        expiries = [request.subject.expires_at]
        if request.actor is not None:
            expiries.append(request.actor.expires_at)
        expires_at = min([expires_at, *expiries])
        if expires_at <= now:
            return
        with self._lock:
            self._entries[cache_key(request)] = (decision, expires_at)
            self._entries.move_to_end(cache_key(request))
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ─── Engine ─────────────────────────────────────────────────


class PolicySource(Protocol):
    def list_policies(self) -> list[ExchangePolicy]: ...


class ScopePolicyEngine:
    """Loads the rule set and evaluates requests, with optional caching."""

    def __init__(self, source: PolicySource, cache: DecisionCache | None = None):
        self._source = source
        self._cache = cache

    @property
    def cache(self) -> DecisionCache | None:
        return self._cache

    def decide(self, request: PolicyRequest) -> Decision:
        if self._cache is not None:
            cached = self._cache.get(request)
            if cached is not None:
                return cached
        decision = evaluate(request, self._source.list_policies())
        if self._cache is not None:
            self._cache.put(request, decision)
        return decision

    def invalidate(self) -> None:
        """Drop cached decisions after the rule set changes."""
        if self._cache is not None:
            self._cache.clear()
