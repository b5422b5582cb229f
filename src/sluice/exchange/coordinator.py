"""
Sluice Exchange Coordinator

Runs one token exchange request through its lifecycle:

    RECEIVED -> PARSING -> POLICY_EVALUATION -> CHAIN_BUILDING -> ISSUING -> COMPLETED

DENIED and FAILED are reachable from every non-terminal state. Policy and
chain violations end in DENIED; malformed requests, rejected tokens,
timeouts and storage failures end in FAILED.

Every request produces exactly one audit entry. A success is recorded in
the same transaction that inserts the derived token, so a token exists
if and only if its success entry does.

Store reads and writes run in worker threads, never on the event loop.
Only parsing and policy evaluation are bounded by the policy timeout.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeVar

from sluice.audit.exchange_log import AuditLog
from sluice.config import ExchangeSettings
from sluice.core.clock import ClockSource, SystemClock
from sluice.core.models import (
    ACCESS_TOKEN_TYPE,
    ISSUABLE_TOKEN_TYPES,
    JWT_TOKEN_TYPE,
    TOKEN_EXCHANGE_GRANT,
    ChainMetadata,
    ClientRecord,
    Decision,
    ExchangeLogEntry,
    ExchangeOutcome,
    ExchangeRequest,
    ExchangeResult,
    ExchangeState,
    IssuedToken,
    ParsedToken,
    PolicyRequest,
    Token,
    TokenKind,
)
from sluice.crypto.keys import SigningKeyProvider
from sluice.exceptions import (
    ChainError,
    ExpiredTokenError,
    InvalidRequestError,
    PolicyError,
    PolicyEvaluationTimeoutError,
    SluiceError,
    StorageError,
    UnsupportedGrantTypeError,
    public_description,
)
from sluice.exchange.chain import ActorChainBuilder
from sluice.exchange.issuer import mint_credential
from sluice.exchange.parser import TokenParser, token_fingerprint
from sluice.exchange.policy import DecisionCache, ScopePolicyEngine, raise_for_decision
from sluice.logging import get_logger
from sluice.observability.metrics import record_exchange, record_exchange_duration
from sluice.observability.tracing import start_span
from sluice.storage.repository import TokenRepository

logger = get_logger("sluice.exchange")

T = TypeVar("T")

ISSUED = "Issued"


class _Exchange:
    """Mutable per-request context. Never shared between requests."""

    def __init__(self, client: ClientRecord, request: ExchangeRequest):
        self.client = client
        self.request = request
        self.state = ExchangeState.RECEIVED
        self.subject: ParsedToken | None = None
        self.actor: ParsedToken | None = None
        self.decision: Decision | None = None

    def advance(self, state: ExchangeState) -> None:
        logger.debug(
            "Exchange %s -> %s",
            self.state.value,
            state.value,
            extra={"client_id": self.client.client_id, "state": state.value},
        )
        self.state = state

    @property
    def subject_ref(self) -> str:
        if self.subject is not None:
            return token_fingerprint(self.subject.token_id)
        return token_fingerprint(self.request.subject_token) if self.request.subject_token else ""

    @property
    def requested_scopes(self) -> list[str]:
        return sorted(self.request.requested_scopes or ())


class ExchangeCoordinator:
    """Orchestrates parsing, policy, chain building and atomic issuance."""

    def __init__(
        self,
        store: TokenRepository,
        keys: SigningKeyProvider,
        settings: ExchangeSettings | None = None,
        clock: ClockSource | None = None,
        policy_engine: ScopePolicyEngine | None = None,
    ):
        self._store = store
        self._keys = keys
        self._settings = settings or ExchangeSettings()
        self._clock = clock or SystemClock()
        self._parser = TokenParser(store, keys, clock=self._clock)
        self._chains = ActorChainBuilder(max_depth=self._settings.max_chain_depth)
        self._audit = AuditLog(store)

        if policy_engine is None:
            cache = None
            if self._settings.decision_cache_enabled and self._settings.decision_cache_ttl_seconds > 0:
                cache = DecisionCache(
                    self._settings.decision_cache_ttl_seconds,
                    max_entries=self._settings.decision_cache_max_entries,
                    clock=self._clock,
                )
            policy_engine = ScopePolicyEngine(store, cache=cache)
        self._policy = policy_engine

    @property
    def policy_engine(self) -> ScopePolicyEngine:
        return self._policy

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    async def exchange(self, client: ClientRecord, request: ExchangeRequest) -> ExchangeResult:
        """Run one exchange to a terminal state.

        Args:
            client: The authenticated requesting client.
            request: Token-endpoint parameters.

        Returns:
            ExchangeResult in COMPLETED, DENIED or FAILED state. Domain
            errors are folded into the result, never raised.
        """
        ctx = _Exchange(client, request)
        start = time.monotonic()
        with start_span("sluice.exchange", client_id=client.client_id) as span:
            try:
                result = await self._run(ctx)
            except (PolicyEvaluationTimeoutError, StorageError) as e:
                result = await self._finish_unsuccessful(ctx, e, ExchangeState.FAILED)
            except (PolicyError, ChainError) as e:
                result = await self._finish_unsuccessful(ctx, e, ExchangeState.DENIED)
            except SluiceError as e:
                result = await self._finish_unsuccessful(ctx, e, ExchangeState.FAILED)

            span.set_attribute("sluice.state", result.state.value)
            if result.reason:
                span.set_attribute("sluice.reason", result.reason)

        duration = time.monotonic() - start
        outcome = _outcome_for(result.state).value
        record_exchange(client_id=client.client_id, outcome=outcome, reason=result.reason or "")
        record_exchange_duration(outcome=outcome, duration_seconds=duration)
        logger.info(
            "Exchange finished in state %s",
            result.state.value,
            extra={
                "client_id": client.client_id,
                "state": result.state.value,
                "outcome": outcome,
                "reason": result.reason,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return result

    # ─── Stages ──────────────────────────────────────────────

    async def _run(self, ctx: _Exchange) -> ExchangeResult:
        self._validate(ctx.request)

        ctx.advance(ExchangeState.PARSING)
        ctx.subject, ctx.actor = await self._bounded(self._parse_tokens, ctx.request)

        ctx.advance(ExchangeState.POLICY_EVALUATION)
        policy_request = PolicyRequest(
            client=ctx.client,
            subject=ctx.subject,
            actor=ctx.actor,
            requested_scopes=ctx.request.requested_scopes,
            audiences=tuple(ctx.request.audience) + tuple(ctx.request.resource),
        )
        ctx.decision = await self._bounded(self._policy.decide, policy_request)
        raise_for_decision(ctx.decision)

        ctx.advance(ExchangeState.CHAIN_BUILDING)
        max_depth = ctx.decision.policy.max_depth if ctx.decision.policy else None
        chain = self._chains.build(ctx.subject, ctx.actor, max_depth_override=max_depth)

        ctx.advance(ExchangeState.ISSUING)
        return await asyncio.to_thread(self._issue, ctx, chain)

    def _validate(self, request: ExchangeRequest) -> None:
        if request.grant_type != TOKEN_EXCHANGE_GRANT:
            raise UnsupportedGrantTypeError(request.grant_type)
        if not request.subject_token:
            raise InvalidRequestError("Missing subject_token", parameter="subject_token")
        if not request.subject_token_type:
            raise InvalidRequestError("Missing subject_token_type", parameter="subject_token_type")
        if bool(request.actor_token) != bool(request.actor_token_type):
            raise InvalidRequestError(
                "actor_token and actor_token_type must be sent together", parameter="actor_token_type"
            )
        if request.actor_token and not self._settings.parse_actor_tokens:
            raise InvalidRequestError("Delegation with an actor token is not enabled", parameter="actor_token")
        if request.requested_token_type and request.requested_token_type not in ISSUABLE_TOKEN_TYPES:
            raise InvalidRequestError(
                f"Cannot issue token type {request.requested_token_type!r}",
                parameter="requested_token_type",
            )

    def _parse_tokens(self, request: ExchangeRequest) -> tuple[ParsedToken, ParsedToken | None]:
        subject = self._parser.parse(request.subject_token, request.subject_token_type)
        actor = None
        if request.actor_token:
            actor = self._parser.parse(request.actor_token, request.actor_token_type)
        return subject, actor

    async def _bounded(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking stage in a worker thread under the policy timeout."""
        timeout = self._settings.policy_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PolicyEvaluationTimeoutError(timeout) from e

    def _issue(self, ctx: _Exchange, chain: ChainMetadata) -> ExchangeResult:
        subject = ctx.subject
        decision = ctx.decision
        now = self._clock.now()

        ttl = self._settings.default_token_ttl_seconds
        if decision.policy is not None and decision.policy.token_ttl_seconds:
            ttl = decision.policy.token_ttl_seconds
        expires_at = min(now + timedelta(seconds=ttl), subject.expires_at)
        if expires_at <= now:
            raise ExpiredTokenError("Subject token expired during exchange", details={"token_id": subject.token_id})

        issued_type = ctx.request.requested_token_type or ACCESS_TOKEN_TYPE
        kind = TokenKind.JWT if issued_type == JWT_TOKEN_TYPE else TokenKind.ACCESS
        token = Token(
            kind=kind,
            subject=subject.principal,
            client_id=ctx.client.client_id,
            scopes=sorted(decision.granted_scopes),
            audience=list(decision.audience),
            issued_at=now,
            expires_at=expires_at,
            source_token_id=subject.token_id,
            chain_depth=chain.depth,
            actor=chain.chain[-1].to_claim() if ctx.actor is not None else None,
            may_act=chain.may_act_claim,
            signed=kind == TokenKind.JWT or self._settings.issue_signed_tokens,
        )
        credential = mint_credential(token, self._keys, self._settings.issuer, act_claim=chain.act_claim)

        entry = ExchangeLogEntry(
            timestamp=now,
            requesting_client=ctx.client.client_id,
            subject_token_ref=ctx.subject_ref,
            derived_token_ref=token_fingerprint(token.id),
            outcome=ExchangeOutcome.SUCCESS,
            reason=ISSUED,
            requested_scopes=ctx.requested_scopes,
            granted_scopes=token.scopes,
        )
        hashed = self._store.issue_derived(token, entry)

        ctx.advance(ExchangeState.COMPLETED)
        issued = IssuedToken(token=token, credential=credential, issued_token_type=issued_type)
        return ExchangeResult(
            state=ExchangeState.COMPLETED,
            issued=issued,
            expires_in=issued.expires_in(now),
            reason=ISSUED,
            log_entry_id=hashed.entry.id,
        )

    # ─── Terminal Failures ──────────────────────────────────

    async def _finish_unsuccessful(
        self, ctx: _Exchange, error: SluiceError, state: ExchangeState
    ) -> ExchangeResult:
        failed_in = ctx.state
        ctx.advance(state)
        entry = ExchangeLogEntry(
            timestamp=self._clock.now(),
            requesting_client=ctx.client.client_id,
            subject_token_ref=ctx.subject_ref,
            outcome=_outcome_for(state),
            reason=error.reason,
            requested_scopes=ctx.requested_scopes,
        )
        try:
            hashed = await asyncio.to_thread(self._audit.record, entry)
        except StorageError as audit_error:
            logger.error(
                "Could not record audit entry for failed exchange",
                extra={"client_id": ctx.client.client_id, "reason": error.reason},
                exc_info=audit_error,
            )
            ctx.state = ExchangeState.FAILED
            return _error_result(ExchangeState.FAILED, audit_error)

        logger.warning(
            "Exchange %s in %s: %s",
            state.value.lower(),
            failed_in.value,
            error,
            extra={"client_id": ctx.client.client_id, "state": failed_in.value, "reason": error.reason},
        )
        result = _error_result(state, error)
        result.log_entry_id = hashed.entry.id
        return result


def _outcome_for(state: ExchangeState) -> ExchangeOutcome:
    if state == ExchangeState.COMPLETED:
        return ExchangeOutcome.SUCCESS
    if state == ExchangeState.DENIED:
        return ExchangeOutcome.DENIED
    return ExchangeOutcome.ERROR


def _error_result(state: ExchangeState, error: SluiceError) -> ExchangeResult:
    return ExchangeResult(
        state=state,
        error=error.oauth_error,
        error_description=public_description(error),
        reason=error.reason,
        status_code=error.status_code,
    )
