"""
Sluice Token Issuance

Turns a ``Token`` record into the bearer credential handed to a client:
either a JWT signed by the current key, or the opaque record identifier.

``RootTokenIssuer`` creates root tokens (``source_token_id`` is None,
depth 0). It stands in for the ordinary issuance flow that produces the
subject tokens later presented for exchange.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from typing import Protocol

from sluice.config import ExchangeSettings
from sluice.core.clock import ClockSource, SystemClock
from sluice.core.models import IssuedToken, Token, TokenKind
from sluice.crypto.keys import SigningKeyProvider
from sluice.exchange.parser import token_fingerprint
from sluice.logging import get_logger

logger = get_logger("sluice.issuer")


def build_claims(token: Token, issuer: str, act_claim: dict | None = None) -> dict:
    """JWT claim set for a stored token."""
    claims: dict = {
        "iss": issuer,
        "jti": token.id,
        "client_id": token.client_id,
        "scope": " ".join(sorted(token.scopes)),
        "iat": int(token.issued_at.timestamp()),
        "exp": int(token.expires_at.timestamp()),
    }
    if token.subject is not None:
        claims["sub"] = token.subject
    if token.audience:
        claims["aud"] = token.audience[0] if len(token.audience) == 1 else list(token.audience)
    if act_claim:
        claims["act"] = act_claim
    if token.may_act:
        claims["may_act"] = token.may_act
    return claims


def mint_credential(
    token: Token,
    keys: SigningKeyProvider,
    issuer: str,
    act_claim: dict | None = None,
) -> str:
    """Bearer credential for ``token``: a signed JWT, or the opaque id."""
    if not token.signed:
        return token.id
    return keys.sign(build_claims(token, issuer, act_claim))


class TokenSink(Protocol):
    def insert_token(self, token: Token) -> None: ...


class RootTokenIssuer:
    """Creates root tokens in the store."""

    def __init__(
        self,
        store: TokenSink,
        keys: SigningKeyProvider,
        settings: ExchangeSettings | None = None,
        clock: ClockSource | None = None,
    ):
        self._store = store
        self._keys = keys
        self._settings = settings or ExchangeSettings()
        self._clock = clock or SystemClock()

    def issue_root(
        self,
        client_id: str,
        subject: str | None = None,
        scopes: Iterable[str] = (),
        audience: Iterable[str] = (),
        ttl_seconds: int | None = None,
        kind: TokenKind = TokenKind.ACCESS,
        may_act: dict | None = None,
        signed: bool | None = None,
    ) -> IssuedToken:
        """Persist a new root token and return its credential.

        Args:
            client_id: Client the token is issued to.
            subject: Principal the token represents, if any.
            scopes: Granted scopes.
            audience: Intended audiences.
            ttl_seconds: Lifetime; defaults to the configured token TTL.
            kind: Token kind. ``TokenKind.JWT`` is always signed.
            may_act: Optional RFC 8693 ``may_act`` claim.
            signed: Override the configured signed/opaque choice.
        """
        now = self._clock.now()
        ttl = ttl_seconds if ttl_seconds is not None else self._settings.default_token_ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        if signed is None:
            signed = self._settings.issue_signed_tokens
        token = Token(
            kind=kind,
            subject=subject,
            client_id=client_id,
            scopes=sorted(set(scopes)),
            audience=list(dict.fromkeys(audience)),
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl),
            may_act=may_act,
            signed=signed or kind == TokenKind.JWT,
        )
        self._store.insert_token(token)
        logger.info(
            "Issued root %s token",
            kind.value,
            extra={"client_id": client_id, "token_id": token_fingerprint(token.id)},
        )
        return IssuedToken(
            token=token,
            credential=mint_credential(token, self._keys, self._settings.issuer),
            issued_token_type=kind.urn,
        )
