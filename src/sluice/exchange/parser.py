"""
Sluice Token Parser

Validates a presented subject or actor token and decodes it into a
``ParsedToken``. Two encodings are accepted:

- signed JWTs, verified against the signing key set; the ``jti`` claim
  names the backing store record
- opaque references, resolved by store lookup

Every token, signed or opaque, must resolve to a store record: derived
tokens link to their source by identifier, and the record's revoked flag
is authoritative.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Protocol

from sluice.core.clock import ClockSource, SystemClock
from sluice.core.models import (
    JWT_TOKEN_TYPE,
    SUPPORTED_TOKEN_TYPES,
    ParsedToken,
    Token,
    TokenKind,
)
from sluice.crypto.keys import SigningKeyProvider
from sluice.exceptions import (
    ExpiredTokenError,
    InvalidRequestError,
    SignatureInvalidError,
    TokenNotFoundError,
    TokenRevokedError,
    TokenTypeMismatchError,
    UnknownTokenTypeError,
)
from sluice.exchange.chain import reconstruct_chain


class TokenLookup(Protocol):
    def get_token(self, token_id: str) -> Token | None: ...

    def lineage(self, token_id: str, max_hops: int | None = None) -> list[Token]: ...


def token_fingerprint(token_string: str) -> str:
    """Stable, non-reversible reference to a presented credential for logs."""
    return "sha256:" + hashlib.sha256(token_string.encode()).hexdigest()[:16]


def looks_like_jwt(token_string: str) -> bool:
    return token_string.count(".") == 2


class TokenParser:
    """Turns presented credentials into validated ``ParsedToken`` values."""

    def __init__(
        self,
        store: TokenLookup,
        keys: SigningKeyProvider,
        clock: ClockSource | None = None,
    ):
        self._store = store
        self._keys = keys
        self._clock = clock or SystemClock()

    def parse(self, token_string: str, asserted_type: str) -> ParsedToken:
        """Validate and decode a presented token.

        Raises:
            UnknownTokenTypeError: ``asserted_type`` is not a supported URN.
            SignatureInvalidError: A signed token failed verification.
            TokenNotFoundError: No store record backs the token.
            TokenTypeMismatchError: The asserted type disagrees with the record.
            ExpiredTokenError: The token is past expiry.
            TokenRevokedError: The store marks the token revoked.
        """
        if asserted_type not in SUPPORTED_TOKEN_TYPES:
            raise UnknownTokenTypeError(asserted_type)
        if not token_string:
            raise InvalidRequestError("Empty token")

        now = self._clock.now()
        if looks_like_jwt(token_string):
            record, claim_expiry = self._resolve_signed(token_string)
        else:
            record, claim_expiry = self._resolve_opaque(token_string), None

        self._check_type(record, asserted_type)

        expires_at = record.expires_at
        if claim_expiry is not None and claim_expiry < expires_at:
            expires_at = claim_expiry
        if now >= expires_at:
            raise ExpiredTokenError("Token has expired", details={"token_id": record.id})
        if record.revoked:
            raise TokenRevokedError("Token has been revoked", details={"token_id": record.id})

        chain = reconstruct_chain(self._store, record.id, max_hops=record.chain_depth)
        return ParsedToken(
            token_id=record.id,
            kind=record.kind,
            principal=record.subject,
            client_id=record.client_id,
            scopes=frozenset(record.scopes),
            audience=tuple(record.audience),
            chain_depth=record.chain_depth,
            expires_at=expires_at,
            signed=record.signed,
            may_act=record.may_act,
            delegation_chain=tuple(chain),
        )

    def _resolve_signed(self, token_string: str) -> tuple[Token, datetime | None]:
        claims = self._keys.verify(token_string)

        token_id = claims.get("jti")
        if not token_id:
            raise TokenNotFoundError(token_fingerprint(token_string), details={"missing": "jti"})
        record = self._store.get_token(token_id)
        if record is None:
            raise TokenNotFoundError(token_id)

        if claims.get("sub") != record.subject or claims.get("client_id") != record.client_id:
            raise SignatureInvalidError("Token claims do not match the issued record", details={"token_id": token_id})

        claim_expiry = None
        if "exp" in claims:
            try:
                claim_expiry = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
            except (TypeError, ValueError) as e:
                raise SignatureInvalidError("Malformed exp claim") from e
        return record, claim_expiry

    def _resolve_opaque(self, token_string: str) -> Token:
        record = self._store.get_token(token_string)
        # A signed token's identifier is visible in its jti and is not a credential.
        if record is None or record.signed:
            raise TokenNotFoundError(token_fingerprint(token_string))
        return record

    @staticmethod
    def _check_type(record: Token, asserted_type: str) -> None:
        if asserted_type == JWT_TOKEN_TYPE:
            if not record.signed:
                raise TokenTypeMismatchError(
                    "Token is not a JWT", details={"asserted_type": asserted_type}
                )
            return
        asserted_kind = TokenKind.from_urn(asserted_type)
        # A JWT access token may be presented under either URN
        if asserted_kind == TokenKind.ACCESS and record.kind == TokenKind.JWT:
            return
        if asserted_kind != record.kind:
            raise TokenTypeMismatchError(
                f"Token is not of type {asserted_type}",
                details={"asserted_type": asserted_type, "kind": record.kind.value},
            )
