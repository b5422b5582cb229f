"""
Sluice Core Data Models

All shared types used across the service. This module is the foundation
that every other component imports from. It has no internal
dependencies beyond pydantic.
"""

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# ─── Wire Constants ─────────────────────────────────────────

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"

ACCESS_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:access_token"
REFRESH_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:refresh_token"
ID_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:id_token"
JWT_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:jwt"


# ─── Enums ───────────────────────────────────────────────────

class TokenKind(str, Enum):
    """What a stored token represents."""
    ACCESS = "access"
    REFRESH = "refresh"
    ID = "id"
    JWT = "jwt"

    @property
    def urn(self) -> str:
        return _KIND_TO_URN[self]

    @classmethod
    def from_urn(cls, urn: str) -> "TokenKind | None":
        return _URN_TO_KIND.get(urn)


_KIND_TO_URN = {
    TokenKind.ACCESS: ACCESS_TOKEN_TYPE,
    TokenKind.REFRESH: REFRESH_TOKEN_TYPE,
    TokenKind.ID: ID_TOKEN_TYPE,
    TokenKind.JWT: JWT_TOKEN_TYPE,
}
_URN_TO_KIND = {urn: kind for kind, urn in _KIND_TO_URN.items()}

SUPPORTED_TOKEN_TYPES = frozenset(_URN_TO_KIND)
ISSUABLE_TOKEN_TYPES = frozenset({ACCESS_TOKEN_TYPE, JWT_TOKEN_TYPE})


class PolicyAction(str, Enum):
    """Effect of a matched exchange policy."""
    ALLOW = "allow"
    DENY = "deny"


class ExchangeOutcome(str, Enum):
    """Audit outcome of one exchange attempt."""
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


class ExchangeState(str, Enum):
    """Lifecycle state of one exchange request."""
    RECEIVED = "RECEIVED"
    PARSING = "PARSING"
    POLICY_EVALUATION = "POLICY_EVALUATION"
    CHAIN_BUILDING = "CHAIN_BUILDING"
    ISSUING = "ISSUING"
    COMPLETED = "COMPLETED"
    DENIED = "DENIED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (ExchangeState.COMPLETED, ExchangeState.DENIED, ExchangeState.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_token_id() -> str:
    """Opaque, unguessable token identifier."""
    return secrets.token_urlsafe(32)


# ─── Token ───────────────────────────────────────────────────

class Token(BaseModel):
    """A persisted token and its position in the derived-token forest.

    ``source_token_id`` is None for root tokens issued by the ordinary
    flow. Only ``revoked``/``revoked_at`` may change after creation.
    """
    id: str = Field(default_factory=new_token_id)
    kind: TokenKind = TokenKind.ACCESS
    subject: str | None = None
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    audience: list[str] = Field(default_factory=list)
    issued_at: datetime = Field(default_factory=_now)
    expires_at: datetime
    source_token_id: str | None = None
    chain_depth: int = 0
    actor: dict | None = None
    may_act: dict | None = None
    signed: bool = False
    revoked: bool = False
    revoked_at: datetime | None = None

    @property
    def is_root(self) -> bool:
        return self.source_token_id is None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ParsedToken(BaseModel):
    """Canonical view of a validated subject or actor token."""
    model_config = ConfigDict(frozen=True)

    token_id: str
    kind: TokenKind
    principal: str | None = None
    client_id: str
    scopes: frozenset[str] = frozenset()
    audience: tuple[str, ...] = ()
    chain_depth: int = 0
    expires_at: datetime
    signed: bool = False
    may_act: dict | None = None
    delegation_chain: tuple["ActorClaim", ...] = ()


# ─── Delegation Chain ───────────────────────────────────────

class ActorClaim(BaseModel):
    """One link in a delegation chain (RFC 8693 ``act`` entry)."""
    model_config = ConfigDict(frozen=True)

    sub: str
    client_id: str | None = None

    def to_claim(self) -> dict:
        claim: dict = {"sub": self.sub}
        if self.client_id:
            claim["client_id"] = self.client_id
        return claim


class ChainMetadata(BaseModel):
    """Delegation metadata for a token about to be issued."""
    act_claim: dict | None = None
    may_act_claim: dict | None = None
    depth: int
    chain: list[ActorClaim] = Field(default_factory=list)


# ─── Policy ──────────────────────────────────────────────────

class ExchangePolicy(BaseModel):
    """A rule governing which clients may exchange which tokens.

    ``requesting_client`` and ``subject_client`` accept exact ids or glob
    patterns. ``allowed_scopes`` containing ``*`` places no restriction on
    scope. ``max_depth`` can only tighten the configured maximum.
    """
    id: str = Field(default_factory=lambda: f"pol-{uuid.uuid4().hex[:8]}")
    requesting_client: str
    subject_client: str = "*"
    allowed_scopes: list[str] = Field(default_factory=list)
    allowed_audiences: list[str] = Field(default_factory=list)
    max_depth: int | None = None
    token_ttl_seconds: int | None = None
    action: PolicyAction = PolicyAction.ALLOW
    priority: int = 0


class ClientRecord(BaseModel):
    """Requesting client as seen through the client registry."""
    client_id: str
    secret_hash: str = ""
    allowed_scopes: list[str] = Field(default_factory=list)


class ExchangeRequest(BaseModel):
    """Token-endpoint parameters for a token exchange grant."""
    grant_type: str = TOKEN_EXCHANGE_GRANT
    subject_token: str | None = None
    subject_token_type: str | None = None
    actor_token: str | None = None
    actor_token_type: str | None = None
    requested_token_type: str | None = None
    audience: list[str] = Field(default_factory=list)
    resource: list[str] = Field(default_factory=list)
    scope: str | None = None

    @property
    def requested_scopes(self) -> frozenset[str] | None:
        """Space-delimited ``scope`` as a set, or None when absent or blank."""
        if self.scope is None:
            return None
        scopes = frozenset(s for s in self.scope.split(" ") if s)
        return scopes or None


class PolicyRequest(BaseModel):
    """Input to the pure policy decision function."""
    model_config = ConfigDict(frozen=True)

    client: ClientRecord
    subject: ParsedToken
    actor: ParsedToken | None = None
    requested_scopes: frozenset[str] | None = None
    audiences: tuple[str, ...] = ()


class Decision(BaseModel):
    """Output of policy evaluation."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    granted_scopes: frozenset[str] = frozenset()
    audience: tuple[str, ...] = ()
    reason: str
    policy: ExchangePolicy | None = None


# ─── Audit ───────────────────────────────────────────────────

class ExchangeLogEntry(BaseModel):
    """An append-only audit record of one exchange attempt."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"xl-{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=_now)
    requesting_client: str = ""
    subject_token_ref: str = ""
    derived_token_ref: str | None = None
    outcome: ExchangeOutcome
    reason: str
    requested_scopes: list[str] = Field(default_factory=list)
    granted_scopes: list[str] = Field(default_factory=list)


class HashedLogEntry(BaseModel):
    """An audit entry with hash chaining."""
    entry: ExchangeLogEntry
    hash: str = Field(..., description="SHA-256 hash of this entry + previous hash")
    previous_hash: str = Field("0" * 64, description="Hash of the previous entry")
    sequence: int = Field(0, description="Sequential entry number")


# ─── Results ─────────────────────────────────────────────────

class IssuedToken(BaseModel):
    """A freshly issued token together with its bearer credential."""
    token: Token
    credential: str
    issued_token_type: str

    def expires_in(self, now: datetime) -> int:
        return max(0, int((self.token.expires_at - now).total_seconds()))


class ExchangeResult(BaseModel):
    """Final state of one exchange."""
    state: ExchangeState
    issued: IssuedToken | None = None
    expires_in: int = 0
    error: str | None = None
    error_description: str | None = None
    reason: str | None = None
    status_code: int = 200
    log_entry_id: str | None = None

    @property
    def success(self) -> bool:
        return self.state == ExchangeState.COMPLETED


class RevocationResult(BaseModel):
    """Summary of one revocation cascade."""
    root_token_id: str
    newly_revoked: list[str] = Field(default_factory=list)
    already_revoked: bool = False
    visited: int = 0
    attempts: int = 1


ParsedToken.model_rebuild()
