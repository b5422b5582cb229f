"""
Sluice Custom Exceptions

Structured exception hierarchy for the token exchange service.
All Sluice-specific exceptions inherit from SluiceError.

Every error carries two codes:
- ``reason``: internal reason code written to the audit log
- ``oauth_error``: the RFC 6749 / RFC 8693 error code returned to callers

Exception hierarchy:
    SluiceError
    +-- InvalidRequestError              (malformed exchange request)
    |   +-- UnsupportedGrantTypeError
    +-- ClientAuthenticationError        (requesting client failed authentication)
    +-- TokenError                       (presented token rejected)
    |   +-- ExpiredTokenError
    |   +-- TokenRevokedError
    |   +-- SignatureInvalidError
    |   +-- UnknownTokenTypeError
    |   +-- TokenTypeMismatchError
    |   +-- TokenNotFoundError
    |   +-- BrokenLineageError
    +-- PolicyError                      (exchange policy rejected request)
    |   +-- PolicyDeniedError
    |   +-- InsufficientScopeError
    |   +-- AudienceNotAllowedError
    |   +-- PolicyEvaluationTimeoutError
    +-- ChainError
    |   +-- DelegationDepthExceededError
    +-- StorageError                     (transient infrastructure failure)
"""

from __future__ import annotations


class SluiceError(Exception):
    """Base exception for all Sluice errors."""

    reason = "InternalError"
    oauth_error = "invalid_request"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InvalidRequestError(SluiceError):
    """Raised when required exchange parameters are missing or malformed."""

    reason = "InvalidRequest"

    def __init__(self, message: str, parameter: str | None = None, details: dict | None = None):
        super().__init__(
            message,
            details={"parameter": parameter, **(details or {})} if parameter else details,
        )
        self.parameter = parameter


class UnsupportedGrantTypeError(InvalidRequestError):
    """Raised when the token endpoint receives a grant type it does not serve."""

    reason = "UnsupportedGrantType"
    oauth_error = "unsupported_grant_type"

    def __init__(self, grant_type: str | None):
        super().__init__(f"Unsupported grant type: {grant_type!r}", parameter="grant_type")
        self.grant_type = grant_type


class ClientAuthenticationError(SluiceError):
    """Raised when the requesting client cannot be authenticated."""

    reason = "ClientAuthenticationFailed"
    oauth_error = "invalid_client"
    status_code = 401


# ─── Token Errors ───────────────────────────────────────────


class TokenError(SluiceError):
    """Base exception for rejected subject or actor tokens."""

    reason = "TokenInvalid"
    oauth_error = "invalid_grant"


class ExpiredTokenError(TokenError):
    """Raised when a presented token is past its expiry at parse time."""

    reason = "ExpiredToken"


class TokenRevokedError(TokenError):
    """Raised when the store marks a presented token as revoked."""

    reason = "TokenRevoked"


class SignatureInvalidError(TokenError):
    """Raised when a signed token fails verification against the key set."""

    reason = "SignatureInvalid"


class UnknownTokenTypeError(TokenError):
    """Raised when the asserted token type URN is not supported."""

    reason = "UnknownTokenType"
    oauth_error = "invalid_request"

    def __init__(self, token_type: str, details: dict | None = None):
        super().__init__(
            f"Unsupported token type: {token_type!r}",
            details={"token_type": token_type, **(details or {})},
        )
        self.token_type = token_type


class TokenTypeMismatchError(TokenError):
    """Raised when the asserted token type disagrees with the stored token kind."""

    reason = "TokenTypeMismatch"
    oauth_error = "invalid_request"


class TokenNotFoundError(TokenError):
    """Raised when a token reference has no record in the store."""

    reason = "TokenNotFound"

    def __init__(self, token_id: str, details: dict | None = None):
        super().__init__(
            f"Token '{token_id}' not found",
            details={"token_id": token_id, **(details or {})},
        )
        self.token_id = token_id


class BrokenLineageError(TokenError):
    """Raised when a token's ancestry loops or runs deeper than its recorded depth."""

    reason = "BrokenLineage"

    def __init__(self, token_id: str):
        super().__init__(
            f"Lineage of token '{token_id}' is not a finite chain",
            details={"token_id": token_id},
        )
        self.token_id = token_id


# ─── Policy Errors ──────────────────────────────────────────


class PolicyError(SluiceError):
    """Base exception for exchange policy rejections."""

    reason = "PolicyError"
    oauth_error = "unauthorized_client"


class PolicyDeniedError(PolicyError):
    """Raised when no policy allows the exchange (default deny)."""

    reason = "PolicyDenied"


class InsufficientScopeError(PolicyError):
    """Raised when the requested scope has no overlap with what may be granted."""

    reason = "InsufficientScope"
    oauth_error = "invalid_grant"


class AudienceNotAllowedError(PolicyError):
    """Raised when a requested audience or resource is outside the policy."""

    reason = "AudienceNotAllowed"
    oauth_error = "invalid_target"


class PolicyEvaluationTimeoutError(PolicyError):
    """Raised when parsing or policy evaluation exceeds the configured timeout."""

    reason = "PolicyEvaluationTimeout"
    oauth_error = "temporarily_unavailable"
    status_code = 503

    def __init__(self, timeout_seconds: float, details: dict | None = None):
        super().__init__(
            f"Policy evaluation exceeded {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds, **(details or {})},
        )
        self.timeout_seconds = timeout_seconds


# ─── Chain Errors ───────────────────────────────────────────


class ChainError(SluiceError):
    """Base exception for delegation chain violations."""

    reason = "ChainError"
    oauth_error = "invalid_grant"


class DelegationDepthExceededError(ChainError):
    """Raised when an exchange would push the chain past its maximum depth."""

    reason = "DelegationDepthExceeded"

    def __init__(self, depth: int, max_depth: int, details: dict | None = None):
        super().__init__(
            f"Delegation depth {depth} exceeds maximum {max_depth}",
            details={"depth": depth, "max_depth": max_depth, **(details or {})},
        )
        self.depth = depth
        self.max_depth = max_depth


# ─── Storage Errors ─────────────────────────────────────────


class StorageError(SluiceError):
    """Raised for transient persistence failures."""

    reason = "StorageError"
    oauth_error = "temporarily_unavailable"
    status_code = 503

    def __init__(self, operation: str, message: str, details: dict | None = None):
        super().__init__(
            f"Storage operation '{operation}' failed: {message}",
            details={"operation": operation, **(details or {})},
        )
        self.operation = operation


# ─── Public Descriptions ────────────────────────────────────

_PUBLIC_DESCRIPTIONS = {
    "invalid_grant": "The presented token cannot be exchanged",
    "invalid_target": "The requested audience or resource is not permitted",
    "unauthorized_client": "The client is not authorized for this exchange",
    "invalid_client": "Client authentication failed",
    "temporarily_unavailable": "The service is temporarily unavailable, retry later",
}


def public_description(error: SluiceError) -> str:
    """Caller-facing ``error_description`` that never reveals policy internals.

    Malformed requests echo their message so callers can fix them; every
    other error collapses to a fixed description per OAuth error code.
    """
    if isinstance(error, InvalidRequestError) or error.oauth_error == "invalid_request":
        return str(error)
    return _PUBLIC_DESCRIPTIONS.get(error.oauth_error, "The request could not be processed")
