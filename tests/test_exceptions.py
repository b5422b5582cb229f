"""Tests for Sluice custom exceptions.

Covers the exception hierarchy, the reason/OAuth error codes each error
carries, and the public error descriptions.
"""

import pytest

from sluice.exceptions import (
    AudienceNotAllowedError,
    BrokenLineageError,
    ChainError,
    ClientAuthenticationError,
    DelegationDepthExceededError,
    ExpiredTokenError,
    InsufficientScopeError,
    InvalidRequestError,
    PolicyDeniedError,
    PolicyError,
    PolicyEvaluationTimeoutError,
    SignatureInvalidError,
    SluiceError,
    StorageError,
    TokenError,
    TokenNotFoundError,
    TokenRevokedError,
    TokenTypeMismatchError,
    UnknownTokenTypeError,
    UnsupportedGrantTypeError,
    public_description,
)


class TestSluiceError:
    def test_base_error(self):
        err = SluiceError("something went wrong")
        assert str(err) == "something went wrong"
        assert err.details == {}

    def test_base_error_with_details(self):
        err = SluiceError("failed", details={"key": "value"})
        assert err.details == {"key": "value"}

    def test_is_exception(self):
        assert issubclass(SluiceError, Exception)


class TestErrorCodes:
    @pytest.mark.parametrize(
        "error, reason, oauth_error",
        [
            (InvalidRequestError("bad"), "InvalidRequest", "invalid_request"),
            (UnsupportedGrantTypeError("password"), "UnsupportedGrantType", "unsupported_grant_type"),
            (ClientAuthenticationError("no"), "ClientAuthenticationFailed", "invalid_client"),
            (ExpiredTokenError("old"), "ExpiredToken", "invalid_grant"),
            (TokenRevokedError("gone"), "TokenRevoked", "invalid_grant"),
            (SignatureInvalidError("forged"), "SignatureInvalid", "invalid_grant"),
            (UnknownTokenTypeError("urn:x"), "UnknownTokenType", "invalid_request"),
            (TokenTypeMismatchError("wrong"), "TokenTypeMismatch", "invalid_request"),
            (TokenNotFoundError("tok-1"), "TokenNotFound", "invalid_grant"),
            (BrokenLineageError("tok-1"), "BrokenLineage", "invalid_grant"),
            (PolicyDeniedError("no"), "PolicyDenied", "unauthorized_client"),
            (InsufficientScopeError("no"), "InsufficientScope", "invalid_grant"),
            (AudienceNotAllowedError("no"), "AudienceNotAllowed", "invalid_target"),
            (PolicyEvaluationTimeoutError(2.0), "PolicyEvaluationTimeout", "temporarily_unavailable"),
            (DelegationDepthExceededError(6, 5), "DelegationDepthExceeded", "invalid_grant"),
            (StorageError("insert", "disk full"), "StorageError", "temporarily_unavailable"),
        ],
    )
    def test_codes(self, error, reason, oauth_error):
        assert error.reason == reason
        assert error.oauth_error == oauth_error

    def test_status_codes(self):
        assert InvalidRequestError("x").status_code == 400
        assert ClientAuthenticationError("x").status_code == 401
        assert StorageError("op", "x").status_code == 503
        assert PolicyEvaluationTimeoutError(1.0).status_code == 503


class TestHierarchy:
    def test_token_errors(self):
        for cls in (
            ExpiredTokenError,
            TokenRevokedError,
            SignatureInvalidError,
            UnknownTokenTypeError,
            TokenTypeMismatchError,
            TokenNotFoundError,
            BrokenLineageError,
        ):
            assert issubclass(cls, TokenError)

    def test_policy_errors(self):
        for cls in (PolicyDeniedError, InsufficientScopeError, AudienceNotAllowedError, PolicyEvaluationTimeoutError):
            assert issubclass(cls, PolicyError)

    def test_depth_is_chain_error(self):
        assert issubclass(DelegationDepthExceededError, ChainError)

    def test_unsupported_grant_is_invalid_request(self):
        assert issubclass(UnsupportedGrantTypeError, InvalidRequestError)


class TestStructuredDetails:
    def test_invalid_request_parameter(self):
        err = InvalidRequestError("Missing subject_token", parameter="subject_token")
        assert err.parameter == "subject_token"
        assert err.details["parameter"] == "subject_token"

    def test_unknown_token_type(self):
        err = UnknownTokenTypeError("urn:example:custom")
        assert err.token_type == "urn:example:custom"
        assert "urn:example:custom" in str(err)

    def test_token_not_found(self):
        err = TokenNotFoundError("tok-123")
        assert err.token_id == "tok-123"
        assert err.details["token_id"] == "tok-123"

    def test_depth_exceeded(self):
        err = DelegationDepthExceededError(6, 5, details={"source_token_id": "t"})
        assert err.depth == 6
        assert err.max_depth == 5
        assert err.details == {"depth": 6, "max_depth": 5, "source_token_id": "t"}

    def test_timeout(self):
        err = PolicyEvaluationTimeoutError(0.5)
        assert err.timeout_seconds == 0.5
        assert "0.5" in str(err)

    def test_storage(self):
        err = StorageError("issue_derived", "database is locked")
        assert err.operation == "issue_derived"
        assert "database is locked" in str(err)


class TestPublicDescription:
    def test_invalid_request_echoes_message(self):
        assert public_description(InvalidRequestError("Missing scope")) == "Missing scope"

    def test_policy_internals_hidden(self):
        err = PolicyDeniedError("No policy pol-secret matched", details={"policy_id": "pol-secret"})
        desc = public_description(err)
        assert "pol-secret" not in desc
        assert desc == "The client is not authorized for this exchange"

    def test_scope_denial_generic(self):
        desc = public_description(InsufficientScopeError("granted nothing from {admin}"))
        assert "admin" not in desc

    def test_storage_generic(self):
        desc = public_description(StorageError("insert", "UNIQUE constraint failed: tokens.id"))
        assert "UNIQUE" not in desc
