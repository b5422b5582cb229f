"""Shared test fixtures for the Sluice test suite."""

import pytest

from sluice import Sluice
from sluice.config import ExchangeSettings
from sluice.core.clock import ManualClock
from sluice.core.models import ACCESS_TOKEN_TYPE, ExchangePolicy, ExchangeRequest
from sluice.crypto.keys import SigningKey, SigningKeyProvider
from sluice.storage.repository import TokenRepository


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return ExchangeSettings(
        database_url=":memory:",
        signing_secret="test-signing-secret-0123456789abcdef",
        policy_timeout_seconds=5.0,
        revocation_backoff_base=0.0,
    )


@pytest.fixture
def repo():
    repo = TokenRepository(db_url=":memory:")
    yield repo
    repo.close()


@pytest.fixture
def keys():
    return SigningKeyProvider([SigningKey.hmac("test", "test-signing-secret-0123456789abcdef")])


@pytest.fixture
def service(settings, repo, keys, clock):
    """A fully wired service with two registered clients.

    - ``issuer-app`` holds root tokens issued by the ordinary flow
    - ``svc-a`` exchanges them and may hold any scope
    """
    svc = Sluice(settings, store=repo, keys=keys, clock=clock)
    svc.clients.register("issuer-app", "issuer-secret", ["*"])
    svc.clients.register("svc-a", "secret-a", ["*"])
    return svc


@pytest.fixture
def svc_a(service):
    return service.clients.get("svc-a")


@pytest.fixture
def allow_svc_a(service):
    """svc-a may exchange any token for read/write."""
    policy = ExchangePolicy(
        id="pol-svc-a",
        requesting_client="svc-a",
        subject_client="*",
        allowed_scopes=["read", "write"],
        allowed_audiences=["https://api.example.com/*"],
    )
    service.save_policy(policy)
    return policy


@pytest.fixture
def root_token(service):
    """A signed root token with read+write, valid for one hour."""
    return service.issuer.issue_root(
        "issuer-app",
        subject="alice",
        scopes=["read", "write"],
        audience=["https://api.example.com/orders"],
        ttl_seconds=3600,
    )


@pytest.fixture
def make_request():
    """Build an exchange request presenting an IssuedToken as the subject."""

    def _make(subject, scope=None, **kwargs) -> ExchangeRequest:
        return ExchangeRequest(
            subject_token=subject.credential,
            subject_token_type=kwargs.pop("subject_token_type", ACCESS_TOKEN_TYPE),
            scope=scope,
            **kwargs,
        )

    return _make
