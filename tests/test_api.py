"""Tests for the Sluice API server.

Uses httpx against the ASGI app with a pre-wired in-memory service.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from sluice import Sluice, __version__
from sluice.api.server import create_app
from sluice.core.models import ACCESS_TOKEN_TYPE, TOKEN_EXCHANGE_GRANT
from sluice.exceptions import StorageError
from sluice.exchange.parser import token_fingerprint

SVC_A = ("svc-a", "secret-a")


@pytest.fixture
async def client(service):
    async with AsyncClient(
        transport=ASGITransport(app=create_app(service)),
        base_url="http://test",
    ) as client:
        yield client


def exchange_form(subject, **fields):
    form = {
        "grant_type": TOKEN_EXCHANGE_GRANT,
        "subject_token": subject.credential,
        "subject_token_type": ACCESS_TOKEN_TYPE,
    }
    form.update(fields)
    return form


# ─── Token Endpoint ─────────────────────────────────────────


class TestTokenEndpoint:
    async def test_exchange_with_basic_auth(self, client, allow_svc_a, root_token):
        response = await client.post("/oauth2/token", data=exchange_form(root_token, scope="write"), auth=SVC_A)

        assert response.status_code == 200
        body = response.json()
        assert body["issued_token_type"] == ACCESS_TOKEN_TYPE
        assert body["token_type"] == "Bearer"
        assert body["scope"] == "write"
        assert body["expires_in"] == 3600
        assert body["access_token"].count(".") == 2
        assert response.headers["cache-control"] == "no-store"

    async def test_exchange_with_form_credentials(self, client, allow_svc_a, root_token):
        form = exchange_form(root_token, scope="read", client_id="svc-a", client_secret="secret-a")
        response = await client.post("/oauth2/token", data=form)
        assert response.status_code == 200
        assert response.json()["scope"] == "read"

    async def test_repeated_audience(self, client, service, allow_svc_a, root_token):
        form = exchange_form(
            root_token,
            audience=["https://api.example.com/a", "https://api.example.com/b"],
        )
        response = await client.post("/oauth2/token", data=form, auth=SVC_A)
        assert response.status_code == 200
        claims = service.keys.verify(response.json()["access_token"])
        assert claims["aud"] == ["https://api.example.com/a", "https://api.example.com/b"]

    async def test_bad_client_secret(self, client, allow_svc_a, root_token):
        response = await client.post("/oauth2/token", data=exchange_form(root_token), auth=("svc-a", "wrong"))
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "www-authenticate" in response.headers

    async def test_missing_client_auth(self, client, root_token):
        response = await client.post("/oauth2/token", data=exchange_form(root_token))
        assert response.status_code == 401

    async def test_two_auth_methods(self, client, allow_svc_a, root_token):
        form = exchange_form(root_token, client_secret="secret-a")
        response = await client.post("/oauth2/token", data=form, auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_unsupported_grant(self, client, allow_svc_a, root_token):
        form = exchange_form(root_token, grant_type="client_credentials")
        response = await client.post("/oauth2/token", data=form, auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    async def test_denied_client(self, client, service, allow_svc_a, root_token):
        service.clients.register("clientX", "secret-x", ["*"])
        response = await client.post("/oauth2/token", data=exchange_form(root_token), auth=("clientX", "secret-x"))
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "unauthorized_client"
        assert "pol-" not in body["error_description"]

    async def test_insufficient_scope(self, client, allow_svc_a, root_token):
        response = await client.post("/oauth2/token", data=exchange_form(root_token, scope="admin"), auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    async def test_audience_not_allowed(self, client, allow_svc_a, root_token):
        form = exchange_form(root_token, resource="https://evil.example.net/")
        response = await client.post("/oauth2/token", data=form, auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_target"

    async def test_storage_failure(self, client, service, allow_svc_a, root_token, monkeypatch):
        def broken(token, entry):
            raise StorageError("issue_derived", "disk full")

        monkeypatch.setattr(service.store, "issue_derived", broken)
        response = await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        assert response.status_code == 503
        assert response.json()["error"] == "temporarily_unavailable"


# ─── Revocation Endpoint ────────────────────────────────────


class TestRevokeEndpoint:
    async def test_revoke_own_derived_token(self, client, service, allow_svc_a, root_token):
        issued = await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        derived_jwt = issued.json()["access_token"]
        jti = service.keys.verify(derived_jwt)["jti"]

        response = await client.post("/oauth2/revoke", data={"token": derived_jwt}, auth=SVC_A)
        assert response.status_code == 200
        assert service.store.get_token(jti).revoked
        assert not service.store.get_token(root_token.token.id).revoked

    async def test_cannot_revoke_foreign_token(self, client, service, allow_svc_a, root_token):
        response = await client.post("/oauth2/revoke", data={"token": root_token.credential}, auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "unauthorized_client"
        assert not service.store.get_token(root_token.token.id).revoked

    async def test_issuer_revokes_whole_tree(self, client, service, allow_svc_a, root_token):
        issued = await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        jti = service.keys.verify(issued.json()["access_token"])["jti"]

        response = await client.post(
            "/oauth2/revoke", data={"token": root_token.credential}, auth=("issuer-app", "issuer-secret")
        )
        assert response.status_code == 200
        assert service.store.get_token(jti).revoked

    async def test_unknown_token_is_ok(self, client):
        response = await client.post("/oauth2/revoke", data={"token": "no-such-token"}, auth=SVC_A)
        assert response.status_code == 200
        assert response.json() == {}

    async def test_missing_token(self, client):
        response = await client.post("/oauth2/revoke", data={}, auth=SVC_A)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


# ─── Admin Views ────────────────────────────────────────────

ISSUER = ("issuer-app", "issuer-secret")


@pytest.fixture
async def opaque(settings, repo, keys, clock, service):
    """A second app over the same store that issues opaque references."""
    svc = Sluice(settings.model_copy(update={"issue_signed_tokens": False}), store=repo, keys=keys, clock=clock)
    async with AsyncClient(transport=ASGITransport(app=create_app(svc)), base_url="http://test") as client:
        yield svc, client


class TestAdminViews:
    async def test_status(self, client, allow_svc_a, root_token):
        response = await client.get("/api/status", auth=SVC_A)
        assert response.status_code == 200
        data = response.json()
        assert data["tokens"] == 1
        assert data["policies"] == 1
        assert data["audit_entries"] == 0
        assert data["version"] == __version__

    async def test_token_lineage(self, client, service, allow_svc_a, root_token):
        issued = await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        jti = service.keys.verify(issued.json()["access_token"])["jti"]

        response = await client.get(f"/api/tokens/{jti}", auth=SVC_A)
        assert response.status_code == 200
        data = response.json()
        assert data["lineage"] == [token_fingerprint(root_token.token.id), token_fingerprint(jti)]
        assert data["token"]["id"] == token_fingerprint(jti)
        assert data["token"]["source_token_id"] == token_fingerprint(root_token.token.id)
        assert data["token"]["chain_depth"] == 1

        parent = (await client.get(f"/api/tokens/{root_token.token.id}", auth=ISSUER)).json()
        assert parent["children"] == [token_fingerprint(jti)]

    async def test_token_not_found(self, client):
        response = await client.get("/api/tokens/nonexistent-id", auth=SVC_A)
        assert response.status_code == 404
        assert "nonexistent-id" not in response.text

    async def test_audit_entries_scoped_to_caller(self, client, service, allow_svc_a, root_token):
        await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        service.clients.register("clientX", "secret-x", [])
        await client.post("/oauth2/token", data=exchange_form(root_token), auth=("clientX", "secret-x"))

        own = (await client.get("/api/audit", auth=SVC_A)).json()
        assert own["total"] == 1
        assert [e["entry"]["outcome"] for e in own["entries"]] == ["success"]

        other = (await client.get("/api/audit", auth=("clientX", "secret-x"))).json()
        assert [e["entry"]["outcome"] for e in other["entries"]] == ["denied"]

    async def test_audit_verify(self, client, allow_svc_a, root_token):
        await client.post("/oauth2/token", data=exchange_form(root_token), auth=SVC_A)
        data = (await client.get("/api/audit/verify", auth=SVC_A)).json()
        assert data["valid"] is True
        assert data["entries"] == 1


class TestAdminAccess:
    @pytest.mark.parametrize("path", ["/api/status", "/api/tokens/some-id", "/api/audit", "/api/audit/verify"])
    async def test_anonymous_rejected(self, client, path):
        response = await client.get(path)
        assert response.status_code == 401
        assert "www-authenticate" in response.headers

    async def test_wrong_secret_rejected(self, client):
        response = await client.get("/api/status", auth=("svc-a", "wrong"))
        assert response.status_code == 401

    async def test_foreign_token_hidden(self, client, service, root_token):
        service.clients.register("clientX", "secret-x", [])
        response = await client.get(f"/api/tokens/{root_token.token.id}", auth=("clientX", "secret-x"))
        assert response.status_code == 404

    async def test_opaque_source_credential_never_returned(self, opaque, allow_svc_a):
        svc, client = opaque
        root = svc.issuer.issue_root(
            "issuer-app",
            subject="alice",
            scopes=["read", "write"],
            audience=["https://api.example.com/orders"],
        )
        assert root.credential == root.token.id

        issued = await client.post("/oauth2/token", data=exchange_form(root, scope="read"), auth=SVC_A)
        derived = issued.json()["access_token"]

        anonymous = await client.get(f"/api/tokens/{derived}")
        assert anonymous.status_code == 401
        assert root.credential not in anonymous.text

        owner = await client.get(f"/api/tokens/{derived}", auth=SVC_A)
        assert owner.status_code == 200
        assert root.credential not in owner.text
        assert derived not in owner.text
        assert owner.json()["lineage"] == [token_fingerprint(root.credential), token_fingerprint(derived)]
