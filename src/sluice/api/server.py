"""
Sluice API Server

FastAPI application exposing the token exchange endpoint (RFC 8693),
token revocation (RFC 7009 style) and read-only admin views over the
token forest and the audit log. Admin views require HTTP Basic client
authentication and are scoped to the calling client.

Usage:
    uvicorn sluice.api.server:app --reload
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from urllib.parse import unquote_plus

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from sluice import Sluice, __version__
from sluice.core.models import ClientRecord, ExchangeRequest, Token
from sluice.exceptions import (
    ClientAuthenticationError,
    InvalidRequestError,
    PolicyDeniedError,
    SignatureInvalidError,
    SluiceError,
    TokenError,
    TokenNotFoundError,
    public_description,
)
from sluice.exchange.parser import looks_like_jwt, token_fingerprint
from sluice.logging import get_logger
from sluice.observability.tracing import init_tracing
from sluice.observability.tracing import shutdown as tracing_shutdown

logger = get_logger("sluice.api")

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_basic = HTTPBasic(auto_error=False)


# ─── Response Models ────────────────────────────────────────

class TokenResponse(BaseModel):
    access_token: str
    issued_token_type: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str


class StatusResponse(BaseModel):
    tokens: int
    audit_entries: int
    policies: int
    version: str = __version__


# ─── Helpers ────────────────────────────────────────────────

def get_service(request: Request) -> Sluice:
    """The app's service, built from configuration on first use."""
    service = request.app.state.service
    if service is None:
        service = Sluice.from_settings()
        request.app.state.service = service
    return service


def oauth_error(error: SluiceError) -> JSONResponse:
    headers = dict(NO_STORE)
    if isinstance(error, ClientAuthenticationError):
        headers["WWW-Authenticate"] = 'Basic realm="sluice"'
    return JSONResponse(
        {"error": error.oauth_error, "error_description": public_description(error)},
        status_code=error.status_code,
        headers=headers,
    )


def authenticate_client(service: Sluice, form, credentials: HTTPBasicCredentials | None) -> ClientRecord:
    """HTTP Basic (form-urlencoded id and secret) or ``client_id``/``client_secret`` fields."""
    if credentials is not None:
        if form.get("client_secret"):
            raise InvalidRequestError("Use only one client authentication method")
        return service.clients.authenticate(
            unquote_plus(credentials.username), unquote_plus(credentials.password)
        )
    return service.clients.authenticate(form.get("client_id"), form.get("client_secret"))


def resolve_token_id(service: Sluice, token: str) -> str:
    """Store identifier behind a presented credential."""
    if looks_like_jwt(token):
        claims = service.keys.verify(token)
        if not claims.get("jti"):
            raise TokenNotFoundError("<jwt>")
        return claims["jti"]
    return token


def in_lineage(service: Sluice, client: ClientRecord, token_id: str) -> bool:
    """A client owns a token if it holds the token or any of its ancestors."""
    return any(t.client_id == client.client_id for t in service.store.lineage(token_id))


def revocable_record(service: Sluice, client: ClientRecord, token: str) -> Token | None:
    """The record ``client`` may revoke, or None when the token is unknown.

    Raises:
        PolicyDeniedError: The token exists but does not belong to ``client``.
    """
    try:
        record = service.store.get_token(resolve_token_id(service, token))
    except (TokenNotFoundError, SignatureInvalidError):
        return None
    if record is None:
        return None
    if not in_lineage(service, client, record.id):
        raise PolicyDeniedError("Client may not revoke this token")
    return record


def token_view(record: Token) -> dict:
    """Token fields with identifiers fingerprinted. An opaque token's id is its credential."""
    view = record.model_dump(mode="json")
    view["id"] = token_fingerprint(record.id)
    if record.source_token_id is not None:
        view["source_token_id"] = token_fingerprint(record.source_token_id)
    return view


def lineage_view(service: Sluice, client: ClientRecord, token_id: str) -> dict | None:
    """Token, ancestry and children as fingerprints, or None if ``client`` may not see it."""
    record = service.store.get_token(token_id)
    if record is None:
        return None
    try:
        lineage = service.store.lineage(record.id)
    except TokenError:
        return None
    if not any(t.client_id == client.client_id for t in lineage):
        return None
    return {
        "token": token_view(record),
        "lineage": [token_fingerprint(t.id) for t in lineage],
        "children": [token_fingerprint(c) for c in service.store.children_of(record.id)],
    }


async def require_client(
    credentials: HTTPBasicCredentials | None = Depends(_basic),
    service: Sluice = Depends(get_service),
) -> ClientRecord:
    """HTTP Basic client authentication for the admin views."""
    challenge = {"WWW-Authenticate": 'Basic realm="sluice"'}
    if credentials is None:
        raise HTTPException(status_code=401, detail="Client authentication required", headers=challenge)
    try:
        return await asyncio.to_thread(
            service.clients.authenticate,
            unquote_plus(credentials.username),
            unquote_plus(credentials.password),
        )
    except ClientAuthenticationError as e:
        raise HTTPException(status_code=401, detail=public_description(e), headers=challenge) from e


# ─── App ─────────────────────────────────────────────────────

def create_app(service: Sluice | None = None) -> FastAPI:
    """Build the ASGI app. Tests pass a pre-wired service."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_tracing():
            logger.info("OTLP span export enabled")
        yield
        if app.state.service is not None:
            app.state.service.close()
        tracing_shutdown()

    app = FastAPI(
        title="Sluice API",
        description="OAuth 2.0 Token Exchange",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    # ─── OAuth Endpoints ─────────────────────────────────────

    @app.post("/oauth2/token")
    async def token_endpoint(
        request: Request,
        credentials: HTTPBasicCredentials | None = Depends(_basic),
        service: Sluice = Depends(get_service),
    ):
        form = await request.form()
        try:
            client = await asyncio.to_thread(authenticate_client, service, form, credentials)
        except SluiceError as e:
            logger.warning("Client authentication failed", extra={"reason": e.reason})
            return oauth_error(e)

        exchange_request = ExchangeRequest(
            grant_type=form.get("grant_type") or "",
            subject_token=form.get("subject_token"),
            subject_token_type=form.get("subject_token_type"),
            actor_token=form.get("actor_token"),
            actor_token_type=form.get("actor_token_type"),
            requested_token_type=form.get("requested_token_type"),
            audience=form.getlist("audience"),
            resource=form.getlist("resource"),
            scope=form.get("scope"),
        )
        result = await service.exchange(client, exchange_request)
        if not result.success:
            return JSONResponse(
                {"error": result.error, "error_description": result.error_description},
                status_code=result.status_code,
                headers=NO_STORE,
            )

        issued = result.issued
        body = TokenResponse(
            access_token=issued.credential,
            issued_token_type=issued.issued_token_type,
            expires_in=result.expires_in,
            scope=" ".join(issued.token.scopes),
        )
        return JSONResponse(body.model_dump(), headers=NO_STORE)

    @app.post("/oauth2/revoke")
    async def revoke_endpoint(
        request: Request,
        credentials: HTTPBasicCredentials | None = Depends(_basic),
        service: Sluice = Depends(get_service),
    ):
        form = await request.form()
        try:
            client = await asyncio.to_thread(authenticate_client, service, form, credentials)
            token = form.get("token")
            if not token:
                raise InvalidRequestError("Missing token", parameter="token")
            record = await asyncio.to_thread(revocable_record, service, client, token)
            # Unknown or unverifiable tokens are not an error for the caller
            if record is not None:
                await service.revoke(record.id)
        except SluiceError as e:
            return oauth_error(e)
        return JSONResponse({}, headers=NO_STORE)

    # ─── Admin Views ─────────────────────────────────────────
    # Every view needs an authenticated client and only shows what that
    # client owns. Token identifiers are never returned in the clear.

    @app.get("/api/status")
    async def get_status(
        client: ClientRecord = Depends(require_client),
        service: Sluice = Depends(get_service),
    ) -> StatusResponse:
        def counts() -> StatusResponse:
            return StatusResponse(
                tokens=service.store.token_count,
                audit_entries=len(service.audit),
                policies=len(service.store.list_policies()),
            )

        return await asyncio.to_thread(counts)

    @app.get("/api/tokens/{token_id}")
    async def get_token(
        token_id: str,
        client: ClientRecord = Depends(require_client),
        service: Sluice = Depends(get_service),
    ):
        view = await asyncio.to_thread(lineage_view, service, client, token_id)
        if view is None:
            return JSONResponse({"error": "Token not found"}, status_code=404)
        return view

    @app.get("/api/audit")
    async def get_audit(
        limit: int = 50,
        offset: int = 0,
        client: ClientRecord = Depends(require_client),
        service: Sluice = Depends(get_service),
    ) -> dict:
        def own_entries() -> dict:
            entries = service.audit.entries(requesting_client=client.client_id)
            return {
                "entries": [e.model_dump(mode="json") for e in entries[offset:offset + limit]],
                "total": len(entries),
            }

        return await asyncio.to_thread(own_entries)

    @app.get("/api/audit/verify")
    async def verify_audit(
        client: ClientRecord = Depends(require_client),
        service: Sluice = Depends(get_service),
    ) -> dict:
        def verify() -> dict:
            valid, message = service.audit.verify_integrity()
            return {"valid": valid, "message": message, "entries": len(service.audit)}

        return await asyncio.to_thread(verify)

    return app


app = create_app()
