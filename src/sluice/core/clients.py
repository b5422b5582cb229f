"""
Sluice Client Registry

Read-only view of registered OAuth clients: credentials and the scopes
each client may ever hold. Registration and administration live outside
this service; the registry here is backed by the token store's
``clients`` table so the CLI and tests can seed it.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Protocol

from sluice.core.models import ClientRecord
from sluice.exceptions import ClientAuthenticationError


def hash_secret(client_id: str, secret: str) -> str:
    """Salted SHA-256 of a client secret."""
    return hashlib.sha256(f"{client_id}:{secret}".encode()).hexdigest()


class ClientStore(Protocol):
    def get_client(self, client_id: str) -> ClientRecord | None: ...

    def save_client(self, client: ClientRecord) -> None: ...


class ClientRegistry:
    """Authenticates requesting clients and exposes their allowed scopes."""

    def __init__(self, store: ClientStore):
        self._store = store

    def register(self, client_id: str, secret: str, allowed_scopes: list[str]) -> ClientRecord:
        record = ClientRecord(
            client_id=client_id,
            secret_hash=hash_secret(client_id, secret),
            allowed_scopes=sorted(set(allowed_scopes)),
        )
        self._store.save_client(record)
        return record

    def get(self, client_id: str) -> ClientRecord | None:
        return self._store.get_client(client_id)

    def authenticate(self, client_id: str | None, secret: str | None) -> ClientRecord:
        """Return the client record if the secret matches.

        Raises:
            ClientAuthenticationError: Unknown client or wrong secret.
        """
        if not client_id or secret is None:
            raise ClientAuthenticationError("Client authentication required")
        record = self._store.get_client(client_id)
        if record is None:
            raise ClientAuthenticationError("Client authentication failed")
        if not hmac.compare_digest(record.secret_hash, hash_secret(client_id, secret)):
            raise ClientAuthenticationError("Client authentication failed")
        return record
