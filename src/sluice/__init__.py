"""
Sluice: OAuth 2.0 Token Exchange (RFC 8693)

Usage:
    from sluice import Sluice
    from sluice.core.models import ExchangeRequest

    service = Sluice.from_settings()
    client = service.clients.authenticate("svc-a", "secret")
    result = await service.exchange(client, ExchangeRequest(
        subject_token=token,
        subject_token_type="urn:ietf:params:oauth:token-type:access_token",
        scope="read",
    ))

    # Revoke a token and everything derived from it:
    await service.revoke(token_id)
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from sluice.audit.exchange_log import AuditLog
from sluice.config import ExchangeSettings, load_settings
from sluice.core.clients import ClientRegistry
from sluice.core.clock import ClockSource, ManualClock, SystemClock
from sluice.core.models import (
    ClientRecord,
    ExchangePolicy,
    ExchangeRequest,
    ExchangeResult,
    ExchangeState,
    IssuedToken,
    RevocationResult,
    Token,
    TokenKind,
)
from sluice.crypto.keys import SigningKey, SigningKeyProvider
from sluice.exceptions import SluiceError
from sluice.exchange.coordinator import ExchangeCoordinator
from sluice.exchange.issuer import RootTokenIssuer
from sluice.exchange.revocation import RevocationPropagator
from sluice.logging import get_logger
from sluice.storage.repository import TokenRepository

__version__ = "0.1.0"

__all__ = [
    # Main API
    "Sluice",
    "__version__",
    # Config
    "ExchangeSettings",
    "load_settings",
    # Models
    "ClientRecord",
    "ExchangePolicy",
    "ExchangeRequest",
    "ExchangeResult",
    "ExchangeState",
    "IssuedToken",
    "RevocationResult",
    "Token",
    "TokenKind",
    # Components
    "AuditLog",
    "ClientRegistry",
    "ExchangeCoordinator",
    "RevocationPropagator",
    "RootTokenIssuer",
    "SigningKey",
    "SigningKeyProvider",
    "TokenRepository",
    # Clocks
    "ClockSource",
    "ManualClock",
    "SystemClock",
    # Errors
    "SluiceError",
]

logger = get_logger("sluice")


class Sluice:
    """Wires the token exchange components around one token store.

    Components:
    1. TokenRepository: tokens, policies, clients and the audit log
    2. ClientRegistry: requesting-client authentication
    3. ExchangeCoordinator: parse, policy, chain, atomic issuance
    4. RevocationPropagator: cascading revocation with retry
    5. RootTokenIssuer: root tokens for the ordinary issuance flow
    """

    def __init__(
        self,
        settings: ExchangeSettings | None = None,
        store: TokenRepository | None = None,
        keys: SigningKeyProvider | None = None,
        clock: ClockSource | None = None,
    ):
        """Initialize the service.

        Args:
            settings: Service settings. Defaults to ``ExchangeSettings()``.
            store: Token store. If None, opens ``settings.database_url``.
            keys: Signing key set. If None, one HMAC key is built from
                  ``settings.signing_secret`` (random when unset).
            clock: Time source. Defaults to the system clock.
        """
        self.settings = settings or ExchangeSettings()
        self.clock = clock or SystemClock()
        self.store = store or TokenRepository(
            self.settings.database_url, lock_timeout=self.settings.storage_lock_timeout_seconds
        )

        if keys is None:
            if self.settings.signing_secret is None and self.settings.issue_signed_tokens:
                logger.warning("No signing secret configured; signed tokens will not survive a restart")
            keys = SigningKeyProvider([SigningKey.hmac(self.settings.signing_key_id, self.settings.signing_secret)])
        self.keys = keys

        self.clients = ClientRegistry(self.store)
        self.coordinator = ExchangeCoordinator(self.store, self.keys, settings=self.settings, clock=self.clock)
        self.revocation = RevocationPropagator.from_settings(self.store, self.settings, clock=self.clock)
        self.issuer = RootTokenIssuer(self.store, self.keys, settings=self.settings, clock=self.clock)

    @classmethod
    def from_settings(cls, path: str | None = None) -> Sluice:
        """Build a service from YAML and environment configuration."""
        return cls(load_settings(path))

    @property
    def audit(self) -> AuditLog:
        return self.coordinator.audit_log

    async def exchange(self, client: ClientRecord, request: ExchangeRequest) -> ExchangeResult:
        return await self.coordinator.exchange(client, request)

    async def revoke(self, token_id: str) -> RevocationResult:
        return await self.revocation.revoke(token_id)

    def revoke_sync(self, token_id: str) -> RevocationResult:
        """Synchronous wrapper for revoke(). Convenience for scripts."""
        return asyncio.run(self.revoke(token_id))

    def save_policy(self, policy: ExchangePolicy) -> None:
        """Persist a policy and drop decisions cached under the old rule set."""
        self.store.save_policy(policy)
        self.coordinator.policy_engine.invalidate()

    def delete_policy(self, policy_id: str) -> bool:
        removed = self.store.delete_policy(policy_id)
        self.coordinator.policy_engine.invalidate()
        return removed

    def purge_expired(self) -> int:
        """Delete tokens that expired more than the retention grace ago."""
        cutoff = self.clock.now() - timedelta(seconds=self.settings.retention_grace_seconds)
        removed = self.store.purge_expired(cutoff)
        logger.info("Purged %d expired token(s)", removed)
        return removed

    def close(self) -> None:
        self.store.close()
