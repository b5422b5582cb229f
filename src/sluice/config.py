"""
Sluice Configuration

Settings are plain pydantic models passed explicitly to the components
that need them. Only the CLI and API bootstrap call ``load_settings``;
nothing in the exchange path reads the environment.

Sources, lowest precedence first:
    1. model defaults
    2. YAML file (``SLUICE_CONFIG`` or ``sluice.yaml``)
    3. ``SLUICE_*`` environment variables (``DATABASE_URL`` is honored too)
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

DEFAULT_MAX_CHAIN_DEPTH = 5


class ExchangeSettings(BaseModel):
    """Tunable behavior of the token exchange service."""

    issuer: str = "https://sluice.local"
    max_chain_depth: int = Field(DEFAULT_MAX_CHAIN_DEPTH, ge=1)
    default_token_ttl_seconds: int = Field(3600, gt=0)
    policy_timeout_seconds: float = Field(2.0, gt=0)
    decision_cache_enabled: bool = True
    decision_cache_ttl_seconds: float = Field(30.0, ge=0)
    decision_cache_max_entries: int = Field(1024, gt=0)
    issue_signed_tokens: bool = True
    parse_actor_tokens: bool = True
    revocation_max_attempts: int = Field(5, ge=1)
    revocation_backoff_base: float = Field(0.05, ge=0)
    retention_grace_seconds: int = Field(86400, ge=0)
    database_url: str = "sluice.db"
    storage_lock_timeout_seconds: float = Field(5.0, gt=0)
    signing_key_id: str = "default"
    signing_secret: str | None = None


_ENV_FIELDS = {
    "SLUICE_ISSUER": "issuer",
    "SLUICE_MAX_CHAIN_DEPTH": "max_chain_depth",
    "SLUICE_DEFAULT_TOKEN_TTL": "default_token_ttl_seconds",
    "SLUICE_POLICY_TIMEOUT": "policy_timeout_seconds",
    "SLUICE_DECISION_CACHE_ENABLED": "decision_cache_enabled",
    "SLUICE_DECISION_CACHE_TTL": "decision_cache_ttl_seconds",
    "SLUICE_ISSUE_SIGNED_TOKENS": "issue_signed_tokens",
    "SLUICE_REVOCATION_MAX_ATTEMPTS": "revocation_max_attempts",
    "SLUICE_RETENTION_GRACE": "retention_grace_seconds",
    "SLUICE_DATABASE_URL": "database_url",
    "SLUICE_STORAGE_LOCK_TIMEOUT": "storage_lock_timeout_seconds",
    "SLUICE_SIGNING_KEY_ID": "signing_key_id",
    "SLUICE_SIGNING_SECRET": "signing_secret",
}


def load_settings(path: str | Path | None = None) -> ExchangeSettings:
    """Load settings from YAML with environment overrides.

    Args:
        path: Optional config file. Falls back to ``SLUICE_CONFIG`` or
            ``sluice.yaml`` in the current directory; a missing file is not
            an error.
    """
    config_path = Path(path or os.getenv("SLUICE_CONFIG", "sluice.yaml"))
    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

    if os.getenv("DATABASE_URL"):
        data["database_url"] = os.environ["DATABASE_URL"]
    for env_name, field_name in _ENV_FIELDS.items():
        value = os.getenv(env_name)
        if value is not None:
            data[field_name] = value

    return ExchangeSettings(**data)
