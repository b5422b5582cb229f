"""
Sluice Exchange Audit Log

Append-only, tamper-evident record of every exchange attempt. Each entry
is linked to the previous one via SHA-256 hash chaining, so modifying or
deleting any stored row breaks the chain.

Entries are persisted by the token store. Chaining happens inside the
store's transaction, which keeps the log consistent without any shared
in-memory state: the chain head is always read from the database.

Features:
- Append-only: entries can never be modified or deleted
- Tamper-evident: any modification breaks the hash chain
- Exportable: JSON export for external audit tools
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sluice.core.models import ExchangeLogEntry, HashedLogEntry
from sluice.logging import get_logger

logger = get_logger("sluice.audit")

GENESIS_HASH = "0" * 64


def compute_entry_hash(entry: ExchangeLogEntry, previous_hash: str, sequence: int) -> str:
    """SHA-256 over the entry content, its predecessor's hash and its position."""
    content = json.dumps(
        {
            "id": entry.id,
            "timestamp": entry.timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds"),
            "requesting_client": entry.requesting_client,
            "subject_token_ref": entry.subject_token_ref,
            "derived_token_ref": entry.derived_token_ref,
            "outcome": entry.outcome.value,
            "reason": entry.reason,
            "requested_scopes": sorted(entry.requested_scopes),
            "granted_scopes": sorted(entry.granted_scopes),
            "previous_hash": previous_hash,
            "sequence": sequence,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(content.encode()).hexdigest()


def chain_entry(entry: ExchangeLogEntry, previous_hash: str, sequence: int) -> HashedLogEntry:
    return HashedLogEntry(
        entry=entry,
        hash=compute_entry_hash(entry, previous_hash, sequence),
        previous_hash=previous_hash,
        sequence=sequence,
    )


def verify_chain(entries: Iterable[HashedLogEntry]) -> tuple[bool, str]:
    """Verify a sequence-ordered run of entries starting at the genesis.

    Returns (is_valid, message).
    """
    expected_prev = GENESIS_HASH
    count = 0
    for i, hashed in enumerate(entries):
        if hashed.sequence != i:
            return False, f"Sequence gap at entry {i}: found sequence {hashed.sequence}"
        if hashed.previous_hash != expected_prev:
            return False, (
                f"Chain broken at entry {i}: "
                f"expected previous_hash={expected_prev[:16]}..., "
                f"got {hashed.previous_hash[:16]}..."
            )
        recomputed = compute_entry_hash(hashed.entry, hashed.previous_hash, hashed.sequence)
        if recomputed != hashed.hash:
            return False, (
                f"Tampered entry at {i}: "
                f"stored hash={hashed.hash[:16]}..., "
                f"recomputed={recomputed[:16]}..."
            )
        expected_prev = hashed.hash
        count += 1

    if count == 0:
        return True, "Empty log, no entries to verify"
    return True, f"All {count} entries verified, chain intact"


class AuditStore(Protocol):
    def append_log_entry(self, entry: ExchangeLogEntry) -> HashedLogEntry: ...

    def list_log_entries(
        self,
        limit: int | None = None,
        offset: int = 0,
        requesting_client: str | None = None,
    ) -> list[HashedLogEntry]: ...

    def count_log_entries(self) -> int: ...


class AuditLog:
    """Query and append facade over the persisted exchange log."""

    def __init__(self, store: AuditStore):
        self._store = store

    def record(self, entry: ExchangeLogEntry) -> HashedLogEntry:
        """Append an entry in its own transaction."""
        hashed = self._store.append_log_entry(entry)
        logger.info(
            "Exchange %s",
            entry.outcome.value,
            extra={
                "client_id": entry.requesting_client,
                "outcome": entry.outcome.value,
                "reason": entry.reason,
                "token_id": entry.derived_token_ref,
            },
        )
        return hashed

    def entries(
        self,
        limit: int | None = None,
        offset: int = 0,
        requesting_client: str | None = None,
    ) -> list[HashedLogEntry]:
        return self._store.list_log_entries(limit=limit, offset=offset, requesting_client=requesting_client)

    def verify_integrity(self) -> tuple[bool, str]:
        """Verify the entire stored chain."""
        return verify_chain(self._store.list_log_entries())

    def export_json(self, path: str | Path) -> None:
        """Export the full log as JSON for external audit."""
        entries = self._store.list_log_entries()
        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_entries": len(entries),
            "chain_head": entries[-1].hash if entries else GENESIS_HASH,
            "entries": [e.model_dump(mode="json") for e in entries],
        }
        Path(path).write_text(json.dumps(data, indent=2, default=str))

    def __len__(self) -> int:
        return self._store.count_log_entries()
