"""
Sluice Token Store

Persists tokens and their lineage, exchange policies, registered clients
and the exchange audit log. Supports SQLite and PostgreSQL via the
``sluice.storage.db`` connection wrapper.

Schema:
- tokens: one row per token; ``source_token_id`` edges form the derived-token forest
- exchange_policies: rules evaluated by the scope policy engine
- clients: requesting clients and their allowed scopes
- exchange_log: hash-chained audit entries

The forest is kept as rows keyed by opaque identifiers, never as object
references; every traversal goes through ``children_of`` / ``get_token``.
"""

import json
from datetime import datetime, timezone

from sluice.audit.exchange_log import GENESIS_HASH, chain_entry
from sluice.core.models import (
    ClientRecord,
    ExchangeLogEntry,
    ExchangeOutcome,
    ExchangePolicy,
    HashedLogEntry,
    PolicyAction,
    Token,
    TokenKind,
)
from sluice.exceptions import BrokenLineageError, TokenNotFoundError, TokenRevokedError
from sluice.storage.db import connect

_TOKEN_COLUMNS = [
    "id",
    "kind",
    "subject",
    "client_id",
    "scopes",
    "audience",
    "issued_at",
    "expires_at",
    "source_token_id",
    "chain_depth",
    "actor",
    "may_act",
    "signed",
    "revoked",
    "revoked_at",
]


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class TokenRepository:
    """Database-backed store for tokens, policies, clients and audit entries."""

    def __init__(self, db_url: str = "sluice.db", lock_timeout: float | None = None):
        """Initialize repository.

        Args:
            db_url: Database URL. Use ``postgresql://...`` for PostgreSQL
                    or a file path / ``:memory:`` for SQLite.
            lock_timeout: Seconds to wait for the shared connection before
                    failing with ``StorageError``. ``None`` waits indefinitely.
        """
        self._db_url = db_url
        self._conn = connect(db_url, lock_timeout=lock_timeout)
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS tokens (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                subject TEXT,
                client_id TEXT NOT NULL,
                scopes TEXT DEFAULT '[]',
                audience TEXT DEFAULT '[]',
                issued_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                source_token_id TEXT REFERENCES tokens(id),
                chain_depth INTEGER DEFAULT 0,
                actor TEXT,
                may_act TEXT,
                signed INTEGER DEFAULT 0,
                revoked INTEGER DEFAULT 0,
                revoked_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_tokens_source ON tokens(source_token_id);
            CREATE INDEX IF NOT EXISTS idx_tokens_expires ON tokens(expires_at);

            CREATE TABLE IF NOT EXISTS exchange_policies (
                id TEXT PRIMARY KEY,
                requesting_client TEXT NOT NULL,
                subject_client TEXT DEFAULT '*',
                allowed_scopes TEXT DEFAULT '[]',
                allowed_audiences TEXT DEFAULT '[]',
                max_depth INTEGER,
                token_ttl_seconds INTEGER,
                action TEXT DEFAULT 'allow',
                priority INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS clients (
                client_id TEXT PRIMARY KEY,
                secret_hash TEXT DEFAULT '',
                allowed_scopes TEXT DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS exchange_log (
                id TEXT PRIMARY KEY,
                sequence INTEGER NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                requesting_client TEXT DEFAULT '',
                subject_token_ref TEXT DEFAULT '',
                derived_token_ref TEXT,
                outcome TEXT NOT NULL,
                reason TEXT DEFAULT '',
                requested_scopes TEXT DEFAULT '[]',
                granted_scopes TEXT DEFAULT '[]',
                hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_exchange_log_client ON exchange_log(requesting_client)
        """)
        self._conn.commit()

    # ─── Tokens ──────────────────────────────────────────────

    def insert_token(self, token: Token) -> None:
        """Persist a new token. Used for roots from the ordinary issuance flow."""
        with self._conn.transaction():
            self._insert_token(token)

    def _insert_token(self, token: Token) -> None:
        placeholders = ", ".join(["?"] * len(_TOKEN_COLUMNS))
        self._conn.execute(
            f"INSERT INTO tokens ({', '.join(_TOKEN_COLUMNS)}) VALUES ({placeholders})",
            (
                token.id,
                token.kind.value,
                token.subject,
                token.client_id,
                json.dumps(sorted(token.scopes)),
                json.dumps(list(token.audience)),
                _iso(token.issued_at),
                _iso(token.expires_at),
                token.source_token_id,
                token.chain_depth,
                json.dumps(token.actor) if token.actor is not None else None,
                json.dumps(token.may_act) if token.may_act is not None else None,
                1 if token.signed else 0,
                1 if token.revoked else 0,
                _iso(token.revoked_at),
            ),
        )

    def get_token(self, token_id: str) -> Token | None:
        row = self._conn.query_one("SELECT * FROM tokens WHERE id = ?", (token_id,))
        if not row:
            return None
        return self._row_to_token(row)

    def children_of(self, token_id: str) -> list[str]:
        """Identifiers of tokens directly derived from ``token_id``."""
        rows = self._conn.query(
            "SELECT id FROM tokens WHERE source_token_id = ? ORDER BY issued_at, id",
            (token_id,),
        )
        return [row["id"] for row in rows]

    def lineage(self, token_id: str, max_hops: int | None = None) -> list[Token]:
        """Tokens from the root down to ``token_id`` (inclusive).

        Raises:
            TokenNotFoundError: If ``token_id`` or any ancestor is missing.
            BrokenLineageError: The ancestry loops or exceeds ``max_hops``.
        """
        path: list[Token] = []
        seen: set[str] = set()
        current: str | None = token_id
        while current is not None:
            if current in seen or (max_hops is not None and len(path) > max_hops):
                raise BrokenLineageError(token_id)
            seen.add(current)
            token = self.get_token(current)
            if token is None:
                raise TokenNotFoundError(current)
            path.append(token)
            current = token.source_token_id
        path.reverse()
        return path

    def mark_revoked(self, token_id: str, revoked_at: datetime) -> bool:
        """Flip the revoked flag if it is not already set.

        Compare-and-set: concurrent revokers race on the ``revoked = 0``
        predicate, so exactly one of them observes the flip.

        Returns:
            True if this call revoked the token, False if it already was.
        """
        with self._conn.transaction():
            changed = self._conn.run(
                "UPDATE tokens SET revoked = 1, revoked_at = ? WHERE id = ? AND revoked = 0",
                (_iso(revoked_at), token_id),
            )
        return changed == 1

    def issue_derived(self, token: Token, entry: ExchangeLogEntry) -> HashedLogEntry:
        """Atomically persist a derived token and its success audit entry.

        The source's revoked flag is re-read inside the transaction so a
        revocation that lands between parsing and issuance is honored.

        Raises:
            TokenNotFoundError: The source token no longer exists.
            TokenRevokedError: The source token was revoked meanwhile.
            StorageError: Any persistence failure; nothing is committed.
        """
        with self._conn.transaction():
            if token.source_token_id is not None:
                row = self._conn.query_one(
                    "SELECT revoked FROM tokens WHERE id = ?", (token.source_token_id,)
                )
                if row is None:
                    raise TokenNotFoundError(token.source_token_id)
                if row["revoked"]:
                    raise TokenRevokedError(
                        "Source token was revoked during exchange",
                        details={"token_id": token.source_token_id},
                    )
            self._insert_token(token)
            return self._append_log_entry(entry)

    def purge_expired(self, cutoff: datetime) -> int:
        """Delete tokens whose expiry is before ``cutoff``.

        Derived tokens never outlive their source, so every descendant of
        a purged token is purged by the same statement.
        """
        with self._conn.transaction():
            return self._conn.run("DELETE FROM tokens WHERE expires_at < ?", (_iso(cutoff),))

    @property
    def token_count(self) -> int:
        row = self._conn.query_one("SELECT COUNT(*) AS cnt FROM tokens")
        return row["cnt"] if row else 0

    def _row_to_token(self, row: dict) -> Token:
        return Token(
            id=row["id"],
            kind=TokenKind(row["kind"]),
            subject=row["subject"],
            client_id=row["client_id"],
            scopes=json.loads(row["scopes"]) if row["scopes"] else [],
            audience=json.loads(row["audience"]) if row["audience"] else [],
            issued_at=_dt(row["issued_at"]),
            expires_at=_dt(row["expires_at"]),
            source_token_id=row["source_token_id"],
            chain_depth=row["chain_depth"] or 0,
            actor=json.loads(row["actor"]) if row["actor"] else None,
            may_act=json.loads(row["may_act"]) if row["may_act"] else None,
            signed=bool(row["signed"]),
            revoked=bool(row["revoked"]),
            revoked_at=_dt(row["revoked_at"]),
        )

    # ─── Policies ────────────────────────────────────────────

    def save_policy(self, policy: ExchangePolicy) -> None:
        with self._conn.transaction():
            self._conn.upsert(
                "exchange_policies",
                "id",
                [
                    "id",
                    "requesting_client",
                    "subject_client",
                    "allowed_scopes",
                    "allowed_audiences",
                    "max_depth",
                    "token_ttl_seconds",
                    "action",
                    "priority",
                ],
                (
                    policy.id,
                    policy.requesting_client,
                    policy.subject_client,
                    json.dumps(sorted(policy.allowed_scopes)),
                    json.dumps(policy.allowed_audiences),
                    policy.max_depth,
                    policy.token_ttl_seconds,
                    policy.action.value,
                    policy.priority,
                ),
            )

    def delete_policy(self, policy_id: str) -> bool:
        with self._conn.transaction():
            return self._conn.run("DELETE FROM exchange_policies WHERE id = ?", (policy_id,)) == 1

    def list_policies(self) -> list[ExchangePolicy]:
        """All policies, highest priority first, ties by id."""
        rows = self._conn.query("SELECT * FROM exchange_policies ORDER BY priority DESC, id ASC")
        return [
            ExchangePolicy(
                id=row["id"],
                requesting_client=row["requesting_client"],
                subject_client=row["subject_client"] or "*",
                allowed_scopes=json.loads(row["allowed_scopes"]) if row["allowed_scopes"] else [],
                allowed_audiences=json.loads(row["allowed_audiences"]) if row["allowed_audiences"] else [],
                max_depth=row["max_depth"],
                token_ttl_seconds=row["token_ttl_seconds"],
                action=PolicyAction(row["action"]),
                priority=row["priority"] or 0,
            )
            for row in rows
        ]

    # ─── Clients ─────────────────────────────────────────────

    def save_client(self, client: ClientRecord) -> None:
        with self._conn.transaction():
            self._conn.upsert(
                "clients",
                "client_id",
                ["client_id", "secret_hash", "allowed_scopes"],
                (client.client_id, client.secret_hash, json.dumps(sorted(client.allowed_scopes))),
            )

    def get_client(self, client_id: str) -> ClientRecord | None:
        row = self._conn.query_one("SELECT * FROM clients WHERE client_id = ?", (client_id,))
        if not row:
            return None
        return ClientRecord(
            client_id=row["client_id"],
            secret_hash=row["secret_hash"] or "",
            allowed_scopes=json.loads(row["allowed_scopes"]) if row["allowed_scopes"] else [],
        )

    # ─── Exchange Log ────────────────────────────────────────

    def append_log_entry(self, entry: ExchangeLogEntry) -> HashedLogEntry:
        with self._conn.transaction():
            return self._append_log_entry(entry)

    def _append_log_entry(self, entry: ExchangeLogEntry) -> HashedLogEntry:
        head = self._conn.query_one(
            "SELECT sequence, hash FROM exchange_log ORDER BY sequence DESC LIMIT 1"
        )
        sequence = head["sequence"] + 1 if head else 0
        previous_hash = head["hash"] if head else GENESIS_HASH
        hashed = chain_entry(entry, previous_hash, sequence)

        self._conn.execute(
            """INSERT INTO exchange_log (
                   id, sequence, timestamp, requesting_client, subject_token_ref,
                   derived_token_ref, outcome, reason, requested_scopes, granted_scopes,
                   hash, previous_hash
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                sequence,
                _iso(entry.timestamp),
                entry.requesting_client,
                entry.subject_token_ref,
                entry.derived_token_ref,
                entry.outcome.value,
                entry.reason,
                json.dumps(sorted(entry.requested_scopes)),
                json.dumps(sorted(entry.granted_scopes)),
                hashed.hash,
                hashed.previous_hash,
            ),
        )
        return hashed

    def list_log_entries(
        self,
        limit: int | None = None,
        offset: int = 0,
        requesting_client: str | None = None,
    ) -> list[HashedLogEntry]:
        """Audit entries in sequence order."""
        sql = "SELECT * FROM exchange_log"
        params: tuple = ()
        if requesting_client is not None:
            sql += " WHERE requesting_client = ?"
            params += (requesting_client,)
        sql += " ORDER BY sequence ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += (limit, offset)
        rows = self._conn.query(sql, params)
        return [self._row_to_log_entry(row) for row in rows]

    def count_log_entries(self) -> int:
        row = self._conn.query_one("SELECT COUNT(*) AS cnt FROM exchange_log")
        return row["cnt"] if row else 0

    def _row_to_log_entry(self, row: dict) -> HashedLogEntry:
        entry = ExchangeLogEntry(
            id=row["id"],
            timestamp=_dt(row["timestamp"]),
            requesting_client=row["requesting_client"] or "",
            subject_token_ref=row["subject_token_ref"] or "",
            derived_token_ref=row["derived_token_ref"],
            outcome=ExchangeOutcome(row["outcome"]),
            reason=row["reason"] or "",
            requested_scopes=json.loads(row["requested_scopes"]) if row["requested_scopes"] else [],
            granted_scopes=json.loads(row["granted_scopes"]) if row["granted_scopes"] else [],
        )
        return HashedLogEntry(
            entry=entry,
            hash=row["hash"],
            previous_hash=row["previous_hash"],
            sequence=row["sequence"],
        )

    def close(self) -> None:
        self._conn.close()
