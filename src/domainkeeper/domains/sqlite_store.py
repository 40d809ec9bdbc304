"""SQLite storage backend for domain bindings.

Uniqueness of a claimed domain is enforced by a partial unique index, so
two processes racing to claim the same domain cannot both succeed.
Conditional updates compare the row version inside the UPDATE statement.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from domainkeeper.core.exceptions import ConflictError
from domainkeeper.domains.storage import BaseBindingStore, BindingStatus, DomainBinding

logger = structlog.get_logger()

_COLUMNS = (
    "tenant_id",
    "domain",
    "status",
    "verification_token",
    "verification_expiry",
    "provisioned_at",
    "last_checked_at",
    "last_error",
    "last_dns_status",
    "provisioning_claim",
    "provisioning_claimed_at",
    "created_at",
    "updated_at",
    "version",
)
_MUTABLE = tuple(col for col in _COLUMNS if col not in ("tenant_id", "created_at", "version"))
_INSERT_SQL = (
    f"INSERT INTO domain_bindings ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
)
_ASSIGNMENTS = ", ".join(f"{col} = ?" for col in _MUTABLE)


class SQLiteBindingStore(BaseBindingStore):
    """SQLite storage backend for self-hosted deployments.

    A single connection is shared behind a thread lock and every call runs
    in a worker thread, which also makes ":memory:" databases usable.
    """

    def __init__(self, db_path: str | Path = "bindings.db") -> None:
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor with automatic commit/rollback."""
        with self._lock:
            conn = self._get_connection()
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS domain_bindings (
                    tenant_id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    status TEXT NOT NULL,
                    verification_token TEXT,
                    verification_expiry TEXT,
                    provisioned_at TEXT,
                    last_checked_at TEXT,
                    last_error TEXT,
                    last_dns_status TEXT,
                    provisioning_claim TEXT,
                    provisioning_claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)
            cur.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_domain_bindings_claimed_domain
                ON domain_bindings(domain) WHERE status != 'NONE'
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_domain_bindings_status
                ON domain_bindings(status)
            """)

        self._initialized = True

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._initialized = False

    @staticmethod
    def _to_row(binding: DomainBinding) -> dict[str, Any]:
        row = binding.to_dict()
        row["last_dns_status"] = (
            json.dumps(binding.last_dns_status) if binding.last_dns_status is not None else None
        )
        return row

    @staticmethod
    def _from_row(row: sqlite3.Row) -> DomainBinding:
        data = dict(row)
        if data.get("last_dns_status"):
            data["last_dns_status"] = json.loads(data["last_dns_status"])
        return DomainBinding.from_dict(data)

    def _get_sync(self, tenant_id: str) -> DomainBinding | None:
        self.initialize()
        with self.cursor() as cur:
            cur.execute("SELECT * FROM domain_bindings WHERE tenant_id = ?", (tenant_id,))
            row = cur.fetchone()
            return self._from_row(row) if row else None

    def _get_by_domain_sync(self, domain: str) -> DomainBinding | None:
        self.initialize()
        with self.cursor() as cur:
            cur.execute(
                "SELECT * FROM domain_bindings WHERE domain = ? AND status != 'NONE'",
                (domain,),
            )
            row = cur.fetchone()
            return self._from_row(row) if row else None

    def _claim_sync(self, binding: DomainBinding) -> DomainBinding:
        self.initialize()
        row = self._to_row(binding)
        row["updated_at"] = datetime.now(UTC).isoformat()
        try:
            with self.cursor() as cur:
                cur.execute(
                    f"UPDATE domain_bindings SET {_ASSIGNMENTS}, version = version + 1 WHERE tenant_id = ?",
                    (*(row[col] for col in _MUTABLE), binding.tenant_id),
                )
                if cur.rowcount == 0:
                    row["version"] = 1
                    cur.execute(_INSERT_SQL, tuple(row[col] for col in _COLUMNS))
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Domain {binding.domain} is already claimed by another tenant"
            ) from e

        stored = self._get_sync(binding.tenant_id)
        if stored is None:
            raise RuntimeError(f"Binding for tenant {binding.tenant_id} vanished after claim")
        return stored

    def _update_sync(self, binding: DomainBinding, expected_version: int) -> bool:
        self.initialize()
        row = self._to_row(binding)
        now = datetime.now(UTC)
        row["updated_at"] = now.isoformat()
        try:
            with self.cursor() as cur:
                cur.execute(
                    f"UPDATE domain_bindings SET {_ASSIGNMENTS}, version = ? "
                    "WHERE tenant_id = ? AND version = ?",
                    (
                        *(row[col] for col in _MUTABLE),
                        expected_version + 1,
                        binding.tenant_id,
                        expected_version,
                    ),
                )
                updated = cur.rowcount == 1
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Domain {binding.domain} is already claimed by another tenant"
            ) from e

        if updated:
            binding.version = expected_version + 1
            binding.updated_at = now
        return updated

    def _delete_sync(self, tenant_id: str) -> DomainBinding | None:
        existing = self._get_sync(tenant_id)
        if existing is None:
            return None
        with self.cursor() as cur:
            cur.execute("DELETE FROM domain_bindings WHERE tenant_id = ?", (tenant_id,))
            if cur.rowcount == 0:
                return None
        return existing

    def _list_sync(self, status: BindingStatus | None) -> list[DomainBinding]:
        self.initialize()
        with self.cursor() as cur:
            if status:
                cur.execute(
                    "SELECT * FROM domain_bindings WHERE status = ? ORDER BY created_at",
                    (status.value,),
                )
            else:
                cur.execute("SELECT * FROM domain_bindings ORDER BY created_at")
            return [self._from_row(row) for row in cur.fetchall()]

    async def get(self, tenant_id: str) -> DomainBinding | None:
        return await asyncio.to_thread(self._get_sync, tenant_id)

    async def get_by_domain(self, domain: str) -> DomainBinding | None:
        return await asyncio.to_thread(self._get_by_domain_sync, domain)

    async def claim(self, binding: DomainBinding) -> DomainBinding:
        return await asyncio.to_thread(self._claim_sync, binding)

    async def update(self, binding: DomainBinding, expected_version: int) -> bool:
        return await asyncio.to_thread(self._update_sync, binding, expected_version)

    async def delete(self, tenant_id: str) -> DomainBinding | None:
        removed = await asyncio.to_thread(self._delete_sync, tenant_id)
        if removed:
            logger.debug("Binding row deleted", tenant_id=tenant_id, domain=removed.domain)
        return removed

    async def list_all(self, status: BindingStatus | None = None) -> list[DomainBinding]:
        return await asyncio.to_thread(self._list_sync, status)
