"""Storage for tenant domain bindings.

This module defines the binding record and the JSON file store, suitable
for single-process deployments. ``sqlite_store`` provides a database
backend with the same interface.

Storage file format (bindings.json):
    {
        "bindings": {
            "tenant-123": {
                "tenant_id": "tenant-123",
                "domain": "shop.example.com",
                "status": "PENDING",
                "verification_token": "domainkeeper-verify-9f2c...",
                "verification_expiry": "2024-01-17T10:00:00+00:00",
                "provisioned_at": null,
                "last_checked_at": "2024-01-15T10:05:00+00:00",
                "last_error": null,
                "version": 3,
                ...
            }
        }
    }
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from domainkeeper.core.exceptions import ConflictError

logger = structlog.get_logger()


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class BindingStatus(Enum):
    """Lifecycle state of a domain binding."""

    NONE = "NONE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass
class DomainBinding:
    """A tenant's custom domain and its verification state.

    ``version`` is bumped on every write and backs conditional updates.
    ``provisioning_claim`` marks an in-flight provisioning attempt so that
    concurrent verifications do not provision twice.
    """

    tenant_id: str
    domain: str
    status: BindingStatus = BindingStatus.PENDING
    verification_token: str | None = None
    verification_expiry: datetime | None = None
    provisioned_at: datetime | None = None
    last_checked_at: datetime | None = None
    last_error: str | None = None
    last_dns_status: dict[str, Any] | None = None
    provisioning_claim: str | None = None
    provisioning_claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime | None = None
    version: int = 0

    @property
    def holds_domain(self) -> bool:
        """Whether this binding blocks other tenants from the domain."""
        return self.status != BindingStatus.NONE

    def is_verification_expired(self, now: datetime | None = None) -> bool:
        """Check whether the verification token is past its expiry."""
        if self.verification_expiry is None:
            return False
        return (now or _utc_now()) > self.verification_expiry

    def copy(self) -> DomainBinding:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "status": self.status.value,
            "verification_token": self.verification_token,
            "verification_expiry": _format_dt(self.verification_expiry),
            "provisioned_at": _format_dt(self.provisioned_at),
            "last_checked_at": _format_dt(self.last_checked_at),
            "last_error": self.last_error,
            "last_dns_status": self.last_dns_status,
            "provisioning_claim": self.provisioning_claim,
            "provisioning_claimed_at": _format_dt(self.provisioning_claimed_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": _format_dt(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainBinding:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            tenant_id=data["tenant_id"],
            domain=data["domain"],
            status=BindingStatus(data.get("status", BindingStatus.PENDING.value)),
            verification_token=data.get("verification_token"),
            verification_expiry=_parse_dt(data.get("verification_expiry")),
            provisioned_at=_parse_dt(data.get("provisioned_at")),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            last_error=data.get("last_error"),
            last_dns_status=data.get("last_dns_status"),
            provisioning_claim=data.get("provisioning_claim"),
            provisioning_claimed_at=_parse_dt(data.get("provisioning_claimed_at")),
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
            updated_at=_parse_dt(data.get("updated_at")),
            version=data.get("version", 0),
        )


class BaseBindingStore(ABC):
    """Interface of the domain record store.

    The store is the only shared mutable state. ``claim`` enforces domain
    uniqueness across tenants and ``update`` is a conditional write on
    ``version``; everything else is a plain read or delete. Returned
    bindings are copies; mutate them and write them back with ``update``.
    """

    @abstractmethod
    async def get(self, tenant_id: str) -> DomainBinding | None:
        """Get the binding owned by a tenant."""

    @abstractmethod
    async def get_by_domain(self, domain: str) -> DomainBinding | None:
        """Get the binding currently holding a domain."""

    @abstractmethod
    async def claim(self, binding: DomainBinding) -> DomainBinding:
        """Create or overwrite the tenant's binding.

        Raises:
            ConflictError: If another tenant holds the domain.
        """

    @abstractmethod
    async def update(self, binding: DomainBinding, expected_version: int) -> bool:
        """Write the binding only if the stored version matches.

        On success the binding's ``version`` and ``updated_at`` are advanced
        in place. Returns False if the row changed or disappeared.
        """

    @abstractmethod
    async def delete(self, tenant_id: str) -> DomainBinding | None:
        """Delete the tenant's binding and return what was removed."""

    @abstractmethod
    async def list_all(self, status: BindingStatus | None = None) -> list[DomainBinding]:
        """List bindings, optionally filtered by status."""

    async def count_by_status(self) -> dict[str, int]:
        """Count bindings per status, plus an ``all`` total."""
        counts = {"all": 0, "PENDING": 0, "ACTIVE": 0, "FAILED": 0}
        for binding in await self.list_all():
            if binding.status == BindingStatus.NONE:
                continue
            counts[binding.status.value] += 1
            counts["all"] += 1
        return counts

    def close(self) -> None:
        """Release backend resources."""


class JSONBindingStore(BaseBindingStore):
    """JSON file-based storage for domain bindings.

    Safe for concurrent coroutines via an asyncio lock. Suitable for a
    single process with moderate binding counts; use the SQLite store when
    several processes share the data.
    """

    def __init__(self, storage_path: str | Path = "bindings.json") -> None:
        """Initialize binding store.

        Args:
            storage_path: Path to the JSON storage file.
        """
        self.storage_path = Path(storage_path)
        self._lock = asyncio.Lock()
        self._cache: dict[str, DomainBinding] | None = None

    async def _load(self) -> dict[str, DomainBinding]:
        """Load bindings from storage file."""
        if self._cache is not None:
            return self._cache

        if not self.storage_path.exists():
            self._cache = {}
            return self._cache

        try:
            content = await asyncio.to_thread(self.storage_path.read_text)
            data = json.loads(content)
            self._cache = {
                tenant_id: DomainBinding.from_dict(item)
                for tenant_id, item in data.get("bindings", {}).items()
            }
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Unreadable binding store, starting empty", path=str(self.storage_path), error=str(e))
            self._cache = {}

        return self._cache

    def _write_file(self, content: str) -> None:
        """Write through a sibling temp file so a failed write leaves the old file intact."""
        fd, tmp_name = tempfile.mkstemp(
            dir=self.storage_path.parent, prefix=f".{self.storage_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.storage_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _save(self, bindings: dict[str, DomainBinding]) -> None:
        """Save bindings to storage file.

        The cache only takes the new mapping once the file write succeeds.
        """
        data = {"bindings": {tenant_id: b.to_dict() for tenant_id, b in bindings.items()}}
        content = json.dumps(data, indent=2)
        await asyncio.to_thread(self._write_file, content)
        self._cache = bindings

    async def get(self, tenant_id: str) -> DomainBinding | None:
        async with self._lock:
            bindings = await self._load()
            binding = bindings.get(tenant_id)
            return binding.copy() if binding else None

    async def get_by_domain(self, domain: str) -> DomainBinding | None:
        async with self._lock:
            bindings = await self._load()
            for binding in bindings.values():
                if binding.domain == domain and binding.holds_domain:
                    return binding.copy()
            return None

    async def claim(self, binding: DomainBinding) -> DomainBinding:
        async with self._lock:
            bindings = await self._load()
            for other in bindings.values():
                if (
                    other.domain == binding.domain
                    and other.tenant_id != binding.tenant_id
                    and other.holds_domain
                ):
                    raise ConflictError(f"Domain {binding.domain} is already claimed by another tenant")

            existing = bindings.get(binding.tenant_id)
            stored = binding.copy()
            stored.version = (existing.version if existing else 0) + 1
            stored.updated_at = _utc_now()
            if existing:
                stored.created_at = existing.created_at
            await self._save({**bindings, binding.tenant_id: stored})
            return stored.copy()

    async def update(self, binding: DomainBinding, expected_version: int) -> bool:
        async with self._lock:
            bindings = await self._load()
            current = bindings.get(binding.tenant_id)
            if current is None or current.version != expected_version:
                return False

            stored = binding.copy()
            stored.version = expected_version + 1
            stored.updated_at = _utc_now()
            await self._save({**bindings, binding.tenant_id: stored})

            binding.version = stored.version
            binding.updated_at = stored.updated_at
            return True

    async def delete(self, tenant_id: str) -> DomainBinding | None:
        async with self._lock:
            bindings = await self._load()
            if tenant_id not in bindings:
                return None
            remaining = {key: b for key, b in bindings.items() if key != tenant_id}
            await self._save(remaining)
            return bindings[tenant_id]

    async def list_all(self, status: BindingStatus | None = None) -> list[DomainBinding]:
        async with self._lock:
            bindings = await self._load()
            return [
                b.copy() for b in bindings.values() if status is None or b.status == status
            ]

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory cache.

        Call this after external modifications to the storage file.
        """
        self._cache = None
