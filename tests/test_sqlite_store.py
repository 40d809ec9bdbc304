"""Tests for the SQLite binding store."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import pytest

from domainkeeper.core.exceptions import ConflictError
from domainkeeper.domains import BindingStatus, DomainBinding, SQLiteBindingStore


def _binding(tenant_id: str = "tenant-1", domain: str = "shop.example.com", **kwargs) -> DomainBinding:
    return DomainBinding(tenant_id=tenant_id, domain=domain, verification_token="tok", **kwargs)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "bindings.db"


class TestSQLiteBindingStore:
    """Tests for SQLiteBindingStore."""

    @pytest.mark.asyncio
    async def test_claim_and_get(self, db_path):
        """Test claiming and reading back a binding."""
        store = SQLiteBindingStore(db_path)

        stored = await store.claim(_binding(last_dns_status={"txt_verified": False}))
        retrieved = await store.get("tenant-1")

        assert stored.version == 1
        assert retrieved.domain == "shop.example.com"
        assert retrieved.status == BindingStatus.PENDING
        assert retrieved.last_dns_status == {"txt_verified": False}
        store.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        """Test that ':memory:' works across worker threads."""
        store = SQLiteBindingStore(":memory:")

        await store.claim(_binding())

        assert await store.get("tenant-1") is not None
        store.close()

    @pytest.mark.asyncio
    async def test_unique_domain_across_tenants(self, db_path):
        """Test that the unique index rejects a second holder."""
        store = SQLiteBindingStore(db_path)
        await store.claim(_binding("tenant-1"))

        with pytest.raises(ConflictError):
            await store.claim(_binding("tenant-2"))
        store.close()

    @pytest.mark.asyncio
    async def test_conflict_across_store_instances(self, db_path):
        """Test uniqueness holds for two stores sharing one database."""
        store1 = SQLiteBindingStore(db_path)
        store2 = SQLiteBindingStore(db_path)
        await store1.claim(_binding("tenant-1"))

        with pytest.raises(ConflictError):
            await store2.claim(_binding("tenant-2"))
        store1.close()
        store2.close()

    @pytest.mark.asyncio
    async def test_concurrent_claims_one_wins(self, db_path):
        """Test that racing claims for one domain produce a single winner."""
        store = SQLiteBindingStore(db_path)

        results = await asyncio.gather(
            store.claim(_binding("tenant-1")),
            store.claim(_binding("tenant-2")),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert len(await store.list_all()) == 1
        store.close()

    @pytest.mark.asyncio
    async def test_claim_overwrites_same_tenant(self, db_path):
        """Test that a tenant can replace its own binding."""
        store = SQLiteBindingStore(db_path)
        await store.claim(_binding())

        stored = await store.claim(_binding(domain="new.example.com"))

        assert stored.version == 2
        assert stored.domain == "new.example.com"
        assert await store.get_by_domain("shop.example.com") is None
        store.close()

    @pytest.mark.asyncio
    async def test_conditional_update(self, db_path):
        """Test that only the writer holding the current version wins."""
        store = SQLiteBindingStore(db_path)
        binding = await store.claim(_binding())
        stale = binding.copy()

        binding.status = BindingStatus.ACTIVE
        assert await store.update(binding, binding.version) is True
        assert binding.version == 2

        stale.last_error = "late"
        assert await store.update(stale, stale.version) is False

        retrieved = await store.get("tenant-1")
        assert retrieved.status == BindingStatus.ACTIVE
        assert retrieved.last_error is None
        store.close()

    @pytest.mark.asyncio
    async def test_delete_releases_domain(self, db_path):
        """Test that deleting frees the domain for another tenant."""
        store = SQLiteBindingStore(db_path)
        await store.claim(_binding("tenant-1"))

        removed = await store.delete("tenant-1")

        assert removed.tenant_id == "tenant-1"
        assert await store.delete("tenant-1") is None
        await store.claim(_binding("tenant-2"))
        store.close()

    @pytest.mark.asyncio
    async def test_list_and_count(self, db_path):
        """Test listing and counting by status."""
        store = SQLiteBindingStore(db_path)
        await store.claim(_binding("tenant-1", "a.example.com"))
        await store.claim(_binding("tenant-2", "b.example.com", status=BindingStatus.FAILED))

        failed = await store.list_all(BindingStatus.FAILED)
        counts = await store.count_by_status()

        assert [b.tenant_id for b in failed] == ["tenant-2"]
        assert counts == {"all": 2, "PENDING": 1, "ACTIVE": 0, "FAILED": 1}
        store.close()

    @pytest.mark.asyncio
    async def test_persistence(self, db_path):
        """Test that data survives reopening the database."""
        store = SQLiteBindingStore(db_path)
        await store.claim(_binding())
        store.close()

        reopened = SQLiteBindingStore(db_path)
        assert (await reopened.get("tenant-1")).domain == "shop.example.com"
        reopened.close()
