"""Tests for domain binding storage."""

from __future__ import annotations

import asyncio
import json
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from domainkeeper.core.exceptions import ConflictError
from domainkeeper.domains import BindingStatus, DomainBinding, JSONBindingStore


def _binding(tenant_id: str = "tenant-1", domain: str = "shop.example.com", **kwargs) -> DomainBinding:
    return DomainBinding(
        tenant_id=tenant_id,
        domain=domain,
        verification_token=kwargs.pop("verification_token", "domainkeeper-verify-abc123"),
        **kwargs,
    )


class TestDomainBinding:
    """Tests for the DomainBinding dataclass."""

    def test_to_dict(self):
        """Test serialization to dictionary."""
        binding = _binding(
            status=BindingStatus.ACTIVE,
            provisioned_at=datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
            created_at=datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
            last_dns_status={"txt_verified": True},
            version=4,
        )

        data = binding.to_dict()

        assert data["tenant_id"] == "tenant-1"
        assert data["domain"] == "shop.example.com"
        assert data["status"] == "ACTIVE"
        assert data["provisioned_at"] == "2024-01-15T10:30:00+00:00"
        assert data["last_error"] is None
        assert data["last_dns_status"] == {"txt_verified": True}
        assert data["version"] == 4

    def test_from_dict(self):
        """Test deserialization from dictionary."""
        data = {
            "tenant_id": "tenant-1",
            "domain": "shop.example.com",
            "status": "FAILED",
            "verification_token": None,
            "verification_expiry": "2024-01-17T10:00:00+00:00",
            "last_error": "Verification token expired",
            "created_at": "2024-01-15T10:00:00+00:00",
            "version": 2,
        }

        binding = DomainBinding.from_dict(data)

        assert binding.status == BindingStatus.FAILED
        assert binding.verification_expiry == datetime(2024, 1, 17, 10, 0, tzinfo=UTC)
        assert binding.last_error == "Verification token expired"
        assert binding.provisioned_at is None
        assert binding.version == 2

    def test_roundtrip_preserves_fields(self):
        """Test that to_dict/from_dict keeps every field."""
        binding = _binding(
            verification_expiry=datetime(2024, 1, 17, tzinfo=UTC),
            last_checked_at=datetime(2024, 1, 15, 11, 0, tzinfo=UTC),
            provisioning_claim="attempt-1",
            provisioning_claimed_at=datetime(2024, 1, 15, 11, 0, tzinfo=UTC),
        )

        assert DomainBinding.from_dict(binding.to_dict()) == binding

    def test_is_verification_expired(self):
        """Test expiry is strictly after the expiry instant."""
        expiry = datetime(2024, 1, 17, 10, 0, tzinfo=UTC)
        binding = _binding(verification_expiry=expiry)

        assert binding.is_verification_expired(expiry - timedelta(seconds=1)) is False
        assert binding.is_verification_expired(expiry) is False
        assert binding.is_verification_expired(expiry + timedelta(seconds=1)) is True

    def test_no_expiry_never_expires(self):
        """Test that a binding without expiry is not expired."""
        assert _binding(verification_expiry=None).is_verification_expired() is False

    def test_holds_domain(self):
        """Test that every status except NONE holds the domain."""
        assert _binding(status=BindingStatus.PENDING).holds_domain
        assert _binding(status=BindingStatus.ACTIVE).holds_domain
        assert _binding(status=BindingStatus.FAILED).holds_domain
        assert not _binding(status=BindingStatus.NONE).holds_domain


class TestJSONBindingStore:
    """Tests for JSONBindingStore."""

    @pytest.fixture
    def temp_storage(self):
        """Create a temporary storage file."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            f.write("{}")
            return Path(f.name)

    @pytest.mark.asyncio
    async def test_claim_and_get(self, temp_storage):
        """Test claiming a domain and reading it back."""
        store = JSONBindingStore(temp_storage)

        stored = await store.claim(_binding())
        retrieved = await store.get("tenant-1")

        assert retrieved is not None
        assert retrieved.domain == "shop.example.com"
        assert retrieved.version == 1
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, temp_storage):
        """Test getting a tenant without a binding."""
        store = JSONBindingStore(temp_storage)

        assert await store.get("nobody") is None

    @pytest.mark.asyncio
    async def test_get_by_domain(self, temp_storage):
        """Test looking up the holder of a domain."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding())

        holder = await store.get_by_domain("shop.example.com")

        assert holder is not None
        assert holder.tenant_id == "tenant-1"
        assert await store.get_by_domain("other.example.com") is None

    @pytest.mark.asyncio
    async def test_claim_conflict(self, temp_storage):
        """Test that a second tenant cannot claim a held domain."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding("tenant-1"))

        with pytest.raises(ConflictError):
            await store.claim(_binding("tenant-2"))

        holder = await store.get_by_domain("shop.example.com")
        assert holder.tenant_id == "tenant-1"

    @pytest.mark.asyncio
    async def test_failed_binding_still_holds_domain(self, temp_storage):
        """Test that FAILED bindings block other tenants."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding("tenant-1", status=BindingStatus.FAILED))

        with pytest.raises(ConflictError):
            await store.claim(_binding("tenant-2"))

    @pytest.mark.asyncio
    async def test_claim_overwrites_same_tenant(self, temp_storage):
        """Test that re-claiming replaces the tenant's binding."""
        store = JSONBindingStore(temp_storage)
        first = await store.claim(_binding(verification_token="old"))

        second = await store.claim(_binding(domain="new.example.com", verification_token="new"))

        assert second.version == 2
        assert second.created_at == first.created_at
        retrieved = await store.get("tenant-1")
        assert retrieved.domain == "new.example.com"
        assert retrieved.verification_token == "new"
        assert await store.get_by_domain("shop.example.com") is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_one_wins(self, temp_storage):
        """Test that racing tenants cannot both claim a domain."""
        store = JSONBindingStore(temp_storage)

        results = await asyncio.gather(
            store.claim(_binding("tenant-1")),
            store.claim(_binding("tenant-2")),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1

    @pytest.mark.asyncio
    async def test_update_with_matching_version(self, temp_storage):
        """Test a conditional update that succeeds."""
        store = JSONBindingStore(temp_storage)
        binding = await store.claim(_binding())

        binding.last_error = "TXT lookup timed out"
        assert await store.update(binding, binding.version) is True

        assert binding.version == 2
        retrieved = await store.get("tenant-1")
        assert retrieved.last_error == "TXT lookup timed out"
        assert retrieved.version == 2

    @pytest.mark.asyncio
    async def test_update_with_stale_version(self, temp_storage):
        """Test that a stale writer loses."""
        store = JSONBindingStore(temp_storage)
        binding = await store.claim(_binding())
        stale = binding.copy()

        binding.status = BindingStatus.ACTIVE
        assert await store.update(binding, binding.version) is True

        stale.last_error = "late write"
        assert await store.update(stale, stale.version) is False

        retrieved = await store.get("tenant-1")
        assert retrieved.status == BindingStatus.ACTIVE
        assert retrieved.last_error is None

    @pytest.mark.asyncio
    async def test_update_missing_binding(self, temp_storage):
        """Test that updating a deleted binding fails."""
        store = JSONBindingStore(temp_storage)
        binding = await store.claim(_binding())
        await store.delete("tenant-1")

        assert await store.update(binding, binding.version) is False

    @pytest.mark.asyncio
    async def test_returned_bindings_are_copies(self, temp_storage):
        """Test that mutating a returned binding does not touch storage."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding())

        retrieved = await store.get("tenant-1")
        retrieved.status = BindingStatus.ACTIVE

        again = await store.get("tenant-1")
        assert again.status == BindingStatus.PENDING

    @pytest.mark.asyncio
    async def test_delete(self, temp_storage):
        """Test deleting releases the domain."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding("tenant-1"))

        removed = await store.delete("tenant-1")

        assert removed is not None
        assert removed.domain == "shop.example.com"
        assert await store.get("tenant-1") is None
        await store.claim(_binding("tenant-2"))

    @pytest.mark.asyncio
    async def test_delete_nonexistent(self, temp_storage):
        """Test deleting a tenant without a binding."""
        store = JSONBindingStore(temp_storage)

        assert await store.delete("nobody") is None

    @pytest.mark.asyncio
    async def test_list_all_and_filter(self, temp_storage):
        """Test listing bindings with and without a status filter."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding("tenant-1", "a.example.com"))
        await store.claim(_binding("tenant-2", "b.example.com", status=BindingStatus.ACTIVE))
        await store.claim(_binding("tenant-3", "c.example.com", status=BindingStatus.FAILED))

        assert len(await store.list_all()) == 3
        active = await store.list_all(BindingStatus.ACTIVE)
        assert [b.domain for b in active] == ["b.example.com"]

    @pytest.mark.asyncio
    async def test_count_by_status(self, temp_storage):
        """Test status counts."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding("tenant-1", "a.example.com"))
        await store.claim(_binding("tenant-2", "b.example.com"))
        await store.claim(_binding("tenant-3", "c.example.com", status=BindingStatus.ACTIVE))

        counts = await store.count_by_status()

        assert counts == {"all": 3, "PENDING": 2, "ACTIVE": 1, "FAILED": 0}

    @pytest.mark.asyncio
    async def test_persistence(self, temp_storage):
        """Test that data persists across store instances."""
        store1 = JSONBindingStore(temp_storage)
        await store1.claim(_binding())

        store2 = JSONBindingStore(temp_storage)
        retrieved = await store2.get("tenant-1")

        assert retrieved is not None
        assert retrieved.verification_token == "domainkeeper-verify-abc123"

        data = json.loads(temp_storage.read_text())
        assert "tenant-1" in data["bindings"]

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, temp_storage):
        """Test that an unreadable file is treated as empty."""
        temp_storage.write_text("{not json")
        store = JSONBindingStore(temp_storage)

        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_failed_write_does_not_claim(self, temp_storage):
        """Test that a claim whose write fails leaves the domain free."""
        store = JSONBindingStore(temp_storage)

        with patch("domainkeeper.domains.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await store.claim(_binding("tenant-1"))

        assert await store.get("tenant-1") is None
        stored = await store.claim(_binding("tenant-2"))
        assert stored.tenant_id == "tenant-2"
        assert list(temp_storage.parent.glob(f".{temp_storage.name}.*.tmp")) == []

    @pytest.mark.asyncio
    async def test_failed_write_keeps_update_and_delete_unapplied(self, temp_storage):
        """Test that failed updates and deletes leave the cached binding as it was."""
        store = JSONBindingStore(temp_storage)
        stored = await store.claim(_binding())

        changed = stored.copy()
        changed.status = BindingStatus.ACTIVE
        with patch("domainkeeper.domains.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await store.update(changed, stored.version)
            with pytest.raises(OSError):
                await store.delete("tenant-1")

        current = await store.get("tenant-1")
        assert current.status == BindingStatus.PENDING
        assert current.version == stored.version
        assert changed.version == stored.version
        assert await store.update(changed, stored.version) is True

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, temp_storage):
        """Test that invalidating the cache re-reads the file."""
        store = JSONBindingStore(temp_storage)
        await store.claim(_binding())

        temp_storage.write_text(json.dumps({"bindings": {}}))
        assert await store.get("tenant-1") is not None

        store.invalidate_cache()
        assert await store.get("tenant-1") is None
