"""Ownership token issuance.

A token is a random hex string with at least 128 bits of entropy, so it is
safe inside a DNS TXT record and is never shared between two bindings.
Issuing a token always overwrites the tenant's binding: whatever token was
there before stops matching immediately.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from domainkeeper.domains.storage import BaseBindingStore, BindingStatus, DomainBinding

logger = structlog.get_logger()


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted verification token."""

    token: str
    expires_at: datetime


class TokenIssuer:
    """Mints tokens and writes them to the binding store."""

    def __init__(
        self,
        store: BaseBindingStore,
        ttl: timedelta = timedelta(hours=48),
        token_bytes: int = 16,
        prefix: str = "domainkeeper-verify-",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if token_bytes < 16:
            raise ValueError("token_bytes must be at least 16 (128 bits)")
        self.store = store
        self.ttl = ttl
        self.token_bytes = token_bytes
        self.prefix = prefix
        self._clock = clock or (lambda: datetime.now(UTC))

    def generate_token(self) -> str:
        return f"{self.prefix}{secrets.token_hex(self.token_bytes)}"

    async def issue_token(self, tenant_id: str, domain: str) -> tuple[DomainBinding, IssuedToken]:
        """Mint a token for ``domain`` and store it as the tenant's pending binding.

        Any existing binding for the tenant is overwritten: status returns
        to PENDING, the previous token, error and provisioning claim are
        dropped.

        Raises:
            ConflictError: If another tenant holds the domain.
        """
        now = self._clock()
        issued = IssuedToken(token=self.generate_token(), expires_at=now + self.ttl)

        binding = DomainBinding(
            tenant_id=tenant_id,
            domain=domain,
            status=BindingStatus.PENDING,
            verification_token=issued.token,
            verification_expiry=issued.expires_at,
            created_at=now,
        )
        stored = await self.store.claim(binding)

        logger.info(
            "Verification token issued",
            tenant_id=tenant_id,
            domain=domain,
            expires_at=issued.expires_at.isoformat(),
        )
        return stored, issued
