"""Provisioning orchestrator for custom domain bindings.

This module is the public interface of domainkeeper:
- Binding requests with token issuance and DNS instructions
- Verification (on demand, from status polls, or from the sweeper)
- Provisioning exactly once per transition into ACTIVE
- Removal with provisioning teardown

Usage:
    orchestrator = ProvisioningOrchestrator.from_config(get_config())

    # Tenant submits a domain
    result = await orchestrator.request_binding("tenant-123", "shop.example.com")
    print(result.instructions.render())

    # UI polls while DNS propagates
    status = await orchestrator.get_status("tenant-123")

    # Human presses "check now"
    status = await orchestrator.trigger_verification("tenant-123")

State machine:
    NONE -> PENDING     request_binding
    PENDING -> PENDING  verification with a missing record, or a retryable provisioning error
    PENDING -> ACTIVE   both records seen in one check before expiry, and provisioning succeeded
    PENDING -> FAILED   token expired, or provisioning reported a terminal error
    any -> PENDING      reissue_token (or request_binding for a new domain)

Concurrency:
    Verifications of one tenant are serialized by a per-tenant lock, and
    every write is a conditional update on the binding version. Before
    provisioning, an attempt records a claim on the binding; the lock is
    released while the provisioning API runs, and the result is committed
    only if the claim is still ours. Other attempts that see a live claim
    report "provisioning in progress" instead of provisioning again.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from domainkeeper.core.config import DomainKeeperConfig, StorageSettings, get_config
from domainkeeper.core.exceptions import (
    BindingNotFoundError,
    InvalidDomainError,
    ProvisioningError,
    TokenExpiredError,
)
from domainkeeper.domains.instructions import DNSInstructions, build_instructions
from domainkeeper.domains.provisioning import BaseProvisioner, HTTPProvisioner, SimulatedProvisioner
from domainkeeper.domains.sqlite_store import SQLiteBindingStore
from domainkeeper.domains.storage import (
    BaseBindingStore,
    BindingStatus,
    DomainBinding,
    JSONBindingStore,
)
from domainkeeper.domains.tokens import TokenIssuer
from domainkeeper.domains.validation import normalize_domain, validate_domain_format
from domainkeeper.domains.verification import DNSStatus, DNSVerifier

logger = structlog.get_logger()

_COMMIT_ATTEMPTS = 3


def create_store(settings: StorageSettings) -> BaseBindingStore:
    """Create the binding store selected by the storage settings."""
    if settings.backend == "sqlite":
        path = settings.path
        if path == "bindings.json":
            path = "bindings.db"
        return SQLiteBindingStore(path)
    return JSONBindingStore(Path(settings.path))


@dataclass
class StatusResponse:
    """What a caller sees for a tenant's binding."""

    tenant_id: str
    status: BindingStatus
    domain: str | None = None
    dns_status: DNSStatus | None = None
    instructions: DNSInstructions | None = None
    error: str | None = None
    message: str | None = None
    provisioned_at: datetime | None = None
    last_checked_at: datetime | None = None
    verification_expiry: datetime | None = None
    is_verification_expired: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "domain": self.domain,
            "dns_status": self.dns_status.to_dict() if self.dns_status else None,
            "instructions": self.instructions.to_dict() if self.instructions else None,
            "error": self.error,
            "message": self.message,
            "provisioned_at": self.provisioned_at.isoformat() if self.provisioned_at else None,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "verification_expiry": (
                self.verification_expiry.isoformat() if self.verification_expiry else None
            ),
            "is_verification_expired": self.is_verification_expired,
        }


@dataclass
class BindingRequestResult:
    """Token and DNS instructions returned for a binding request."""

    tenant_id: str
    domain: str
    status: BindingStatus
    token: str | None
    expires_at: datetime | None
    instructions: DNSInstructions

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "status": self.status.value,
            "token": self.token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "instructions": self.instructions.to_dict(),
        }


class ProvisioningOrchestrator:
    """Drives domain bindings through verification and provisioning."""

    def __init__(
        self,
        store: BaseBindingStore,
        verifier: DNSVerifier,
        provisioner: BaseProvisioner,
        config: DomainKeeperConfig | None = None,
        issuer: TokenIssuer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Domain record store.
            verifier: DNS verifier used for every check.
            provisioner: Certificate/routing provisioning API.
            config: Settings. Defaults to the global configuration.
            issuer: Token issuer. Built from the config when omitted.
            clock: Returns the current UTC time. Injected by tests.
        """
        self.config = config or get_config()
        self.store = store
        self.verifier = verifier
        self.provisioner = provisioner
        self._clock = clock or (lambda: datetime.now(UTC))
        self.issuer = issuer or TokenIssuer(
            store,
            ttl=timedelta(hours=self.config.verification.token_ttl_hours),
            token_bytes=self.config.verification.token_bytes,
            prefix=self.config.verification.token_prefix,
            clock=self._clock,
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @classmethod
    def from_config(cls, config: DomainKeeperConfig | None = None) -> ProvisioningOrchestrator:
        """Build an orchestrator with the store, verifier and provisioner the config selects."""
        config = config or get_config()

        verifier = DNSVerifier(
            routing_host=config.dns.routing_host,
            ingress_ips=config.dns.ingress_ips,
            txt_record_prefix=config.verification.txt_record_prefix,
            nameservers=config.dns.nameservers,
            query_timeout=config.dns.query_timeout,
            retry_backoff=config.dns.retry_backoff,
        )

        provisioner: BaseProvisioner
        if config.provisioning.api_url:
            provisioner = HTTPProvisioner(
                config.provisioning.api_url,
                api_token=config.provisioning.api_token,
                timeout=config.provisioning.timeout,
                teardown_timeout=config.provisioning.teardown_timeout,
            )
        else:
            logger.info("No provisioning API configured, using simulated provisioner")
            provisioner = SimulatedProvisioner()

        return cls(create_store(config.storage), verifier, provisioner, config=config)

    async def close(self) -> None:
        await self.provisioner.close()
        self.store.close()

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _instructions(self, domain: str, token: str | None, dns_status: DNSStatus | None = None) -> DNSInstructions:
        return build_instructions(
            domain,
            token,
            self.config.dns,
            self.config.verification.txt_record_prefix,
            dns_status,
        )

    def _claim_is_live(self, binding: DomainBinding, now: datetime) -> bool:
        if not binding.provisioning_claim or binding.provisioning_claimed_at is None:
            return False
        lease = timedelta(seconds=self.config.provisioning.claim_lease)
        return now - binding.provisioning_claimed_at < lease

    def _build_response(
        self,
        tenant_id: str,
        binding: DomainBinding | None,
        dns_status: DNSStatus | None = None,
        message: str | None = None,
    ) -> StatusResponse:
        if binding is None:
            return StatusResponse(
                tenant_id=tenant_id,
                status=BindingStatus.NONE,
                message="No custom domain configured",
            )

        if dns_status is None and binding.last_dns_status:
            dns_status = DNSStatus.from_dict(binding.last_dns_status)

        instructions = None
        if binding.status == BindingStatus.PENDING:
            instructions = self._instructions(binding.domain, binding.verification_token, dns_status)

        if message is None:
            if binding.status == BindingStatus.ACTIVE:
                message = "Domain is active"
            elif binding.status == BindingStatus.FAILED:
                message = "Verification failed. Request a new verification token to try again."
            elif dns_status is None:
                message = "Waiting for DNS records"
            elif dns_status.verified:
                message = "DNS verified, provisioning pending"
            else:
                missing = []
                if not dns_status.txt_verified:
                    missing.append("ownership TXT record")
                if not dns_status.routing_verified:
                    missing.append("routing A/CNAME record")
                message = f"Waiting for {' and '.join(missing)}"

        return StatusResponse(
            tenant_id=tenant_id,
            status=binding.status,
            domain=binding.domain,
            dns_status=dns_status,
            instructions=instructions,
            error=binding.last_error,
            message=message,
            provisioned_at=binding.provisioned_at,
            last_checked_at=binding.last_checked_at,
            verification_expiry=binding.verification_expiry,
            is_verification_expired=binding.is_verification_expired(self._clock()),
        )

    async def _commit(self, binding: DomainBinding) -> DomainBinding | None:
        """Conditionally write the binding; on a lost race return the stored state."""
        if await self.store.update(binding, binding.version):
            return binding
        logger.debug("Binding changed concurrently", tenant_id=binding.tenant_id, domain=binding.domain)
        return await self.store.get(binding.tenant_id)

    async def _teardown(self, domain: str, tenant_id: str, reason: str) -> None:
        """Tear down provisioning for a domain. Failures are logged, never raised."""
        try:
            await self.provisioner.teardown(domain, tenant_id)
        except Exception as e:
            logger.error(
                "Provisioning teardown failed",
                tenant_id=tenant_id,
                domain=domain,
                reason=reason,
                error=str(e),
            )
            return
        logger.info("Provisioning torn down", tenant_id=tenant_id, domain=domain, reason=reason)

    async def request_binding(self, tenant_id: str, domain: str) -> BindingRequestResult:
        """Bind a custom domain to a tenant and issue an ownership token.

        Re-requesting the domain a tenant already has ACTIVE returns the
        active binding unchanged. Requesting any other domain replaces the
        tenant's binding, tearing down the old domain if it was ACTIVE.

        Raises:
            InvalidDomainError: If the domain is malformed or reserved.
            ConflictError: If another tenant holds the domain.
        """
        normalized = normalize_domain(domain)
        valid, error = validate_domain_format(
            normalized,
            system_domains=self.config.orchestrator.system_domains,
            blocked_tlds=self.config.orchestrator.blocked_tlds,
        )
        if not valid:
            raise InvalidDomainError(error or f"Invalid domain: {domain}")

        logger.info("Binding requested", tenant_id=tenant_id, domain=normalized)

        async with self._lock_for(tenant_id):
            previous = await self.store.get(tenant_id)
            if (
                previous is not None
                and previous.domain == normalized
                and previous.status == BindingStatus.ACTIVE
            ):
                verified = DNSStatus(domain=normalized, txt_verified=True, routing_verified=True)
                return BindingRequestResult(
                    tenant_id=tenant_id,
                    domain=normalized,
                    status=previous.status,
                    token=None,
                    expires_at=None,
                    instructions=self._instructions(normalized, None, verified),
                )

            binding, issued = await self.issuer.issue_token(tenant_id, normalized)

        if previous is not None and previous.status == BindingStatus.ACTIVE:
            await self._teardown(previous.domain, tenant_id, reason="domain_changed")

        return BindingRequestResult(
            tenant_id=tenant_id,
            domain=binding.domain,
            status=binding.status,
            token=issued.token,
            expires_at=issued.expires_at,
            instructions=self._instructions(binding.domain, issued.token),
        )

    async def reissue_token(self, tenant_id: str) -> BindingRequestResult:
        """Issue a fresh token for the tenant's current domain.

        Works from any state and returns the binding to PENDING with no
        error. The previous token stops matching immediately.

        Raises:
            BindingNotFoundError: If the tenant has no binding.
        """
        async with self._lock_for(tenant_id):
            previous = await self.store.get(tenant_id)
            if previous is None:
                raise BindingNotFoundError(f"Tenant {tenant_id} has no custom domain")
            binding, issued = await self.issuer.issue_token(tenant_id, previous.domain)

        if previous.status == BindingStatus.ACTIVE:
            await self._teardown(previous.domain, tenant_id, reason="token_reissued")

        return BindingRequestResult(
            tenant_id=tenant_id,
            domain=binding.domain,
            status=binding.status,
            token=issued.token,
            expires_at=issued.expires_at,
            instructions=self._instructions(binding.domain, issued.token),
        )

    async def get_status(self, tenant_id: str) -> StatusResponse:
        """Report a tenant's binding.

        PENDING bindings are verified live, unless the last check is younger
        than the minimum poll interval and the token has not expired, in
        which case that check is reported. ACTIVE and FAILED bindings are
        reported from storage without touching DNS.
        """
        binding = await self.store.get(tenant_id)
        if binding is None or binding.status != BindingStatus.PENDING:
            return self._build_response(tenant_id, binding)

        now = self._clock()
        if (
            binding.last_checked_at is not None
            and binding.last_dns_status
            and not binding.is_verification_expired(now)
        ):
            age = (now - binding.last_checked_at).total_seconds()
            if age < self.config.verification.min_poll_interval:
                return self._build_response(tenant_id, binding)

        return await self._verify(tenant_id)

    async def trigger_verification(self, tenant_id: str) -> StatusResponse:
        """Check DNS now and advance the binding if both records are in place.

        Raises:
            BindingNotFoundError: If the tenant has no binding.
        """
        if await self.store.get(tenant_id) is None:
            raise BindingNotFoundError(f"Tenant {tenant_id} has no custom domain")
        return await self._verify(tenant_id)

    async def remove_binding(self, tenant_id: str) -> bool:
        """Delete the tenant's binding and release the domain.

        Provisioning is torn down if the binding was ACTIVE. A failed
        teardown is logged and does not block removal.

        Returns:
            True if a binding was removed.
        """
        async with self._lock_for(tenant_id):
            removed = await self.store.delete(tenant_id)

        if removed is None:
            return False

        if removed.status == BindingStatus.ACTIVE:
            await self._teardown(removed.domain, tenant_id, reason="binding_removed")

        logger.info(
            "Binding removed",
            tenant_id=tenant_id,
            domain=removed.domain,
            status=removed.status.value,
        )
        return True

    async def list_bindings(self, status: BindingStatus | None = None) -> list[DomainBinding]:
        """List all bindings, optionally filtered by status."""
        return await self.store.list_all(status)

    async def status_counts(self) -> dict[str, int]:
        return await self.store.count_by_status()

    async def sweep_pending(self) -> dict[str, int]:
        """Verify every PENDING binding once.

        Uses the same entry point as an on-demand verification.

        Returns:
            Counts of bindings checked, activated, failed and errored.
        """
        summary = {"checked": 0, "activated": 0, "failed": 0, "errors": 0}
        for binding in await self.store.list_all(BindingStatus.PENDING):
            try:
                response = await self.trigger_verification(binding.tenant_id)
            except BindingNotFoundError:
                continue
            except Exception as e:
                summary["errors"] += 1
                logger.error(
                    "Sweep verification failed",
                    tenant_id=binding.tenant_id,
                    domain=binding.domain,
                    error=str(e),
                )
                continue

            summary["checked"] += 1
            if response.status == BindingStatus.ACTIVE:
                summary["activated"] += 1
            elif response.status == BindingStatus.FAILED:
                summary["failed"] += 1

        logger.debug("Sweep complete", **summary)
        return summary

    async def _verify(self, tenant_id: str) -> StatusResponse:
        """Run one verification attempt.

        The DNS check runs within the verification time budget. A claimed
        binding is then provisioned within the provisioning time budget.
        """
        attempt_id = uuid.uuid4().hex
        timeout = self.config.orchestrator.verify_timeout
        try:
            async with asyncio.timeout(timeout):
                outcome = await self._verify_attempt(tenant_id, attempt_id)
        except TimeoutError:
            return await self._record_timeout(tenant_id, attempt_id, "Verification", timeout)

        if isinstance(outcome, StatusResponse):
            return outcome

        claimed, dns_status = outcome
        timeout = self.config.provisioning.timeout
        try:
            async with asyncio.timeout(timeout):
                return await self._provision(claimed, attempt_id, dns_status)
        except TimeoutError:
            return await self._record_timeout(tenant_id, attempt_id, "Provisioning", timeout)

    async def _verify_attempt(
        self, tenant_id: str, attempt_id: str
    ) -> StatusResponse | tuple[DomainBinding, DNSStatus]:
        """Check DNS under the tenant lock.

        Returns the response when the attempt ends here, or the claimed
        binding and its passing check when provisioning should follow.
        """
        async with self._lock_for(tenant_id):
            binding = await self.store.get(tenant_id)
            if binding is None or binding.status != BindingStatus.PENDING:
                return self._build_response(tenant_id, binding)

            now = self._clock()
            if self._claim_is_live(binding, now):
                return self._build_response(tenant_id, binding, message="Provisioning in progress")

            if binding.verification_token is None or binding.is_verification_expired(now):
                return await self._fail_expired(binding, now)

            dns_status = await self.verifier.check_dns(binding.domain, binding.verification_token)

            # Expiry wins over a passing check.
            now = self._clock()
            if binding.is_verification_expired(now):
                return await self._fail_expired(binding, now, dns_status)

            binding.last_checked_at = now
            binding.last_dns_status = dns_status.to_dict()

            logger.info(
                "DNS check result",
                tenant_id=tenant_id,
                domain=binding.domain,
                txt_verified=dns_status.txt_verified,
                routing_verified=dns_status.routing_verified,
                errors=len(dns_status.errors),
            )

            if not dns_status.verified:
                binding.last_error = dns_status.error_message
                stored = await self._commit(binding)
                return self._build_response(tenant_id, stored, dns_status)

            binding.provisioning_claim = attempt_id
            binding.provisioning_claimed_at = now
            if not await self.store.update(binding, binding.version):
                return self._build_response(tenant_id, await self.store.get(tenant_id))

        return binding, dns_status

    async def _provision(self, claimed: DomainBinding, attempt_id: str, dns_status: DNSStatus) -> StatusResponse:
        """Call the provisioning API for a claimed binding, then commit the outcome."""
        token = claimed.verification_token
        idempotency_key = f"{claimed.tenant_id}:{claimed.domain}:{token}"

        logger.info("Provisioning started", tenant_id=claimed.tenant_id, domain=claimed.domain)
        error: ProvisioningError | None = None
        try:
            await self.provisioner.provision(claimed.domain, claimed.tenant_id, idempotency_key)
        except ProvisioningError as e:
            error = e
        except Exception as e:
            error = ProvisioningError(f"Unexpected provisioning error: {e}", retryable=True)

        if error is None:
            logger.info("Provisioning succeeded", tenant_id=claimed.tenant_id, domain=claimed.domain)
        else:
            logger.warning(
                "Provisioning failed",
                tenant_id=claimed.tenant_id,
                domain=claimed.domain,
                retryable=error.retryable,
                error=error.message,
            )

        async with self._lock_for(claimed.tenant_id):
            for _ in range(_COMMIT_ATTEMPTS):
                current = await self.store.get(claimed.tenant_id)
                if (
                    current is None
                    or current.status != BindingStatus.PENDING
                    or current.provisioning_claim != attempt_id
                    or current.domain != claimed.domain
                    or current.verification_token != token
                ):
                    return await self._abandon_claim(claimed, current, provisioned=error is None)

                now = self._clock()
                current.provisioning_claim = None
                current.provisioning_claimed_at = None
                if error is None:
                    current.status = BindingStatus.ACTIVE
                    current.provisioned_at = now
                    current.last_error = None
                    current.verification_token = None
                elif error.retryable:
                    current.last_error = f"Provisioning failed (will retry): {error.message}"
                else:
                    current.status = BindingStatus.FAILED
                    current.last_error = f"Provisioning failed: {error.message}"
                    current.verification_token = None

                if await self.store.update(current, current.version):
                    break
            else:
                return self._build_response(claimed.tenant_id, await self.store.get(claimed.tenant_id))

        if current.status == BindingStatus.ACTIVE:
            logger.info("Binding activated", tenant_id=current.tenant_id, domain=current.domain)
        elif current.status == BindingStatus.FAILED:
            logger.warning(
                "Binding failed",
                tenant_id=current.tenant_id,
                domain=current.domain,
                reason="provisioning_terminal",
            )
        return self._build_response(current.tenant_id, current, dns_status)

    async def _abandon_claim(
        self,
        claimed: DomainBinding,
        current: DomainBinding | None,
        provisioned: bool,
    ) -> StatusResponse:
        """Handle a provisioning result whose binding changed underneath it.

        If the domain was provisioned but nobody holds it any more, the
        provisioning is torn down.
        """
        logger.info(
            "Provisioning result discarded, binding changed",
            tenant_id=claimed.tenant_id,
            domain=claimed.domain,
        )
        if provisioned and await self.store.get_by_domain(claimed.domain) is None:
            await self._teardown(claimed.domain, claimed.tenant_id, reason="binding_changed")
        return self._build_response(claimed.tenant_id, current)

    async def _fail_expired(
        self,
        binding: DomainBinding,
        now: datetime,
        dns_status: DNSStatus | None = None,
    ) -> StatusResponse:
        error = TokenExpiredError(
            "Verification token expired. Request a new verification token to try again."
        )
        binding.status = BindingStatus.FAILED
        binding.last_error = error.message
        binding.last_checked_at = now
        binding.verification_token = None
        if dns_status is not None:
            binding.last_dns_status = dns_status.to_dict()

        stored = await self._commit(binding)
        logger.warning(
            "Binding failed",
            tenant_id=binding.tenant_id,
            domain=binding.domain,
            reason="token_expired",
            expired_at=binding.verification_expiry.isoformat() if binding.verification_expiry else None,
        )
        return self._build_response(binding.tenant_id, stored, dns_status)

    async def _record_timeout(self, tenant_id: str, attempt_id: str, stage: str, timeout: float) -> StatusResponse:
        """Keep the binding's state, note the timeout and release our claim."""
        message = f"{stage} timed out after {timeout:g}s. The binding is unchanged; try again."
        logger.warning("Attempt timed out", tenant_id=tenant_id, stage=stage.lower(), timeout=timeout)

        current = None
        for _ in range(_COMMIT_ATTEMPTS):
            current = await self.store.get(tenant_id)
            if current is None or current.status != BindingStatus.PENDING:
                break
            current.last_error = message
            current.last_checked_at = self._clock()
            if current.provisioning_claim == attempt_id:
                current.provisioning_claim = None
                current.provisioning_claimed_at = None
            if await self.store.update(current, current.version):
                break
        return self._build_response(tenant_id, current)
