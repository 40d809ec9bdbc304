"""Custom domain binding.

Tenants attach their own domain (e.g. shop.example.com) to the platform,
prove ownership with a DNS TXT record, point the domain at the platform
with an A or CNAME record, and get routing and certificate coverage once
both records are seen.

Features:
- Domain normalization and validation
- Time-bounded ownership tokens
- Independent ownership and routing DNS checks (aiodns)
- Exactly-once provisioning per activation
- JSON file or SQLite storage with per-domain uniqueness

Usage:
    from domainkeeper.domains import ProvisioningOrchestrator

    orchestrator = ProvisioningOrchestrator.from_config()

    result = await orchestrator.request_binding("tenant-123", "shop.example.com")
    status = await orchestrator.trigger_verification("tenant-123")
"""

from domainkeeper.domains.instructions import DNSInstructions, DNSRecordInstruction, build_instructions
from domainkeeper.domains.orchestrator import (
    BindingRequestResult,
    ProvisioningOrchestrator,
    StatusResponse,
    create_store,
)
from domainkeeper.domains.provisioning import BaseProvisioner, HTTPProvisioner, SimulatedProvisioner
from domainkeeper.domains.sqlite_store import SQLiteBindingStore
from domainkeeper.domains.storage import (
    BaseBindingStore,
    BindingStatus,
    DomainBinding,
    JSONBindingStore,
)
from domainkeeper.domains.sweeper import run_sweep_loop, start_sweep_task
from domainkeeper.domains.tokens import IssuedToken, TokenIssuer
from domainkeeper.domains.validation import normalize_domain, validate_domain_format
from domainkeeper.domains.verification import DNSStatus, DNSVerifier, LookupFailure, RoutingKind

__all__ = [
    "ProvisioningOrchestrator",
    "StatusResponse",
    "BindingRequestResult",
    "create_store",
    "BaseBindingStore",
    "JSONBindingStore",
    "SQLiteBindingStore",
    "DomainBinding",
    "BindingStatus",
    "TokenIssuer",
    "IssuedToken",
    "DNSVerifier",
    "DNSStatus",
    "LookupFailure",
    "RoutingKind",
    "BaseProvisioner",
    "HTTPProvisioner",
    "SimulatedProvisioner",
    "DNSInstructions",
    "DNSRecordInstruction",
    "build_instructions",
    "normalize_domain",
    "validate_domain_format",
    "run_sweep_loop",
    "start_sweep_task",
]
