"""DNS setup instructions shown to tenants."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from domainkeeper.core.config import DNSSettings
from domainkeeper.domains.validation import verification_record_name
from domainkeeper.domains.verification import DNSStatus

PROPAGATION_NOTE = (
    "DNS changes can take from a few minutes up to 48 hours to propagate. "
    "Verification succeeds once both records are visible at the same time."
)


@dataclass(frozen=True)
class DNSRecordInstruction:
    """One record the tenant must create at their DNS provider."""

    type: str
    name: str
    value: str
    purpose: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "name": self.name, "value": self.value, "purpose": self.purpose}


@dataclass
class DNSInstructions:
    """The records still needed for a domain, plus a propagation note.

    When the routing record is still missing and both A and CNAME are
    possible, both are listed; either one is enough.
    """

    domain: str
    records: list[DNSRecordInstruction] = field(default_factory=list)
    note: str = PROPAGATION_NOTE

    @property
    def complete(self) -> bool:
        return not self.records

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "records": [r.to_dict() for r in self.records],
            "note": self.note,
        }

    def render(self) -> str:
        """Render as plain text for terminals and emails."""
        if self.complete:
            return f"All DNS records for {self.domain} are in place."

        lines = [f"Add the following DNS records for {self.domain}:", ""]
        for i, record in enumerate(self.records, 1):
            lines.append(f"{i}. {record.type} Record ({record.purpose}):")
            lines.append(f"   Name: {record.name}")
            lines.append(f"   Type: {record.type}")
            lines.append(f"   Value: {record.value}")
            lines.append("")
        lines.append(f"Note: {self.note}")
        return "\n".join(lines)


def build_instructions(
    domain: str,
    token: str | None,
    dns: DNSSettings,
    txt_record_prefix: str,
    dns_status: DNSStatus | None = None,
) -> DNSInstructions:
    """Build the records a tenant still needs to add.

    Args:
        domain: The normalized custom domain.
        token: The current verification token. Without one no TXT record is listed.
        dns: Settings naming the ingress IPs and routing host.
        txt_record_prefix: Label the ownership TXT record lives under.
        dns_status: Result of the latest check. Records it found are omitted.
    """
    records = []

    if token and not (dns_status and dns_status.txt_verified):
        records.append(
            DNSRecordInstruction(
                type="TXT",
                name=verification_record_name(domain, txt_record_prefix),
                value=token,
                purpose="verifies ownership",
            )
        )

    if not (dns_status and dns_status.routing_verified):
        if dns.routing_host:
            records.append(
                DNSRecordInstruction(
                    type="CNAME",
                    name=domain,
                    value=dns.routing_host,
                    purpose="routes traffic to the platform",
                )
            )
        for ip in dns.ingress_ips:
            records.append(
                DNSRecordInstruction(
                    type="A",
                    name=domain,
                    value=ip,
                    purpose="routes traffic to the platform (alternative to CNAME)",
                )
            )

    return DNSInstructions(domain=domain, records=records)
