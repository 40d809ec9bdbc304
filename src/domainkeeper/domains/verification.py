"""DNS verification for custom domain ownership and routing.

Two independent checks are made for every domain:
1. Ownership: a TXT record at <prefix>.<domain> contains the verification token
2. Routing: the domain has an A record on a platform ingress IP, or a CNAME
   to the platform routing host

Example DNS setup required by the tenant:
    # TXT record (proves ownership)
    _domainkeeper-verify.shop.example.com  TXT  "domainkeeper-verify-9f2c..."

    # One of (routes traffic)
    shop.example.com  A      203.0.113.10
    shop.example.com  CNAME  edge.domainkeeper.app

A lookup that fails at the resolver (timeout, SERVFAIL, unreachable) is
reported as a structured failure for that check only; it never stops the
other check from being reported.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import aiodns
import pycares
import structlog

from domainkeeper.core.exceptions import DNSLookupError
from domainkeeper.domains.validation import verification_record_name

logger = structlog.get_logger()

_MISSING_CODES = frozenset({pycares.errno.ARES_ENOTFOUND, pycares.errno.ARES_ENODATA})
_NETWORK_CODES = frozenset({pycares.errno.ARES_ETIMEOUT, pycares.errno.ARES_ECONNREFUSED})
_FAILURE_CODES = {
    pycares.errno.ARES_ETIMEOUT: "TIMEOUT",
    pycares.errno.ARES_ECONNREFUSED: "UNREACHABLE",
    pycares.errno.ARES_ESERVFAIL: "SERVFAIL",
    pycares.errno.ARES_EREFUSED: "REFUSED",
}


class RoutingKind(Enum):
    """Which record satisfied the routing check."""

    A = "A"
    CNAME = "CNAME"


@dataclass
class LookupFailure:
    """A resolver-level failure for one record lookup."""

    check: str
    record_type: str
    name: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "check": self.check,
            "record_type": self.record_type,
            "name": self.name,
            "code": self.code,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LookupFailure:
        return cls(
            check=data["check"],
            record_type=data["record_type"],
            name=data["name"],
            code=data["code"],
            message=data["message"],
        )


@dataclass
class DNSStatus:
    """Result of checking a domain's ownership and routing records.

    ``details`` explains each check in words the tenant can act on;
    ``errors`` lists resolver failures that prevented a check from
    completing.
    """

    domain: str
    txt_verified: bool = False
    routing_verified: bool = False
    routing_kind: RoutingKind | None = None
    txt_values: list[str] = field(default_factory=list)
    a_addresses: list[str] = field(default_factory=list)
    cname_target: str | None = None
    details: list[str] = field(default_factory=list)
    errors: list[LookupFailure] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def verified(self) -> bool:
        """Both records observed in this same check."""
        return self.txt_verified and self.routing_verified

    @property
    def error_message(self) -> str | None:
        """Resolver failures joined into one line, or None when there were none."""
        if not self.errors:
            return None
        return "; ".join(f"{e.check}: {e.message}" for e in self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "txt_verified": self.txt_verified,
            "routing_verified": self.routing_verified,
            "routing_kind": self.routing_kind.value if self.routing_kind else None,
            "txt_values": list(self.txt_values),
            "a_addresses": list(self.a_addresses),
            "cname_target": self.cname_target,
            "details": list(self.details),
            "errors": [e.to_dict() for e in self.errors],
            "checked_at": self.checked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DNSStatus:
        return cls(
            domain=data["domain"],
            txt_verified=data.get("txt_verified", False),
            routing_verified=data.get("routing_verified", False),
            routing_kind=RoutingKind(data["routing_kind"]) if data.get("routing_kind") else None,
            txt_values=list(data.get("txt_values", [])),
            a_addresses=list(data.get("a_addresses", [])),
            cname_target=data.get("cname_target"),
            details=list(data.get("details", [])),
            errors=[LookupFailure.from_dict(e) for e in data.get("errors", [])],
            checked_at=datetime.fromisoformat(data["checked_at"])
            if data.get("checked_at")
            else datetime.now(UTC),
        )


@dataclass
class _CheckResult:
    verified: bool
    details: list[str]
    errors: list[LookupFailure]
    values: list[str] = field(default_factory=list)


def _answer_data(result: pycares.DNSResult | None, data_type: type) -> list[Any]:
    """Record payloads of one type from the answer section.

    An A or TXT answer may also carry the CNAME chain that led to it.
    """
    if result is None:
        return []
    return [record.data for record in result.answer if isinstance(record.data, data_type)]


def _record_text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value.strip('"').strip("'")


class DNSVerifier:
    """Checks ownership and routing records for custom domains."""

    def __init__(
        self,
        routing_host: str | None = "edge.domainkeeper.app",
        ingress_ips: list[str] | None = None,
        txt_record_prefix: str = "_domainkeeper-verify",
        nameservers: list[str] | None = None,
        query_timeout: float = 3.0,
        retry_backoff: float = 0.5,
    ) -> None:
        """Initialize DNS verifier.

        Args:
            routing_host: Host a CNAME record may point at.
            ingress_ips: IPs an A record may point at.
            txt_record_prefix: Label the ownership TXT record lives under.
            nameservers: Resolvers to query. None uses the system resolver.
            query_timeout: Timeout per record lookup (seconds).
            retry_backoff: Delay before retrying a network-level failure (seconds).
        """
        self.routing_host = routing_host.rstrip(".").lower() if routing_host else None
        self.ingress_ips = list(ingress_ips or [])
        self.txt_record_prefix = txt_record_prefix
        self.nameservers = list(nameservers or [])
        self.query_timeout = query_timeout
        self.retry_backoff = retry_backoff
        self._resolver: aiodns.DNSResolver | None = None

    def _get_resolver(self) -> aiodns.DNSResolver:
        """Get or create DNS resolver with proper event loop handling."""
        if self._resolver is None:
            kwargs: dict[str, Any] = {"timeout": self.query_timeout, "tries": 1}
            if self.nameservers:
                kwargs["nameservers"] = self.nameservers
            if sys.platform == "win32":
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = asyncio.new_event_loop()
                self._resolver = aiodns.DNSResolver(loop=loop, **kwargs)
            else:
                self._resolver = aiodns.DNSResolver(**kwargs)
        return self._resolver

    async def _query(self, name: str, record_type: str) -> pycares.DNSResult | None:
        """Resolve one record type, retrying a network-level failure once.

        Returns:
            The resolver result, or None when the name or record does not exist.

        Raises:
            DNSLookupError: If the resolver could not answer.
        """
        resolver = self._get_resolver()
        for attempt in range(2):
            try:
                return await asyncio.wait_for(
                    resolver.query_dns(name, record_type), timeout=self.query_timeout
                )
            except TimeoutError:
                code, message = "TIMEOUT", f"{record_type} lookup for {name} timed out"
                retryable = True
            except aiodns.error.DNSError as e:
                errno = e.args[0] if e.args else None
                if errno in _MISSING_CODES:
                    return None
                code = _FAILURE_CODES.get(errno, "ERROR")
                detail = e.args[1] if len(e.args) > 1 else str(e)
                message = f"{record_type} lookup for {name} failed: {detail}"
                retryable = errno in _NETWORK_CODES

            if retryable and attempt == 0:
                logger.debug("Retrying DNS lookup", name=name, record_type=record_type, code=code)
                await asyncio.sleep(self.retry_backoff)
                continue
            raise DNSLookupError(message, code=code)

        raise DNSLookupError(f"{record_type} lookup for {name} failed")

    async def check_ownership(self, domain: str, expected_token: str) -> _CheckResult:
        """Check the TXT record at the verification name for the token.

        Several TXT values may live at the same name; any one matching is enough.
        """
        name = verification_record_name(domain, self.txt_record_prefix)
        try:
            result = await self._query(name, "TXT")
        except DNSLookupError as e:
            failure = LookupFailure("ownership", "TXT", name, e.code, e.message)
            return _CheckResult(False, [f"Could not check TXT record at {name}"], [failure])

        values = [_record_text(data.data) for data in _answer_data(result, pycares.TXTRecordData)]
        if expected_token in values:
            return _CheckResult(True, [f"Ownership TXT record found at {name}"], [], values)
        if values:
            return _CheckResult(
                False,
                [f"TXT record at {name} does not contain the expected verification token"],
                [],
                values,
            )
        return _CheckResult(False, [f"Ownership TXT record not found at {name}"], [])

    async def _lookup_a(self, domain: str) -> tuple[list[str], LookupFailure | None]:
        try:
            result = await self._query(domain, "A")
        except DNSLookupError as e:
            return [], LookupFailure("routing", "A", domain, e.code, e.message)
        return [data.addr for data in _answer_data(result, pycares.ARecordData)], None

    async def _lookup_cname(self, domain: str) -> tuple[str | None, LookupFailure | None]:
        try:
            result = await self._query(domain, "CNAME")
        except DNSLookupError as e:
            return None, LookupFailure("routing", "CNAME", domain, e.code, e.message)
        targets = _answer_data(result, pycares.CNAMERecordData)
        if not targets:
            return None, None
        return targets[0].cname.rstrip(".").lower(), None

    def _cname_matches(self, target: str | None) -> bool:
        if not target or not self.routing_host:
            return False
        return target == self.routing_host or target.endswith(f".{self.routing_host}")

    async def check_routing(
        self, domain: str
    ) -> tuple[_CheckResult, RoutingKind | None, list[str], str | None]:
        """Check whether the domain routes to the platform via A or CNAME.

        Returns:
            Tuple of (result, routing_kind, a_addresses, cname_target).
        """
        if not self.ingress_ips and not self.routing_host:
            failure = LookupFailure(
                "routing", "A", domain, "NOT_CONFIGURED", "No ingress IPs or routing host configured"
            )
            return _CheckResult(False, ["Routing target is not configured"], [failure]), None, [], None

        (addresses, a_failure), (target, cname_failure) = await asyncio.gather(
            self._lookup_a(domain), self._lookup_cname(domain)
        )

        if self._cname_matches(target):
            result = _CheckResult(True, [f"Domain points to the platform via CNAME to {target}"], [])
            return result, RoutingKind.CNAME, addresses, target

        matching = [ip for ip in addresses if ip in self.ingress_ips]
        if matching:
            result = _CheckResult(True, [f"Domain points to the platform via A record {matching[0]}"], [])
            return result, RoutingKind.A, addresses, target

        details = []
        if target:
            details.append(f"CNAME points to {target}, expected {self.routing_host}")
        if addresses:
            expected = ", ".join(self.ingress_ips) or "none configured"
            details.append(f"A record points to {', '.join(addresses)}, expected one of {expected}")
        if not target and not addresses:
            options = []
            if self.ingress_ips:
                options.append(f"an A record for {', '.join(self.ingress_ips)}")
            if self.routing_host:
                options.append(f"a CNAME to {self.routing_host}")
            details.append(f"Domain does not point to the platform. Add {' or '.join(options)}")

        errors = [f for f in (a_failure, cname_failure) if f is not None]
        return _CheckResult(False, details, errors), None, addresses, target

    async def check_dns(self, domain: str, expected_token: str) -> DNSStatus:
        """Perform both checks concurrently.

        Args:
            domain: The custom domain to verify.
            expected_token: The token the ownership TXT record must contain.

        Returns:
            DNSStatus reporting each check independently.
        """
        ownership, (routing, kind, addresses, target) = await asyncio.gather(
            self.check_ownership(domain, expected_token),
            self.check_routing(domain),
        )

        status = DNSStatus(
            domain=domain,
            txt_verified=ownership.verified,
            routing_verified=routing.verified,
            routing_kind=kind,
            txt_values=ownership.values,
            a_addresses=addresses,
            cname_target=target,
            details=ownership.details + routing.details,
            errors=ownership.errors + routing.errors,
        )

        logger.debug(
            "DNS check complete",
            domain=domain,
            txt_verified=status.txt_verified,
            routing_verified=status.routing_verified,
            routing_kind=kind.value if kind else None,
            errors=len(status.errors),
        )
        return status
