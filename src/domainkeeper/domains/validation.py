"""Domain name normalization and validation.

Tenants type domains in many shapes ("https://Shop.Example.com/", "www.shop.example.com:443").
Everything is reduced to a bare lowercase hostname before it is stored, so
the uniqueness check compares like with like.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable

MAX_DOMAIN_LENGTH = 253

_DOMAIN_RE = re.compile(
    r"^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*\.[a-z]{2,63}$"
)


def normalize_domain(domain: str | None) -> str:
    """Reduce user input to a bare lowercase hostname.

    Strips the scheme, any path, the port, a trailing dot and a leading
    ``www.``.

    Examples:
        >>> normalize_domain("https://WWW.Shop.Example.com:8443/catalog")
        'shop.example.com'
        >>> normalize_domain("shop.example.com.")
        'shop.example.com'
    """
    if not domain:
        return ""

    normalized = domain.strip().lower()
    normalized = re.sub(r"^[a-z][a-z0-9+.-]*://", "", normalized)
    normalized = normalized.split("/", 1)[0]
    normalized = normalized.split(":", 1)[0]
    normalized = normalized.rstrip(".")

    if normalized.startswith("www."):
        normalized = normalized[4:]

    return normalized


def _is_ip_literal(domain: str) -> bool:
    try:
        ipaddress.ip_address(domain)
    except ValueError:
        return False
    return True


def validate_domain_format(
    domain: str,
    system_domains: Iterable[str] = (),
    blocked_tlds: Iterable[str] = (),
) -> tuple[bool, str | None]:
    """Validate a normalized domain.

    Args:
        domain: Domain to validate (normalize it first).
        system_domains: Platform domains that tenants may not bind, including subdomains.
        blocked_tlds: Suffixes such as ".local" that tenants may not bind.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not domain:
        return False, "Domain is required"

    if len(domain) > MAX_DOMAIN_LENGTH:
        return False, f"Domain exceeds maximum length of {MAX_DOMAIN_LENGTH} characters"

    if _is_ip_literal(domain):
        return False, "IP addresses are not allowed. Please use a domain name."

    for tld in blocked_tlds:
        if domain.endswith(tld.lower()):
            return False, "This domain extension is not allowed"

    for system in system_domains:
        system = system.lower()
        if domain == system or domain.endswith(f".{system}"):
            return False, "System domains cannot be used as custom domains"

    if not _DOMAIN_RE.match(domain):
        return False, "Invalid domain format. Example: shop.example.com"

    return True, None


def verification_record_name(domain: str, txt_record_prefix: str) -> str:
    """Name of the TXT record that proves ownership of ``domain``."""
    return f"{txt_record_prefix}.{domain}"
