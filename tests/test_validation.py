"""Tests for domain normalization and validation."""

from __future__ import annotations

import pytest

from domainkeeper.domains.validation import (
    MAX_DOMAIN_LENGTH,
    normalize_domain,
    validate_domain_format,
    verification_record_name,
)


class TestNormalizeDomain:
    """Tests for normalize_domain."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Shop.Example.COM", "shop.example.com"),
            ("  shop.example.com  ", "shop.example.com"),
            ("https://shop.example.com/", "shop.example.com"),
            ("http://shop.example.com/catalog?x=1", "shop.example.com"),
            ("shop.example.com:8443", "shop.example.com"),
            ("shop.example.com.", "shop.example.com"),
            ("www.shop.example.com", "shop.example.com"),
            ("https://WWW.Shop.Example.com:8443/catalog", "shop.example.com"),
        ],
    )
    def test_normalization(self, raw, expected):
        """Test that user input is reduced to a bare hostname."""
        assert normalize_domain(raw) == expected

    def test_empty(self):
        """Test empty and None input."""
        assert normalize_domain("") == ""
        assert normalize_domain(None) == ""


class TestValidateDomainFormat:
    """Tests for validate_domain_format."""

    def test_valid_domains(self):
        """Test that ordinary domains pass."""
        for domain in ("example.com", "shop.example.com", "my-shop.example.co.uk", "a1.io"):
            valid, error = validate_domain_format(domain)
            assert valid is True, domain
            assert error is None

    def test_empty_domain(self):
        """Test that an empty domain is rejected."""
        valid, error = validate_domain_format("")
        assert valid is False
        assert "required" in error

    def test_too_long(self):
        """Test the maximum length."""
        domain = ("a" * 60 + ".") * 5 + "com"
        assert len(domain) > MAX_DOMAIN_LENGTH

        valid, error = validate_domain_format(domain)

        assert valid is False
        assert "maximum length" in error

    def test_ip_literal_rejected(self):
        """Test that IP addresses are rejected."""
        for domain in ("203.0.113.10", "2001:db8::1"):
            valid, error = validate_domain_format(domain)
            assert valid is False
            assert "IP addresses" in error

    def test_bad_syntax(self):
        """Test malformed names."""
        for domain in ("localhost", "-shop.example.com", "shop-.example.com", "shop..example.com", "shop.c", "sh op.com"):
            valid, _ = validate_domain_format(domain)
            assert valid is False, domain

    def test_blocked_tld(self):
        """Test that blocked TLDs are rejected."""
        valid, error = validate_domain_format("printer.local", blocked_tlds=[".local"])
        assert valid is False
        assert "extension" in error

    def test_system_domain_and_subdomains(self):
        """Test that platform domains are reserved."""
        system = ["domainkeeper.app"]

        for domain in ("domainkeeper.app", "shop.domainkeeper.app"):
            valid, error = validate_domain_format(domain, system_domains=system)
            assert valid is False
            assert "System domains" in error

        valid, _ = validate_domain_format("notdomainkeeper.app", system_domains=system)
        assert valid is True


def test_verification_record_name():
    """Test the TXT record name."""
    assert (
        verification_record_name("shop.example.com", "_domainkeeper-verify")
        == "_domainkeeper-verify.shop.example.com"
    )
