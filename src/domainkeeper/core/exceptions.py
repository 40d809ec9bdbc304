"""Error taxonomy for domain binding.

DNS and provisioning errors are normally recovered into a binding's
``last_error`` field and never escape the public entry points. The
remaining errors are raised synchronously to callers because waiting
cannot resolve them.
"""

from __future__ import annotations


class DomainKeeperError(Exception):
    """Base class for all domainkeeper errors."""

    code = "DOMAINKEEPER_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class DNSLookupError(DomainKeeperError):
    """Resolver-level failure (timeout, SERVFAIL, unreachable resolver)."""

    code = "DNS_LOOKUP_FAILED"
    retryable = True


class TokenExpiredError(DomainKeeperError):
    """The verification token expired. Recoverable by re-issuing a token."""

    code = "TOKEN_EXPIRED"


class ProvisioningError(DomainKeeperError):
    """The certificate/routing provisioning side effect failed."""

    code = "PROVISIONING_FAILED"

    def __init__(self, message: str, retryable: bool = True, code: str | None = None) -> None:
        super().__init__(message, code)
        self.retryable = retryable


class ConflictError(DomainKeeperError):
    """The domain is already claimed by another tenant."""

    code = "DOMAIN_CONFLICT"


class NotEntitledError(DomainKeeperError):
    """The tenant's plan does not include custom domains.

    Raised by callers that perform the entitlement check before invoking
    this package; nothing in domainkeeper raises it.
    """

    code = "NOT_ENTITLED"


class InvalidDomainError(DomainKeeperError):
    """The submitted domain name failed validation."""

    code = "INVALID_DOMAIN"


class BindingNotFoundError(DomainKeeperError):
    """The tenant has no domain binding."""

    code = "BINDING_NOT_FOUND"


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single line suitable for terminal output."""
    if isinstance(error, DomainKeeperError):
        return f"{error.message} ({error.code})"
    if isinstance(error, FileNotFoundError):
        return f"File not found: {error.filename or error}"
    if isinstance(error, TimeoutError):
        return "Operation timed out"
    message = str(error)
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"
