"""Core."""

from .config import (
    DNSSettings,
    DomainKeeperConfig,
    OrchestratorSettings,
    ProvisioningSettings,
    StorageSettings,
    VerificationSettings,
    get_config,
)
from .exceptions import (
    BindingNotFoundError,
    ConflictError,
    DNSLookupError,
    DomainKeeperError,
    InvalidDomainError,
    NotEntitledError,
    ProvisioningError,
    TokenExpiredError,
)

__all__ = [
    "DNSSettings",
    "DomainKeeperConfig",
    "OrchestratorSettings",
    "ProvisioningSettings",
    "StorageSettings",
    "VerificationSettings",
    "get_config",
    "BindingNotFoundError",
    "ConflictError",
    "DNSLookupError",
    "DomainKeeperError",
    "InvalidDomainError",
    "NotEntitledError",
    "ProvisioningError",
    "TokenExpiredError",
]
