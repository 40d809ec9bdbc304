"""Configuration types with environment variable support.

Each settings class reads environment variables with its own prefix.
Example: DOMAINKEEPER_DNS_QUERY_TIMEOUT=2.5 sets DNSSettings.query_timeout.

List values are read from the environment as JSON:
    DOMAINKEEPER_DNS_INGRESS_IPS='["203.0.113.10", "203.0.113.11"]'
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SECTIONS = ("verification", "dns", "provisioning", "storage", "orchestrator")


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class VerificationSettings(BaseSettings):
    """Ownership token settings.

    Token lifetime should leave room for DNS propagation while still
    bounding abandoned bindings. 24 to 72 hours is the recommended range.
    """

    model_config = SettingsConfigDict(
        env_prefix="DOMAINKEEPER_VERIFICATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    token_ttl_hours: float = Field(
        default=48.0,
        ge=1.0,
        le=168.0,
        description="Hours a verification token stays valid after issuance.",
    )
    token_bytes: int = Field(
        default=16,
        ge=16,
        le=64,
        description="Random bytes per token. 16 bytes = 128 bits of entropy.",
    )
    token_prefix: str = Field(
        default="domainkeeper-verify-",
        description="Prefix prepended to the hex-encoded token value.",
    )
    txt_record_prefix: str = Field(
        default="_domainkeeper-verify",
        description="Label under which the ownership TXT record is published.",
    )
    min_poll_interval: float = Field(
        default=5.0,
        ge=0.0,
        description="Status polls within this many seconds of the last check reuse the cached DNS result.",
    )


class DNSSettings(BaseSettings):
    """DNS resolution settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOMAINKEEPER_DNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    nameservers: list[str] = Field(
        default_factory=list,
        description="Resolvers to query. Empty uses the system resolver.",
    )
    ingress_ips: list[str] = Field(
        default_factory=list,
        description="Published ingress IPs an A record may point at.",
    )
    routing_host: str = Field(
        default="edge.domainkeeper.app",
        description="Host a CNAME record may point at.",
    )
    query_timeout: float = Field(
        default=3.0,
        gt=0.0,
        description="Timeout per record type lookup (seconds).",
    )
    retry_backoff: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before the single retry of a lookup that failed at the network level (seconds).",
    )


class ProvisioningSettings(BaseSettings):
    """Certificate and routing provisioning API settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOMAINKEEPER_PROVISIONING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str | None = Field(
        default=None,
        description="Base URL of the provisioning API. None uses the simulated provisioner.",
    )
    api_token: str | None = Field(
        default=None,
        repr=False,
        description="Bearer token for the provisioning API.",
    )
    timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Time budget for provisioning a verified binding (seconds).",
    )
    teardown_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout for a teardown call (seconds).",
    )
    claim_lease: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds after which an unfinished provisioning claim may be taken over.",
    )


class StorageSettings(BaseSettings):
    """Domain record store settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOMAINKEEPER_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: str = Field(
        default="json",
        pattern="^(json|sqlite)$",
        description="Storage backend: 'json' or 'sqlite'.",
    )
    path: str = Field(
        default="bindings.json",
        description="Path to the JSON file or SQLite database.",
    )


class OrchestratorSettings(BaseSettings):
    """Verification workflow settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOMAINKEEPER_ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    verify_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Time budget for the DNS check of one verification attempt (seconds).",
    )
    sweep_interval: float = Field(
        default=60.0,
        gt=0.0,
        description="Interval between sweeps over pending bindings (seconds).",
    )
    system_domains: list[str] = Field(
        default_factory=lambda: [
            "domainkeeper.app",
            "localhost",
            "vercel.app",
            "netlify.app",
            "herokuapp.com",
            "azurewebsites.net",
        ],
        description="Domains (and their subdomains) tenants may not bind.",
    )
    blocked_tlds: list[str] = Field(
        default_factory=lambda: [".local", ".internal", ".localhost", ".test", ".example", ".invalid"],
        description="Top-level domains tenants may not bind.",
    )


class DomainKeeperConfig(BaseModel):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance built from the environment,
    or load_config() to layer a YAML/TOML file over the environment.

    Example:
        config = get_config()
        print(config.dns.query_timeout)
        print(config.verification.token_ttl_hours)
    """

    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    dns: DNSSettings = Field(default_factory=DNSSettings)
    provisioning: ProvisioningSettings = Field(default_factory=ProvisioningSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainKeeperConfig:
        """Build a config from a sectioned dictionary.

        Keys inside each section override the environment. Unknown
        sections are rejected so typos surface early.
        """
        unknown = set(data) - set(SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config sections: {', '.join(sorted(unknown))}")
        return cls(
            verification=VerificationSettings(**data.get("verification", {})),
            dns=DNSSettings(**data.get("dns", {})),
            provisioning=ProvisioningSettings(**data.get("provisioning", {})),
            storage=StorageSettings(**data.get("storage", {})),
            orchestrator=OrchestratorSettings(**data.get("orchestrator", {})),
        )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        data = self.model_dump()
        if data["provisioning"].get("api_token"):
            data["provisioning"]["api_token"] = "***"
        return data

    def validate_settings(self) -> list[str]:
        """Return warnings for settings that are legal but unusual."""
        warnings = []
        ttl = self.verification.token_ttl_hours
        if ttl < 24 or ttl > 72:
            warnings.append(
                f"verification.token_ttl_hours={ttl} is outside the recommended 24-72 hour range"
            )
        if not self.dns.ingress_ips and not self.dns.routing_host:
            warnings.append("dns.ingress_ips and dns.routing_host are both empty; routing can never verify")
        if self.provisioning.api_url is None:
            warnings.append("provisioning.api_url is not set; provisioning is simulated")
        if self.provisioning.claim_lease <= self.provisioning.timeout:
            warnings.append(
                f"provisioning.claim_lease={self.provisioning.claim_lease:g} does not exceed "
                f"provisioning.timeout={self.provisioning.timeout:g}; a slow provisioning call "
                "can be taken over and run twice"
            )
        return warnings


def load_config(path: str | Path) -> DomainKeeperConfig:
    """Load a config file and layer it over the environment."""
    return DomainKeeperConfig.from_dict(load_config_from_file(path))


_config: DomainKeeperConfig | None = None


def get_config() -> DomainKeeperConfig:
    """Get the global configuration instance.

    Returns a cached instance of DomainKeeperConfig that reads from environment variables.
    The instance is created once and cached for the lifetime of the process.

    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = DomainKeeperConfig()
    return _config


def set_config(config: DomainKeeperConfig) -> None:
    """Replace the cached configuration (used by the CLI after loading a file)."""
    global _config
    _config = config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    Useful for testing.
    """
    global _config
    _config = None
