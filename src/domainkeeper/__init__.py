"""DomainKeeper - custom domain verification and provisioning for tenant storefronts."""

__version__ = "0.1.0"
