"""
Proxy-side models.

Deployment stage, configuration variants, watcher states and
reload outcomes used by the proxy process.
"""

from enum import Enum


class DeploymentStage(str, Enum):
    """Deployment stage taken from the ENVIRONMENT variable."""

    DEV = "dev"
    PRODUCTION = "production"

    @classmethod
    def from_environment(cls, value: str | None) -> "DeploymentStage":
        """Anything other than 'production' is treated as dev."""
        if value and value.strip().lower() == cls.PRODUCTION.value:
            return cls.PRODUCTION
        return cls.DEV


class ConfigMode(str, Enum):
    """Proxy configuration variant."""

    HTTP_ONLY = "http_only"             # Development, plain HTTP
    ACME_BOOTSTRAP = "acme_bootstrap"   # Production without a certificate yet
    TLS_ACTIVE = "tls_active"           # Production with certificate and key present

    @property
    def template_name(self) -> str:
        return _TEMPLATES[self]

    @property
    def serves_challenge(self) -> bool:
        """Whether the variant must expose the ACME challenge path."""
        return self is not ConfigMode.HTTP_ONLY


_TEMPLATES = {
    ConfigMode.HTTP_ONLY: "http.conf.j2",
    ConfigMode.ACME_BOOTSTRAP: "acme.conf.j2",
    ConfigMode.TLS_ACTIVE: "ssl.conf.j2",
}


class WatchState(str, Enum):
    """Certificate watcher state."""

    AWAITING_FIRST_CERT = "awaiting_first_cert"
    WATCHING = "watching"


class ReloadOutcome(str, Enum):
    """Result of handling one certificate change."""

    RELOADED = "reloaded"
    VALIDATION_FAILED = "validation_failed"
    RELOAD_FAILED = "reload_failed"
    SKIPPED = "skipped"
