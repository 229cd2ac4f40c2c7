"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings
shared by the certificate process and the proxy process.
"""

from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from certwatch.models.proxy import DeploymentStage


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Domains
    server_name: str = Field(default="localhost", alias="SERVER_NAME", description="Primary domain")
    server_name_subdomain: str = Field(
        default="",
        alias="SERVER_NAME_SUBDOMAIN",
        description="Comma-separated additional domains requested in the same certificate",
    )

    # Deployment
    environment: str = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Deployment stage; 'production' enables ACME and TLS",
    )

    # ACME / certbot
    certbot_email: str = Field(default="", alias="CERTBOT_EMAIL", description="ACME account contact address")
    certbot_staging: bool = Field(
        default=False,
        alias="CERTBOT_STAGING",
        description="Use the staging endpoint to avoid rate limits during testing",
    )
    certbot_binary: str = Field(default="certbot", alias="CERTBOT_BINARY")
    letsencrypt_dir: str = Field(
        default="/etc/letsencrypt",
        alias="LETSENCRYPT_DIR",
        description="certbot config directory; bundles live under <dir>/live/<domain>",
    )
    acme_webroot: str = Field(
        default="/var/www/certbot",
        alias="ACME_WEBROOT",
        description="Webroot served by the proxy at /.well-known/acme-challenge/",
    )
    acme_client_timeout: int = Field(
        default=300, alias="ACME_CLIENT_TIMEOUT", description="Seconds to wait for a single certbot invocation"
    )

    # Renewal
    cert_renewal_days: int = Field(
        default=30, alias="CERT_RENEWAL_DAYS", description="Minimum remaining validity before renewal is attempted"
    )
    cert_renewal_interval_hours: float = Field(
        default=12, alias="CERT_RENEWAL_INTERVAL_HOURS", description="Hours between renewal checks"
    )
    cert_startup_delay: float = Field(
        default=10,
        alias="CERT_STARTUP_DELAY",
        description="Seconds to wait before the first check so the proxy can serve the challenge directory",
    )

    # Watcher
    watch_poll_interval: float = Field(
        default=60, alias="WATCH_POLL_INTERVAL", description="Seconds between checks while no certificate exists"
    )
    watch_settle_delay: float = Field(
        default=2.0,
        alias="WATCH_SETTLE_DELAY",
        description="Seconds to let a burst of certificate writes settle before validating",
    )

    # NGINX
    nginx_binary: str = Field(default="nginx", alias="NGINX_BINARY")
    nginx_active_conf: str = Field(
        default="/etc/nginx/conf.d/default.conf",
        alias="NGINX_ACTIVE_CONF",
        description="Configuration file the serving process reads",
    )
    proxy_template_dir: str | None = Field(
        default=None, alias="PROXY_TEMPLATE_DIR", description="Override directory for config variant templates"
    )
    proxy_upstream_url: str = Field(
        default="http://frontend:80", alias="PROXY_UPSTREAM_URL", description="Upstream the proxy forwards to"
    )
    client_max_body_size: str = Field(default="10M", alias="CLIENT_MAX_BODY_SIZE")
    proxy_promote_bootstrap: bool = Field(
        default=False,
        alias="PROXY_PROMOTE_BOOTSTRAP",
        description="Swap in the TLS configuration when the first certificate appears instead of waiting for a restart",
    )
    nginx_control: str = Field(
        default="local", alias="NGINX_CONTROL", description="How nginx is controlled: 'local' or 'docker'"
    )
    nginx_container_name: str = Field(
        default="proxy", alias="NGINX_CONTAINER_NAME", description="Docker container name for NGINX"
    )
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for NGINX operations"
    )
    nginx_health_endpoint: str | None = Field(
        default=None,
        alias="NGINX_HEALTH_ENDPOINT",
        description="HTTP endpoint to verify NGINX health after a reload (disabled when unset)",
    )
    nginx_health_check_retries: int = Field(
        default=5, alias="NGINX_HEALTH_CHECK_RETRIES", description="Number of health check retry attempts"
    )
    nginx_health_check_interval: float = Field(
        default=1.0, alias="NGINX_HEALTH_CHECK_INTERVAL", description="Seconds between health check retries"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_domains() -> list[str]:
    """Primary domain followed by any configured subdomains, without duplicates."""
    domains = [settings.server_name.strip()]
    for name in settings.server_name_subdomain.split(","):
        name = name.strip()
        if name and name not in domains:
            domains.append(name)
    return domains


def get_stage() -> DeploymentStage:
    """Get the deployment stage from ENVIRONMENT."""
    return DeploymentStage.from_environment(settings.environment)


def get_store_base() -> Path:
    """Base directory holding one sub-directory per domain."""
    return Path(settings.letsencrypt_dir) / "live"


def get_renewal_threshold() -> timedelta:
    """Minimum validity below which a renewal is due."""
    return timedelta(days=settings.cert_renewal_days)
