"""
NGINX configuration generator using Jinja2 templates.

Renders one of the three proxy configuration variants (plain HTTP,
ACME bootstrap, full TLS) from static deployment values.
"""

import logging
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from certwatch.config import get_domains, settings
from certwatch.models.proxy import ConfigMode

logger = logging.getLogger(__name__)

# Default template directory
DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"


class ConfigGeneratorError(Exception):
    """Base exception for config generator errors."""

    def __init__(self, message: str, mode: Optional[ConfigMode] = None):
        self.message = message
        self.mode = mode
        super().__init__(message)


class TemplateNotFoundError(ConfigGeneratorError):
    """Template file not found."""
    pass


class ConfigGenerator:
    """
    Generates NGINX configuration files for each ConfigMode.

    Template variables are static deployment values; the variants that
    take part in ACME validation always expose the challenge path.
    """

    def __init__(
        self,
        server_names: list[str],
        acme_webroot: str,
        ssl_cert_path: str,
        ssl_key_path: str,
        upstream_url: str = "http://frontend:80",
        client_max_body_size: str = "10M",
        template_dir: Optional[Path] = None,
    ):
        """
        Initialize the config generator.

        Args:
            server_names: Domains served by the proxy, primary first
            acme_webroot: Directory served at the ACME challenge path
            ssl_cert_path: fullchain.pem path referenced by the TLS variant
            ssl_key_path: privkey.pem path referenced by the TLS variant
            upstream_url: Upstream requests are forwarded to
            client_max_body_size: NGINX request body limit
            template_dir: Path to template directory. Uses default if not specified.
        """
        self.server_names = server_names
        self.acme_webroot = acme_webroot
        self.ssl_cert_path = ssl_cert_path
        self.ssl_key_path = ssl_key_path
        self.upstream_url = upstream_url
        self.client_max_body_size = client_max_body_size
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

        if not self.template_dir.exists():
            raise ConfigGeneratorError(
                f"Template directory not found: {self.template_dir}"
            )

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # NGINX configs don't need HTML escaping
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

        logger.debug(f"ConfigGenerator initialized with templates from {self.template_dir}")

    def context(self) -> dict:
        return {
            "server_name": self.server_names[0],
            "server_names": " ".join(self.server_names),
            "client_max_body_size": self.client_max_body_size,
            "acme_webroot": self.acme_webroot,
            "acme_challenge_path": ACME_CHALLENGE_PATH,
            "ssl_cert_path": self.ssl_cert_path,
            "ssl_key_path": self.ssl_key_path,
            "upstream_url": self.upstream_url,
        }

    def generate(self, mode: ConfigMode) -> str:
        """
        Render the configuration variant for a mode.

        Raises:
            ConfigGeneratorError: If the template is missing, references an
                unknown variable, or does not expose the challenge path
                where required
        """
        try:
            template = self.env.get_template(mode.template_name)
        except TemplateNotFound:
            raise TemplateNotFoundError(
                f"Template {mode.template_name} not found in {self.template_dir}", mode=mode
            )

        try:
            config = template.render(**self.context())
        except UndefinedError as e:
            raise ConfigGeneratorError(f"Template {mode.template_name} failed to render: {e}", mode=mode)

        if mode.serves_challenge and ACME_CHALLENGE_PATH not in config:
            raise ConfigGeneratorError(
                f"Template {mode.template_name} must serve {ACME_CHALLENGE_PATH}", mode=mode
            )

        logger.debug(f"Generated {mode.value} config for {self.server_names[0]}")
        return config

    def validate_template(self, template_name: str) -> bool:
        """
        Check if a template exists and is valid.

        Args:
            template_name: Name of the template file

        Returns:
            True if template exists and can be loaded
        """
        try:
            self.env.get_template(template_name)
            return True
        except TemplateNotFound:
            return False


def get_config_generator(ssl_cert_path: str, ssl_key_path: str) -> ConfigGenerator:
    """Build a generator from settings for the given bundle paths."""
    return ConfigGenerator(
        server_names=get_domains(),
        acme_webroot=settings.acme_webroot,
        ssl_cert_path=ssl_cert_path,
        ssl_key_path=ssl_key_path,
        upstream_url=settings.proxy_upstream_url,
        client_max_body_size=settings.client_max_body_size,
        template_dir=Path(settings.proxy_template_dir) if settings.proxy_template_dir else None,
    )
