"""Command-line interface for certwatch.

Commands:
    certs run       Acquire and renew the certificate until signalled
    certs status    Show the certificate bundle and renewal state
    certs install   Install an existing certificate and key into the store
    proxy render    Select and write the proxy configuration variant
    proxy run       Render, run nginx in the foreground and watch the certificate
    proxy watch     Watch the certificate and reload nginx (sidecar)
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from certwatch import __version__
from certwatch.config import get_domains, get_renewal_threshold, get_store_base, settings
from certwatch.core.cert_store import (
    FilesystemCertificateStore,
    StoreError,
    parse_certificate,
    validate_certificate_key_match,
)
from certwatch.core.config_generator import ConfigGeneratorError
from certwatch.models.certificate import needs_renewal

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _fail(message: str, suggestion: str | None = None) -> None:
    click.echo(f"Error: {message}", err=True)
    if suggestion:
        click.echo(f"  {suggestion}", err=True)
    sys.exit(1)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-v", prog_name="certwatch")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None) -> None:
    """certwatch: TLS certificate lifecycle and proxy reload coordinator."""
    configure_logging(log_level or settings.log_level)


@cli.group()
def certs() -> None:
    """Certificate process commands."""


async def _run_cert_process() -> int:
    from certwatch.core.cert_scheduler import get_cert_scheduler

    # The scheduler binds to the running event loop
    scheduler = get_cert_scheduler()
    return await scheduler.run()


@certs.command("run")
def certs_run() -> None:
    """Acquire the certificate and keep it renewed."""
    logger.info("Starting certificate process")
    logger.info(f"SERVER_NAME: {settings.server_name}")
    logger.info(f"Domains: {', '.join(get_domains())}")
    logger.info(f"CERTBOT_EMAIL: {settings.certbot_email or '-'}")
    logger.info(f"CERTBOT_STAGING: {settings.certbot_staging}")

    sys.exit(asyncio.run(_run_cert_process()))


@certs.command("status")
def certs_status() -> None:
    """Show the bundle for the primary domain."""
    store = FilesystemCertificateStore(get_store_base())
    domain = get_domains()[0]
    fullchain, privkey = store.bundle_paths(domain)

    try:
        bundle = store.read_bundle(domain)
    except StoreError as e:
        _fail(e.message, e.suggestion)

    if bundle is None:
        click.echo(f"No certificate for {domain} (expected {fullchain} and {privkey})")
        sys.exit(1)

    now = datetime.now(timezone.utc)
    due = needs_renewal(bundle, get_renewal_threshold(), now)
    click.echo(f"Domain:       {bundle.domain}")
    click.echo(f"Names:        {', '.join(bundle.alt_names) or '-'}")
    click.echo(f"Issuer:       {bundle.issuer}")
    click.echo(f"Certificate:  {bundle.fullchain_path}")
    click.echo(f"Key:          {bundle.privkey_path}")
    click.echo(f"Not before:   {bundle.not_before.isoformat()}")
    click.echo(f"Not after:    {bundle.not_after.isoformat()}")
    click.echo(f"Days left:    {bundle.days_until_expiry(now)}")
    click.echo(f"Renewal due:  {'yes' if due else 'no'} (threshold {settings.cert_renewal_days} days)")


@certs.command("install")
@click.option("--cert", "cert_file", required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--key", "key_file", required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--domain", default=None, help="Domain directory to install into (default: SERVER_NAME)")
def certs_install(cert_file: Path, key_file: Path, domain: str | None) -> None:
    """Validate a certificate and key, then write them into the store atomically."""
    domain = domain or get_domains()[0]
    cert_pem = cert_file.read_bytes()
    key_pem = key_file.read_bytes()

    try:
        info = parse_certificate(cert_pem)
    except ValueError as e:
        _fail(f"Invalid certificate format: {e}", "Ensure the certificate is in PEM format")

    try:
        matches = validate_certificate_key_match(cert_pem, key_pem)
    except (ValueError, TypeError) as e:
        _fail(f"Invalid private key format: {e}", "Ensure the private key is an unencrypted PEM key")

    if not matches:
        _fail("Private key does not match certificate", "Ensure the private key corresponds to the certificate")

    if info["not_after"] <= datetime.now(timezone.utc):
        _fail(f"Certificate expired on {info['not_after'].isoformat()}", "Install a valid, non-expired certificate")

    store = FilesystemCertificateStore(get_store_base())
    try:
        store.write_bundle(domain, cert_pem, key_pem)
    except StoreError as e:
        _fail(e.message, e.suggestion)

    click.echo(f"Installed certificate for {domain}, valid until {info['not_after'].isoformat()}")


@cli.group()
def proxy() -> None:
    """Proxy process commands."""


@proxy.command("render")
def proxy_render() -> None:
    """Select the configuration variant and write it."""
    from certwatch.core.mode_selector import get_mode_selector

    try:
        selector = get_mode_selector()
        mode = selector.select_and_materialize()
    except ConfigGeneratorError as e:
        _fail(e.message)
    except StoreError as e:
        _fail(e.message, e.suggestion)

    click.echo(mode.value)


@proxy.command("run")
def proxy_run() -> None:
    """Render the configuration, run nginx and watch the certificate."""
    from certwatch.core.nginx_service import NginxControlError
    from certwatch.core.proxy_supervisor import run_proxy

    try:
        exit_code = asyncio.run(run_proxy())
    except ConfigGeneratorError as e:
        _fail(e.message)
    except (StoreError, NginxControlError) as e:
        _fail(e.message, e.suggestion)
    sys.exit(exit_code)


@proxy.command("watch")
def proxy_watch() -> None:
    """Watch the certificate and reload nginx on change."""
    from certwatch.core.proxy_supervisor import run_watch_only

    try:
        exit_code = asyncio.run(run_watch_only())
    except StoreError as e:
        _fail(e.message, e.suggestion)
    sys.exit(exit_code)


def main() -> None:
    cli()
