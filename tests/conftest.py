"""
Global test fixtures.

Provides self-signed certificates, an in-memory certificate store, a
certbot-style lineage under tmp_path and a mocked nginx controller, so
unit tests never touch certbot, nginx or the real certificate volume.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certwatch.core.config_generator import ConfigGenerator
from certwatch.core.memory_store import InMemoryCertificateStore

DOMAIN = "example.com"


def _generate_certificate(domains, valid_days=90, not_before=None, key=None):
    """Self-signed certificate valid for ``valid_days`` from now; returns (cert_pem, key_pem)."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=1)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture
def cert_factory():
    """Factory for self-signed (cert_pem, key_pem) pairs."""

    def _factory(domains=(DOMAIN,), valid_days=90, **kwargs):
        return _generate_certificate(list(domains), valid_days=valid_days, **kwargs)

    return _factory


@pytest.fixture
def memory_store():
    """Empty in-memory certificate store."""
    return InMemoryCertificateStore()


@pytest.fixture
def mock_nginx():
    """Pre-configured mock nginx controller where validation and reload succeed."""
    service = MagicMock()
    service.test_config = AsyncMock(return_value=(True, "", "nginx: configuration file test is successful"))
    service.reload_nginx = AsyncMock(return_value=(True, "", ""))
    return service


@pytest.fixture
def config_generator():
    """Generator for the bundled templates with fixed deployment values."""
    return ConfigGenerator(
        server_names=[DOMAIN, "www.example.com"],
        acme_webroot="/var/www/certbot",
        ssl_cert_path=f"/etc/letsencrypt/live/{DOMAIN}/fullchain.pem",
        ssl_key_path=f"/etc/letsencrypt/live/{DOMAIN}/privkey.pem",
        upstream_url="http://frontend:80",
        client_max_body_size="20M",
    )


@pytest.fixture
def tmp_conf_dir(tmp_path):
    """Temporary NGINX conf directory."""
    conf_dir = tmp_path / "conf.d"
    conf_dir.mkdir()
    return conf_dir


class CertbotLineage:
    """
    ``live/<domain>`` symlinks into ``archive/<domain>``, as certbot lays them out.

    ``renew()`` writes the next archive version and then swaps each live
    link with unlink + symlink, the same sequence certbot uses.
    """

    def __init__(self, root, cert_factory, domain=DOMAIN):
        self.live_base = root / "live"
        self.live_dir = self.live_base / domain
        self.archive_dir = root / "archive" / domain
        self.cert_factory = cert_factory
        self.version = 0
        self.live_dir.mkdir(parents=True)
        self.archive_dir.mkdir(parents=True)

    def renew(self):
        self.version += 1
        cert_pem, key_pem = self.cert_factory()
        # Distinct mtimes per version regardless of filesystem timestamp granularity
        mtime = 1_700_000_000 + self.version * 100
        for name, data in (("privkey", key_pem), ("fullchain", cert_pem)):
            target = self.archive_dir / f"{name}{self.version}.pem"
            target.write_bytes(data)
            os.utime(target, (mtime, mtime))
        for name in ("privkey", "fullchain"):
            link = self.live_dir / f"{name}.pem"
            if os.path.lexists(link):
                os.unlink(link)
            os.symlink(self.archive_dir / f"{name}{self.version}.pem", link)


@pytest.fixture
def certbot_lineage(tmp_path, cert_factory):
    """A certbot lineage holding its first certificate."""
    lineage = CertbotLineage(tmp_path / "letsencrypt", cert_factory)
    lineage.renew()
    return lineage
