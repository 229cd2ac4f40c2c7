"""
Shared certificate store.

The certificate process and the proxy process only communicate through
this store. Bundles follow the layout ``{base}/{domain}/fullchain.pem``
and ``{base}/{domain}/privkey.pem``; the filesystem implementation watches
the domain directory with watchdog and hands notifications to asyncio.
"""

import asyncio
import contextlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from certwatch.models.certificate import BundleEvent, BundleEventType, CertificateBundle

logger = logging.getLogger(__name__)

FULLCHAIN_NAME = "fullchain.pem"
PRIVKEY_NAME = "privkey.pem"

_PEM_END = b"-----END CERTIFICATE-----"


class StoreError(Exception):
    """Base exception for certificate store operations."""

    def __init__(self, message: str, domain: str | None = None, suggestion: str | None = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class StorePermissionError(StoreError):
    """The store cannot be read or written with the current permissions."""

    pass


class CertificateParseError(StoreError):
    """The certificate file does not contain a readable certificate."""

    pass


def parse_certificate(cert_pem: bytes) -> dict:
    """
    Parse the leaf certificate of a PEM chain and extract details.

    Args:
        cert_pem: PEM-encoded certificate or full chain

    Returns:
        Dictionary with certificate details
    """
    leaf = cert_pem.split(_PEM_END)[0] + _PEM_END + b"\n"
    cert = x509.load_pem_x509_certificate(leaf)

    # Extract SANs
    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "alt_names": alt_names,
        "fingerprint_sha256": cert.fingerprint(hashes.SHA256()).hex(),
    }


def validate_certificate_key_match(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate (leaf first if a chain)
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    leaf = cert_pem.split(_PEM_END)[0] + _PEM_END + b"\n"
    cert = x509.load_pem_x509_certificate(leaf)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return cert_bytes == key_bytes


def build_bundle(domain: str, fullchain_path: Path, privkey_path: Path, cert_pem: bytes, modified_at: float):
    """Build a CertificateBundle from raw certificate bytes."""
    try:
        info = parse_certificate(cert_pem)
    except ValueError as e:
        raise CertificateParseError(
            f"Cannot parse certificate at {fullchain_path}: {e}",
            domain=domain,
            suggestion="The file may be partially written or corrupt; the next renewal rewrites it",
        )

    return CertificateBundle(
        domain=domain,
        fullchain_path=str(fullchain_path),
        privkey_path=str(privkey_path),
        not_before=info["not_before"],
        not_after=info["not_after"],
        modified_at=modified_at,
        issuer=info["issuer"],
        serial_number=info["serial_number"],
        alt_names=info["alt_names"],
        fingerprint_sha256=info["fingerprint_sha256"],
    )


class CertificateStore(ABC):
    """Read, write and watch certificate bundles."""

    @abstractmethod
    def bundle_paths(self, domain: str) -> tuple[Path, Path]:
        """Return (fullchain, privkey) paths for a domain."""

    @abstractmethod
    def bundle_exists(self, domain: str) -> bool:
        """True when both certificate and key are present."""

    @abstractmethod
    def modified_at(self, domain: str) -> float | None:
        """Modification time of the certificate file, None when absent."""

    @abstractmethod
    def read_bundle(self, domain: str) -> CertificateBundle | None:
        """Read and parse the bundle, None when absent."""

    @abstractmethod
    def write_bundle(self, domain: str, fullchain_pem: bytes, privkey_pem: bytes) -> None:
        """Atomically replace the bundle for a domain."""

    @abstractmethod
    def watch_bundle(self, domain: str):
        """Async context manager yielding an asyncio.Queue of BundleEvent."""


class _BundleEventHandler(FileSystemEventHandler):
    """
    Forwards events on the certificate file.

    Plain writers close or rename the file into place. certbot replaces the
    live/ symlink with unlink + symlink, which only shows up as delete and
    create in the watched directory.
    """

    def __init__(self, domain: str, filename: str, emit):
        self.domain = domain
        self.filename = filename
        self.emit = emit

    def _matches(self, path) -> bool:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return os.path.basename(path) == self.filename

    def _forward(self, event, event_type: BundleEventType, path) -> None:
        if not event.is_directory and self._matches(path):
            self.emit(BundleEvent(domain=self.domain, event_type=event_type, path=str(path)))

    def on_closed(self, event):
        self._forward(event, BundleEventType.CLOSED, event.src_path)

    def on_moved(self, event):
        self._forward(event, BundleEventType.MOVED, event.dest_path)

    def on_created(self, event):
        self._forward(event, BundleEventType.CREATED, event.src_path)

    def on_deleted(self, event):
        self._forward(event, BundleEventType.DELETED, event.src_path)


class FilesystemCertificateStore(CertificateStore):
    """Certificate store on a shared directory or volume."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)

    def bundle_paths(self, domain: str) -> tuple[Path, Path]:
        domain_dir = self.base_dir / domain
        return domain_dir / FULLCHAIN_NAME, domain_dir / PRIVKEY_NAME

    def bundle_exists(self, domain: str) -> bool:
        fullchain, privkey = self.bundle_paths(domain)
        try:
            return fullchain.is_file() and privkey.is_file()
        except PermissionError as e:
            raise self._permission_error(domain, e)

    def modified_at(self, domain: str) -> float | None:
        fullchain, _ = self.bundle_paths(domain)
        try:
            # stat() follows certbot's live/ symlinks into archive/
            return fullchain.stat().st_mtime
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise self._permission_error(domain, e)

    def read_bundle(self, domain: str) -> CertificateBundle | None:
        fullchain, privkey = self.bundle_paths(domain)
        if not self.bundle_exists(domain):
            return None

        try:
            modified_at = fullchain.stat().st_mtime
            cert_pem = fullchain.read_bytes()
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise self._permission_error(domain, e)

        return build_bundle(domain, fullchain, privkey, cert_pem, modified_at)

    def write_bundle(self, domain: str, fullchain_pem: bytes, privkey_pem: bytes) -> None:
        fullchain, privkey = self.bundle_paths(domain)
        try:
            fullchain.parent.mkdir(parents=True, exist_ok=True)
            # Key first so the certificate never points at a stale key
            _atomic_write(privkey, privkey_pem, 0o600)
            _atomic_write(fullchain, fullchain_pem, 0o644)
        except PermissionError as e:
            raise self._permission_error(domain, e)

        logger.info(f"Wrote certificate bundle for {domain} to {fullchain.parent}")

    @asynccontextmanager
    async def watch_bundle(self, domain: str) -> AsyncIterator[asyncio.Queue]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        fullchain, _ = self.bundle_paths(domain)

        def emit(event: BundleEvent) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, event)

        handler = _BundleEventHandler(domain, fullchain.name, emit)
        observer = Observer()
        observer.schedule(handler, str(fullchain.parent), recursive=False)
        try:
            observer.start()
        except PermissionError as e:
            raise self._permission_error(domain, e)

        logger.info(f"Watching {fullchain} for changes")
        try:
            yield queue
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join)
            logger.debug(f"Stopped watching {fullchain}")

    def _permission_error(self, domain: str, error: PermissionError) -> StorePermissionError:
        return StorePermissionError(
            f"Permission denied on certificate store: {error}",
            domain=domain,
            suggestion=f"Ensure {self.base_dir} is readable (and writable for the certificate process)",
        )


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    """Write to a temp file in the same directory, then rename over the target."""
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise
