"""
Certificate lifecycle manager.

Keeps a valid certificate in the shared store for the configured domain
set. Acquisition and renewal go through the external ACME client; every
failure is logged and left for the next scheduled check.

State machine:
    NO_CERT -> ACQUIRING -> VALID -> (RENEWAL_DUE -> RENEWING -> VALID) -> ...
"""

import asyncio
import logging
import socket
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from certwatch.config import get_domains, get_renewal_threshold, get_store_base
from certwatch.core.acme_client import AcmeClient, AcmeClientError, get_acme_client
from certwatch.core.cert_store import (
    CertificateParseError,
    CertificateStore,
    FilesystemCertificateStore,
    StorePermissionError,
)
from certwatch.models.certificate import (
    AcmeErrorClass,
    CertificateBundle,
    LifecycleState,
    TickResult,
    needs_renewal,
)

logger = logging.getLogger(__name__)


class CertificateError(Exception):
    """Base exception for certificate lifecycle operations."""

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class FatalCertificateError(CertificateError):
    """Unrecoverable failure; the certificate process must exit non-zero."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertLifecycleManager:
    """
    Acquire and renew the certificate for one domain set.

    Operations are strictly sequential: the scheduler never runs two
    checks at once, and a failed operation is not retried until the next
    check to respect CA rate limits.
    """

    def __init__(
        self,
        store: CertificateStore,
        acme: AcmeClient,
        domains: list[str],
        renewal_threshold: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not domains:
            raise ValueError("At least one domain is required")
        self.store = store
        self.acme = acme
        self.domains = domains
        self.renewal_threshold = renewal_threshold
        self.clock = clock
        self.state = LifecycleState.NO_CERT

    @property
    def primary_domain(self) -> str:
        return self.domains[0]

    def _transition(self, new_state: LifecycleState) -> None:
        if new_state != self.state:
            logger.info(f"Certificate {self.primary_domain}: {self.state.value} -> {new_state.value}")
            self.state = new_state

    def read_bundle(self) -> CertificateBundle | None:
        """Read the current bundle; permission problems are fatal."""
        try:
            return self.store.read_bundle(self.primary_domain)
        except StorePermissionError as e:
            raise FatalCertificateError(e.message, domain=self.primary_domain, suggestion=e.suggestion)

    def needs_renewal(self, bundle: CertificateBundle) -> bool:
        return needs_renewal(bundle, self.renewal_threshold, self.clock())

    async def startup_check(self) -> TickResult:
        """
        First check after the startup delay.

        Acquires when no bundle exists, renews when the bundle is inside
        the renewal window, and otherwise only records the VALID state.
        """
        logger.info(f"Initial certificate check for {', '.join(self.domains)}")
        return await self.tick()

    async def tick(self) -> TickResult:
        """
        Run one lifecycle check.

        No ACME invocation happens unless the bundle is missing or due for
        renewal. Whether the bundle actually changed is reported for
        observability only.
        """
        started_at = time.time()

        try:
            bundle = self.read_bundle()
        except CertificateParseError as e:
            # Unreadable certificate: let certbot decide whether to rewrite it
            logger.warning(f"{e.message}; attempting renewal")
            self._transition(LifecycleState.RENEWAL_DUE)
            return await self._run_operation(
                LifecycleState.RENEWING, LifecycleState.NO_CERT, self.acme.renew, None, started_at
            )

        if bundle is None:
            self._transition(LifecycleState.NO_CERT)
            return await self._run_operation(
                LifecycleState.ACQUIRING, LifecycleState.NO_CERT, self.acme.obtain, None, started_at
            )

        days_left = bundle.days_until_expiry(self.clock())
        if not self.needs_renewal(bundle):
            self._transition(LifecycleState.VALID)
            logger.info(f"Certificate for {self.primary_domain} valid for {days_left} more days, no renewal needed")
            return TickResult(state=self.state)

        logger.info(
            f"Certificate for {self.primary_domain} expires in {days_left} days "
            f"(threshold {self.renewal_threshold.days}), renewing"
        )
        self._transition(LifecycleState.RENEWAL_DUE)
        return await self._run_operation(
            LifecycleState.RENEWING, LifecycleState.VALID, self.acme.renew, bundle, started_at
        )

    async def _run_operation(
        self,
        busy_state: LifecycleState,
        fallback_state: LifecycleState,
        operation,
        previous: CertificateBundle | None,
        started_at: float,
    ) -> TickResult:
        self._transition(busy_state)

        try:
            await operation(self.domains)
        except AcmeClientError as e:
            if e.error_class == AcmeErrorClass.PERMISSION:
                self._transition(fallback_state)
                raise FatalCertificateError(e.message, domain=self.primary_domain, suggestion=e.suggestion)

            logger.error(
                f"{busy_state.value.capitalize()} failed for {self.primary_domain} "
                f"[{e.error_class.value}]: {e.message}"
            )
            logger.error(f"Suggestion: {e.suggestion}")
            if e.error_class in (AcmeErrorClass.DNS, AcmeErrorClass.VALIDATION):
                await self.log_diagnostics()

            self._transition(fallback_state)
            logger.info(f"Will retry {self.primary_domain} at the next scheduled check")
            return TickResult(
                state=self.state, attempted=True, error_class=e.error_class, message=e.message
            )

        try:
            bundle = self.read_bundle()
        except CertificateParseError as e:
            logger.error(e.message)
            bundle = None

        if bundle is None:
            self._transition(fallback_state)
            logger.warning(f"ACME client succeeded but no readable bundle exists for {self.primary_domain}")
            return TickResult(state=self.state, attempted=True, succeeded=True)

        renewed = bundle.modified_at >= started_at
        if renewed:
            logger.info(
                f"Certificate for {self.primary_domain} updated, valid until {bundle.not_after.isoformat()}"
            )
            if previous is not None and bundle.not_after <= previous.not_after:
                logger.warning(
                    f"Updated certificate for {self.primary_domain} does not extend validity "
                    f"({bundle.not_after.isoformat()} <= {previous.not_after.isoformat()})"
                )
        else:
            logger.info(f"ACME client made no change to {self.primary_domain}")

        if self.needs_renewal(bundle):
            logger.warning(
                f"Certificate for {self.primary_domain} is still inside the renewal window; "
                f"retrying at the next scheduled check"
            )
        self._transition(LifecycleState.VALID)
        return TickResult(state=self.state, attempted=True, succeeded=True, renewed=renewed)

    async def check_domain_dns(self, domain: str) -> tuple[bool, list[str]]:
        """
        Check if domain resolves in DNS.

        Returns (resolves, ip_addresses)
        """
        try:
            result = await asyncio.to_thread(socket.getaddrinfo, domain, None)
            ips = sorted(set(addr[4][0] for addr in result))
            return True, ips
        except socket.gaierror:
            return False, []

    async def check_port_accessible(self, domain: str, port: int, timeout: float = 5.0) -> bool:
        """Check if a port is accessible on the domain."""

        def check():
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.settimeout(timeout)
                return sock.connect_ex((domain, port)) == 0

        try:
            return await asyncio.to_thread(check)
        except OSError:
            return False

    async def log_diagnostics(self) -> dict[str, dict]:
        """Log DNS and port 80 reachability for every domain."""
        report = {}
        for domain in self.domains:
            resolves, ips = await self.check_domain_dns(domain)
            port_80 = await self.check_port_accessible(domain, 80) if resolves else False
            report[domain] = {"dns_resolves": resolves, "ip_addresses": ips, "port_80_open": port_80}

            if not resolves:
                logger.error(f"Diagnostics: {domain} does not resolve; configure a DNS A record for this server")
            elif not port_80:
                logger.error(
                    f"Diagnostics: {domain} resolves to {', '.join(ips)} but port 80 is not reachable; "
                    f"open port 80 for the HTTP-01 challenge"
                )
            else:
                logger.info(f"Diagnostics: {domain} resolves to {', '.join(ips)} and port 80 is reachable")
        return report


def get_cert_manager() -> CertLifecycleManager:
    """Build the lifecycle manager from settings."""
    return CertLifecycleManager(
        store=FilesystemCertificateStore(get_store_base()),
        acme=get_acme_client(),
        domains=get_domains(),
        renewal_threshold=get_renewal_threshold(),
    )
