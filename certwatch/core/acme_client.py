"""
External ACME client.

Certificate issuance and renewal are delegated to certbot, run as a
subprocess with the webroot plugin. certbot writes bundles atomically
(archive files plus a symlink swap in live/), so nothing here performs
partial writes.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from certwatch.config import get_domains, settings
from certwatch.models.certificate import AcmeErrorClass

logger = logging.getLogger(__name__)


class AcmeClientError(Exception):
    """ACME operation failed."""

    def __init__(self, message: str, error_class: AcmeErrorClass, suggestion: str | None = None):
        self.message = message
        self.error_class = error_class
        self.suggestion = suggestion if suggestion is not None else SUGGESTIONS[error_class]
        super().__init__(message)


SUGGESTIONS = {
    AcmeErrorClass.DNS: "Ensure the DNS A/AAAA records of every requested domain point to this server",
    AcmeErrorClass.NETWORK: "Check outbound connectivity to the ACME endpoint; the next check retries",
    AcmeErrorClass.RATE_LIMIT: "Rate limited by the CA; wait for the next check or use CERTBOT_STAGING=1 while testing",
    AcmeErrorClass.VALIDATION: (
        "Ensure port 80 is reachable from the internet and the proxy serves "
        "/.well-known/acme-challenge/ from the shared webroot"
    ),
    AcmeErrorClass.PERMISSION: "Ensure the certificate volume and webroot are writable by the certificate process",
    AcmeErrorClass.UNKNOWN: "Inspect the certbot output above",
}

# Order matters: the first matching class wins
_FAILURE_PATTERNS: list[tuple[AcmeErrorClass, re.Pattern]] = [
    (AcmeErrorClass.PERMISSION, re.compile(r"permission denied|operation not permitted|errno 13", re.I)),
    (AcmeErrorClass.RATE_LIMIT, re.compile(r"rate.?limit|too many (certificates|failed|requests|new orders)", re.I)),
    (AcmeErrorClass.DNS, re.compile(r"dns problem|nxdomain|no valid ip addresses|servfail|caa record", re.I)),
    (
        AcmeErrorClass.VALIDATION,
        re.compile(r"unauthorized|invalid response|incorrect validation|challenge failed|some challenges have failed", re.I),
    ),
    (
        AcmeErrorClass.NETWORK,
        re.compile(
            r"connection (refused|reset|error)|timed? ?out|temporary failure|max retries exceeded|"
            r"network is unreachable|name or service not known|failed to establish",
            re.I,
        ),
    ),
]


def classify_acme_failure(output: str) -> AcmeErrorClass:
    """Map certbot output to a failure cause class."""
    for error_class, pattern in _FAILURE_PATTERNS:
        if pattern.search(output or ""):
            return error_class
    return AcmeErrorClass.UNKNOWN


class AcmeClient(ABC):
    """Idempotent, retryable certificate operations."""

    @abstractmethod
    async def obtain(self, domains: list[str]) -> None:
        """Obtain a certificate covering all domains in one request."""

    @abstractmethod
    async def renew(self, domains: list[str]) -> None:
        """Renew the certificate for the domain set now; the caller decides when it is due."""


class CertbotClient(AcmeClient):
    """AcmeClient backed by the certbot binary."""

    def __init__(
        self,
        email: str = "",
        staging: bool = False,
        webroot: Path | str = "/var/www/certbot",
        config_dir: Path | str | None = None,
        certbot_binary: str = "certbot",
        timeout: float = 300,
    ):
        self.email = email
        self.staging = staging
        self.webroot = str(webroot)
        self.config_dir = str(config_dir) if config_dir else None
        self.certbot_binary = certbot_binary
        self.timeout = timeout

    def _common_args(self) -> list[str]:
        args = ["--non-interactive"]
        if self.config_dir:
            args += ["--config-dir", self.config_dir]
        return args

    def build_obtain_command(self, domains: list[str]) -> list[str]:
        command = [
            self.certbot_binary,
            "certonly",
            "--webroot",
            "-w",
            self.webroot,
            "--cert-name",
            domains[0],
        ]
        for domain in domains:
            command += ["-d", domain]

        if self.email:
            command += ["--email", self.email]
        else:
            command.append("--register-unsafely-without-email")

        # Never replace a working certificate that is not yet due
        command += ["--agree-tos", "--keep-until-expiring"]
        if self.staging:
            command.append("--staging")
        return command + self._common_args()

    def build_renew_command(self, domains: list[str]) -> list[str]:
        # The manager already applied CERT_RENEWAL_DAYS; certbot's own window must not veto it
        return [self.certbot_binary, "renew", "--cert-name", domains[0], "--force-renewal"] + self._common_args()

    async def obtain(self, domains: list[str]) -> None:
        logger.info(f"Requesting certificate for {', '.join(domains)}{' (staging)' if self.staging else ''}")
        await self._run(self.build_obtain_command(domains))

    async def renew(self, domains: list[str]) -> None:
        logger.info(f"Renewing certificate {domains[0]}")
        await self._run(self.build_renew_command(domains))

    async def _run(self, command: list[str]) -> str:
        """Run certbot, bounded by the timeout; return combined output."""
        logger.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise AcmeClientError(
                f"ACME client not found: {command[0]}",
                error_class=AcmeErrorClass.UNKNOWN,
                suggestion="Install certbot or set CERTBOT_BINARY",
            )
        except PermissionError as e:
            raise AcmeClientError(f"Cannot execute {command[0]}: {e}", error_class=AcmeErrorClass.PERMISSION)

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise AcmeClientError(
                f"certbot did not finish within {self.timeout} seconds", error_class=AcmeErrorClass.NETWORK
            )
        except asyncio.CancelledError:
            # certbot cleans up on SIGTERM; the loop closing the transport would SIGKILL it mid-update
            if process.returncode is None:
                logger.warning("Stopping certbot before shutdown")
                process.terminate()
                await process.wait()
            raise

        output = stdout.decode(errors="replace") if stdout else ""
        if process.returncode != 0:
            error_class = classify_acme_failure(output)
            last_lines = " | ".join(output.strip().splitlines()[-5:])
            raise AcmeClientError(
                f"certbot exited with status {process.returncode}: {last_lines}", error_class=error_class
            )

        logger.debug(f"certbot output: {output.strip()}")
        return output


def get_acme_client() -> CertbotClient:
    """Build the certbot client from settings."""
    client = CertbotClient(
        email=settings.certbot_email,
        staging=settings.certbot_staging,
        webroot=settings.acme_webroot,
        config_dir=settings.letsencrypt_dir,
        certbot_binary=settings.certbot_binary,
        timeout=settings.acme_client_timeout,
    )
    logger.info(
        f"ACME client: domains={', '.join(get_domains())} email={settings.certbot_email or '-'} "
        f"staging={settings.certbot_staging}"
    )
    return client
