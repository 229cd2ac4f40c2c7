"""
Certificate change watcher and reload coordinator.

The watcher is a two-state machine:

    AWAITING_FIRST_CERT  poll for the bundle every poll interval
    WATCHING             react to write, rename and symlink-swap events

Every change that survives de-duplication (by certificate mtime) is
handed to the coordinator, which validates the configuration and only
then reloads nginx. A failed validation leaves the running configuration
untouched.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from certwatch.core.cert_store import CertificateStore
from certwatch.core.config_generator import ConfigGenerator, ConfigGeneratorError
from certwatch.core.health_checker import HealthChecker, HealthCheckError
from certwatch.core.mode_selector import ActiveConfig
from certwatch.core.nginx_service import NginxControlError, NginxController
from certwatch.models.proxy import ConfigMode, ReloadOutcome, WatchState

logger = logging.getLogger(__name__)


class BootstrapPromotion:
    """Swap the TLS variant in place of the bootstrap config once a bundle exists."""

    def __init__(self, store: CertificateStore, domain: str, generator: ConfigGenerator, active_config: ActiveConfig):
        self.store = store
        self.domain = domain
        self.generator = generator
        self.active_config = active_config

    def is_ready(self) -> bool:
        return self.store.bundle_exists(self.domain)

    def swap_in(self) -> str | None:
        """Write the TLS variant; returns the previous content for rollback."""
        config = self.generator.generate(ConfigMode.TLS_ACTIVE)
        previous = self.active_config.swap(config)
        logger.info(f"Staged {ConfigMode.TLS_ACTIVE.value} configuration at {self.active_config.path}")
        return previous

    def rollback(self, previous: str | None) -> None:
        try:
            self.active_config.restore(previous)
        except ConfigGeneratorError as e:
            logger.error(f"Cannot restore previous configuration; NGINX keeps running the old one: {e.message}")
            return
        logger.info(f"Restored previous configuration at {self.active_config.path}")


class ReloadCoordinator:
    """Validate-then-reload, one change at a time."""

    def __init__(
        self,
        nginx: NginxController,
        mode: ConfigMode,
        promotion: BootstrapPromotion | None = None,
        health_checker: HealthChecker | None = None,
    ):
        self.nginx = nginx
        self.mode = mode
        self.promotion = promotion
        self.health_checker = health_checker
        self.reload_count = 0
        self._lock = asyncio.Lock()

    async def handle_certificate_change(self) -> ReloadOutcome:
        async with self._lock:
            if self.mode is ConfigMode.HTTP_ONLY:
                logger.info("HTTP-only configuration does not use the certificate; skipping reload")
                return ReloadOutcome.SKIPPED

            promoting = (
                self.mode is ConfigMode.ACME_BOOTSTRAP
                and self.promotion is not None
                and self.promotion.is_ready()
            )
            previous = None
            if promoting:
                try:
                    previous = self.promotion.swap_in()
                except ConfigGeneratorError as e:
                    logger.error(f"Cannot render TLS configuration, keeping bootstrap configuration: {e.message}")
                    return ReloadOutcome.VALIDATION_FAILED

            try:
                valid, _stdout, stderr = await self.nginx.test_config()
            except NginxControlError as e:
                valid, stderr = False, e.message

            if not valid:
                logger.error(
                    f"Configuration validation failed after certificate change; "
                    f"keeping the running configuration: {stderr.strip()}"
                )
                if promoting:
                    self.promotion.rollback(previous)
                return ReloadOutcome.VALIDATION_FAILED

            try:
                reloaded, _stdout, stderr = await self.nginx.reload_nginx()
            except NginxControlError as e:
                reloaded, stderr = False, e.message

            if not reloaded:
                logger.error(f"NGINX reload failed: {stderr.strip()}")
                if promoting:
                    self.promotion.rollback(previous)
                return ReloadOutcome.RELOAD_FAILED

            if promoting:
                logger.info("Promoted proxy from ACME bootstrap to TLS")
                self.mode = ConfigMode.TLS_ACTIVE

            self.reload_count += 1
            logger.info(f"NGINX reloaded with the new certificate (reload #{self.reload_count})")

            if self.health_checker is not None:
                try:
                    await self.health_checker.verify_health()
                except HealthCheckError as e:
                    logger.warning(f"NGINX unhealthy after reload: {e.message} ({e.last_error})")

            return ReloadOutcome.RELOADED


class CertificateWatcher:
    """Wait for the first certificate, then watch it for renewals."""

    def __init__(
        self,
        store: CertificateStore,
        domain: str,
        coordinator: ReloadCoordinator,
        poll_interval: float = 60.0,
        settle_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.domain = domain
        self.coordinator = coordinator
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self._sleep = sleep
        self.state = WatchState.AWAITING_FIRST_CERT
        self.last_modified: float | None = None
        self._seen_absent = False

    def _transition(self, new_state: WatchState) -> None:
        if new_state != self.state:
            logger.info(f"Certificate watcher: {self.state.value} -> {new_state.value}")
            self.state = new_state

    async def run(self) -> None:
        """Run until cancelled."""
        fullchain, _ = self.store.bundle_paths(self.domain)
        logger.info(f"Starting certificate monitor for {fullchain}")
        while True:
            if self.state is WatchState.AWAITING_FIRST_CERT:
                await self.poll_once()
            else:
                await self.watch()

    async def poll_once(self) -> bool:
        """
        One AWAITING_FIRST_CERT step.

        Returns True when the bundle was found and the watcher moved to
        WATCHING; otherwise sleeps one poll interval and returns False.
        """
        if self.store.bundle_exists(self.domain):
            self._transition(WatchState.WATCHING)
            modified_at = self.store.modified_at(self.domain)
            if self._seen_absent:
                logger.info(f"Certificate for {self.domain} appeared")
                await self._handle_change(modified_at)
            else:
                self.last_modified = modified_at
            return True

        if not self._seen_absent:
            logger.info(
                f"No certificate for {self.domain} yet; checking every {self.poll_interval:g} seconds"
            )
        self._seen_absent = True
        await self._sleep(self.poll_interval)
        return False

    async def watch(self) -> None:
        """WATCHING: react to notifications until the bundle disappears."""
        async with self.store.watch_bundle(self.domain) as events:
            # A change may have landed between detection and subscription
            await self.check_for_change()

            while self.state is WatchState.WATCHING:
                await events.get()
                if self.settle_delay:
                    await self._sleep(self.settle_delay)
                while not events.empty():
                    events.get_nowait()
                await self.check_for_change()

    async def check_for_change(self) -> ReloadOutcome | None:
        """Hand the change to the coordinator if the certificate mtime moved."""
        modified_at = self.store.modified_at(self.domain)
        if modified_at is None or not self.store.bundle_exists(self.domain):
            logger.warning(f"Certificate for {self.domain} disappeared; waiting for it to reappear")
            self._seen_absent = True
            self._transition(WatchState.AWAITING_FIRST_CERT)
            return None

        if modified_at == self.last_modified:
            logger.debug(f"Notification for {self.domain} without a content change; ignoring")
            return None

        return await self._handle_change(modified_at)

    async def _handle_change(self, modified_at: float | None) -> ReloadOutcome:
        self.last_modified = modified_at
        logger.info(f"Certificate file changed for {self.domain}. Reloading Nginx...")
        outcome = await self.coordinator.handle_certificate_change()
        logger.info(f"Certificate change handled: {outcome.value}")
        return outcome
