"""
Unit tests for the certificate watcher and reload coordinator.

Tests the cold-start wait, change de-duplication, validate-before-reload,
bootstrap promotion, and a certbot symlink swap on disk.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from certwatch.core.cert_store import FilesystemCertificateStore
from certwatch.core.cert_watcher import BootstrapPromotion, CertificateWatcher, ReloadCoordinator
from certwatch.core.health_checker import HealthCheckError
from certwatch.core.mode_selector import ActiveConfig, ActiveConfigError
from certwatch.core.nginx_service import NginxControlError
from certwatch.models.proxy import ConfigMode, ReloadOutcome, WatchState


DOMAIN = "example.com"


async def wait_until(predicate, timeout=2.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def active_config(tmp_conf_dir, config_generator):
    active = ActiveConfig(tmp_conf_dir / "default.conf")
    active.write(config_generator.generate(ConfigMode.ACME_BOOTSTRAP))
    return active


@pytest.fixture
def promotion(memory_store, config_generator, active_config):
    return BootstrapPromotion(memory_store, DOMAIN, config_generator, active_config)


class TestReloadCoordinator:
    """Test validate-then-reload."""

    @pytest.mark.asyncio
    async def test_reload_after_valid_config(self, mock_nginx):
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.RELOADED
        mock_nginx.test_config.assert_awaited_once()
        mock_nginx.reload_nginx.assert_awaited_once()
        assert coordinator.reload_count == 1

    @pytest.mark.asyncio
    async def test_invalid_config_is_not_reloaded(self, mock_nginx):
        mock_nginx.test_config = AsyncMock(
            return_value=(False, "", "nginx: [emerg] cannot load certificate key")
        )
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.VALIDATION_FAILED
        mock_nginx.reload_nginx.assert_not_awaited()
        assert coordinator.reload_count == 0

    @pytest.mark.asyncio
    async def test_controller_error_counts_as_invalid(self, mock_nginx):
        mock_nginx.test_config = AsyncMock(side_effect=NginxControlError("timed out", error_type="nginx_timeout"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.VALIDATION_FAILED
        mock_nginx.reload_nginx.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reload_failure(self, mock_nginx):
        mock_nginx.reload_nginx = AsyncMock(return_value=(False, "", "nginx: [error] invalid PID number"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.RELOAD_FAILED
        assert coordinator.reload_count == 0

    @pytest.mark.asyncio
    async def test_http_only_is_skipped(self, mock_nginx):
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.HTTP_ONLY)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.SKIPPED
        mock_nginx.test_config.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhealthy_after_reload_is_still_reloaded(self, mock_nginx):
        health_checker = MagicMock()
        health_checker.verify_health = AsyncMock(side_effect=HealthCheckError("unhealthy", attempts=5))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE, health_checker=health_checker)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.RELOADED
        health_checker.verify_health.assert_awaited_once()


class TestBootstrapPromotion:
    """Test the ACME bootstrap to TLS swap."""

    @pytest.mark.asyncio
    async def test_promotes_when_certificate_appears(
        self, mock_nginx, memory_store, promotion, active_config, cert_factory
    ):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.RELOADED
        assert coordinator.mode == ConfigMode.TLS_ACTIVE
        assert "listen 443 ssl;" in active_config.read()

    @pytest.mark.asyncio
    async def test_invalid_tls_config_is_rolled_back(
        self, mock_nginx, memory_store, promotion, active_config, cert_factory
    ):
        bootstrap = active_config.read()
        memory_store.write_bundle(DOMAIN, *cert_factory())
        mock_nginx.test_config = AsyncMock(return_value=(False, "", "nginx: [emerg] PEM_read_bio failed"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.VALIDATION_FAILED
        assert coordinator.mode == ConfigMode.ACME_BOOTSTRAP
        assert active_config.read() == bootstrap
        mock_nginx.reload_nginx.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_reload_is_rolled_back(
        self, mock_nginx, memory_store, promotion, active_config, cert_factory
    ):
        bootstrap = active_config.read()
        memory_store.write_bundle(DOMAIN, *cert_factory())
        mock_nginx.reload_nginx = AsyncMock(return_value=(False, "", "reload failed"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.RELOAD_FAILED
        assert active_config.read() == bootstrap

    @pytest.mark.asyncio
    async def test_no_promotion_without_bundle(self, mock_nginx, promotion, active_config):
        bootstrap = active_config.read()
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        await coordinator.handle_certificate_change()

        assert coordinator.mode == ConfigMode.ACME_BOOTSTRAP
        assert active_config.read() == bootstrap

    @pytest.mark.asyncio
    async def test_unwritable_config_keeps_bootstrap(
        self, mock_nginx, memory_store, promotion, active_config, cert_factory
    ):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        with patch.object(ActiveConfig, "write", side_effect=ActiveConfigError("Cannot write default.conf")):
            outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.VALIDATION_FAILED
        assert coordinator.mode == ConfigMode.ACME_BOOTSTRAP
        mock_nginx.test_config.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_rollback_is_reported(
        self, mock_nginx, memory_store, promotion, active_config, cert_factory
    ):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        mock_nginx.test_config = AsyncMock(return_value=(False, "", "nginx: [emerg] PEM_read_bio failed"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP, promotion=promotion)

        with patch.object(ActiveConfig, "restore", side_effect=ActiveConfigError("Cannot write default.conf")):
            outcome = await coordinator.handle_certificate_change()

        assert outcome == ReloadOutcome.VALIDATION_FAILED
        mock_nginx.reload_nginx.assert_not_awaited()


class TestCertificateWatcherColdStart:
    """Test waiting for the first certificate."""

    @pytest.mark.asyncio
    async def test_polls_while_absent(self, memory_store, mock_nginx):
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.ACME_BOOTSTRAP)
        sleep = AsyncMock()
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, poll_interval=60, sleep=sleep)

        assert await watcher.poll_once() is False
        assert await watcher.poll_once() is False

        assert watcher.state == WatchState.AWAITING_FIRST_CERT
        assert sleep.await_count == 2
        sleep.assert_awaited_with(60)
        mock_nginx.test_config.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reloads_when_certificate_appears(self, memory_store, mock_nginx, cert_factory):
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, sleep=AsyncMock())

        await watcher.poll_once()
        memory_store.write_bundle(DOMAIN, *cert_factory())
        assert await watcher.poll_once() is True

        assert watcher.state == WatchState.WATCHING
        assert watcher.last_modified == memory_store.modified_at(DOMAIN)
        assert coordinator.reload_count == 1

    @pytest.mark.asyncio
    async def test_existing_certificate_is_not_reloaded(self, memory_store, mock_nginx, cert_factory):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, sleep=AsyncMock())

        assert await watcher.poll_once() is True

        assert watcher.state == WatchState.WATCHING
        mock_nginx.reload_nginx.assert_not_awaited()


class TestCertificateWatcherChanges:
    """Test change detection while watching."""

    @pytest.mark.asyncio
    async def test_duplicate_notification_is_ignored(self, memory_store, mock_nginx, cert_factory):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, sleep=AsyncMock())
        await watcher.poll_once()

        assert await watcher.check_for_change() is None

        memory_store.write_bundle(DOMAIN, *cert_factory())
        assert await watcher.check_for_change() == ReloadOutcome.RELOADED
        assert await watcher.check_for_change() is None
        assert coordinator.reload_count == 1

    @pytest.mark.asyncio
    async def test_disappearing_certificate_returns_to_polling(self, memory_store, mock_nginx, cert_factory):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, sleep=AsyncMock())
        await watcher.poll_once()

        memory_store.remove_bundle(DOMAIN)
        assert await watcher.check_for_change() is None
        assert watcher.state == WatchState.AWAITING_FIRST_CERT

        memory_store.write_bundle(DOMAIN, *cert_factory())
        await watcher.poll_once()
        assert coordinator.reload_count == 1

    @pytest.mark.asyncio
    async def test_exactly_one_reload_per_renewal(self, memory_store, mock_nginx, cert_factory):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, poll_interval=0.01, settle_delay=0)

        task = asyncio.create_task(watcher.run())
        try:
            await wait_until(lambda: watcher.state == WatchState.WATCHING and memory_store._subscribers.get(DOMAIN))

            memory_store.write_bundle(DOMAIN, *cert_factory())
            await wait_until(lambda: coordinator.reload_count == 1)

            # Notifications without a content change
            memory_store.emit_event(DOMAIN)
            memory_store.emit_event(DOMAIN)
            await asyncio.sleep(0.05)
            assert coordinator.reload_count == 1

            memory_store.write_bundle(DOMAIN, *cert_factory())
            await wait_until(lambda: coordinator.reload_count == 2)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert mock_nginx.test_config.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_renewal_keeps_watching(self, memory_store, mock_nginx, cert_factory):
        memory_store.write_bundle(DOMAIN, *cert_factory())
        mock_nginx.test_config = AsyncMock(return_value=(False, "", "nginx: [emerg] cannot load certificate"))
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(memory_store, DOMAIN, coordinator, poll_interval=0.01, settle_delay=0)

        task = asyncio.create_task(watcher.run())
        try:
            await wait_until(lambda: watcher.state == WatchState.WATCHING and memory_store._subscribers.get(DOMAIN))
            memory_store.write_bundle(DOMAIN, b"-----BEGIN CERTIFICATE-----\ntruncated", b"key")
            await wait_until(lambda: mock_nginx.test_config.await_count == 1)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        mock_nginx.reload_nginx.assert_not_awaited()
        assert watcher.state == WatchState.WATCHING


class TestCertificateWatcherOnDisk:
    """Test the watcher against a certbot lineage on disk."""

    @pytest.mark.asyncio
    async def test_certbot_renewal_reloads_once(self, certbot_lineage, mock_nginx):
        store = FilesystemCertificateStore(certbot_lineage.live_base)
        coordinator = ReloadCoordinator(mock_nginx, ConfigMode.TLS_ACTIVE)
        watcher = CertificateWatcher(store, DOMAIN, coordinator, poll_interval=0.05, settle_delay=0.2)
        task = asyncio.create_task(watcher.run())
        try:
            await wait_until(lambda: watcher.state == WatchState.WATCHING)
            await asyncio.sleep(0.2)
            assert coordinator.reload_count == 0

            certbot_lineage.renew()

            await wait_until(lambda: coordinator.reload_count == 1, timeout=5)
            await asyncio.sleep(0.5)
            assert coordinator.reload_count == 1
            assert watcher.last_modified == store.modified_at(DOMAIN)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
