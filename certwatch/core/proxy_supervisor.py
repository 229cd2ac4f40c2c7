"""
Proxy process supervisor.

Select and render the configuration variant, run nginx in the
foreground, and watch the certificate in the background. Termination
signals are forwarded to nginx as a graceful quit and stop the watcher.
"""

import asyncio
import contextlib
import logging
import signal

from certwatch.config import get_store_base, settings
from certwatch.core.cert_store import CertificateStore, FilesystemCertificateStore, StorePermissionError
from certwatch.core.cert_watcher import BootstrapPromotion, CertificateWatcher, ReloadCoordinator
from certwatch.core.health_checker import get_health_checker
from certwatch.core.mode_selector import ModeSelector, get_mode_selector
from certwatch.core.nginx_service import LocalNginxService, NginxController, get_nginx_controller
from certwatch.models.proxy import ConfigMode

logger = logging.getLogger(__name__)


def build_watcher(
    selector: ModeSelector,
    mode: ConfigMode,
    nginx: NginxController,
    store: CertificateStore,
) -> CertificateWatcher:
    """Wire a watcher and coordinator for the selected mode."""
    promotion = None
    if settings.proxy_promote_bootstrap:
        promotion = BootstrapPromotion(store, selector.domain, selector.generator, selector.active_config)
    elif mode is ConfigMode.ACME_BOOTSTRAP:
        logger.info("Bootstrap configuration stays active until the proxy restarts with a certificate")

    coordinator = ReloadCoordinator(
        nginx=nginx,
        mode=mode,
        promotion=promotion,
        health_checker=get_health_checker(),
    )
    return CertificateWatcher(
        store=store,
        domain=selector.domain,
        coordinator=coordinator,
        poll_interval=settings.watch_poll_interval,
        settle_delay=settings.watch_settle_delay,
    )


async def _watch_until_done(watcher: CertificateWatcher) -> int:
    """Run the watcher; a permission failure ends the process non-zero."""
    try:
        await watcher.run()
    except StorePermissionError as e:
        logger.critical(f"{e.message}. {e.suggestion}")
        return 1
    return 0


def _install_signal_handlers(callback) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    signals = [signal.SIGTERM, signal.SIGINT]
    for sig in signals:
        loop.add_signal_handler(sig, callback, sig)
    return signals


def _remove_signal_handlers(signals: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


async def run_proxy() -> int:
    """
    Entrypoint of the proxy process.

    Returns nginx's exit code, or 1 when the certificate store is not
    accessible.
    """
    store = FilesystemCertificateStore(get_store_base())
    selector = get_mode_selector(store)
    mode = selector.select_and_materialize()

    nginx = LocalNginxService(settings.nginx_binary, timeout=settings.nginx_operation_timeout)
    process = await nginx.start_foreground()

    watcher_task = None
    if mode is ConfigMode.HTTP_ONLY:
        logger.info("HTTP-only mode; certificate monitor not started")
    else:
        watcher = build_watcher(selector, mode, nginx, store)
        watcher_task = asyncio.create_task(_watch_until_done(watcher))

    def on_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, stopping NGINX gracefully")
        if process.returncode is None:
            process.send_signal(signal.SIGQUIT)

    signals = _install_signal_handlers(on_signal)
    try:
        waiters = {asyncio.create_task(process.wait())}
        if watcher_task is not None:
            waiters.add(watcher_task)
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

        if watcher_task is not None and watcher_task in done and watcher_task.result() != 0:
            logger.critical("Certificate monitor failed; stopping NGINX")
            if process.returncode is None:
                process.send_signal(signal.SIGQUIT)
            await process.wait()
            return watcher_task.result()

        exit_code = await process.wait()
        logger.info(f"NGINX exited with status {exit_code}")
        return exit_code
    finally:
        _remove_signal_handlers(signals)
        if watcher_task is not None and not watcher_task.done():
            watcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher_task


async def run_watch_only() -> int:
    """Run only the watcher and coordinator (sidecar deployments)."""
    store = FilesystemCertificateStore(get_store_base())
    selector = get_mode_selector(store)
    mode = selector.select()
    if mode is ConfigMode.HTTP_ONLY:
        logger.info("HTTP-only mode; nothing to watch")
        return 0

    watcher = build_watcher(selector, mode, get_nginx_controller(), store)
    watcher_task = asyncio.create_task(_watch_until_done(watcher))

    def on_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, stopping certificate monitor")
        watcher_task.cancel()

    signals = _install_signal_handlers(on_signal)
    try:
        return await watcher_task
    except asyncio.CancelledError:
        return 0
    finally:
        _remove_signal_handlers(signals)
