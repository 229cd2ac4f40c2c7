"""
Certificate renewal scheduler.

Drives the lifecycle manager with APScheduler: one delayed startup
check, then a fixed-interval renewal check. Failed checks are retried
only at the next interval (no backoff; the interval is the tunable).
"""

import asyncio
import logging
import signal
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from certwatch.config import settings
from certwatch.core.cert_manager import CertLifecycleManager, FatalCertificateError, get_cert_manager

logger = logging.getLogger(__name__)


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs periodic jobs to:
    - Acquire the certificate once the proxy is up
    - Renew the certificate when it enters the renewal window
    """

    def __init__(
        self,
        manager: CertLifecycleManager,
        interval: timedelta = timedelta(hours=12),
        startup_delay: float = 10,
        drain_timeout: float = 300,
    ):
        self.manager = manager
        self.interval = interval
        self.startup_delay = startup_delay
        self.drain_timeout = drain_timeout
        self.scheduler = AsyncIOScheduler(
            job_defaults={"max_instances": 1, "coalesce": True, "misfire_grace_time": None}
        )
        self.exit_code = 0
        self._stop_event: asyncio.Event | None = None
        self._idle: asyncio.Event | None = None
        self._running_checks = 0
        self._started = False

    async def start(self) -> None:
        """Start the renewal scheduler."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self._stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        first_run = datetime.now(timezone.utc) + timedelta(seconds=self.startup_delay)

        # Delay the first check so the proxy can serve the challenge directory
        self.scheduler.add_job(
            self._startup_check,
            DateTrigger(run_date=first_run),
            id="cert_startup_check",
            name="Initial Certificate Check",
        )

        self.scheduler.add_job(
            self._renewal_check,
            IntervalTrigger(seconds=self.interval.total_seconds(), start_date=first_run + self.interval),
            id="cert_renewal_check",
            name="Certificate Renewal Check",
            replace_existing=True,
        )

        self.scheduler.start()
        self._started = True
        logger.info(
            f"Certificate renewal scheduler started: first check in {self.startup_delay}s, "
            f"then every {self.interval}"
        )

    async def stop(self) -> None:
        """Stop the renewal scheduler, letting a running check finish."""
        if not self._started:
            return

        self._started = False
        # shutdown() cancels running jobs, so no new ones may start while draining
        if not self._idle.is_set():
            self.scheduler.pause()
            logger.info(f"Waiting up to {self.drain_timeout:g}s for the running certificate check")
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Certificate check still running at shutdown; stopping it")
        self.scheduler.shutdown(wait=False)
        logger.info("Certificate renewal scheduler stopped")

    def request_stop(self, exit_code: int = 0) -> None:
        """Ask run() to return with the given exit code."""
        if exit_code:
            self.exit_code = exit_code
        if self._stop_event is not None:
            self._stop_event.set()

    async def _startup_check(self) -> None:
        await self._guarded(self.manager.startup_check)

    async def _renewal_check(self) -> None:
        logger.info("Starting certificate renewal check")
        await self._guarded(self.manager.tick)

    async def _guarded(self, check) -> None:
        self._running_checks += 1
        if self._idle is not None:
            self._idle.clear()
        try:
            result = await check()
            logger.info(
                f"Certificate check complete: state={result.state.value} attempted={result.attempted} "
                f"renewed={result.renewed}"
            )
        except FatalCertificateError as e:
            logger.critical(f"Fatal certificate error: {e.message}")
            if e.suggestion:
                logger.critical(f"Suggestion: {e.suggestion}")
            self.request_stop(exit_code=1)
        finally:
            self._running_checks -= 1
            if self._running_checks == 0 and self._idle is not None:
                self._idle.set()

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs[job.id] = {"name": job.name, "next_run": next_run.isoformat() if next_run else None}
        return jobs

    async def run(self) -> int:
        """
        Run until a termination signal or a fatal error.

        Returns the process exit code.
        """
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

        try:
            await self._stop_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()

        return self.exit_code

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        self.request_stop()


def get_cert_scheduler() -> CertScheduler:
    """Build the scheduler and manager from settings."""
    return CertScheduler(
        manager=get_cert_manager(),
        interval=timedelta(hours=settings.cert_renewal_interval_hours),
        startup_delay=settings.cert_startup_delay,
        drain_timeout=settings.acme_client_timeout,
    )
