"""
Post-reload health verification.

After a certificate reload the coordinator asks whether nginx still
answers on its health endpoint. An unhealthy answer is only reported:
the previous certificate is already gone from the store, so there is
nothing to roll back to.
"""

import asyncio
import logging

import httpx

from certwatch.config import settings

logger = logging.getLogger(__name__)


class HealthCheckError(Exception):
    """NGINX did not answer successfully within the allowed attempts."""

    def __init__(self, message: str, attempts: int, last_error: str | None = None):
        self.message = message
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class HealthChecker:
    """Polls an HTTP endpoint until NGINX answers with a 2xx status."""

    def __init__(self, endpoint: str, retries: int = 5, interval: float = 1.0, timeout: float = 5.0):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.endpoint = endpoint
        self.retries = retries
        self.interval = interval
        self.timeout = timeout

    async def check_once(self, client: httpx.AsyncClient) -> str | None:
        """One request; returns None when healthy, otherwise the reason it is not."""
        try:
            response = await client.get(self.endpoint)
        except httpx.TimeoutException:
            return f"timed out after {self.timeout:g}s"
        except httpx.ConnectError as e:
            return f"connection failed: {e}"
        except httpx.RequestError as e:
            return str(e)

        if 200 <= response.status_code < 300:
            return None
        return f"HTTP {response.status_code}"

    async def verify_health(self) -> int:
        """
        Check until NGINX is healthy.

        Returns:
            The attempt number that succeeded

        Raises:
            HealthCheckError if every attempt failed
        """
        last_error = None
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(1, self.retries + 1):
                last_error = await self.check_once(client)
                if last_error is None:
                    logger.info(f"NGINX healthy after reload (attempt {attempt}/{self.retries})")
                    return attempt

                logger.warning(f"Health check {attempt}/{self.retries} against {self.endpoint}: {last_error}")
                if attempt < self.retries:
                    await asyncio.sleep(self.interval)

        raise HealthCheckError(
            f"{self.endpoint} unhealthy after {self.retries} attempts", attempts=self.retries, last_error=last_error
        )


def get_health_checker() -> HealthChecker | None:
    """Health checker from settings, None when no endpoint is configured."""
    if not settings.nginx_health_endpoint:
        return None
    return HealthChecker(
        settings.nginx_health_endpoint,
        retries=settings.nginx_health_check_retries,
        interval=settings.nginx_health_check_interval,
    )
