"""
NGINX process control.

The reload coordinator only needs two operations from the serving
process: validate the configuration and reload gracefully. This module
defines that interface and a local implementation that runs the nginx
binary next to this process.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from certwatch.config import settings

logger = logging.getLogger(__name__)


class NginxControlError(Exception):
    """NGINX could not be reached or controlled."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


class NginxController(ABC):
    """Validate and reload the serving process."""

    @abstractmethod
    async def test_config(self) -> tuple[bool, str, str]:
        """Test NGINX configuration (nginx -t). Returns (success, stdout, stderr)."""

    @abstractmethod
    async def reload_nginx(self) -> tuple[bool, str, str]:
        """Send reload signal to NGINX (graceful reload). Returns (success, stdout, stderr)."""


class LocalNginxService(NginxController):
    """Controls an nginx binary running in the same container or host."""

    def __init__(self, nginx_binary: str = "nginx", timeout: float = 30):
        self.nginx_binary = nginx_binary
        self.timeout = timeout

    async def _run(self, args: list[str]) -> tuple[int, str, str]:
        command = [self.nginx_binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise NginxControlError(
                f"NGINX binary not found: {self.nginx_binary}",
                error_type="nginx_not_found",
                suggestion="Install nginx or set NGINX_BINARY",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise NginxControlError(
                f"'{' '.join(command)}' did not finish within {self.timeout} seconds",
                error_type="nginx_timeout",
            )

        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def test_config(self) -> tuple[bool, str, str]:
        logger.info("Testing NGINX configuration")
        exit_code, stdout, stderr = await self._run(["-t"])
        success = exit_code == 0

        if success:
            logger.info("NGINX configuration test passed")
        else:
            logger.warning(f"NGINX configuration test failed: {stderr.strip()}")

        return success, stdout, stderr

    async def reload_nginx(self) -> tuple[bool, str, str]:
        logger.info("Sending reload signal to NGINX")
        exit_code, stdout, stderr = await self._run(["-s", "reload"])
        success = exit_code == 0

        if success:
            logger.info("NGINX reload signal sent successfully")
        else:
            logger.error(f"NGINX reload failed: {stderr.strip()}")

        return success, stdout, stderr

    async def start_foreground(self) -> asyncio.subprocess.Process:
        """Start nginx in the foreground as a child process."""
        logger.info("Starting NGINX in the foreground")
        try:
            return await asyncio.create_subprocess_exec(self.nginx_binary, "-g", "daemon off;")
        except FileNotFoundError:
            raise NginxControlError(
                f"NGINX binary not found: {self.nginx_binary}",
                error_type="nginx_not_found",
                suggestion="Install nginx or set NGINX_BINARY",
            )


def get_nginx_controller() -> NginxController:
    """Pick the controller configured by NGINX_CONTROL."""
    if settings.nginx_control == "docker":
        from certwatch.core.docker_service import DockerService

        return DockerService(settings.nginx_container_name, timeout=settings.nginx_operation_timeout)
    return LocalNginxService(settings.nginx_binary, timeout=settings.nginx_operation_timeout)
