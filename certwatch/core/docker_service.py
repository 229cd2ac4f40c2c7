"""
Docker service for NGINX container management.

Provides async-safe wrapper around Docker SDK so the certificate
watcher can run as a sidecar and validate/reload nginx inside the
proxy container.
"""

import asyncio
import logging

import docker
from docker.errors import APIError, DockerException, NotFound

from certwatch.core.nginx_service import NginxControlError, NginxController

logger = logging.getLogger(__name__)


class DockerServiceError(NginxControlError):
    """Base exception for Docker service errors."""

    pass


class ContainerNotFoundError(DockerServiceError):
    """Container not found."""

    pass


class DockerUnavailableError(DockerServiceError):
    """Docker daemon not available."""

    pass


class DockerService(NginxController):
    """Validate and reload nginx through docker exec."""

    def __init__(self, container_name: str, timeout: float = 30):
        self.container_name = container_name
        self.timeout = timeout
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=int(self.timeout))
            except DockerException as e:
                raise DockerUnavailableError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _get_container(self):
        """Get the NGINX container by name."""
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            raise ContainerNotFoundError(
                f"Container '{self.container_name}' not found",
                error_type="container_not_found",
                suggestion="Ensure the proxy container is running and NGINX_CONTAINER_NAME matches",
            )
        except APIError as e:
            raise DockerServiceError(
                f"Docker API error: {e}",
                error_type="docker_api_error",
                suggestion="Check Docker daemon status and permissions",
            )

    async def exec_in_container(self, command: list[str]) -> tuple[int, str, str]:
        """
        Execute command in NGINX container.

        Args:
            command: Command and arguments as list

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._exec_in_container_sync, command), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise DockerServiceError(
                f"'{' '.join(command)}' did not finish within {self.timeout} seconds",
                error_type="docker_timeout",
            )

    def _exec_in_container_sync(self, command: list[str]) -> tuple[int, str, str]:
        """Synchronous command execution."""
        container = self._get_container()

        try:
            exec_result = container.exec_run(
                cmd=command,
                demux=True,  # Separate stdout/stderr
            )
        except APIError as e:
            raise DockerServiceError(
                f"Docker exec failed: {e}",
                error_type="docker_api_error",
                suggestion="Ensure the proxy container is running",
            )

        stdout, stderr = exec_result.output or (None, None)
        return exec_result.exit_code, stdout.decode() if stdout else "", stderr.decode() if stderr else ""

    async def reload_nginx(self) -> tuple[bool, str, str]:
        logger.info(f"Sending reload signal to NGINX in container {self.container_name}")
        exit_code, stdout, stderr = await self.exec_in_container(["nginx", "-s", "reload"])
        success = exit_code == 0

        if success:
            logger.info("NGINX reload signal sent successfully")
        else:
            logger.error(f"NGINX reload failed: {stderr}")

        return success, stdout, stderr

    async def test_config(self) -> tuple[bool, str, str]:
        logger.info(f"Testing NGINX configuration in container {self.container_name}")
        exit_code, stdout, stderr = await self.exec_in_container(["nginx", "-t"])
        success = exit_code == 0

        if success:
            logger.info("NGINX configuration test passed")
        else:
            logger.warning(f"NGINX configuration test failed: {stderr}")

        return success, stdout, stderr
