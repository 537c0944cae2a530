"""Docker backend driven through the docker SDK."""

from __future__ import annotations

import os
import time
from pathlib import Path

import docker
import docker.errors
import requests
from docker import DockerClient
from docker.models.containers import Container
from docker.types import Ulimit

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.errors import BackendError, BackendUnavailableError
from codebox.models import BackendOutcome, InvocationDescriptor, ResourceLimits
from codebox.sandbox.backends.base import (
    CONTAINER_WORKDIR,
    FILE_SIZE_LIMIT_BYTES,
    BoundedOutput,
    ExecutionBackend,
    cpu_seconds,
    new_container_name,
    timeout_outcome,
)
from codebox.utils.logging import get_logger

logger = get_logger(__name__)

# Raised by the SDK when wait(timeout=...) elapses before the container exits.
_WAIT_TIMEOUT_ERRORS = (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError)

# Tolerance when comparing elapsed wall time against the wait deadline.
_CLOCK_SLACK_SECONDS = 0.1


def _deadline_reached(exc: Exception, started: float, timeout: float) -> bool:
    """Tell a wait() deadline expiry apart from a dropped daemon connection.

    Some SDK versions surface the read timeout as ``ConnectionError``; only the
    clock distinguishes that from a connection that really went away.
    """
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    return time.monotonic() - started >= timeout - _CLOCK_SLACK_SECONDS


class DockerBackend(ExecutionBackend):
    """Runs each request in a fresh, locked-down container with the workspace bind-mounted."""

    name = "docker"

    def __init__(self, config: CodeboxConfig, client: DockerClient | None = None) -> None:
        """Initialize the backend.

        Args:
            config: Codebox configuration.
            client: Pre-built Docker client; created from the environment on first use otherwise.
        """
        super().__init__(config)
        self._client = client

    def _get_client(self) -> DockerClient:
        """Get or create the Docker client (lazy initialization).

        Raises:
            BackendUnavailableError: If the Docker daemon is not reachable.
        """
        if self._client is None:
            try:
                client = docker.from_env()
                client.ping()
            except docker.errors.DockerException as exc:
                raise BackendUnavailableError(f"Docker is not available: {exc}") from exc
            self._client = client
        return self._client

    def _user(self) -> str | None:
        if self._sandbox.container_user:
            return self._sandbox.container_user
        if hasattr(os, "getuid"):
            return f"{os.getuid()}:{os.getgid()}"
        return None

    def build_descriptor(
        self, workspace: Path, language: LanguageConfig, limits: ResourceLimits
    ) -> InvocationDescriptor:
        return InvocationDescriptor(
            argv=["sh", "-c", language.command()],
            environment=dict(language.environment),
            workdir=CONTAINER_WORKDIR,
            limits=limits,
            mounts={str(workspace.resolve()): CONTAINER_WORKDIR},
            image=language.image,
            container_name=new_container_name(),
        )

    def run(self, descriptor: InvocationDescriptor) -> BackendOutcome:
        """Start the container, wait up to the deadline and collect its logs.

        Raises:
            BackendUnavailableError: If the daemon or the image is unavailable.
            BackendError: On any other Docker API failure.
        """
        client = self._get_client()
        limits = descriptor.limits
        cpu = cpu_seconds(limits)
        container: Container | None = None

        try:
            container = client.containers.run(
                image=descriptor.image,
                command=descriptor.argv,
                name=descriptor.container_name,
                detach=True,
                environment=descriptor.environment,
                working_dir=descriptor.workdir,
                volumes={host: {"bind": target, "mode": "rw"} for host, target in descriptor.mounts.items()},
                network_mode="bridge" if limits.network_enabled else "none",
                mem_limit=f"{limits.memory_mb}m",
                memswap_limit=f"{limits.memory_mb}m",
                ulimits=[
                    Ulimit(name="cpu", soft=cpu, hard=cpu),
                    Ulimit(name="fsize", soft=FILE_SIZE_LIMIT_BYTES, hard=FILE_SIZE_LIMIT_BYTES),
                ],
                security_opt=["no-new-privileges:true"],
                cap_drop=["ALL"],
                user=self._user(),
                remove=False,  # removed in finally, after the logs are read
            )

            waited_from = time.monotonic()
            try:
                status = container.wait(timeout=limits.timeout_seconds)
            except _WAIT_TIMEOUT_ERRORS as exc:
                if not _deadline_reached(exc, waited_from, limits.timeout_seconds):
                    raise BackendError(f"lost connection to Docker while waiting: {exc}") from exc
                logger.info("execution_deadline_expired", backend=self.name, container=descriptor.container_name)
                self._stop(container)
                stdout, stderr = self._partial_logs(container)
                return timeout_outcome(stdout, stderr, limits)

            exit_code = int(status.get("StatusCode", 1))
            stdout, stderr = self._logs(container)
            return BackendOutcome(stdout=stdout, stderr=stderr, exit_code=exit_code)

        except docker.errors.ImageNotFound as exc:
            raise BackendUnavailableError(f"Docker image '{descriptor.image}' not found: {exc}") from exc
        except (docker.errors.DockerException, requests.exceptions.RequestException) as exc:
            raise BackendError(f"Docker execution failed: {exc}") from exc
        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                except docker.errors.NotFound:
                    pass
                except docker.errors.DockerException as exc:
                    logger.warning("docker_container_remove_failed", container=descriptor.container_name, error=str(exc))

    def _logs(self, container: Container) -> tuple[str, str]:
        return self._collect(container, stdout=True), self._collect(container, stdout=False)

    def _collect(self, container: Container, *, stdout: bool) -> str:
        """Stream one log channel, retaining at most ``max_output_bytes`` of it."""
        sink = BoundedOutput(self._sandbox.max_output_bytes)
        for chunk in container.logs(stdout=stdout, stderr=not stdout, stream=True, follow=False):
            sink.feed(chunk)
        return sink.text()

    def _partial_logs(self, container: Container) -> tuple[str, str]:
        try:
            return self._logs(container)
        except docker.errors.DockerException as exc:
            logger.warning("docker_logs_unavailable", container=container.name, error=str(exc))
            return "", ""

    def _stop(self, container: Container) -> None:
        """Stop within the grace period, falling back to SIGKILL."""
        grace = int(self._sandbox.stop_grace_seconds)
        try:
            container.stop(timeout=grace)
            return
        except (docker.errors.DockerException, requests.exceptions.RequestException) as exc:
            logger.warning("docker_container_stop_failed", container=container.name, error=str(exc))
        try:
            container.kill()
        except (docker.errors.DockerException, requests.exceptions.RequestException) as exc:
            logger.error("docker_container_kill_failed", container=container.name, error=str(exc))
