"""Backend selection from configuration."""

from __future__ import annotations

from codebox.config import CodeboxConfig
from codebox.errors import ConfigurationError
from codebox.sandbox.backends.base import ExecutionBackend
from codebox.sandbox.backends.docker_backend import DockerBackend
from codebox.sandbox.backends.local_backend import LocalBackend
from codebox.sandbox.backends.podman_backend import PodmanBackend


def create_backend(config: CodeboxConfig, backend: str | None = None) -> ExecutionBackend:
    """Create the execution backend named by ``backend`` or ``sandbox.backend``.

    Raises:
        ConfigurationError: If the name is unknown, or ``local`` is requested without opt-in.
    """
    name = backend or config.sandbox.backend
    if name == "docker":
        return DockerBackend(config)
    if name == "podman":
        return PodmanBackend(config)
    if name == "local":
        return LocalBackend(config)
    raise ConfigurationError(f"unsupported backend: {name}")
