"""Podman backend driven through the podman CLI."""

from __future__ import annotations

import subprocess
from pathlib import Path

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.models import InvocationDescriptor, ResourceLimits
from codebox.sandbox.backends.base import (
    CONTAINER_WORKDIR,
    FILE_SIZE_LIMIT_BYTES,
    SubprocessBackend,
    cpu_seconds,
    new_container_name,
)
from codebox.utils.logging import get_logger

logger = get_logger(__name__)


class PodmanBackend(SubprocessBackend):
    """Runs each request through ``podman run --rm`` with a fixed hardening flag set."""

    name = "podman"

    def __init__(self, config: CodeboxConfig, binary: str = "podman") -> None:
        super().__init__(config)
        self._binary = binary

    def build_descriptor(
        self, workspace: Path, language: LanguageConfig, limits: ResourceLimits
    ) -> InvocationDescriptor:
        container_name = new_container_name()
        cpu = cpu_seconds(limits)
        host_dir = str(workspace.resolve())

        argv = [
            self._binary, "run",
            "--name", container_name,
            "--rm",
            "-v", f"{host_dir}:{CONTAINER_WORKDIR}",
            "--workdir", CONTAINER_WORKDIR,
            "--memory", f"{limits.memory_mb}m",
            "--memory-swap", f"{limits.memory_mb}m",
            "--network", "bridge" if limits.network_enabled else "none",
            "--ulimit", f"fsize={FILE_SIZE_LIMIT_BYTES}",
            "--ulimit", f"cpu={cpu}",
            "--security-opt", "no-new-privileges:true",
            "--cap-drop", "ALL",
        ]  # fmt: skip
        if self._sandbox.container_user:
            argv += ["--user", self._sandbox.container_user]
        for key, value in sorted(language.environment.items()):
            argv += ["-e", f"{key}={value}"]
        argv += [language.image, "sh", "-c", language.command()]

        return InvocationDescriptor(
            argv=argv,
            environment=dict(language.environment),
            workdir=CONTAINER_WORKDIR,
            limits=limits,
            mounts={host_dir: CONTAINER_WORKDIR},
            image=language.image,
            container_name=container_name,
        )

    def _on_deadline(self, descriptor: InvocationDescriptor) -> None:
        """Ask podman to stop the container; give up after the grace period."""
        grace = self._sandbox.stop_grace_seconds
        stop_cmd = [self._binary, "stop", "--time", str(int(grace)), str(descriptor.container_name)]
        try:
            completed = subprocess.run(  # noqa: S603
                stop_cmd,
                capture_output=True,
                text=True,
                timeout=grace + 1,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("podman_stop_failed", container=descriptor.container_name, error=str(exc))
            return
        if completed.returncode != 0:
            logger.warning(
                "podman_stop_failed",
                container=descriptor.container_name,
                error=completed.stderr.strip()[:500],
            )
