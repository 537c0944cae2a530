"""Local backend: runs the host toolchain directly in the workspace.

WARNING: nothing here isolates the caller's code. There is no network,
memory or filesystem confinement. It exists for fast development iteration
and must be enabled explicitly with ``sandbox.enable_local_backend``.
"""

from __future__ import annotations

import os
from pathlib import Path

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.errors import LocalBackendDisabledError
from codebox.models import InvocationDescriptor, ResourceLimits
from codebox.sandbox.backends.base import SubprocessBackend
from codebox.utils.logging import get_logger

logger = get_logger(__name__)


class LocalBackend(SubprocessBackend):
    """Runs ``sh -c "<build && run>"`` on the host with the workspace as cwd."""

    name = "local"
    isolating = False

    def __init__(self, config: CodeboxConfig) -> None:
        if not config.sandbox.enable_local_backend:
            raise LocalBackendDisabledError(
                "the local backend runs code without isolation; set sandbox.enable_local_backend to use it"
            )
        super().__init__(config)
        logger.warning("local_backend_enabled", detail="code will run on the host without isolation")

    def build_descriptor(
        self, workspace: Path, language: LanguageConfig, limits: ResourceLimits
    ) -> InvocationDescriptor:
        return InvocationDescriptor(
            argv=["sh", "-c", language.command(local=True)],
            environment=dict(language.environment),
            workdir=str(workspace),
            limits=limits,
        )

    def _process_cwd(self, descriptor: InvocationDescriptor) -> str | None:
        return descriptor.workdir

    def _process_env(self, descriptor: InvocationDescriptor) -> dict[str, str] | None:
        return {**os.environ, **descriptor.environment}
