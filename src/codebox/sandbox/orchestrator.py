"""Execution orchestrator: workspace lifecycle around one backend invocation.

Each request moves strictly through::

    CREATED -> WORKSPACE_PREPARED -> CODE_WRITTEN -> BACKEND_INVOKED -> {COMPLETED | TIMED_OUT | FAILED}

The scratch workspace is removed on every exit path.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path

import structlog

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.errors import CodeboxError, LocalBackendDisabledError, WorkspaceError
from codebox.models import TIMEOUT_EXIT_CODE, ExecutionRequest, ExecutionResult, ResourceLimits
from codebox.sandbox.archive import (
    DIR_PERMISSION,
    FILE_PERMISSION,
    create_archive,
    extract_archive,
    grant_owner_access,
)
from codebox.sandbox.backends.base import ExecutionBackend
from codebox.utils.logging import get_logger

logger = get_logger(__name__)


class ExecutionState(StrEnum):
    CREATED = "created"
    WORKSPACE_PREPARED = "workspace_prepared"
    CODE_WRITTEN = "code_written"
    BACKEND_INVOKED = "backend_invoked"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@contextmanager
def scratch_workspace(root: str | None = None) -> Iterator[Path]:
    """Create a private, uniquely named workspace and always delete it afterwards.

    Args:
        root: Parent directory for scratch space; the system temp dir by default.

    Yields:
        Path of the empty working directory.

    Raises:
        WorkspaceError: If the directory cannot be created.
    """
    try:
        temp_dir = Path(tempfile.mkdtemp(prefix="codebox-exec-", dir=root))
    except OSError as exc:
        raise WorkspaceError(f"failed to create temp dir: {exc}") from exc

    try:
        workdir = temp_dir / "workdir"
        workdir.mkdir(mode=DIR_PERMISSION)
        workdir.chmod(DIR_PERMISSION)
        yield workdir
    finally:
        # Executed code may have stripped permissions from its own files.
        grant_owner_access(temp_dir)
        shutil.rmtree(temp_dir, ignore_errors=True)
        if temp_dir.exists():
            logger.warning("workspace_cleanup_incomplete", path=str(temp_dir))


class Orchestrator:
    """Runs one request end to end against a single execution backend.

    The orchestrator holds only read-only configuration, so one instance can
    serve concurrent requests from independent worker threads.
    """

    def __init__(self, config: CodeboxConfig, backend: ExecutionBackend) -> None:
        """Initialize the orchestrator.

        Args:
            config: Codebox configuration (treated as immutable).
            backend: Backend that executes prepared workspaces.

        Raises:
            LocalBackendDisabledError: If a non-isolating backend is used without opt-in.
        """
        if not backend.isolating and not config.sandbox.enable_local_backend:
            raise LocalBackendDisabledError(f"backend {backend.name!r} is not isolating and has not been enabled")
        self._config = config
        self._sandbox = config.sandbox
        self._backend = backend

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    def resolve_limits(self, request: ExecutionRequest) -> ResourceLimits:
        """Combine request overrides with configured ceilings; requests can only tighten them."""
        timeout = self._sandbox.timeout_sec
        if request.timeout_seconds is not None:
            timeout = min(timeout, request.timeout_seconds)
        memory = self._sandbox.memory_mb
        if request.memory_mb is not None:
            memory = min(memory, request.memory_mb)
        network = self._sandbox.network_enabled and request.network_enabled is not False
        return ResourceLimits(timeout_seconds=timeout, memory_mb=memory, network_enabled=network)

    async def execute_async(self, request: ExecutionRequest) -> ExecutionResult:
        """Run :meth:`execute` on a worker thread."""
        return await asyncio.to_thread(self.execute, request)

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute one request.

        Args:
            request: Decoded execution request.

        Returns:
            ExecutionResult; a timeout is a result with ``timed_out=True``,
            the timeout exit code and no artifacts.

        Raises:
            RequestValidationError: Bad language or input archive.
            ArtifactSizeError: Packaged workspace exceeds ``max_artifact_size_mb``.
            ConfigurationError: Missing language metadata.
            BackendError: The runtime could not be invoked.
            WorkspaceError: Scratch filesystem failure.
        """
        started = time.monotonic()
        log = logger.bind(language=request.language.value, backend=self._backend.name)
        state = ExecutionState.CREATED

        try:
            language = self._config.language(request.language)
            limits = self.resolve_limits(request)

            with scratch_workspace(self._sandbox.workspace_root) as workspace:
                if request.workdir_archive:
                    entries = extract_archive(request.workdir_archive, workspace)
                    log.debug("workdir_archive_extracted", entries=entries)
                state = self._transition(log, ExecutionState.WORKSPACE_PREPARED)

                self._write_source(workspace, language, request.code)
                state = self._transition(log, ExecutionState.CODE_WRITTEN)

                outcome = self._backend.execute(workspace, language, limits)
                state = self._transition(log, ExecutionState.BACKEND_INVOKED)

                if outcome.timed_out:
                    state = self._transition(log, ExecutionState.TIMED_OUT)
                    log.info("execution_timed_out", timeout_seconds=limits.timeout_seconds)
                    return ExecutionResult(
                        stdout=outcome.stdout,
                        stderr=outcome.stderr,
                        exit_code=TIMEOUT_EXIT_CODE,
                        artifacts_archive=b"",
                        timed_out=True,
                        duration_ms=_elapsed_ms(started),
                    )

                artifacts = self._package(workspace, language)
                state = self._transition(log, ExecutionState.COMPLETED)

        except CodeboxError as exc:
            log.warning(
                "execution_failed",
                state=ExecutionState.FAILED.value,
                last_state=state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        result = ExecutionResult(
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.exit_code,
            artifacts_archive=artifacts,
            duration_ms=_elapsed_ms(started),
        )
        log.info(
            "execution_completed",
            exit_code=result.exit_code,
            stdout_len=len(result.stdout),
            stderr_len=len(result.stderr),
            artifacts_bytes=len(result.artifacts_archive),
            duration_ms=result.duration_ms,
        )
        return result

    @staticmethod
    def _transition(log: structlog.stdlib.BoundLogger, state: ExecutionState) -> ExecutionState:
        log.debug("execution_state", state=state.value)
        return state

    @staticmethod
    def _write_source(workspace: Path, language: LanguageConfig, code: str) -> None:
        code_path = workspace / language.file_name
        try:
            code_path.write_text(language.wrap(code), encoding="utf-8")
            code_path.chmod(FILE_PERMISSION)
        except OSError as exc:
            raise WorkspaceError(f"failed to write user code: {exc}") from exc

    def _package(self, workspace: Path, language: LanguageConfig) -> bytes:
        try:
            grant_owner_access(workspace)
            return create_archive(
                workspace,
                language.exclude_patterns,
                max_bytes=self._sandbox.max_artifact_size_bytes,
            )
        except OSError as exc:
            raise WorkspaceError(f"failed to create artifacts archive: {exc}") from exc


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
