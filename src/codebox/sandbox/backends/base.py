"""Execution backend contract and the subprocess supervision shared by CLI-driven backends."""

from __future__ import annotations

import contextlib
import math
import os
import signal
import subprocess
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, ClassVar

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.errors import BackendError, BackendUnavailableError
from codebox.models import TIMEOUT_EXIT_CODE, BackendOutcome, InvocationDescriptor, ResourceLimits
from codebox.utils.logging import get_logger

logger = get_logger(__name__)

# Mount point of the workspace inside containers.
CONTAINER_WORKDIR = "/workdir"

# Per-file write ceiling applied inside containers (ulimit fsize).
FILE_SIZE_LIMIT_BYTES = 100_000_000

_READ_CHUNK_BYTES = 64 * 1024


def new_container_name() -> str:
    """Return a container name that is unique per invocation."""
    return f"codebox-exec-{uuid.uuid4().hex[:16]}"


def cpu_seconds(limits: ResourceLimits) -> int:
    """CPU-time ulimit derived from the wall-clock deadline."""
    return max(1, math.ceil(limits.timeout_seconds))


def decode_output(data: bytes | None, limit: int, total: int | None = None) -> str:
    """Decode captured process output, truncating it to ``limit`` bytes.

    ``total`` is the size of the full stream when only a prefix was kept.
    """
    if not data:
        return ""
    total = len(data) if total is None else total
    text = data[:limit].decode("utf-8", errors="replace")
    if total > limit:
        text += f"\n[output truncated: {total - limit} bytes omitted]\n"
    return text


class BoundedOutput:
    """Accumulates one output stream, keeping the first ``limit`` bytes and counting the rest."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self._data = bytearray()
        self._lock = threading.Lock()

    @property
    def retained(self) -> int:
        return len(self._data)

    def feed(self, chunk: bytes) -> None:
        with self._lock:
            room = self.limit - len(self._data)
            if room > 0:
                self._data += chunk[:room]
            self.total += len(chunk)

    def text(self) -> str:
        with self._lock:
            return decode_output(bytes(self._data), self.limit, self.total)


def _pump(stream: IO[bytes], sink: BoundedOutput) -> None:
    """Read a pipe until EOF; bytes past the sink's limit are discarded, never buffered."""
    fd = stream.fileno()
    try:
        while True:
            chunk = os.read(fd, _READ_CHUNK_BYTES)
            if not chunk:
                break
            sink.feed(chunk)
    finally:
        stream.close()


def start_reader(stream: IO[bytes] | None, sink: BoundedOutput) -> threading.Thread:
    """Drain ``stream`` into ``sink`` on a daemon thread so the child never blocks on a full pipe."""
    if stream is None:
        raise BackendError("child process has no output pipe")
    thread = threading.Thread(target=_pump, args=(stream, sink), name="codebox-output-reader", daemon=True)
    thread.start()
    return thread


def timeout_outcome(stdout: str, stderr: str, limits: ResourceLimits) -> BackendOutcome:
    """Build the synthetic result reported when the deadline expires."""
    separator = "\n" if stderr and not stderr.endswith("\n") else ""
    notice = f"Execution timed out after {limits.timeout_seconds:g}s"
    return BackendOutcome(
        stdout=stdout,
        stderr=f"{stderr}{separator}{notice}",
        exit_code=TIMEOUT_EXIT_CODE,
        timed_out=True,
    )


class ExecutionBackend(ABC):
    """Runs a prepared workspace under resource limits and a hard deadline.

    A backend turns (workspace, language metadata, limits) into an
    :class:`InvocationDescriptor` and executes it. A non-zero exit is a normal
    outcome; only failures to invoke the runtime raise :class:`BackendError`.
    On deadline expiry the backend must stop the underlying process or
    container before returning an outcome with ``timed_out=True``.
    """

    name: ClassVar[str]
    isolating: ClassVar[bool] = True

    def __init__(self, config: CodeboxConfig) -> None:
        self._config = config
        self._sandbox = config.sandbox

    @abstractmethod
    def build_descriptor(
        self, workspace: Path, language: LanguageConfig, limits: ResourceLimits
    ) -> InvocationDescriptor:
        """Resolve the backend-specific invocation for one request."""

    @abstractmethod
    def run(self, descriptor: InvocationDescriptor) -> BackendOutcome:
        """Execute a descriptor and collect stdout, stderr and exit status."""

    def execute(self, workspace: Path, language: LanguageConfig, limits: ResourceLimits) -> BackendOutcome:
        descriptor = self.build_descriptor(workspace, language, limits)
        logger.debug(
            "backend_invocation",
            backend=self.name,
            argv=descriptor.argv,
            container=descriptor.container_name,
            timeout_seconds=descriptor.timeout_seconds,
        )
        return self.run(descriptor)


class SubprocessBackend(ExecutionBackend):
    """Backend that supervises a single child process in its own session.

    On deadline expiry :meth:`_on_deadline` runs first (e.g. to stop a
    container), then the whole process group is killed and any output
    produced so far is drained for at most the stop grace period.
    """

    def _process_cwd(self, descriptor: InvocationDescriptor) -> str | None:
        return None

    def _process_env(self, descriptor: InvocationDescriptor) -> dict[str, str] | None:
        return None

    def _on_deadline(self, descriptor: InvocationDescriptor) -> None:
        """Hook for backend-specific cleanup before the process group is killed."""

    def run(self, descriptor: InvocationDescriptor) -> BackendOutcome:
        limit = self._sandbox.max_output_bytes
        try:
            proc = subprocess.Popen(  # noqa: S603
                descriptor.argv,
                cwd=self._process_cwd(descriptor),
                env=self._process_env(descriptor),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(f"{descriptor.argv[0]} not found: {exc}") from exc
        except OSError as exc:
            raise BackendError(f"failed to start {descriptor.argv[0]}: {exc}") from exc

        stdout, stderr = BoundedOutput(limit), BoundedOutput(limit)
        readers = [start_reader(proc.stdout, stdout), start_reader(proc.stderr, stderr)]

        try:
            proc.wait(timeout=descriptor.timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.info("execution_deadline_expired", backend=self.name, pid=proc.pid)
            self._on_deadline(descriptor)
            self._kill_group(proc)
            self._reap(proc, readers)
            return timeout_outcome(stdout.text(), stderr.text(), descriptor.limits)

        self._reap(proc, readers)
        exit_code = proc.returncode if proc.returncode >= 0 else 128 - proc.returncode
        return BackendOutcome(stdout=stdout.text(), stderr=stderr.text(), exit_code=exit_code)

    @staticmethod
    def _kill_group(proc: subprocess.Popen[bytes]) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)

    def _reap(self, proc: subprocess.Popen[bytes], readers: list[threading.Thread]) -> None:
        """Wait for the child and its output readers, each for at most the stop grace period."""
        grace = max(self._sandbox.stop_grace_seconds, 0.1)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

        for reader in readers:
            reader.join(grace)
        if any(reader.is_alive() for reader in readers):
            # Background children still hold the pipes.
            self._kill_group(proc)
            for reader in readers:
                reader.join(grace)
        if any(reader.is_alive() for reader in readers):
            logger.warning("process_drain_timeout", backend=self.name, pid=proc.pid)
