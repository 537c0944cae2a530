"""Pydantic models for Codebox requests, results, limits and backend invocations."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# Exit status reported when the wall-clock deadline expires (same convention as timeout(1)).
TIMEOUT_EXIT_CODE = 124


class Language(StrEnum):
    """Supported runtime identifiers."""

    PYTHON = "python"
    NODEJS = "nodejs"
    GO = "go"
    CPP = "cpp"


# ---------------------------------------------------------------------------
# Request / result models
# ---------------------------------------------------------------------------


class ExecutionRequest(BaseModel):
    """A single code execution request, already decoded from the wire envelope.

    Resource fields left as ``None`` fall back to the configured sandbox defaults.
    """

    model_config = ConfigDict(frozen=True)

    language: Language
    code: str
    workdir_archive: bytes | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    memory_mb: int | None = Field(default=None, gt=0)
    network_enabled: bool | None = None


class ResourceLimits(BaseModel):
    """Effective resource ceiling for one backend invocation."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(gt=0)
    memory_mb: int = Field(gt=0)
    network_enabled: bool = False


class ExecutionResult(BaseModel):
    """Outcome of one request; ownership passes to the caller."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    artifacts_archive: bytes = b""
    timed_out: bool = False
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Backend models
# ---------------------------------------------------------------------------


class InvocationDescriptor(BaseModel):
    """Fully resolved, backend-specific invocation.

    ``argv`` is the complete command line for CLI-driven backends and the
    in-container command for SDK-driven ones. ``mounts`` maps host paths to
    container paths.
    """

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    environment: dict[str, str] = Field(default_factory=dict)
    workdir: str
    limits: ResourceLimits
    mounts: dict[str, str] = Field(default_factory=dict)
    image: str | None = None
    container_name: str | None = None

    @property
    def timeout_seconds(self) -> float:
        return self.limits.timeout_seconds


class BackendOutcome(BaseModel):
    """The three observable outcomes of a backend run, plus the deadline flag."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
