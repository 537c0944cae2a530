"""Codebox error hierarchy: all application exceptions are defined here."""


class CodeboxError(Exception):
    """Base error for all Codebox exceptions."""


class ConfigurationError(CodeboxError):
    """Invalid or missing configuration."""


class LocalBackendDisabledError(ConfigurationError):
    """The local backend was selected without the explicit opt-in flag."""


class RequestValidationError(CodeboxError):
    """Request rejected before any backend was invoked."""


class UnsupportedLanguageError(RequestValidationError):
    """Language identifier is not one of the supported runtimes."""

    def __init__(self, language: str) -> None:
        super().__init__(f"unsupported language: {language}")
        self.language = language


class ArchiveError(RequestValidationError):
    """Input archive is malformed or could not be materialized."""


class PathSafetyError(ArchiveError):
    """Archive entry would resolve outside the destination directory."""

    def __init__(self, message: str, entry_name: str) -> None:
        super().__init__(message)
        self.entry_name = entry_name


class UnsupportedEntryError(ArchiveError):
    """Archive entry type (symlink, device, fifo, ...) is not allowed."""

    def __init__(self, entry_name: str, entry_type: str) -> None:
        super().__init__(f"unsupported entry type {entry_type!r} in archive: {entry_name}")
        self.entry_name = entry_name
        self.entry_type = entry_type


class ArtifactSizeError(CodeboxError):
    """Packaged workspace exceeds the configured maximum artifact size."""

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(f"artifacts size exceeds limit: {size_bytes} bytes > {limit_bytes} bytes")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class BackendError(CodeboxError):
    """Execution backend could not be invoked (operational failure)."""


class BackendUnavailableError(BackendError):
    """Container runtime or toolchain binary cannot be located or reached."""


class WorkspaceError(CodeboxError):
    """Scratch workspace could not be created, written or packaged."""
