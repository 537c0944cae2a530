"""Codebox FastMCP server exposing the execute_sandboxed_code tool."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from fastmcp import FastMCP

from codebox.config import CodeboxConfig
from codebox.errors import (
    ArtifactSizeError,
    BackendError,
    ConfigurationError,
    RequestValidationError,
    WorkspaceError,
)
from codebox.models import ExecutionRequest, Language
from codebox.sandbox.factory import create_backend
from codebox.sandbox.orchestrator import Orchestrator
from codebox.utils.logging import get_logger

logger = get_logger(__name__)

_LANGUAGES = ", ".join(lang.value for lang in Language)


def _error(message: str, error_type: str, exit_code: int = 1) -> dict[str, Any]:
    return {
        "success": False,
        "stdout": "",
        "stderr": "",
        "exit_code": exit_code,
        "artifacts_tar": "",
        "timed_out": False,
        "error": message,
        "error_type": error_type,
    }


async def handle_execute(
    orchestrator: Orchestrator,
    code: str,
    language: str,
    workdir_tar: str | None = None,
) -> dict[str, Any]:
    """Decode one tool call, run it and encode the response envelope.

    Args:
        orchestrator: Orchestrator bound to the configured backend.
        code: Caller source code.
        language: Runtime identifier.
        workdir_tar: Optional base64-encoded tar.gz of the initial working directory.

    Returns:
        Response dict; failures are reported through ``error``/``error_type``.
    """
    try:
        lang = Language(language)
    except ValueError:
        return _error(f"invalid language: {language} (expected one of {_LANGUAGES})", "validation")

    workdir_archive: bytes | None = None
    if workdir_tar:
        try:
            workdir_archive = base64.b64decode(workdir_tar, validate=True)
        except (binascii.Error, ValueError) as exc:
            return _error(f"failed to decode workdir_tar: {exc}", "validation")

    logger.info("code_execution_requested", language=lang.value, has_workdir=workdir_archive is not None)
    request = ExecutionRequest(language=lang, code=code, workdir_archive=workdir_archive)

    try:
        result = await orchestrator.execute_async(request)
    except RequestValidationError as exc:
        return _error(str(exc), "validation")
    except ArtifactSizeError as exc:
        return _error(str(exc), "resource_limit")
    except ConfigurationError as exc:
        return _error(str(exc), "configuration")
    except (BackendError, WorkspaceError) as exc:
        logger.error("sandbox_execution_failed", language=lang.value, error=str(exc))
        return _error(f"execution failed: {exc}", "backend")
    except Exception:  # noqa: BLE001
        logger.exception("execute_sandboxed_code_unexpected_error", language=lang.value)
        return _error("Internal error occurred", "internal")

    return {
        "success": True,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "exit_code": result.exit_code,
        "artifacts_tar": base64.b64encode(result.artifacts_archive).decode("ascii"),
        "timed_out": result.timed_out,
    }


def create_server(config: CodeboxConfig, orchestrator: Orchestrator | None = None) -> FastMCP:
    """Create and configure the Codebox FastMCP server.

    Args:
        config: Codebox configuration instance.
        orchestrator: Pre-built orchestrator; built from ``config`` when omitted.

    Returns:
        Configured FastMCP server ready to run.
    """
    if orchestrator is None:
        orchestrator = Orchestrator(config, create_backend(config))

    mcp: FastMCP = FastMCP(
        name="codebox-executor",
        instructions=(
            "Codebox executes untrusted code in an isolated sandbox. Call execute_sandboxed_code with "
            f"the source and one of: {_LANGUAGES}. Optionally pass a base64 tar.gz as workdir_tar to "
            "seed the working directory; the resulting directory comes back base64-encoded in artifacts_tar."
        ),
    )

    @mcp.tool()
    async def execute_sandboxed_code(code: str, language: str, workdir_tar: str | None = None) -> dict:
        """Execute untrusted code in a sandboxed environment.

        Args:
            code: User-provided source code.
            language: One of python, nodejs, go, cpp.
            workdir_tar: Base64-encoded tar.gz of the initial working directory (optional).

        Returns stdout, stderr, exit_code and artifacts_tar (base64 tar.gz of the
        working directory after execution). On timeout, timed_out is true,
        exit_code is 124 and artifacts_tar is empty.
        """
        return await handle_execute(orchestrator, code, language, workdir_tar)

    logger.info(
        "configuration_loaded",
        transport=config.server.transport,
        backend=config.sandbox.backend,
        timeout_sec=config.sandbox.timeout_sec,
        memory_mb=config.sandbox.memory_mb,
        max_artifact_size_mb=config.sandbox.max_artifact_size_mb,
        network_enabled=config.sandbox.network_enabled,
        enable_local_backend=config.sandbox.enable_local_backend,
        images={lang.value: cfg.image for lang, cfg in config.languages.items()},
    )
    return mcp
