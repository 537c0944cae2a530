"""Codebox CLI entry point: supports `serve` and one-shot `run` commands."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from codebox.config import CodeboxConfig, load_config
from codebox.errors import CodeboxError
from codebox.models import ExecutionRequest, Language
from codebox.utils.logging import get_logger, setup_logging

_SUFFIX_LANGUAGES = {
    ".py": Language.PYTHON,
    ".js": Language.NODEJS,
    ".go": Language.GO,
    ".cpp": Language.CPP,
    ".cc": Language.CPP,
}


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="codebox",
        description="Codebox: run untrusted code in an isolated sandbox",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (default: CODEBOX_CONFIG_FILE or ./config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve subcommand
    serve_parser = subparsers.add_parser("serve", help="Start the MCP server")
    serve_parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default=None,
        help="MCP transport mode (default: from config, stdio)",
    )
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Override host for HTTP transport",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override port for HTTP transport",
    )

    # run subcommand (one-shot execution)
    run_parser = subparsers.add_parser("run", help="Execute a single source file in the sandbox")
    run_parser.add_argument("file", help="Source file to execute")
    run_parser.add_argument(
        "--language",
        choices=[lang.value for lang in Language],
        default=None,
        help="Runtime to use (default: inferred from the file suffix)",
    )
    run_parser.add_argument(
        "--workdir-tar",
        default=None,
        help="tar.gz archive used to seed the working directory",
    )
    run_parser.add_argument(
        "--artifacts-out",
        default=None,
        help="Write the resulting working directory tar.gz here",
    )
    run_parser.add_argument(
        "--backend",
        choices=["docker", "podman", "local"],
        default=None,
        help="Override sandbox.backend",
    )

    return parser


def _infer_language(path: Path, explicit: str | None) -> Language:
    if explicit:
        return Language(explicit)
    try:
        return _SUFFIX_LANGUAGES[path.suffix.lower()]
    except KeyError:
        raise CodeboxError(f"cannot infer language from {path.name}; pass --language") from None


async def _cmd_serve(config: CodeboxConfig, args: argparse.Namespace) -> int:
    """Start the MCP server.

    Args:
        config: Loaded configuration.
        args: Parsed CLI arguments.

    Returns:
        Exit code.
    """
    from codebox.server import create_server  # noqa: PLC0415

    logger = get_logger(__name__)

    overrides = {
        key: value
        for key, value in (("transport", args.transport), ("host", args.host), ("port", args.port))
        if value is not None
    }
    server_cfg = config.server.model_copy(update=overrides)
    config = config.model_copy(update={"server": server_cfg})

    logger.info(
        "codebox_starting",
        transport=server_cfg.transport,
        host=server_cfg.host,
        port=server_cfg.port,
        backend=config.sandbox.backend,
    )

    mcp = create_server(config)
    if server_cfg.transport == "stdio":
        await mcp.run_async(transport="stdio")
    else:
        await mcp.run_async(transport="http", host=server_cfg.host, port=server_cfg.port)

    return 0


async def _cmd_run(config: CodeboxConfig, args: argparse.Namespace) -> int:
    """Execute one file and mirror its output and exit code.

    Args:
        config: Loaded configuration.
        args: Parsed CLI arguments.

    Returns:
        The program's exit code, or 1 when execution could not happen.
    """
    from codebox.sandbox.factory import create_backend  # noqa: PLC0415
    from codebox.sandbox.orchestrator import Orchestrator  # noqa: PLC0415

    source = Path(args.file)
    try:
        language = _infer_language(source, args.language)
        code = source.read_text(encoding="utf-8")
        workdir_archive = Path(args.workdir_tar).read_bytes() if args.workdir_tar else None
    except (OSError, CodeboxError) as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 1

    try:
        orchestrator = Orchestrator(config, create_backend(config, args.backend))
        result = await orchestrator.execute_async(
            ExecutionRequest(language=language, code=code, workdir_archive=workdir_archive)
        )
    except CodeboxError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 1

    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)

    if args.artifacts_out and not result.timed_out:
        Path(args.artifacts_out).write_bytes(result.artifacts_archive)

    return result.exit_code


def main() -> None:
    """CLI entry point invoked by `codebox` script or `python -m codebox`."""
    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        config = load_config(args.config)
    except CodeboxError as exc:
        setup_logging("INFO")
        print(f"❌ {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.logging.level, config.logging.mode)

    command_map = {
        "serve": _cmd_serve,
        "run": _cmd_run,
    }

    handler = command_map.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    exit_code = asyncio.run(handler(config, args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
