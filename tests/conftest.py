"""Shared pytest fixtures for the Codebox test suite."""

from __future__ import annotations

import io
import logging
import os
import shlex
import sys
import tarfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from codebox.config import CodeboxConfig

ArchiveBuilder = Callable[..., bytes]
ArchiveReader = Callable[[bytes], dict[str, bytes | None]]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host CODEBOX_ variables and a stray .env/config.yaml out of the tests."""
    for key in list(os.environ):
        if key.startswith("CODEBOX_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """The CLI installs a stderr handler on the root logger; put the previous ones back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def codebox_config(scratch_root: Path) -> CodeboxConfig:
    """Return a test config using container defaults and a private scratch root."""
    return CodeboxConfig(
        sandbox={
            "timeout_sec": 10,
            "memory_mb": 256,
            "workspace_root": str(scratch_root),
            "stop_grace_seconds": 1,
        },
    )


@pytest.fixture
def local_config(scratch_root: Path) -> CodeboxConfig:
    """Return a config with the local backend enabled and python bound to this interpreter."""
    return CodeboxConfig(
        sandbox={
            "backend": "local",
            "enable_local_backend": True,
            "timeout_sec": 10,
            "workspace_root": str(scratch_root),
            "stop_grace_seconds": 1,
        },
        languages={
            "python": {"local_run_cmd": f"{shlex.quote(sys.executable)} main.py"},
        },
    )


@pytest.fixture
def make_archive() -> ArchiveBuilder:
    """Build an in-memory tar.gz from ``{name: content}`` plus optional directory entries."""

    def _build(files: dict[str, str | bytes] | None = None, dirs: list[str] | None = None) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for name in dirs or []:
                info = tarfile.TarInfo(name)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            for name, content in (files or {}).items():
                data = content.encode() if isinstance(content, str) else content
                info = tarfile.TarInfo(name)
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    return _build


@pytest.fixture
def read_archive() -> ArchiveReader:
    """Return ``{name: content}`` for every entry of a tar.gz; directories map to None."""

    def _read(data: bytes) -> dict[str, bytes | None]:
        entries: dict[str, bytes | None] = {}
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                if member.isdir():
                    entries[member.name] = None
                else:
                    f = tar.extractfile(member)
                    entries[member.name] = f.read() if f is not None else b""
        return entries

    return _read
