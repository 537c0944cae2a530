"""Unit tests for the execution orchestrator."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from codebox.config import CodeboxConfig, LanguageConfig
from codebox.errors import (
    ArtifactSizeError,
    BackendError,
    ConfigurationError,
    LocalBackendDisabledError,
    PathSafetyError,
)
from codebox.models import (
    TIMEOUT_EXIT_CODE,
    BackendOutcome,
    ExecutionRequest,
    InvocationDescriptor,
    Language,
    ResourceLimits,
)
from codebox.sandbox.backends.base import ExecutionBackend
from codebox.sandbox.orchestrator import Orchestrator, scratch_workspace

Behaviour = Callable[[Path], BackendOutcome]


class FakeBackend(ExecutionBackend):
    """Backend that runs a Python callable against the workspace instead of a runtime."""

    name = "fake"

    def __init__(self, config: CodeboxConfig, behaviour: Behaviour | None = None, isolating: bool = True) -> None:
        super().__init__(config)
        self._behaviour = behaviour or (lambda workspace: BackendOutcome(stdout="ok\n"))
        self.isolating = isolating  # type: ignore[misc]
        self.workspaces: list[Path] = []
        self.seen_source: str | None = None
        self.limits: ResourceLimits | None = None

    def build_descriptor(
        self, workspace: Path, language: LanguageConfig, limits: ResourceLimits
    ) -> InvocationDescriptor:
        self.seen_source = (workspace / language.file_name).read_text()
        self.limits = limits
        return InvocationDescriptor(argv=["fake"], workdir=str(workspace), limits=limits)

    def run(self, descriptor: InvocationDescriptor) -> BackendOutcome:
        workspace = Path(descriptor.workdir)
        self.workspaces.append(workspace)
        return self._behaviour(workspace)


def _scratch_is_empty(config: CodeboxConfig) -> bool:
    return os.listdir(config.sandbox.workspace_root) == []


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


def test_execute_success(codebox_config: CodeboxConfig, read_archive) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "result.txt").write_text("42")
        return BackendOutcome(stdout="hi\n", stderr="", exit_code=0)

    backend = FakeBackend(codebox_config, behaviour)
    orchestrator = Orchestrator(codebox_config, backend)

    result = orchestrator.execute(ExecutionRequest(language=Language.PYTHON, code="print('hi')"))

    assert result.stdout == "hi\n"
    assert result.exit_code == 0
    assert result.timed_out is False
    assert backend.seen_source == "print('hi')"
    entries = read_archive(result.artifacts_archive)
    assert entries["result.txt"] == b"42"
    assert entries["main.py"] == b"print('hi')"
    assert _scratch_is_empty(codebox_config)


def test_execute_non_zero_exit_still_packages(codebox_config: CodeboxConfig, read_archive) -> None:
    backend = FakeBackend(codebox_config, lambda ws: BackendOutcome(stderr="boom", exit_code=1))

    result = Orchestrator(codebox_config, backend).execute(
        ExecutionRequest(language=Language.PYTHON, code="raise SystemExit(1)")
    )

    assert result.exit_code == 1
    assert result.stderr == "boom"
    assert "main.py" in read_archive(result.artifacts_archive)


def test_execute_seeds_workspace(codebox_config: CodeboxConfig, make_archive, read_archive) -> None:
    seen: dict[str, str] = {}

    def behaviour(workspace: Path) -> BackendOutcome:
        seen["data"] = (workspace / "input" / "data.csv").read_text()
        return BackendOutcome()

    request = ExecutionRequest(
        language=Language.PYTHON,
        code="pass",
        workdir_archive=make_archive({"input/data.csv": "a,b\n"}),
    )
    result = Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(request)

    assert seen["data"] == "a,b\n"
    assert read_archive(result.artifacts_archive)["input/data.csv"] == b"a,b\n"


def test_source_file_overwrites_seeded_file(codebox_config: CodeboxConfig, make_archive) -> None:
    backend = FakeBackend(codebox_config)
    request = ExecutionRequest(
        language=Language.PYTHON,
        code="print('new')",
        workdir_archive=make_archive({"main.py": "print('old')"}),
    )

    Orchestrator(codebox_config, backend).execute(request)

    assert backend.seen_source == "print('new')"


def test_language_hooks_wrap_code(scratch_root: Path) -> None:
    config = CodeboxConfig(
        sandbox={"workspace_root": str(scratch_root)},
        languages={"python": {"prefix_code": "# prefix\n", "postfix_code": "\n# postfix"}},
    )
    backend = FakeBackend(config)

    Orchestrator(config, backend).execute(ExecutionRequest(language=Language.PYTHON, code="x = 1"))

    assert backend.seen_source == "# prefix\nx = 1\n# postfix"


def test_excluded_files_left_out(codebox_config: CodeboxConfig, read_archive) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "__pycache__").mkdir()
        (workspace / "__pycache__" / "main.cpython-311.pyc").write_bytes(b"\x00")
        (workspace / "keep.txt").write_text("k")
        return BackendOutcome()

    result = Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(
        ExecutionRequest(language=Language.PYTHON, code="pass")
    )

    names = set(read_archive(result.artifacts_archive))
    assert "keep.txt" in names
    assert not any(name.startswith("__pycache__") for name in names)


def test_each_request_gets_a_fresh_workspace(codebox_config: CodeboxConfig) -> None:
    backend = FakeBackend(codebox_config)
    orchestrator = Orchestrator(codebox_config, backend)

    for _ in range(3):
        orchestrator.execute(ExecutionRequest(language=Language.PYTHON, code="pass"))

    assert len(set(backend.workspaces)) == 3
    assert _scratch_is_empty(codebox_config)


async def test_execute_async(codebox_config: CodeboxConfig) -> None:
    orchestrator = Orchestrator(codebox_config, FakeBackend(codebox_config))

    result = await orchestrator.execute_async(ExecutionRequest(language=Language.GO, code="package main"))

    assert result.stdout == "ok\n"


# ---------------------------------------------------------------------------
# Timeout and failures
# ---------------------------------------------------------------------------


def test_timeout_returns_no_artifacts(codebox_config: CodeboxConfig) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "partial.txt").write_text("half")
        return BackendOutcome(
            stdout="partial\n",
            stderr="Execution timed out after 10s",
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
        )

    result = Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(
        ExecutionRequest(language=Language.PYTHON, code="while True: pass")
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.artifacts_archive == b""
    assert result.stdout == "partial\n"
    assert "Execution timed out" in result.stderr
    assert _scratch_is_empty(codebox_config)


def test_locked_workspace_is_packaged_and_removed(codebox_config: CodeboxConfig, read_archive) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "d" / "e").mkdir(parents=True)
        (workspace / "d" / "e" / "f.txt").write_text("kept")
        (workspace / "d" / "e" / "f.txt").chmod(0)
        (workspace / "d").chmod(0)
        return BackendOutcome(stdout="locked\n")

    result = Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(
        ExecutionRequest(language=Language.PYTHON, code="pass")
    )

    entries = read_archive(result.artifacts_archive)
    assert entries["d/e/f.txt"] == b"kept"
    assert _scratch_is_empty(codebox_config)


def test_locked_workspace_removed_after_timeout(codebox_config: CodeboxConfig) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "d" / "e").mkdir(parents=True)
        (workspace / "d").chmod(0)
        workspace.chmod(0o500)
        return BackendOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)

    result = Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(
        ExecutionRequest(language=Language.PYTHON, code="pass")
    )

    assert result.timed_out is True
    assert _scratch_is_empty(codebox_config)


def test_unsafe_archive_rejected_before_backend(codebox_config: CodeboxConfig, make_archive) -> None:
    backend = FakeBackend(codebox_config)
    request = ExecutionRequest(
        language=Language.PYTHON,
        code="pass",
        workdir_archive=make_archive({"../../escape.txt": "x"}),
    )

    with pytest.raises(PathSafetyError):
        Orchestrator(codebox_config, backend).execute(request)

    assert backend.workspaces == []
    assert _scratch_is_empty(codebox_config)


def test_backend_error_propagates_and_cleans_up(codebox_config: CodeboxConfig) -> None:
    def behaviour(workspace: Path) -> BackendOutcome:
        raise BackendError("runtime not reachable")

    with pytest.raises(BackendError, match="runtime not reachable"):
        Orchestrator(codebox_config, FakeBackend(codebox_config, behaviour)).execute(
            ExecutionRequest(language=Language.PYTHON, code="pass")
        )

    assert _scratch_is_empty(codebox_config)


def test_artifact_size_limit(scratch_root: Path) -> None:
    config = CodeboxConfig(sandbox={"workspace_root": str(scratch_root), "max_artifact_size_mb": 1})

    def behaviour(workspace: Path) -> BackendOutcome:
        (workspace / "big.bin").write_bytes(os.urandom(2 * 1024 * 1024))
        return BackendOutcome()

    with pytest.raises(ArtifactSizeError, match="artifacts size exceeds limit"):
        Orchestrator(config, FakeBackend(config, behaviour)).execute(
            ExecutionRequest(language=Language.PYTHON, code="pass")
        )

    assert _scratch_is_empty(config)


def test_unconfigured_language(codebox_config: CodeboxConfig) -> None:
    config = codebox_config.model_copy(update={"languages": {}})

    with pytest.raises(ConfigurationError, match="has no configuration"):
        Orchestrator(config, FakeBackend(config)).execute(ExecutionRequest(language=Language.CPP, code=""))

    assert _scratch_is_empty(config)


def test_non_isolating_backend_requires_opt_in(codebox_config: CodeboxConfig) -> None:
    with pytest.raises(LocalBackendDisabledError):
        Orchestrator(codebox_config, FakeBackend(codebox_config, isolating=False))


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


def test_limits_default_to_config(codebox_config: CodeboxConfig) -> None:
    orchestrator = Orchestrator(codebox_config, FakeBackend(codebox_config))

    limits = orchestrator.resolve_limits(ExecutionRequest(language=Language.PYTHON, code=""))

    assert limits == ResourceLimits(timeout_seconds=10, memory_mb=256, network_enabled=False)


def test_request_limits_only_tighten(codebox_config: CodeboxConfig) -> None:
    orchestrator = Orchestrator(codebox_config, FakeBackend(codebox_config))

    tighter = orchestrator.resolve_limits(
        ExecutionRequest(language=Language.PYTHON, code="", timeout_seconds=2, memory_mb=64)
    )
    looser = orchestrator.resolve_limits(
        ExecutionRequest(language=Language.PYTHON, code="", timeout_seconds=600, memory_mb=4096, network_enabled=True)
    )

    assert (tighter.timeout_seconds, tighter.memory_mb) == (2, 64)
    assert (looser.timeout_seconds, looser.memory_mb) == (10, 256)
    assert looser.network_enabled is False


def test_network_can_be_disabled_per_request(scratch_root: Path) -> None:
    config = CodeboxConfig(sandbox={"workspace_root": str(scratch_root), "network_enabled": True})
    orchestrator = Orchestrator(config, FakeBackend(config))

    assert orchestrator.resolve_limits(ExecutionRequest(language=Language.PYTHON, code="")).network_enabled
    assert not orchestrator.resolve_limits(
        ExecutionRequest(language=Language.PYTHON, code="", network_enabled=False)
    ).network_enabled


def test_backend_receives_resolved_limits(codebox_config: CodeboxConfig) -> None:
    backend = FakeBackend(codebox_config)

    Orchestrator(codebox_config, backend).execute(
        ExecutionRequest(language=Language.PYTHON, code="", timeout_seconds=3)
    )

    assert backend.limits is not None
    assert backend.limits.timeout_seconds == 3


# ---------------------------------------------------------------------------
# Scratch workspace
# ---------------------------------------------------------------------------


def test_scratch_workspace_removed_on_exception(scratch_root: Path) -> None:
    with pytest.raises(RuntimeError), scratch_workspace(str(scratch_root)) as workdir:
        (workdir / "file.txt").write_text("x")
        raise RuntimeError("boom")

    assert os.listdir(scratch_root) == []


def test_scratch_workspace_is_private_and_unique(scratch_root: Path) -> None:
    with scratch_workspace(str(scratch_root)) as first, scratch_workspace(str(scratch_root)) as second:
        assert first != second
        assert first.name == "workdir"
        assert first.parent.name.startswith("codebox-exec-")
        assert list(first.iterdir()) == []


def test_scratch_workspace_removes_locked_tree(scratch_root: Path) -> None:
    with scratch_workspace(str(scratch_root)) as workdir:
        (workdir / "d" / "e").mkdir(parents=True)
        (workdir / "d" / "e" / "f").write_text("x")
        (workdir / "d").chmod(0)
        workdir.chmod(0)

    assert os.listdir(scratch_root) == []
