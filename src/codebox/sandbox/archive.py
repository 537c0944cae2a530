"""Gzip-compressed tar codec for workspace snapshots.

Extraction treats the archive as untrusted input: every entry must stay inside
the destination directory and only directories and regular files are
materialized. Creation walks a workspace in lexical order, consults the
exclusion rules per entry and compresses while writing.
"""

from __future__ import annotations

import contextlib
import io
import os
import posixpath
import stat
import tarfile
import zlib
from collections.abc import Iterator, Sequence
from pathlib import Path, PureWindowsPath
from typing import BinaryIO

from codebox.errors import ArchiveError, ArtifactSizeError, PathSafetyError, UnsupportedEntryError
from codebox.sandbox.exclude import is_excluded
from codebox.utils.logging import get_logger

logger = get_logger(__name__)

DIR_PERMISSION = 0o755
FILE_PERMISSION = 0o644
EXEC_FILE_PERMISSION = 0o755

_COPY_CHUNK_BYTES = 64 * 1024

_ENTRY_TYPE_NAMES = {
    tarfile.SYMTYPE: "symlink",
    tarfile.LNKTYPE: "hardlink",
    tarfile.CHRTYPE: "character device",
    tarfile.BLKTYPE: "block device",
    tarfile.FIFOTYPE: "fifo",
}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _safe_destination(root: Path, name: str) -> Path | None:
    """Map an entry name to its destination, or None for the archive root itself.

    Raises:
        PathSafetyError: If the entry is absolute or would escape ``root``.
    """
    if not name or posixpath.isabs(name) or PureWindowsPath(name).is_absolute():
        raise PathSafetyError(f"absolute path not allowed in archive: {name!r}", name)

    cleaned = posixpath.normpath(name)
    if ".." in cleaned.split("/"):
        raise PathSafetyError(f"unsafe relative path in archive: {name!r}", name)
    if cleaned == ".":
        return None

    target = root / cleaned
    resolved = target.resolve()
    if resolved != root and root not in resolved.parents:
        raise PathSafetyError(f"invalid file path in archive: {name!r}", name)
    return target


def _copy_exact(source: BinaryIO, dest: BinaryIO, size: int) -> int:
    remaining = size
    while remaining > 0:
        chunk = source.read(min(_COPY_CHUNK_BYTES, remaining))
        if not chunk:
            break
        dest.write(chunk)
        remaining -= len(chunk)
    return size - remaining


def _write_regular_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
    target.parent.mkdir(mode=DIR_PERMISSION, parents=True, exist_ok=True)
    source = tar.extractfile(member)
    if source is None:
        raise ArchiveError(f"cannot read archive entry: {member.name}")

    mode = EXEC_FILE_PERMISSION if member.mode & 0o111 else FILE_PERMISSION
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_NOFOLLOW", 0), mode)
    with os.fdopen(fd, "wb") as out:
        copied = _copy_exact(source, out, member.size)
    if copied != member.size:
        raise ArchiveError(f"truncated archive entry {member.name}: {copied} of {member.size} bytes")
    os.chmod(target, mode)


def extract_archive(data: bytes, dest_dir: str | os.PathLike[str]) -> int:
    """Materialize a tar.gz archive into ``dest_dir``.

    Processing stops at the first offending entry; entries written before it
    stay on disk and are the caller's to clean up.

    Args:
        data: Compressed tar bytes. Empty input is a no-op.
        dest_dir: Existing destination directory.

    Returns:
        Number of entries written.

    Raises:
        PathSafetyError: An entry is absolute or resolves outside ``dest_dir``.
        UnsupportedEntryError: An entry is a symlink, hard link, device or fifo.
        ArchiveError: The archive is malformed or a file could not be written.
    """
    if not data:
        return 0

    root = Path(dest_dir).resolve()
    written = 0
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r|gz") as tar:
            for member in tar:
                target = _safe_destination(root, member.name)
                if target is None:
                    continue
                if member.isdir():
                    target.mkdir(mode=DIR_PERMISSION, parents=True, exist_ok=True)
                elif member.isreg():
                    _write_regular_file(tar, member, target)
                else:
                    entry_type = _ENTRY_TYPE_NAMES.get(member.type, repr(member.type))
                    raise UnsupportedEntryError(member.name, entry_type)
                written += 1
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        raise ArchiveError(f"malformed archive: {exc}") from exc
    except OSError as exc:
        raise ArchiveError(f"failed to write archive entry: {exc}") from exc

    logger.debug("archive_extracted", dest=str(root), entries=written)
    return written


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def _add_owner_bits(path: str | os.PathLike[str], bits: int) -> None:
    with contextlib.suppress(FileNotFoundError, PermissionError):
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode) or st.st_mode & bits == bits:
            return
        os.chmod(path, stat.S_IMODE(st.st_mode) | bits)


def grant_owner_access(root: str | os.PathLike[str]) -> None:
    """Restore owner access to a tree that executed code may have locked down.

    Directories get ``rwx`` and regular files ``r`` for the owner, so the tree
    can be packed and removed after e.g. ``chmod 000``. Symlinks are never
    followed; entries owned by another user are left as they are.
    """
    _add_owner_bits(root, stat.S_IRWXU)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            _add_owner_bits(os.path.join(dirpath, name), stat.S_IRWXU)
        for name in filenames:
            _add_owner_bits(os.path.join(dirpath, name), stat.S_IRUSR)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class _BoundedBuffer(io.BytesIO):
    """In-memory sink that fails once the compressed stream passes ``limit`` bytes."""

    def __init__(self, limit: int | None) -> None:
        super().__init__()
        self._limit = limit
        self._exceeded = False

    def write(self, data: bytes) -> int:  # type: ignore[override]
        if self._exceeded:
            return len(data)
        written = super().write(data)
        if self._limit is not None and self.tell() > self._limit:
            self._exceeded = True
            raise ArtifactSizeError(self.tell(), self._limit)
        return written


def _iter_entries(root: Path, directory: Path, patterns: Sequence[str] | None) -> Iterator[tuple[Path, str]]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except PermissionError:
        logger.warning("archive_entry_unreadable", path=directory.relative_to(root).as_posix())
        return

    for entry in entries:
        path = Path(entry.path)
        rel_path = path.relative_to(root).as_posix()
        is_dir = entry.is_dir(follow_symlinks=False)
        if is_excluded(rel_path, patterns):
            continue
        if not is_dir and not entry.is_file(follow_symlinks=False):
            logger.debug("archive_entry_skipped", path=rel_path, reason="not a regular file")
            continue
        yield path, rel_path
        if is_dir:
            yield from _iter_entries(root, path, patterns)


def create_archive(
    src_dir: str | os.PathLike[str],
    exclude_patterns: Sequence[str] | None = None,
    max_bytes: int | None = None,
) -> bytes:
    """Pack a directory tree into tar.gz bytes.

    Excluded directories are pruned without descending. Symlinks and special
    files are never followed or stored; unreadable entries are skipped with
    a warning. Entry names are relative to
    ``src_dir``; the root itself is not stored.

    Args:
        src_dir: Directory to pack.
        exclude_patterns: Rules passed to :func:`is_excluded`.
        max_bytes: Abort as soon as the compressed output grows past this size.

    Returns:
        Compressed archive bytes (a valid empty archive for an empty tree).

    Raises:
        ArtifactSizeError: If ``max_bytes`` is exceeded.
    """
    root = Path(src_dir).resolve()
    buffer = _BoundedBuffer(max_bytes)
    count = 0

    with tarfile.open(fileobj=buffer, mode="w|gz") as tar:
        for path, rel_path in _iter_entries(root, root, exclude_patterns):
            info = tar.gettarinfo(str(path), arcname=rel_path)
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            if info.isreg():
                try:
                    f = open(path, "rb")  # noqa: SIM115
                except PermissionError:
                    logger.warning("archive_entry_unreadable", path=rel_path)
                    continue
                with f:
                    tar.addfile(info, f)
            else:
                tar.addfile(info)
            count += 1

    data = buffer.getvalue()
    logger.debug("archive_created", src=str(root), entries=count, size_bytes=len(data))
    return data
