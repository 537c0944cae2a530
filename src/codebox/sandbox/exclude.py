"""Exclusion matching for output archives.

Patterns come in two flavours:

* ``name/``: a directory rule. Matches the directory itself, everything under
  it, and any path that has ``name`` as one of its segments, so
  ``node_modules/`` also drops ``frontend/node_modules/react/index.js``.
* anything else: a glob matched against the entry's base name and against
  its full relative path. ``*`` and ``?`` never cross ``/``. A malformed glob
  never matches.

Bare conventional directory names (``build``, ``.git`` ...) are not applied to
a top-level entry whose path equals the pattern; write ``build/`` to exclude
such a directory. The matcher has no filesystem access so it cannot tell a
file from a directory, and this keeps a legitimately named file from being
dropped by a rule that was clearly meant for a directory.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from functools import lru_cache

SEPARATOR = "/"

COMMON_DIRECTORY_NAMES: frozenset[str] = frozenset(
    {
        "node_modules",
        "__pycache__",
        ".git",
        ".svn",
        ".hg",
        "build",
        "dist",
        "target",
        "bin",
        "obj",
        "vendor",
        ".pytest_cache",
    }
)


class GlobSyntaxError(ValueError):
    """Raised for patterns that cannot be compiled (e.g. an unterminated class)."""


def _translate_class(pattern: str, start: int) -> tuple[str, int]:
    """Translate a ``[...]`` class beginning at ``start``; return regex and next index."""
    i = start + 1
    parts = ["["]
    if i < len(pattern) and pattern[i] in "^!":
        parts.append("^")
        i += 1
    first = True
    while i < len(pattern):
        char = pattern[i]
        if char == "]" and not first:
            parts.append("]")
            return "".join(parts), i + 1
        if char == "\\":
            i += 1
            if i >= len(pattern):
                break
            char = pattern[i]
        if char == SEPARATOR:
            raise GlobSyntaxError(f"separator inside character class: {pattern!r}")
        parts.append("-" if char == "-" else re.escape(char))
        first = False
        i += 1
    raise GlobSyntaxError(f"unterminated character class: {pattern!r}")


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a shell-style glob in which wildcards stay within one path segment.

    Raises:
        GlobSyntaxError: If the pattern is malformed.
    """
    out: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            out.append("[^/]*")
            i += 1
        elif char == "?":
            out.append("[^/]")
            i += 1
        elif char == "[":
            regex, i = _translate_class(pattern, i)
            out.append(regex)
        elif char == "\\":
            if i + 1 >= len(pattern):
                raise GlobSyntaxError(f"trailing escape: {pattern!r}")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        else:
            out.append(re.escape(char))
            i += 1
    try:
        return re.compile("".join(out) + r"\Z", re.DOTALL)
    except re.error as exc:
        raise GlobSyntaxError(f"invalid glob {pattern!r}: {exc}") from exc


def glob_match(pattern: str, name: str) -> bool:
    """Match ``name`` against ``pattern``; malformed patterns never match."""
    try:
        return compile_glob(pattern).match(name) is not None
    except GlobSyntaxError:
        return False


def _matches_directory_rule(rel_path: str, directory: str) -> bool:
    if rel_path == directory or rel_path.startswith(directory + SEPARATOR):
        return True
    return directory in rel_path.split(SEPARATOR)


def is_excluded(rel_path: str, patterns: Sequence[str] | None) -> bool:
    """Decide whether a workspace entry is left out of the output archive.

    Args:
        rel_path: Path relative to the workspace root, ``/``-separated.
        patterns: Exclusion rules; order does not change the outcome.

    Returns:
        True if any pattern matches.
    """
    if not patterns:
        return False

    base_name = rel_path.rsplit(SEPARATOR, 1)[-1]
    for pattern in patterns:
        if not pattern:
            continue
        if pattern.endswith(SEPARATOR):
            directory = pattern.rstrip(SEPARATOR)
            if directory and _matches_directory_rule(rel_path, directory):
                return True
            continue

        if rel_path == pattern and pattern in COMMON_DIRECTORY_NAMES:
            continue
        if glob_match(pattern, base_name) or glob_match(pattern, rel_path):
            return True
    return False
