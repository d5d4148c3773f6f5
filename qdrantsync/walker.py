"""Collect the documents to index from a file tree.

Traversal is top-down with ``os.walk``.  Excluded directories are pruned
in place so they are never descended into, and both directory and file names
are sorted at every level, which keeps the document order (and therefore the
chunk ids) reproducible on an unchanged tree.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pathspec

from qdrantsync.errors import ConfigurationError, FilesystemError

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE_EXTENSIONS = frozenset(
    {
        ".js",
        ".jsx",
        ".ts",
        ".tsx",
        ".json",
        ".yml",
        ".yaml",
        ".md",
        ".css",
        ".scss",
        ".html",
        ".py",
        ".go",
        ".java",
        ".c",
        ".cpp",
        ".h",
        ".hpp",
        ".rs",
        ".php",
        ".rb",
    }
)

DEFAULT_EXCLUDE_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        "coverage",
        ".next",
        ".cache",
        ".husky",
        ".vscode",
        ".github",
    }
)

# Bytes inspected when sniffing for binary content
_BINARY_SNIFF_BYTES = 8192


@dataclass(frozen=True)
class Document:
    """A file to index: POSIX path relative to the root, and its text."""

    path: str
    content: str


def _normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    normalized = set()
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(normalized)


def _load_gitignore(root: Path) -> Any:
    """Return a PathSpec for ``root/.gitignore``, or None when absent."""
    gitignore_path = root / ".gitignore"
    if not gitignore_path.is_file():
        return None
    try:
        patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Ignoring unreadable %s: %s", gitignore_path, e)
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


def _read_text(path: Path) -> str:
    """Read a text file, raising FilesystemError for binary or unreadable files."""
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise FilesystemError(str(path), e.strerror or str(e)) from e
    if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
        raise FilesystemError(str(path), "binary content")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FilesystemError(str(path), f"not valid UTF-8 ({e.reason})") from e


def iter_files(
    root: str | Path,
    include_extensions: Iterable[str] = DEFAULT_INCLUDE_EXTENSIONS,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
    use_gitignore: bool = True,
) -> Iterator[Path]:
    """Yield the absolute paths of indexable files under *root*, in order.

    Raises:
        ConfigurationError: If *root* is not a directory.
    """
    root_path = Path(root).resolve()
    if not root_path.is_dir():
        raise ConfigurationError(f"Sync root is not a directory: {root_path}")

    extensions = _normalize_extensions(include_extensions)
    excluded = frozenset(exclude_dirs)
    gitignore = _load_gitignore(root_path) if use_gitignore else None

    for current, dirs, filenames in os.walk(root_path, followlinks=False):
        current_path = Path(current)
        rel_root = current_path.relative_to(root_path)

        kept = []
        for d in sorted(dirs):
            if d in excluded or (current_path / d).is_symlink():
                continue
            if gitignore and gitignore.match_file(f"{(rel_root / d).as_posix()}/"):
                continue
            kept.append(d)
        dirs[:] = kept

        for filename in sorted(filenames):
            if Path(filename).suffix.lower() not in extensions:
                continue
            full_path = current_path / filename
            if not full_path.is_file():
                continue
            if gitignore and gitignore.match_file((rel_root / filename).as_posix()):
                continue
            yield full_path


def walk_corpus(
    root: str | Path,
    include_extensions: Iterable[str] = DEFAULT_INCLUDE_EXTENSIONS,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
    use_gitignore: bool = True,
    skipped: list[FilesystemError] | None = None,
) -> Iterator[Document]:
    """Yield a Document for every readable indexable file under *root*.

    Unreadable files are logged and skipped; when *skipped* is given, the
    corresponding :class:`FilesystemError` is appended to it.
    """
    root_path = Path(root).resolve()
    for path in iter_files(root_path, include_extensions, exclude_dirs, use_gitignore):
        rel_path = path.relative_to(root_path).as_posix()
        try:
            content = _read_text(path)
        except FilesystemError as e:
            logger.warning("Skipping %s: %s", rel_path, e.reason)
            if skipped is not None:
                skipped.append(e)
            continue
        yield Document(path=rel_path, content=content)
