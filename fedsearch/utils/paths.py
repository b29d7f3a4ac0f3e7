"""Path utilities for directory and file operations."""

from __future__ import annotations

from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure directory exists, creating if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def list_subdirectories(root: Path) -> list[Path]:
    """Return the immediate subdirectories of ``root`` sorted by name.

    A missing or unreadable root yields an empty list.
    """
    try:
        return sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name)
    except OSError:
        return []


def find_files(
    root: Path,
    pattern: str = "*",
    recursive: bool = True,
    follow_symlinks: bool = False,
) -> list[Path]:
    """Find files matching pattern in directory."""
    if not root.is_dir():
        return []

    if recursive:
        matches = root.rglob(pattern)
    else:
        matches = root.glob(pattern)

    files = []
    for path in matches:
        if path.is_symlink() and not follow_symlinks:
            continue

        if path.is_file():
            files.append(path)

    return sorted(files)


def relative_posix(path: Path, base: Path) -> str | None:
    """Return ``path`` relative to ``base`` using forward slashes, or None if outside."""
    try:
        relative = path.resolve().relative_to(base.resolve())
    except ValueError:
        return None
    if relative == Path("."):
        return None
    return relative.as_posix()
