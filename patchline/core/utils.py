"""Shared utilities for patchline."""

from __future__ import annotations

import json
import os
import platform
import sys
from pathlib import Path
from typing import Any

BRANCH_ALIASES = {
    "release": "release",
    "pre-release": "pre-release",
    "prerelease": "pre-release",
    "pre_release": "pre-release",
    "beta": "beta",
    "alpha": "alpha",
}


def current_os() -> str:
    """Get the OS identifier used in artifact URLs.

    Returns:
        One of "windows", "darwin", "linux"

    Example:
        >>> current_os() in {"windows", "darwin", "linux"}
        True
    """
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def current_arch() -> str:
    """Get the CPU architecture identifier used in artifact URLs.

    Returns:
        "arm64" for ARM machines, "amd64" otherwise
    """
    machine = platform.machine().lower()
    if machine in {"arm64", "aarch64"}:
        return "arm64"
    return "amd64"


def normalize_branch(branch: str) -> str:
    """Normalize a branch name.

    Known aliases collapse onto their canonical name; anything else is
    lower-cased and returned unchanged.

    Example:
        >>> normalize_branch("PreRelease")
        'pre-release'
        >>> normalize_branch("nightly")
        'nightly'
    """
    key = branch.strip().lower()
    return BRANCH_ALIASES.get(key, key)


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Args:
        size: Size in bytes

    Returns:
        Formatted string with appropriate unit (e.g., "1.5 MB")

    Example:
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"


def atomic_write_json(path: Path, data: Any, indent: int | None = 2) -> None:
    """Write JSON to ``path`` via a temp file and ``os.replace``.

    A crash during the write leaves either the old or the new file, never a
    truncated one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def clamp_percent(value: float) -> int:
    """Clamp a progress value into the 0-100 integer range."""
    return max(0, min(100, int(value)))
