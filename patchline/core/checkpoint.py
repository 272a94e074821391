"""Installed-version checkpoint for resumable updates.

The checkpoint records, per branch, the last version whose update step was
fully applied. It is rewritten atomically after every step, so an
interrupted update resumes from the last good version instead of
re-downloading completed steps.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from patchline.core.utils import atomic_write_json, normalize_branch

logger = structlog.get_logger()


class CheckpointStore:
    """Per-branch installed-version checkpoint.

    Args:
        install_dir: Game installation directory
        clock: Time source for ``updated_at``
    """

    STATE_DIRNAME = ".patchline"
    FILENAME = "checkpoint.json"

    def __init__(self, install_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self.install_dir = install_dir
        self.clock = clock

    @property
    def path(self) -> Path:
        """Path to the checkpoint file."""
        return self.install_dir / self.STATE_DIRNAME / self.FILENAME

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data: Any = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("checkpoint_load_failed", path=str(self.path), error=str(e))
            return {}

        branches = data.get("branches") if isinstance(data, dict) else None
        if not isinstance(branches, dict):
            logger.warning("checkpoint_invalid_format", path=str(self.path))
            return {}
        return {k: v for k, v in branches.items() if isinstance(v, dict)}

    def get(self, branch: str) -> int | None:
        """Get the installed version of a branch.

        Returns:
            Installed version, or None if the branch was never installed
        """
        entry = self._read().get(normalize_branch(branch))
        if entry is None:
            return None
        version = entry.get("installed_version")
        return version if isinstance(version, int) else None

    def all(self) -> dict[str, dict[str, Any]]:
        """Get every branch entry."""
        return self._read()

    def advance(self, branch: str, version: int) -> None:
        """Record ``version`` as installed on ``branch``."""
        branches = self._read()
        branches[normalize_branch(branch)] = {
            "installed_version": version,
            "updated_at": self.clock(),
        }
        atomic_write_json(self.path, {"branches": branches})
        logger.info("checkpoint_advanced", branch=branch, version=version)

    def clear(self, branch: str) -> None:
        """Forget the installed version of a branch."""
        branches = self._read()
        if branches.pop(normalize_branch(branch), None) is not None:
            atomic_write_json(self.path, {"branches": branches})
            logger.info("checkpoint_cleared", branch=branch)
