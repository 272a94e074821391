"""Tests for patchline.core.patcher module."""

import asyncio
import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from patchline.core.cancel import CancellationToken
from patchline.core.errors import (
    OperationCancelledError,
    PatchApplierMissingError,
    PatchApplyError,
)
from patchline.core.patcher import ButlerPatchApplier, parse_butler_line

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a shell script")


def _fake_butler(tmp_path: Path, body: str) -> Path:
    """Write an executable shell script standing in for butler."""
    script = tmp_path / "butler"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


class TestParseButlerLine:
    """Test butler JSON line parsing."""

    def test_progress_line(self):
        """Test a progress message."""
        assert parse_butler_line('{"type": "progress", "progress": 0.5}') == {
            "type": "progress",
            "progress": 0.5,
        }

    def test_non_json(self):
        """Test plain text lines."""
        assert parse_butler_line("panic: out of disk") is None
        assert parse_butler_line("[1, 2]") is None


class TestButlerPatchApplier:
    """Test ButlerPatchApplier class."""

    def test_missing_on_path(self):
        """Test a missing butler is reported."""
        async def _run() -> None:
            with patch("patchline.core.patcher.shutil.which", return_value=None):
                await ButlerPatchApplier().ensure_installed()

        with pytest.raises(PatchApplierMissingError):
            asyncio.run(_run())

    def test_missing_explicit_path(self, tmp_path: Path):
        """Test an explicit path that does not exist."""
        async def _run() -> None:
            await ButlerPatchApplier(executable=tmp_path / "nope").ensure_installed()

        with pytest.raises(PatchApplierMissingError):
            asyncio.run(_run())

    def test_found_on_path(self):
        """Test butler discovered on PATH."""
        async def _run() -> Path:
            with patch("patchline.core.patcher.shutil.which", return_value="/opt/butler"):
                return await ButlerPatchApplier().ensure_installed()

        assert asyncio.run(_run()) == Path("/opt/butler")

    def test_missing_artifact(self, tmp_path: Path):
        """Test applying a file that does not exist."""
        async def _run() -> None:
            await ButlerPatchApplier().apply(tmp_path / "gone.pwr", tmp_path / "game")

        with pytest.raises(PatchApplyError):
            asyncio.run(_run())

    @posix_only
    def test_apply_success(self, tmp_path: Path):
        """Test progress lines are forwarded and the staging dir is removed."""
        butler = _fake_butler(
            tmp_path,
            'echo \'{"type": "log", "level": "info", "message": "patching"}\'\n'
            'echo \'{"type": "progress", "progress": 0.25}\'\n'
            'echo \'{"type": "progress", "progress": 1.0}\'\n',
        )
        artifact = tmp_path / "v4~5.pwr"
        artifact.write_bytes(b"patch")
        progress: list[tuple[int, str]] = []

        async def _run() -> None:
            applier = ButlerPatchApplier(executable=butler)
            await applier.apply(artifact, tmp_path / "game", lambda p, m: progress.append((p, m)))

        asyncio.run(_run())

        assert progress == [
            (25, "patch_applying"),
            (100, "patch_applying"),
            (100, "patch_applied"),
        ]
        assert not (tmp_path / "game" / ".patchline" / "staging").exists()

    @posix_only
    def test_apply_failure(self, tmp_path: Path):
        """Test a non-zero exit carries butler's last error."""
        butler = _fake_butler(
            tmp_path,
            'echo \'{"type": "error", "message": "signature mismatch"}\'\nexit 3\n',
        )
        artifact = tmp_path / "v4~5.pwr"
        artifact.write_bytes(b"patch")

        async def _run() -> None:
            await ButlerPatchApplier(executable=butler).apply(artifact, tmp_path / "game")

        with pytest.raises(PatchApplyError, match="signature mismatch"):
            asyncio.run(_run())

    @posix_only
    def test_apply_cancelled(self, tmp_path: Path):
        """Test cancellation terminates the running process."""
        butler = _fake_butler(tmp_path, "exec sleep 30\n")
        artifact = tmp_path / "v4~5.pwr"
        artifact.write_bytes(b"patch")

        async def _run() -> None:
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.2, token.cancel)
            applier = ButlerPatchApplier(executable=butler, terminate_timeout=1.0)
            await applier.apply(artifact, tmp_path / "game", cancel=token)

        with pytest.raises(OperationCancelledError):
            asyncio.run(_run())

    @posix_only
    def test_unreadable_output_terminates(self, tmp_path: Path):
        """Test malformed progress output stops butler before staging is removed."""
        pid_file = tmp_path / "butler.pid"
        butler = _fake_butler(
            tmp_path,
            f"echo $$ > {pid_file}\n"
            'echo \'{"type": "progress", "progress": "half"}\'\n'
            "exec sleep 30\n",
        )
        artifact = tmp_path / "v4~5.pwr"
        artifact.write_bytes(b"patch")

        async def _run() -> None:
            applier = ButlerPatchApplier(executable=butler, terminate_timeout=1.0)
            await applier.apply(artifact, tmp_path / "game")

        with pytest.raises(PatchApplyError, match="Unreadable butler output"):
            asyncio.run(_run())

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        assert not (tmp_path / "game" / ".patchline" / "staging").exists()
