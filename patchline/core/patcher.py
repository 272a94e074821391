"""External patch applier integration."""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import structlog

from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.errors import (
    OperationCancelledError,
    PatchApplierMissingError,
    PatchApplyError,
)

logger = structlog.get_logger()

# (percent, message)
ApplyProgress = Callable[[int, str], None]


class PatchApplier(Protocol):
    """Tool that applies a downloaded artifact onto an install directory."""

    async def ensure_installed(self, on_progress: ApplyProgress | None = None) -> Path:
        """Make sure the tool is available and return its location."""
        ...

    async def apply(
        self,
        artifact: Path,
        target_dir: Path,
        on_progress: ApplyProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Apply ``artifact`` to ``target_dir``; raise on any failure."""
        ...


class ButlerPatchApplier:
    """Applies ``.pwr`` patches with the ``butler`` command-line tool.

    Runs ``butler apply --json --staging-dir <dir> <patch> <target>`` and
    translates its JSON progress lines into percent callbacks.

    Args:
        executable: Explicit path to butler, looked up on PATH if None
        staging_dir: Staging directory, defaults to ``<target>/.patchline/staging``
        terminate_timeout: Seconds to wait after terminating on cancellation
    """

    def __init__(
        self,
        executable: Path | None = None,
        staging_dir: Path | None = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self.executable = executable
        self.staging_dir = staging_dir
        self.terminate_timeout = terminate_timeout

    async def ensure_installed(self, on_progress: ApplyProgress | None = None) -> Path:
        """Locate the butler executable.

        Raises:
            PatchApplierMissingError: If butler cannot be found
        """
        if self.executable is not None:
            if self.executable.exists():
                return self.executable
            raise PatchApplierMissingError(f"butler not found at {self.executable}")

        found = shutil.which("butler")
        if found is None:
            raise PatchApplierMissingError("butler not found on PATH")

        if on_progress is not None:
            on_progress(100, "butler_ready")
        return Path(found)

    async def apply(
        self,
        artifact: Path,
        target_dir: Path,
        on_progress: ApplyProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Apply a patch with butler.

        Args:
            artifact: Downloaded ``.pwr`` file
            target_dir: Installation directory to patch in place
            on_progress: Called with (percent, message)
            cancel: Cancellation token; the process is terminated when set

        Raises:
            PatchApplyError: If butler exits non-zero
            OperationCancelledError: On cancellation
        """
        token = ensure_token(cancel)
        token.raise_if_cancelled()

        if not artifact.exists():
            raise PatchApplyError(f"Patch file not found: {artifact}")

        butler = await self.ensure_installed()
        staging = self.staging_dir or target_dir / ".patchline" / "staging"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        target_dir.mkdir(parents=True, exist_ok=True)

        logger.info("patch_apply_start", artifact=str(artifact), target=str(target_dir))
        process = await asyncio.create_subprocess_exec(
            str(butler),
            "apply",
            "--json",
            "--staging-dir",
            str(staging),
            str(artifact),
            str(target_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        last_error: list[str] = []
        try:
            reader = asyncio.create_task(self._read_output(process, on_progress, last_error))
            waiter = asyncio.create_task(token.wait())
            done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)

            if waiter in done:
                reader.cancel()
                await self._terminate(process)
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
                logger.info("patch_apply_cancelled", artifact=str(artifact))
                raise OperationCancelledError(token.reason or "cancelled")

            waiter.cancel()
            try:
                reader.result()
            except ValueError as e:
                raise PatchApplyError(f"Unreadable butler output: {e}") from e
            returncode = await process.wait()
        finally:
            if process.returncode is None:
                await self._terminate(process)
            shutil.rmtree(staging, ignore_errors=True)

        if returncode != 0:
            detail = last_error[-1] if last_error else "no output"
            raise PatchApplyError(f"butler exited with code {returncode}: {detail}")

        token.raise_if_cancelled()
        if on_progress is not None:
            on_progress(100, "patch_applied")
        logger.info("patch_apply_complete", artifact=str(artifact))

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self.terminate_timeout)
        except TimeoutError:
            process.kill()
            await process.wait()

    @staticmethod
    async def _read_output(
        process: asyncio.subprocess.Process,
        on_progress: ApplyProgress | None,
        last_error: list[str],
    ) -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            message = parse_butler_line(line)
            if message is None:
                last_error.append(line)
                continue

            kind = message.get("type")
            if kind == "progress" and on_progress is not None:
                fraction = float(message.get("progress", 0.0))
                on_progress(int(fraction * 100), "patch_applying")
            elif kind == "error":
                last_error.append(str(message.get("message", line)))
            elif kind == "log":
                logger.debug("butler_log", level=message.get("level"), message=message.get("message"))


def parse_butler_line(line: str) -> dict[str, Any] | None:
    """Parse one ``butler --json`` output line, None if it is not JSON."""
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None
