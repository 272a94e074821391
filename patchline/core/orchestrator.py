"""Update orchestration: plan, download, apply, checkpoint.

The orchestrator moves one branch of one installation from its installed
version to a target version. It prefers a single full build when that is
cheaper in failure points, otherwise it walks the contiguous diff chain,
applying and checkpointing each step before fetching the next.
"""

from __future__ import annotations

from pathlib import Path

import httpx
import structlog

from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.checkpoint import CheckpointStore
from patchline.core.download import DownloadEngine, DownloadProgress
from patchline.core.errors import (
    ArtifactNotFoundError,
    AuthorizationError,
    ForbiddenError,
    NoSourceAvailableError,
    OperationCancelledError,
    PatchApplyError,
    PatchlineError,
    TransientDownloadError,
    UpdateInProgressError,
)
from patchline.core.patcher import PatchApplier
from patchline.core.progress import ProgressCallback, ProgressReporter
from patchline.core.resolver import VersionResolver
from patchline.core.types import ArtifactKind, SourceKind, UpdatePlan, UpdateState, UpdateStep
from patchline.core.utils import normalize_branch
from patchline.sources.base import VersionSource

logger = structlog.get_logger()


class UpdateOrchestrator:
    """Drives a branch to a target version.

    Args:
        resolver: Version resolver with every source registered
        engine: Download engine
        applier: External patch applier
        checkpoints: Installed-version checkpoint store
        install_dir: Game installation directory
        artifacts_dir: Where downloaded artifacts are kept until applied
        max_diff_chain_length: Longest diff chain preferred over a full
            build while the authoritative source is reachable
    """

    def __init__(
        self,
        resolver: VersionResolver,
        engine: DownloadEngine,
        applier: PatchApplier,
        checkpoints: CheckpointStore,
        install_dir: Path,
        artifacts_dir: Path,
        max_diff_chain_length: int = 2,
    ) -> None:
        self.resolver = resolver
        self.engine = engine
        self.applier = applier
        self.checkpoints = checkpoints
        self.install_dir = install_dir
        self.artifacts_dir = artifacts_dir
        self.max_diff_chain_length = max_diff_chain_length

        self.state = UpdateState.IDLE
        self._running = False

    def _set_state(self, state: UpdateState) -> None:
        logger.debug("update_state", previous=self.state.value, state=state.value)
        self.state = state

    # Planning

    async def plan(
        self,
        branch: str,
        installed: int | None,
        target: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> UpdatePlan:
        """Compute the steps that take ``branch`` from ``installed`` to ``target``.

        Args:
            branch: Branch name
            installed: Installed version, None if nothing is installed
            target: Target version, the latest advertised if None
            cancel: Cancellation token

        Returns:
            The plan; empty when ``target <= installed``

        Raises:
            NoSourceAvailableError: If neither a full build nor a diff chain
                can reach the target
        """
        token = ensure_token(cancel)
        branch = normalize_branch(branch)

        if target is None:
            target = await self.resolver.latest_version(branch, token)
            if target is None:
                raise NoSourceAvailableError(branch, None, "no source advertises any version")

        plan = UpdatePlan(branch=branch, installed_version=installed, target_version=target)
        if installed is not None and target <= installed:
            logger.info("update_not_needed", branch=branch, installed=installed, target=target)
            return plan

        diff_only = self.resolver.is_diff_only(branch)
        full_available = not diff_only and await self._full_build_available(branch, target, token)
        # Read after the lookup so a failing authoritative call is already counted.
        official_reachable = not self.resolver.official_unreachable

        if full_available:
            far_behind = installed is None or target - installed > self.max_diff_chain_length
            if installed is None or (official_reachable and far_behind):
                plan.steps = [UpdateStep(ArtifactKind.FULL, None, target)]
            elif await self._chain_available(branch, installed, target, token):
                plan.steps = diff_steps(installed, target)
            else:
                plan.steps = [UpdateStep(ArtifactKind.FULL, None, target)]
        else:
            start = installed if installed is not None else 0
            if not await self._chain_available(branch, start, target, token):
                raise NoSourceAvailableError(
                    branch, target, "no full build and no contiguous diff chain"
                )
            plan.steps = diff_steps(start, target)

        logger.info(
            "update_planned",
            branch=branch,
            installed=installed,
            target=target,
            steps=[step.label for step in plan.steps],
            diff_only=diff_only,
            official_reachable=official_reachable,
        )
        return plan

    async def _full_build_available(self, branch: str, version: int, cancel: CancellationToken) -> bool:
        step = UpdateStep(ArtifactKind.FULL, None, version)
        for source in self.resolver.candidate_sources():
            if not source.capabilities.has_full_builds:
                continue
            if await self._resolve_url(source, branch, step, cancel) is not None:
                return True
        return False

    async def _chain_available(
        self, branch: str, start: int, target: int, cancel: CancellationToken
    ) -> bool:
        """Whether every step ``start -> target`` is offered by some source."""
        if await self.resolver.get_patch_chain(branch, start, target, cancel) is not None:
            return True

        candidates = [s for s in self.resolver.candidate_sources() if s.capabilities.has_diff_patches]
        for step in diff_steps(start, target):
            offered = False
            for source in candidates:
                if await self._resolve_url(source, branch, step, cancel) is not None:
                    offered = True
                    break
            if not offered:
                logger.debug("chain_gap", branch=branch, step=step.label)
                return False
        return True

    async def _resolve_url(
        self,
        source: VersionSource,
        branch: str,
        step: UpdateStep,
        cancel: CancellationToken,
    ) -> str | None:
        """Ask one source for a step's artifact URL; failures read as not offered."""
        os_name, arch = self.resolver.os_name, self.resolver.arch
        try:
            if step.kind == ArtifactKind.FULL:
                return await source.get_full_build_url(branch, os_name, arch, step.to_version, cancel)
            assert step.from_version is not None
            return await source.get_diff_url(
                branch, os_name, arch, step.from_version, step.to_version, cancel
            )
        except OperationCancelledError:
            raise
        except (PatchlineError, httpx.HTTPError) as e:
            logger.warning("url_lookup_failed", source_id=source.source_id, step=step.label, error=str(e))
            return None

    # Execution

    async def run(
        self,
        branch: str,
        target: int | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> UpdatePlan:
        """Update ``branch`` to ``target`` (the latest version if None).

        The checkpoint advances after every applied step, so a failed or
        cancelled run resumes from the last applied version.

        Raises:
            UpdateInProgressError: If a run is already active
            OperationCancelledError: On cancellation
            NoSourceAvailableError: If some step cannot be downloaded
            PatchApplyError: If applying a step fails
        """
        if self._running:
            raise UpdateInProgressError("An update is already running for this installation")
        self._running = True

        token = ensure_token(cancel)
        branch = normalize_branch(branch)
        reporter = ProgressReporter(on_progress)
        reporter.start()

        try:
            self._set_state(UpdateState.RESOLVING)
            reporter.report("resolve", 0, "update.resolving")
            installed = self.checkpoints.get(branch)
            plan = await self.plan(branch, installed, target, token)

            total = len(plan.steps)
            for index, step in enumerate(plan.steps):
                token.raise_if_cancelled()
                await self._run_step(plan, step, index, total, reporter, token)
                self.checkpoints.advance(branch, step.to_version)
                self._set_state(UpdateState.CHECKPOINTED)

            self._set_state(UpdateState.COMPLETE)
            reporter.report("complete", 100, "update.complete", 0, 0, plan.target_version)
            logger.info("update_complete", branch=branch, version=plan.target_version, steps=total)
            return plan
        except OperationCancelledError:
            self._set_state(UpdateState.CANCELLED)
            logger.info("update_cancelled", branch=branch)
            raise
        except Exception:
            self._set_state(UpdateState.FAILED)
            raise
        finally:
            await reporter.aclose()
            self._running = False

    async def _run_step(
        self,
        plan: UpdatePlan,
        step: UpdateStep,
        index: int,
        total: int,
        reporter: ProgressReporter,
        cancel: CancellationToken,
    ) -> None:
        span = 100.0 / total
        base = index * span

        def download_progress(percent: int, received: int, size: int) -> None:
            reporter.report(
                "download", base + span * percent / 200, "update.downloading", received, size, step.label
            )

        def apply_progress(percent: int, message: str) -> None:
            reporter.report("apply", base + span * (0.5 + percent / 200), "update.applying", 0, 0, step.label)

        self._set_state(UpdateState.FETCHING_STEP)
        logger.info("update_step_start", branch=plan.branch, step=step.label, index=index + 1, total=total)
        artifact = await self._download_step(plan.branch, step, download_progress, cancel)

        cancel.raise_if_cancelled()
        self._set_state(UpdateState.APPLYING_STEP)
        try:
            await self.applier.apply(artifact, self.install_dir, apply_progress, cancel)
        except OperationCancelledError:
            raise
        except PatchApplyError:
            artifact.unlink(missing_ok=True)
            raise
        except Exception as e:
            artifact.unlink(missing_ok=True)
            raise PatchApplyError(f"Applying {step.label} failed: {e}") from e

        artifact.unlink(missing_ok=True)
        logger.info("update_step_applied", branch=plan.branch, step=step.label)

    def artifact_path(self, branch: str, step: UpdateStep, source: VersionSource) -> Path:
        """Transient download location of a step's artifact."""
        return self.artifacts_dir / branch / f"{source.source_id}-{step.label}.pwr"

    async def _download_step(
        self,
        branch: str,
        step: UpdateStep,
        on_progress: DownloadProgress,
        cancel: CancellationToken,
    ) -> Path:
        """Download a step's artifact from the first source that delivers it."""
        failures: list[str] = []

        for source in self.resolver.candidate_sources():
            cancel.raise_if_cancelled()
            is_official = source.kind == SourceKind.OFFICIAL
            url = await self._resolve_url(source, branch, step, cancel)
            if url is None:
                failures.append(f"{source.source_id}: not offered")
                continue

            artifact = self.artifact_path(branch, step, source)
            try:
                try:
                    await self._fetch(url, artifact, on_progress, cancel)
                except ForbiddenError:
                    if not is_official:
                        raise
                    logger.warning("official_url_forbidden", step=step.label)
                    artifact.unlink(missing_ok=True)
                    await self.resolver.refresh(branch, source.source_id, cancel)
                    url = await self._resolve_url(source, branch, step, cancel)
                    if url is None:
                        raise
                    await self._fetch(url, artifact, on_progress, cancel)
                logger.info("step_downloaded", step=step.label, source_id=source.source_id)
                return artifact
            except OperationCancelledError:
                raise
            except (PatchlineError, httpx.HTTPError, OSError) as e:
                artifact.unlink(missing_ok=True)
                failures.append(f"{source.source_id}: {e}")
                logger.warning(
                    "step_source_failed",
                    step=step.label,
                    source_id=source.source_id,
                    error=str(e),
                )
                if isinstance(e, ArtifactNotFoundError):
                    self.resolver.discard_version(branch, step.to_version, source.source_id)
                if is_official and isinstance(e, (TransientDownloadError, AuthorizationError, httpx.TransportError)):
                    self.resolver.report_official_failure(str(e))

        raise NoSourceAvailableError(branch, step.to_version, "; ".join(failures))

    async def _fetch(
        self, url: str, artifact: Path, on_progress: DownloadProgress, cancel: CancellationToken
    ) -> None:
        """Download one artifact, rejecting zero-byte placeholders."""
        size = await self.engine.head_size(url, cancel)
        minimum = self.engine.config.min_artifact_bytes
        if size is not None and size < minimum:
            raise ArtifactNotFoundError(
                f"Placeholder artifact ({size} bytes) at {url}", url=url
            )
        await self.engine.fetch(url, artifact, on_progress, cancel)


def diff_steps(start: int, target: int) -> list[UpdateStep]:
    """The contiguous diff steps ``start -> start+1 -> ... -> target``.

    Example:
        >>> [s.label for s in diff_steps(5, 8)]
        ['v5~6', 'v6~7', 'v7~8']
    """
    return [UpdateStep(ArtifactKind.DIFF, v - 1, v) for v in range(start + 1, target + 1)]
