"""Version resolution across all registered sources.

The resolver owns the source registry, the on-disk version cache and the
"authoritative source unreachable" state. Sources are always exposed in
ascending priority order, registration order breaking ties.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable

import httpx
import structlog

from patchline.core.cache import VersionCache
from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.config import CacheConfig, OfficialConfig
from patchline.core.errors import OperationCancelledError, PatchlineError
from patchline.core.types import PatchStep, ProbeResult, SourceKind
from patchline.core.utils import current_arch, current_os, normalize_branch
from patchline.sources.base import VersionSource
from patchline.sources.official import AuthoritativeSource

logger = structlog.get_logger()


class VersionResolver:
    """Merges metadata from every source behind one TTL cache.

    Args:
        cache: Version cache
        cache_config: Default TTLs
        official_config: Failure window and threshold for reachability
        diff_only_branches: Branches configured as diff-only
        os_name: Platform OS, detected if None
        arch: Platform architecture, detected if None
        clock: Time source for the failure window
    """

    def __init__(
        self,
        cache: VersionCache,
        cache_config: CacheConfig | None = None,
        official_config: OfficialConfig | None = None,
        diff_only_branches: Iterable[str] = (),
        os_name: str | None = None,
        arch: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.cache_config = cache_config or CacheConfig()
        self.official_config = official_config or OfficialConfig()
        self.diff_only_branches = {normalize_branch(b) for b in diff_only_branches}
        self.os_name = os_name or current_os()
        self.arch = arch or current_arch()
        self.clock = clock

        self._sources: list[VersionSource] = []
        self._official_failures: list[float] = []

    # Registry

    def register(self, source: VersionSource) -> bool:
        """Register a source.

        Returns:
            False if a source with the same id is already registered (the
            new one is ignored)
        """
        if any(s.source_id == source.source_id for s in self._sources):
            logger.warning("duplicate_source_id", source_id=source.source_id)
            return False

        self._sources.append(source)
        if isinstance(source, AuthoritativeSource):
            source.attach_listener(self)
        logger.debug("source_registered", source_id=source.source_id, priority=source.priority)
        return True

    @property
    def registered_ids(self) -> list[str]:
        return [s.source_id for s in self._sources]

    @property
    def sources(self) -> list[VersionSource]:
        """Enabled sources, ascending priority, stable for ties."""
        return sorted((s for s in self._sources if s.enabled), key=lambda s: s.priority)

    @property
    def mirrors(self) -> list[VersionSource]:
        """Enabled non-authoritative sources in priority order."""
        return [s for s in self.sources if s.kind != SourceKind.OFFICIAL]

    @property
    def official(self) -> AuthoritativeSource | None:
        for source in self._sources:
            if isinstance(source, AuthoritativeSource):
                return source
        return None

    def get_source(self, source_id: str) -> VersionSource | None:
        for source in self._sources:
            if source.source_id == source_id:
                return source
        return None

    def candidate_sources(self) -> list[VersionSource]:
        """Sources to try for an artifact, authoritative first unless unreachable."""
        unreachable = self.official_unreachable
        return [
            s for s in self.sources
            if not (s.kind == SourceKind.OFFICIAL and unreachable)
        ]

    # Branch properties

    def is_diff_only(self, branch: str) -> bool:
        """Whether any configuration marks ``branch`` as having no full builds."""
        branch = normalize_branch(branch)
        if branch in self.diff_only_branches:
            return True
        return any(m.is_diff_only(branch) for m in self.mirrors)

    # Authoritative reachability

    def report_official_success(self) -> None:
        self._official_failures.clear()

    def report_official_failure(self, error: str) -> None:
        self._official_failures.append(self.clock())
        logger.info("official_failure_recorded", error=error, recent=len(self._official_failures))

    @property
    def official_unreachable(self) -> bool:
        """Whether the authoritative source should be skipped.

        True when there is no authoritative source, it has no session, or it
        failed at least ``failure_threshold`` times within ``failure_window``
        seconds without a success since.
        """
        official = self.official
        if official is None or not official.available:
            return True
        now = self.clock()
        window = self.official_config.failure_window
        recent = [t for t in self._official_failures if now - t <= window]
        self._official_failures = recent
        return len(recent) >= self.official_config.failure_threshold

    # Cache

    def load(self) -> None:
        """Load the cache and drop records of unregistered sources."""
        self.cache.load()
        if self.cache.sanitize(self.registered_ids):
            self.cache.save()

    def _ttl(self, source: VersionSource) -> float:
        ttl = source.cache_ttl
        return ttl if ttl is not None else float(self.cache_config.versions_ttl)

    def _probe_ttl(self, source: VersionSource) -> float:
        ttl = source.probe_ttl
        return ttl if ttl is not None else float(self.cache_config.probe_ttl)

    def _after_refetch(self) -> None:
        self.cache.sanitize(self.registered_ids)
        self.cache.save()

    async def versions_by_source(
        self, branch: str, cancel: CancellationToken | None = None
    ) -> dict[str, list[int]]:
        """Version lists per source, from cache or refetched when stale.

        A failing source yields no entry; the others are unaffected.
        """
        token = ensure_token(cancel)
        branch = normalize_branch(branch)
        result: dict[str, list[int]] = {}
        refetched = False

        for source in self.sources:
            token.raise_if_cancelled()
            cached = self.cache.get_versions(branch, source.source_id)
            if cached is not None:
                result[source.source_id] = cached
                continue

            try:
                versions = await source.list_versions(branch, self.os_name, self.arch, token)
            except OperationCancelledError:
                raise
            except (PatchlineError, httpx.HTTPError) as e:
                logger.warning("source_list_failed", source_id=source.source_id, branch=branch, error=str(e))
                continue

            self.cache.put_versions(branch, source.source_id, versions, self._ttl(source))
            result[source.source_id] = sorted(set(versions))
            refetched = True
            logger.debug("versions_refetched", source_id=source.source_id, branch=branch, count=len(versions))

        if refetched:
            self._after_refetch()
        return result

    async def list_versions(self, branch: str, cancel: CancellationToken | None = None) -> list[int]:
        """Merged ascending, unique versions across all sources."""
        merged: set[int] = set()
        for versions in (await self.versions_by_source(branch, cancel)).values():
            merged.update(versions)
        return sorted(merged)

    async def latest_version(self, branch: str, cancel: CancellationToken | None = None) -> int | None:
        versions = await self.list_versions(branch, cancel)
        return versions[-1] if versions else None

    async def get_patch_chain(
        self,
        branch: str,
        from_version: int,
        to_version: int,
        cancel: CancellationToken | None = None,
    ) -> list[PatchStep] | None:
        """First contiguous chain offered by a single source, in priority order."""
        token = ensure_token(cancel)
        branch = normalize_branch(branch)
        refetched = False
        chain: list[PatchStep] | None = None

        for source in self.candidate_sources():
            token.raise_if_cancelled()
            if not source.capabilities.has_diff_patches:
                continue

            record = self.cache.get_patch_chain(branch, source.source_id, from_version, to_version)
            if record is not None:
                if record.values is None:
                    continue
                chain = [PatchStep.model_validate(step) for step in record.values]
                break

            try:
                found = await source.get_patch_chain(
                    from_version, to_version, self.os_name, self.arch, branch, token
                )
            except OperationCancelledError:
                raise
            except (PatchlineError, httpx.HTTPError) as e:
                logger.warning("source_chain_failed", source_id=source.source_id, error=str(e))
                continue

            if found is not None and not is_contiguous_chain(found, from_version, to_version):
                logger.warning("source_chain_not_contiguous", source_id=source.source_id)
                found = None

            self.cache.put_patch_chain(
                branch,
                source.source_id,
                from_version,
                to_version,
                [step.model_dump() for step in found] if found is not None else None,
                self._ttl(source),
            )
            refetched = True
            if found is not None:
                chain = found
                break

        if refetched:
            self._after_refetch()
        return chain

    async def refresh(
        self,
        branch: str,
        source_id: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> dict[str, list[int]]:
        """Drop cached metadata for a branch and refetch it.

        Args:
            branch: Branch to refresh
            source_id: Only refresh this source
            cancel: Cancellation token
        """
        branch = normalize_branch(branch)
        self.cache.invalidate(branch, source_id)
        for source in self._sources:
            if source_id is None or source.source_id == source_id:
                source.invalidate()
        logger.info("metadata_refresh", branch=branch, source_id=source_id)
        return await self.versions_by_source(branch, cancel)

    def discard_version(self, branch: str, version: int, source_id: str | None = None) -> None:
        """Forget a version a source turned out not to have."""
        self.cache.discard_version(normalize_branch(branch), version, source_id)
        self.cache.save()

    async def probe_mirrors(
        self, force: bool = False, cancel: CancellationToken | None = None
    ) -> list[ProbeResult]:
        """Probe every mirror, reusing results younger than the probe TTL."""
        token = ensure_token(cancel)
        results: list[ProbeResult] = []
        for mirror in self.mirrors:
            cached = None if force else self.cache.get_probe(mirror.source_id)
            if cached is not None:
                results.append(ProbeResult.model_validate(cached))
                continue
            result = await mirror.probe(token)
            self.cache.put_probe(mirror.source_id, result.model_dump(), self._probe_ttl(mirror))
            results.append(result)
        self.cache.save()
        return results


def is_contiguous_chain(steps: list[PatchStep], from_version: int, to_version: int) -> bool:
    """Check that ``steps`` advance one version at a time from start to end."""
    expected = from_version
    for step in steps:
        if step.from_version != expected or not step.is_contiguous:
            return False
        expected = step.to_version
    return expected == to_version
