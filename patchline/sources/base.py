"""Version source abstraction."""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from patchline.core.cancel import CancellationToken
from patchline.core.types import (
    Capabilities,
    PatchStep,
    ProbeResult,
    SourceKind,
    SourceLayoutInfo,
)

logger = structlog.get_logger()


class VersionSource(ABC):
    """A provider of build artifacts for one or more branches.

    Lower ``priority`` values are consulted first; the authoritative source
    is always 0 and mirrors are 100 or higher.

    Args:
        source_id: Unique identifier, also the cache key
        display_name: Human-readable name
        priority: Consultation order, ascending
        enabled: Whether the source takes part in resolution
        capabilities: Artifact kinds the source serves
    """

    kind: SourceKind

    def __init__(
        self,
        source_id: str,
        display_name: str,
        priority: int,
        enabled: bool = True,
        capabilities: Capabilities | None = None,
    ) -> None:
        self.source_id = source_id
        self.display_name = display_name
        self.priority = priority
        self.enabled = enabled
        self.capabilities = capabilities or Capabilities()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.source_id!r}, priority={self.priority})"

    @property
    def cache_ttl(self) -> float | None:
        """Preferred metadata TTL in seconds, None to use the configured default."""
        return None

    @property
    def probe_ttl(self) -> float | None:
        """Preferred probe result TTL in seconds, None to use the configured default."""
        return None

    @property
    def available(self) -> bool:
        """Whether the source can currently serve requests."""
        return self.enabled

    def is_diff_only(self, branch: str) -> bool:
        """Whether ``branch`` has no full builds on this source."""
        return False

    @abstractmethod
    async def list_versions(
        self,
        branch: str,
        os_name: str,
        arch: str,
        cancel: CancellationToken | None = None,
    ) -> list[int]:
        """List available versions, ascending and unique."""

    @abstractmethod
    async def get_full_build_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Get the URL of the full build for ``version``, None if not offered."""

    @abstractmethod
    async def get_diff_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        from_version: int,
        to_version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Get the URL of the diff ``from_version -> to_version``, None if not offered."""

    async def get_signature_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Get the URL of the detached signature of a full build."""
        return None

    async def get_patch_chain(
        self,
        from_version: int,
        to_version: int,
        os_name: str,
        arch: str,
        branch: str,
        cancel: CancellationToken | None = None,
    ) -> list[PatchStep] | None:
        """Get the contiguous chain of diffs ``from_version -> to_version``.

        Asks for each consecutive diff in turn and gives up on the first gap.

        Returns:
            One step per version in ``from_version+1 .. to_version``, or None
            if some diff is missing
        """
        steps: list[PatchStep] = []
        for version in range(from_version + 1, to_version + 1):
            url = await self.get_diff_url(branch, os_name, arch, version - 1, version, cancel)
            if url is None:
                logger.debug(
                    "patch_chain_gap",
                    source_id=self.source_id,
                    branch=branch,
                    from_version=version - 1,
                    to_version=version,
                )
                return None
            steps.append(
                PatchStep(
                    from_version=version - 1,
                    to_version=version,
                    source_id=self.source_id,
                    url=url,
                )
            )
        return steps

    @abstractmethod
    def layout_info(self) -> SourceLayoutInfo:
        """Describe where the source keeps its artifacts."""

    def invalidate(self) -> None:
        """Drop any metadata the source caches in memory."""

    @abstractmethod
    async def probe(self, cancel: CancellationToken | None = None) -> ProbeResult:
        """Check connectivity and measure latency."""
