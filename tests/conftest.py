"""Pytest configuration and shared fixtures for patchline tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import httpx
import pytest

from patchline.core.cache import VersionCache
from patchline.core.cancel import CancellationToken
from patchline.core.config import AppConfig, CacheConfig, DownloadConfig
from patchline.core.errors import DownloadError, PatchApplyError
from patchline.core.patcher import ApplyProgress
from patchline.core.resolver import VersionResolver
from patchline.core.types import (
    Capabilities,
    ProbeResult,
    SourceKind,
    SourceLayoutInfo,
)
from patchline.sources.base import VersionSource


class FakeSource(VersionSource):
    """In-memory version source serving ``https://<id>.test/...`` URLs."""

    def __init__(
        self,
        source_id: str,
        priority: int = 100,
        versions: Iterable[int] = (),
        full: Iterable[int] = (),
        diffs: Iterable[tuple[int, int]] = (),
        diff_only: Iterable[str] = (),
        fail_list: bool = False,
    ) -> None:
        super().__init__(source_id, source_id.title(), priority, capabilities=Capabilities())
        self.kind = SourceKind.PATTERN
        self.versions = sorted(set(versions))
        self.full = set(full)
        self.diffs = set(diffs)
        self.diff_only = set(diff_only)
        self.fail_list = fail_list
        self.list_calls = 0
        self.invalidated = 0

    def url(self, path: str) -> str:
        return f"https://{self.source_id}.test/{path}.pwr"

    def is_diff_only(self, branch: str) -> bool:
        return branch in self.diff_only

    def invalidate(self) -> None:
        self.invalidated += 1

    async def list_versions(self, branch, os_name, arch, cancel=None):
        self.list_calls += 1
        if self.fail_list:
            raise DownloadError(f"{self.source_id} listing failed")
        return list(self.versions)

    async def get_full_build_url(self, branch, os_name, arch, version, cancel=None):
        if branch in self.diff_only or version not in self.full:
            return None
        return self.url(f"full/{version}")

    async def get_diff_url(self, branch, os_name, arch, from_version, to_version, cancel=None):
        if (from_version, to_version) not in self.diffs:
            return None
        return self.url(f"diff/{from_version}~{to_version}")

    def layout_info(self) -> SourceLayoutInfo:
        return SourceLayoutInfo(
            full_build_location=self.url("full/{version}"),
            diff_location=self.url("diff/{from}~{to}"),
            cache_policy="none",
        )

    async def probe(self, cancel=None) -> ProbeResult:
        return ProbeResult(source_id=self.source_id, url=self.url("ping"), available=True, latency_ms=5)


class FakeApplier:
    """Patch applier that records every artifact it is given."""

    def __init__(self, fail_on: Iterable[str] = (), on_apply: Callable[[Path], None] | None = None) -> None:
        self.fail_on = set(fail_on)
        self.on_apply = on_apply
        self.applied: list[tuple[str, bytes]] = []

    async def ensure_installed(self, on_progress: ApplyProgress | None = None) -> Path:
        return Path("/usr/bin/true")

    async def apply(
        self,
        artifact: Path,
        target_dir: Path,
        on_progress: ApplyProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        if self.on_apply is not None:
            self.on_apply(artifact)
        if any(marker in artifact.name for marker in self.fail_on):
            raise PatchApplyError(f"cannot apply {artifact.name}")
        self.applied.append((artifact.name, artifact.read_bytes()))
        if on_progress is not None:
            on_progress(50, "patch_applying")
            on_progress(100, "patch_applied")


class ArtifactServer:
    """``httpx.MockTransport`` handler serving in-memory files.

    Supports HEAD (Content-Length only), GET and single ``Range: bytes=N-``
    requests. URLs without a file answer 404; ``statuses`` forces a status.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.statuses: dict[str, int] = {}
        self.ignore_range = False
        self.requests: list[httpx.Request] = []

    def add(self, url: str, data: bytes) -> None:
        self.files[url] = data

    def count(self, method: str, url: str | None = None) -> int:
        return sum(
            1 for r in self.requests
            if r.method == method and (url is None or str(r.url) == url)
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        status = self.statuses.get(url)
        if status is not None:
            return httpx.Response(status)

        data = self.files.get(url)
        if data is None:
            return httpx.Response(404)

        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-length": str(len(data))})

        range_header = request.headers.get("range")
        if range_header and not self.ignore_range:
            start = int(range_header.removeprefix("bytes=").rstrip("-"))
            return httpx.Response(
                206,
                content=data[start:],
                headers={"content-range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
            )
        return httpx.Response(200, content=data)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in a temporary directory."""
    return AppConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        install_dir=tmp_path / "game",
        download=DownloadConfig(backoff_step=0, chunk_size=4),
    )


@pytest.fixture
def fast_download_config() -> DownloadConfig:
    """Download configuration without backoff delays."""
    return DownloadConfig(backoff_step=0, chunk_size=4)


@pytest.fixture
def clock() -> FakeClock:
    """Controllable time source."""
    return FakeClock()


@pytest.fixture
def artifact_server() -> ArtifactServer:
    """In-memory HTTP file server."""
    return ArtifactServer()


@pytest.fixture
def fake_source() -> type[FakeSource]:
    """Factory for in-memory version sources."""
    return FakeSource


@pytest.fixture
def fake_applier() -> type[FakeApplier]:
    """Factory for recording patch appliers."""
    return FakeApplier


@pytest.fixture
def make_resolver(tmp_path: Path, clock: FakeClock) -> Callable[..., VersionResolver]:
    """Build a resolver on a temporary cache with the shared clock."""

    def _make(*sources: VersionSource, **kwargs: Any) -> VersionResolver:
        kwargs.setdefault("cache_config", CacheConfig())
        resolver = VersionResolver(
            cache=VersionCache(tmp_path / "cache" / "versions.json", clock=clock),
            os_name="linux",
            arch="amd64",
            clock=clock,
            **kwargs,
        )
        for source in sources:
            resolver.register(source)
        resolver.load()
        return resolver

    return _make


@pytest.fixture
def pattern_descriptor_data() -> dict[str, Any]:
    """Valid pattern mirror descriptor in its on-disk camelCase form."""
    return {
        "schemaVersion": 1,
        "id": "community-cdn",
        "name": "Community CDN",
        "priority": 110,
        "enabled": True,
        "sourceType": "pattern",
        "pattern": {
            "baseUrl": "https://cdn.example.org/game",
            "fullBuildUrl": "{base}/{os}/{arch}/{branch}/0/{version}.pwr",
            "diffPatchUrl": "{base}/{os}/{arch}/{branch}/{from}/{to}.pwr",
            "osMapping": {"darwin": "mac"},
            "branchMapping": {"pre-release": "beta"},
            "diffBasedBranches": ["Pre-Release"],
            "versionDiscovery": {
                "method": "json-api",
                "url": "{base}/{os}/{arch}/{branch}/versions.json",
                "jsonPath": "items[].version",
            },
        },
        "speedTest": {"pingUrl": "https://cdn.example.org/ping"},
        "cache": {"indexTtlMinutes": 30, "speedTestTtlMinutes": 60},
    }


@pytest.fixture
def index_descriptor_data() -> dict[str, Any]:
    """Valid full-index mirror descriptor (grouped structure)."""
    return {
        "schemaVersion": 1,
        "id": "index-mirror",
        "priority": 120,
        "enabled": True,
        "sourceType": "json-index",
        "jsonIndex": {
            "apiUrl": "https://index.example.net/api/files",
            "rootPath": "hytale",
            "structure": "grouped",
            "platformMapping": {"linux": "linux", "windows": "win"},
            "fileNamePattern": {
                "full": "v{version}-{os}-{arch}.pwr",
                "diff": "v{from}~{to}-{os}-{arch}.pwr",
            },
            "diffBasedBranches": ["pre-release"],
        },
    }
