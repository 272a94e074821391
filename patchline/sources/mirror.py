"""Descriptor-driven mirror source.

One class serves every mirror; its behaviour is selected by the
descriptor's layout:

- ``pattern``: artifact URLs are built from templates and versions are
  discovered from a static list, a directory listing or a JSON endpoint.
- ``json-index``: a single endpoint returns the whole file index
  (``root.<branch>.<platform>[.<group>] -> {file name: url}``), which is
  cached in memory and parsed back into versions with file name templates.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.types import (
    Capabilities,
    ProbeResult,
    SourceKind,
    SourceLayoutInfo,
)
from patchline.core.utils import normalize_branch
from patchline.sources.base import VersionSource
from patchline.sources.descriptor import (
    DiscoveryMethod,
    IndexStructure,
    MirrorDescriptor,
    MirrorLayout,
)

logger = structlog.get_logger()

# HEAD rejected by an endpoint that is nonetheless up
_PING_OK_STATUSES = frozenset({400, 405, 422})
_PLACEHOLDER_RE = re.compile(r"(\{[a-z]+\})")


def apply_placeholders(template: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders.

    Example:
        >>> apply_placeholders("{base}/{os}/{version}.pwr", {"base": "https://m", "os": "linux", "version": "3"})
        'https://m/linux/3.pwr'
    """
    result = template
    for name, value in values.items():
        result = result.replace(f"{{{name}}}", value)
    return result


def compile_file_name_pattern(template: str, os_name: str, arch: str) -> re.Pattern[str]:
    """Turn a file name template into a case-insensitive regex.

    ``{version}``, ``{from}`` and ``{to}`` become named numeric groups;
    ``{os}`` and ``{arch}`` must match the given platform literally.
    """
    parts: list[str] = []
    for part in _PLACEHOLDER_RE.split(template):
        if part == "{os}":
            parts.append(re.escape(os_name))
        elif part == "{arch}":
            parts.append(re.escape(arch))
        elif part == "{version}":
            parts.append(r"(?P<version>\d+)")
        elif part == "{from}":
            parts.append(r"(?P<from>\d+)")
        elif part == "{to}":
            parts.append(r"(?P<to>\d+)")
        else:
            parts.append(re.escape(part))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def _as_version(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _collect(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    return [v for v in (_as_version(item) for item in values) if v is not None]


def parse_json_versions(data: Any, json_path: str | None) -> list[int]:
    """Extract version numbers from a JSON document.

    Recognised paths:

    - ``None`` / ``"$root"``: the document is an array of versions
    - ``"items[].version"`` / ``"[].version"``: array of objects
    - ``"a.b.c"``: dotted path to a number or an array
    - ``"versions"``: named array property

    Numbers and numeric strings both count.

    Returns:
        Ascending, unique versions
    """
    versions: list[int] = []

    if json_path is None or json_path == "$root":
        versions = _collect(data)
    elif "[]." in json_path:
        array_name, _, field = json_path.partition("[].")
        array = data if array_name in ("", "$root") else (
            data.get(array_name) if isinstance(data, dict) else None
        )
        if isinstance(array, list):
            for item in array:
                if isinstance(item, dict):
                    version = _as_version(item.get(field))
                    if version is not None:
                        versions.append(version)
    elif "." in json_path:
        current = data
        for part in json_path.split("."):
            if not isinstance(current, dict) or part not in current:
                return []
            current = current[part]
        if isinstance(current, list):
            versions = _collect(current)
        else:
            version = _as_version(current)
            versions = [version] if version is not None else []
    elif isinstance(data, dict):
        versions = _collect(data.get(json_path))

    return sorted(set(versions))


def parse_html_versions(html: str, pattern: str, min_file_size: int = 0) -> list[int]:
    """Extract versions from a directory listing.

    Args:
        html: Listing page body
        pattern: Regex; group 1 is the version, optional group 2 the size in bytes
        min_file_size: Entries whose size is below this are skipped

    Returns:
        Ascending, unique versions
    """
    regex = re.compile(pattern, re.IGNORECASE)
    versions: set[int] = set()
    for match in regex.finditer(html):
        version = _as_version(match.group(1))
        if version is None:
            continue
        if min_file_size > 0 and regex.groups >= 2:
            size = match.group(2)
            if size is not None and size.isdigit() and int(size) < min_file_size:
                continue
        versions.add(version)
    return sorted(versions)


class MirrorSource(VersionSource):
    """Mirror configured entirely by a :class:`MirrorDescriptor`.

    Args:
        descriptor: Validated mirror descriptor
        client: Shared async HTTP client
        clock: Monotonic time source for in-memory TTLs
        request_timeout: Timeout for discovery and index requests
    """

    def __init__(
        self,
        descriptor: MirrorDescriptor,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
        request_timeout: float = 15.0,
    ) -> None:
        if descriptor.source_type == MirrorLayout.JSON_INDEX:
            kind = SourceKind.FULL_INDEX
            capabilities = Capabilities(has_full_builds=True, has_diff_patches=True)
        else:
            assert descriptor.pattern is not None
            kind = SourceKind.PATTERN
            capabilities = Capabilities(
                has_full_builds=bool(descriptor.pattern.full_build_url),
                has_diff_patches=descriptor.pattern.diff_patch_url is not None,
            )

        super().__init__(
            source_id=descriptor.id,
            display_name=descriptor.name,
            priority=descriptor.priority,
            enabled=descriptor.enabled,
            capabilities=capabilities,
        )
        self.kind = kind
        self.descriptor = descriptor
        self.client = client
        self.clock = clock
        self.request_timeout = request_timeout

        self._versions: dict[str, tuple[float, list[int]]] = {}
        self._index: Any = None
        self._index_fetched_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def cache_ttl(self) -> float:
        """Descriptor index TTL in seconds."""
        return self.descriptor.cache.index_ttl_minutes * 60.0

    @property
    def probe_ttl(self) -> float:
        """Descriptor speed test TTL in seconds."""
        return self.descriptor.cache.speed_test_ttl_minutes * 60.0

    def is_diff_only(self, branch: str) -> bool:
        return normalize_branch(branch) in self.descriptor.diff_based_branches

    def invalidate(self) -> None:
        self._versions.clear()
        self._index = None
        self._index_fetched_at = None

    async def list_versions(
        self,
        branch: str,
        os_name: str,
        arch: str,
        cancel: CancellationToken | None = None,
    ) -> list[int]:
        """List versions the mirror offers for a platform.

        Discovery failures are logged and fall back to the last good list.
        """
        branch = normalize_branch(branch)
        if self.kind == SourceKind.FULL_INDEX:
            return await self._index_versions(branch, os_name, arch, cancel)
        return await self._discover_versions(branch, os_name, arch, cancel)

    async def get_full_build_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        branch = normalize_branch(branch)
        if self.is_diff_only(branch):
            return None

        if self.kind == SourceKind.FULL_INDEX:
            files = await self._index_files(branch, os_name, "base", cancel)
            return self._lookup_full(files, version, os_name, arch)

        assert self.descriptor.pattern is not None
        template = self.descriptor.pattern.full_build_url
        if not template:
            return None
        return self._render(template, branch, os_name, arch, version=version, from_version=0, to_version=version)

    async def get_diff_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        from_version: int,
        to_version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        branch = normalize_branch(branch)
        if self.kind == SourceKind.FULL_INDEX:
            files = await self._index_files(branch, os_name, "patch", cancel)
            return self._lookup_diff(files, from_version, to_version, os_name, arch)

        assert self.descriptor.pattern is not None
        template = self.descriptor.pattern.diff_patch_url
        if template is None:
            return None
        return self._render(
            template,
            branch,
            os_name,
            arch,
            version=to_version,
            from_version=from_version,
            to_version=to_version,
        )

    async def get_signature_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        pattern = self.descriptor.pattern
        if self.kind != SourceKind.PATTERN or pattern is None or pattern.signature_url is None:
            return None
        return self._render(
            pattern.signature_url,
            normalize_branch(branch),
            os_name,
            arch,
            version=version,
            from_version=0,
            to_version=version,
        )

    def layout_info(self) -> SourceLayoutInfo:
        cache = self.descriptor.cache
        cache_policy = (
            f"in-memory {'index' if self.kind == SourceKind.FULL_INDEX else 'version'} cache "
            f"TTL {cache.index_ttl_minutes}m; speed test cache TTL {cache.speed_test_ttl_minutes}m"
        )
        if self.kind == SourceKind.FULL_INDEX:
            assert self.descriptor.json_index is not None
            index = self.descriptor.json_index
            groups = "base/patch groups" if index.structure == IndexStructure.GROUPED else "flat file map"
            return SourceLayoutInfo(
                full_build_location=f"JSON index: {index.api_url}",
                diff_location=f"JSON index {groups}",
                cache_policy=cache_policy,
            )

        assert self.descriptor.pattern is not None
        pattern = self.descriptor.pattern
        return SourceLayoutInfo(
            full_build_location=f"pattern: {pattern.full_build_url or 'n/a'}",
            diff_location=f"pattern: {pattern.diff_patch_url or 'n/a'}",
            cache_policy=cache_policy,
        )

    async def probe(self, cancel: CancellationToken | None = None) -> ProbeResult:
        """Ping the mirror with HEAD, falling back to GET.

        Statuses 400, 405 and 422 on HEAD mean the endpoint is up but
        rejects the method; they count as available.
        """
        token = ensure_token(cancel)
        url = self.descriptor.speed_test.ping_url or self._default_ping_url()
        result = ProbeResult(source_id=self.source_id, url=url, tested_at=time.time())
        if not url:
            result.error = "no ping URL configured"
            return result

        timeout = self.descriptor.speed_test.ping_timeout_seconds
        start = time.perf_counter()
        try:
            response = await token.run(self.client.head(url, timeout=timeout))
            if response.is_success or response.status_code in _PING_OK_STATUSES:
                result.available = True
            else:
                start = time.perf_counter()
                async with self.client.stream("GET", url, timeout=timeout) as get_response:
                    result.available = get_response.is_success
                    if not result.available:
                        result.error = f"HTTP {get_response.status_code}"
            result.latency_ms = int((time.perf_counter() - start) * 1000)
        except httpx.HTTPError as e:
            result.error = str(e) or type(e).__name__

        logger.info(
            "mirror_probed",
            source_id=self.source_id,
            available=result.available,
            latency_ms=result.latency_ms,
        )
        return result

    def _default_ping_url(self) -> str:
        if self.descriptor.json_index is not None and self.kind == SourceKind.FULL_INDEX:
            return self.descriptor.json_index.api_url
        if self.descriptor.pattern is not None:
            return self.descriptor.pattern.base_url
        return ""

    def _render(
        self,
        template: str,
        branch: str,
        os_name: str,
        arch: str,
        version: int = 0,
        from_version: int = 0,
        to_version: int = 0,
    ) -> str:
        pattern = self.descriptor.pattern
        assert pattern is not None
        return apply_placeholders(
            template,
            {
                "base": pattern.base_url,
                "os": pattern.os_mapping.get(os_name, os_name),
                "arch": pattern.arch_mapping.get(arch, arch),
                "branch": pattern.branch_mapping.get(branch, branch),
                "version": str(version),
                "from": str(from_version),
                "to": str(to_version),
            },
        )

    # Pattern layout

    async def _discover_versions(
        self, branch: str, os_name: str, arch: str, cancel: CancellationToken | None
    ) -> list[int]:
        token = ensure_token(cancel)
        assert self.descriptor.pattern is not None
        discovery = self.descriptor.pattern.version_discovery

        if discovery.method == DiscoveryMethod.STATIC_LIST:
            return sorted(set(discovery.static_versions))

        key = f"{os_name}:{arch}:{branch}"
        cached = self._versions.get(key)
        if cached is not None and self.clock() - cached[0] < self.cache_ttl:
            return list(cached[1])

        assert discovery.url is not None
        url = self._render(discovery.url, branch, os_name, arch)
        try:
            response = await token.run(self.client.get(url, timeout=self.request_timeout))
            if not response.is_success:
                logger.warning(
                    "mirror_discovery_status",
                    source_id=self.source_id,
                    url=url,
                    status=response.status_code,
                )
                return self._last_good(key)

            if discovery.method == DiscoveryMethod.HTML_AUTOINDEX:
                assert discovery.html_pattern is not None
                versions = parse_html_versions(
                    response.text, discovery.html_pattern, discovery.min_file_size_bytes
                )
            else:
                json_path = (
                    self._render(discovery.json_path, branch, os_name, arch)
                    if discovery.json_path is not None
                    else None
                )
                versions = parse_json_versions(response.json(), json_path)
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.warning("mirror_discovery_failed", source_id=self.source_id, url=url, error=str(e))
            return self._last_good(key)

        if versions:
            self._versions[key] = (self.clock(), versions)
        logger.debug("mirror_versions_discovered", source_id=self.source_id, branch=branch, count=len(versions))
        return versions

    def _last_good(self, key: str) -> list[int]:
        cached = self._versions.get(key)
        return list(cached[1]) if cached is not None else []

    # Full-index layout

    async def _fetch_index(self, cancel: CancellationToken | None) -> Any:
        token = ensure_token(cancel)
        if self._index_fresh():
            return self._index

        async with self._lock:
            if self._index_fresh():
                return self._index

            assert self.descriptor.json_index is not None
            url = self.descriptor.json_index.api_url
            try:
                response = await token.run(self.client.get(url, timeout=self.request_timeout))
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, json.JSONDecodeError) as e:
                logger.warning("mirror_index_fetch_failed", source_id=self.source_id, url=url, error=str(e))
                return self._index

            self._index = data
            self._index_fetched_at = self.clock()
            logger.info("mirror_index_fetched", source_id=self.source_id, url=url)
            return data

    def _index_fresh(self) -> bool:
        return (
            self._index is not None
            and self._index_fetched_at is not None
            and self.clock() - self._index_fetched_at < self.cache_ttl
        )

    async def _index_files(
        self, branch: str, os_name: str, group: str, cancel: CancellationToken | None
    ) -> dict[str, str]:
        """File name (lower-cased) to URL map for one branch and platform."""
        index = self.descriptor.json_index
        assert index is not None
        data = await self._fetch_index(cancel)

        node: Any = data.get(index.root_path) if isinstance(data, dict) else None
        node = node.get(branch) if isinstance(node, dict) else None
        platform = index.platform_mapping.get(os_name, os_name)
        node = node.get(platform) if isinstance(node, dict) else None
        if index.structure == IndexStructure.GROUPED:
            node = node.get(group) if isinstance(node, dict) else None
        if not isinstance(node, dict):
            return {}

        return {
            name.lower(): url
            for name, url in node.items()
            if isinstance(url, str) and url.strip()
        }

    def _lookup_full(self, files: dict[str, str], version: int, os_name: str, arch: str) -> str | None:
        assert self.descriptor.json_index is not None
        template = self.descriptor.json_index.file_name_pattern.full
        name = apply_placeholders(template, {"version": str(version), "os": os_name.lower(), "arch": arch})
        return files.get(name.lower())

    def _lookup_diff(
        self, files: dict[str, str], from_version: int, to_version: int, os_name: str, arch: str
    ) -> str | None:
        assert self.descriptor.json_index is not None
        template = self.descriptor.json_index.file_name_pattern.diff
        name = apply_placeholders(
            template,
            {"from": str(from_version), "to": str(to_version), "os": os_name.lower(), "arch": arch},
        )
        return files.get(name.lower())

    async def _index_versions(
        self, branch: str, os_name: str, arch: str, cancel: CancellationToken | None
    ) -> list[int]:
        assert self.descriptor.json_index is not None
        patterns = self.descriptor.json_index.file_name_pattern
        versions: set[int] = set()

        if self.is_diff_only(branch):
            regex = compile_file_name_pattern(patterns.diff, os_name.lower(), arch)
            for name in await self._index_files(branch, os_name, "patch", cancel):
                match = regex.match(name)
                if match:
                    versions.add(int(match.group("to")))
        else:
            regex = compile_file_name_pattern(patterns.full, os_name.lower(), arch)
            for name in await self._index_files(branch, os_name, "base", cancel):
                match = regex.match(name)
                if match:
                    versions.add(int(match.group("version")))

        return sorted(versions)
