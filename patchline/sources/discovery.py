"""Mirror layout discovery.

Given nothing but a URL, recognise which known mirror layout the server
speaks and build a descriptor for it. Strategies run from the most to the
least specific, first against the URL as given and then against each parent
path up to the host root. Endpoints are resolved relative to the candidate
base, so ``https://host/hytale`` is checked for ``https://host/hytale/infos``
before ``https://host/infos``.

Discovered descriptors are returned disabled; saving and enabling them is
left to the caller.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import BaseModel, Field

from patchline.core.errors import DescriptorError, MirrorDiscoveryError
from patchline.sources.descriptor import (
    MIN_MIRROR_PRIORITY,
    DiscoveryMethod,
    IndexStructure,
    MirrorDescriptor,
    MirrorLayout,
)

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 10.0

AUTOINDEX_PATTERN = r'<a\s+href="(\d+)\.pwr">\d+\.pwr</a>\s+\S+\s+\S+\s+(\d+)'
AUTOINDEX_MIN_SIZE = 1_048_576

INFOS_PLATFORMS = ("windows-amd64", "linux-amd64", "darwin-arm64")
INDEX_ENDPOINTS = ("/api.php", "/api", "/api.json", "/index.json", "/hytale.json", "/files.json")
INDEX_ROOT = "hytale"
VERSION_ENDPOINTS = (
    "/launcher/patches/release/versions?os_name=linux&arch=x64",
    "/launcher/patches/prerelease/versions?os_name=linux&arch=x64",
    "/launcher/patches/release/versions",
    "/launcher/patches/pre-release/versions",
    "/versions",
    "/api/versions",
)
PATCH_PREFIXES = ("/hytale/patches", "/patches", "")

# Status codes that prove a launcher endpoint exists even when the query is off
_LAUNCHER_OK_STATUSES = frozenset({400, 422})
_PWR_LINK_RE = re.compile(r'href="(\d+)\.pwr"', re.IGNORECASE)
_OS_DIR_RE = re.compile(r'href="(?:\./)?(linux|windows|darwin)/"', re.IGNORECASE)
_ID_UNSAFE_RE = re.compile(r"[^a-z0-9_.-]+")


class DiscoveryResult(BaseModel):
    """A recognised mirror layout."""

    strategy: str = Field(..., description="Name of the strategy that matched")
    base_url: str = Field(..., description="Candidate base URL the match was made on")
    descriptor: MirrorDescriptor = Field(..., description="Generated descriptor, disabled")


def normalize_mirror_url(url: str) -> str:
    """Trim a user-entered URL and default the scheme to https.

    Raises:
        MirrorDiscoveryError: If no host can be extracted

    Example:
        >>> normalize_mirror_url(" mirror.example.org/hytale/ ")
        'https://mirror.example.org/hytale'
    """
    url = url.strip().rstrip("/")
    if not url:
        raise MirrorDiscoveryError("URL is required")
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url}"
    if not urlsplit(url).hostname:
        raise MirrorDiscoveryError(f"Invalid URL: {url}")
    return url


def candidate_base_urls(url: str) -> list[str]:
    """The URL itself, the host root, then every parent path, longest first.

    Example:
        >>> candidate_base_urls("https://m.example.org/a/b/c")
        ['https://m.example.org/a/b/c', 'https://m.example.org', 'https://m.example.org/a/b', 'https://m.example.org/a']
    """
    parts = urlsplit(url)
    root = f"{parts.scheme}://{parts.netloc}"
    candidates = [url.rstrip("/"), root]
    segments = [s for s in parts.path.split("/") if s]
    for i in range(len(segments) - 1, 0, -1):
        candidates.append(f"{root}/{'/'.join(segments[:i])}")

    unique: list[str] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def mirror_id_from_url(url: str) -> str:
    """File-safe id derived from the host name.

    Example:
        >>> mirror_id_from_url("https://www.Files.Example.com/x")
        'files-example'
    """
    host = (urlsplit(url).hostname or "mirror").lower()
    host = host.removeprefix("www.")
    for suffix in (".com", ".org", ".net"):
        host = host.removesuffix(suffix)
    mirror_id = _ID_UNSAFE_RE.sub("-", host.replace(".", "-")).strip("-")
    return mirror_id or "mirror"


def mirror_name_from_url(url: str) -> str:
    """Readable name: the registrable label of the host, capitalised."""
    host = urlsplit(url).hostname or ""
    labels = host.split(".")
    if len(labels) < 2:
        return host
    name = labels[-2]
    if name == "www" and len(labels) >= 3:
        name = labels[-3]
    return name[:1].upper() + name[1:]


def detect_index_structure(node: Any) -> IndexStructure:
    """Grouped when any platform node splits files into ``base``/``patch``."""
    if isinstance(node, dict):
        for branch_node in node.values():
            if not isinstance(branch_node, dict):
                continue
            for platform_node in branch_node.values():
                if isinstance(platform_node, dict) and ("base" in platform_node or "patch" in platform_node):
                    return IndexStructure.GROUPED
    return IndexStructure.FLAT


def _join(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _descriptor(base_url: str, layout: MirrorLayout, block: dict[str, Any], ping_url: str) -> MirrorDescriptor:
    data = {
        "schemaVersion": 1,
        "id": mirror_id_from_url(base_url),
        "name": mirror_name_from_url(base_url),
        "description": f"Auto-discovered mirror from {urlsplit(base_url).hostname}",
        "priority": MIN_MIRROR_PRIORITY,
        "enabled": False,
        "sourceType": layout.value,
        "speedTest": {"pingUrl": ping_url},
        "cache": {"indexTtlMinutes": 30, "speedTestTtlMinutes": 60},
    }
    data["pattern" if layout == MirrorLayout.PATTERN else "jsonIndex"] = block
    return MirrorDescriptor.from_dict(data)


def _autoindex_pattern(base_url: str, prefix: str, arch: str) -> dict[str, Any]:
    """Pattern block for ``{prefix}/{os}/{arch}/{branch}/{from}/{to}.pwr`` trees."""
    block: dict[str, Any] = {
        "baseUrl": base_url,
        "fullBuildUrl": "{base}" + prefix + "/{os}/{arch}/{branch}/0/{version}.pwr",
        "diffPatchUrl": "{base}" + prefix + "/{os}/{arch}/{branch}/{from}/{to}.pwr",
        "signatureUrl": "{base}" + prefix + "/{os}/{arch}/{branch}/0/{version}.pwr.sig",
        "versionDiscovery": {
            "method": DiscoveryMethod.HTML_AUTOINDEX.value,
            "url": "{base}" + prefix + "/{os}/{arch}/{branch}/0/",
            "htmlPattern": AUTOINDEX_PATTERN,
            "minFileSizeBytes": AUTOINDEX_MIN_SIZE,
        },
    }
    if arch != "amd64":
        block["archMapping"] = {"amd64": arch}
    return block


def _launcher_pattern(base_url: str, json_path: str) -> dict[str, Any]:
    return {
        "baseUrl": base_url,
        "fullBuildUrl": "{base}/launcher/patches/{os}/{arch}/{branch}/0/{version}.pwr",
        "diffPatchUrl": "{base}/launcher/patches/{os}/{arch}/{branch}/{from}/{to}.pwr",
        "archMapping": {"amd64": "x64"},
        "branchMapping": {"pre-release": "prerelease"},
        "versionDiscovery": {
            "method": DiscoveryMethod.JSON_API.value,
            "url": "{base}/launcher/patches/{branch}/versions?os_name={os}&arch={arch}",
            "jsonPath": json_path,
        },
    }


class MirrorDiscovery:
    """Recognise a mirror layout from a URL.

    Args:
        client: Shared HTTP client
        timeout: Per-request timeout in seconds
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float = DEFAULT_TIMEOUT):
        self.client = client
        self.timeout = timeout
        self.strategies: list[tuple[str, Callable[[str], Awaitable[MirrorDescriptor | None]]]] = [
            ("infos-api", self._try_infos_api),
            ("json-index", self._try_json_index),
            ("json-api", self._try_json_api),
            ("html-autoindex", self._try_html_autoindex),
            ("launcher-api", self._try_launcher_api),
            ("static-files", self._try_static_files),
            ("directory-listing", self._try_directory_listing),
        ]

    async def discover(self, url: str) -> DiscoveryResult:
        """Try every strategy on every candidate base URL.

        Raises:
            MirrorDiscoveryError: If the URL is invalid or no layout matches
        """
        url = normalize_mirror_url(url)
        logger.info("mirror_discovery_started", url=url)

        for base_url in candidate_base_urls(url):
            for name, strategy in self.strategies:
                logger.debug("mirror_discovery_trying", base_url=base_url, strategy=name)
                try:
                    descriptor = await strategy(base_url)
                except DescriptorError as e:
                    logger.debug("mirror_discovery_rejected", base_url=base_url, strategy=name, error=str(e))
                    continue
                if descriptor is not None:
                    logger.info(
                        "mirror_discovered",
                        base_url=base_url,
                        strategy=name,
                        mirror_id=descriptor.id,
                    )
                    return DiscoveryResult(strategy=name, base_url=base_url, descriptor=descriptor)

        logger.warning("mirror_discovery_failed", url=url)
        raise MirrorDiscoveryError(
            f"Could not detect a mirror layout at {url}; write a descriptor file and use 'mirrors add'"
        )

    async def _get(self, url: str) -> httpx.Response | None:
        try:
            return await self.client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug("mirror_discovery_request_failed", url=url, error=str(e))
            return None

    async def _get_text(self, url: str) -> str | None:
        response = await self._get(url)
        if response is None or not response.is_success or not response.text.strip():
            return None
        return response.text

    async def _get_json(self, url: str) -> Any:
        text = await self._get_text(url)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return None

    # Strategies

    async def _try_infos_api(self, base_url: str) -> MirrorDescriptor | None:
        """``/infos`` maps ``os-arch`` to branches carrying the newest build."""
        data = await self._get_json(_join(base_url, "/infos"))
        if not isinstance(data, dict):
            return None

        detected = []
        for platform_key in INFOS_PLATFORMS:
            platform_node = data.get(platform_key)
            if not isinstance(platform_node, dict):
                continue
            branch_node = platform_node.get("release") or platform_node.get("pre-release")
            if isinstance(branch_node, dict) and ("newest" in branch_node or "buildVersion" in branch_node):
                detected.append(platform_key)
        if not detected:
            return None
        logger.debug("mirror_infos_platforms", base_url=base_url, platforms=detected)

        block = {
            "baseUrl": base_url,
            "fullBuildUrl": "{base}/dl/{os}/{arch}/{version}.pwr",
            "diffPatchUrl": "{base}/dl/{os}/{arch}/{version}.pwr",
            "versionDiscovery": {
                "method": DiscoveryMethod.JSON_API.value,
                "url": "{base}/infos",
                "jsonPath": "{os}-{arch}.{branch}.newest",
            },
        }
        return _descriptor(base_url, MirrorLayout.PATTERN, block, _join(base_url, "/infos"))

    async def _try_json_index(self, base_url: str) -> MirrorDescriptor | None:
        """One endpoint listing every file under a ``hytale`` root."""
        for endpoint in INDEX_ENDPOINTS:
            api_url = _join(base_url, endpoint)
            data = await self._get_json(api_url)
            if not isinstance(data, dict) or not isinstance(data.get(INDEX_ROOT), dict):
                continue

            block = {
                "apiUrl": api_url,
                "rootPath": INDEX_ROOT,
                "structure": detect_index_structure(data[INDEX_ROOT]).value,
                "platformMapping": {"darwin": "mac"},
                "fileNamePattern": {
                    "full": "v{version}-{os}-{arch}.pwr",
                    "diff": "v{from}~{to}-{os}-{arch}.pwr",
                },
                "diffBasedBranches": ["pre-release"],
            }
            return _descriptor(base_url, MirrorLayout.JSON_INDEX, block, api_url)
        return None

    async def _try_json_api(self, base_url: str) -> MirrorDescriptor | None:
        """A version endpoint answering with a JSON list of builds."""
        for endpoint in VERSION_ENDPOINTS:
            data = await self._get_json(_join(base_url, endpoint))
            if isinstance(data, dict) and isinstance(data.get("items"), list):
                json_path = "items[].version"
            elif isinstance(data, dict) and isinstance(data.get("versions"), list):
                json_path = "versions"
            elif isinstance(data, list):
                json_path = "$root"
            else:
                continue
            return _descriptor(
                base_url,
                MirrorLayout.PATTERN,
                _launcher_pattern(base_url, json_path),
                _join(_origin(base_url), "/health"),
            )
        return None

    async def _find_autoindex(self, base_url: str, suffixes: tuple[tuple[str, str], ...]) -> MirrorDescriptor | None:
        for prefix in PATCH_PREFIXES:
            for os_dir, arch in suffixes:
                text = await self._get_text(_join(base_url, f"{prefix}/{os_dir}/{arch}/release/0/"))
                if text is None or not _PWR_LINK_RE.search(text):
                    continue
                return _descriptor(
                    base_url,
                    MirrorLayout.PATTERN,
                    _autoindex_pattern(base_url, prefix, arch),
                    _join(base_url, prefix),
                )
        return None

    async def _try_html_autoindex(self, base_url: str) -> MirrorDescriptor | None:
        """A browsable ``linux/<arch>/release/0/`` listing of ``N.pwr`` files."""
        return await self._find_autoindex(base_url, (("linux", "x64"), ("linux", "amd64")))

    async def _try_launcher_api(self, base_url: str) -> MirrorDescriptor | None:
        """Launcher endpoints that reject the query still prove the layout."""
        for endpoint in VERSION_ENDPOINTS[:3]:
            response = await self._get(_join(base_url, endpoint))
            if response is None:
                continue
            if response.is_success or response.status_code in _LAUNCHER_OK_STATUSES:
                return _descriptor(
                    base_url,
                    MirrorLayout.PATTERN,
                    _launcher_pattern(base_url, "items[].version"),
                    _join(_origin(base_url), "/health"),
                )
        return None

    async def _try_static_files(self, base_url: str) -> MirrorDescriptor | None:
        """The same tree hosted for Windows or macOS only."""
        return await self._find_autoindex(
            base_url, (("windows", "x64"), ("windows", "amd64"), ("darwin", "arm64"))
        )

    async def _try_directory_listing(self, base_url: str) -> MirrorDescriptor | None:
        """An HTML listing of the base itself with per-OS folders."""
        response = await self._get(base_url)
        if response is None or not response.is_success:
            return None
        if "text/html" not in response.headers.get("content-type", "").lower():
            return None
        if not _OS_DIR_RE.search(response.text):
            return None
        return _descriptor(base_url, MirrorLayout.PATTERN, _autoindex_pattern(base_url, "", "amd64"), base_url)


async def discover_mirror(
    url: str, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT
) -> DiscoveryResult:
    """Discover a mirror layout, opening a client when none is given.

    Raises:
        MirrorDiscoveryError: If no layout matches
    """
    if client is not None:
        return await MirrorDiscovery(client, timeout).discover(url)
    async with httpx.AsyncClient(follow_redirects=True) as owned:
        return await MirrorDiscovery(owned, timeout).discover(url)
