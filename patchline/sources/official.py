"""Authoritative first-party distribution source."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.config import OfficialConfig
from patchline.core.errors import AuthorizationError
from patchline.core.types import (
    Capabilities,
    PatchStep,
    ProbeResult,
    SourceKind,
    SourceLayoutInfo,
)
from patchline.core.utils import normalize_branch
from patchline.sources.base import VersionSource

logger = structlog.get_logger()

OFFICIAL_SOURCE_ID = "official"


class TokenProvider(Protocol):
    """Supplies bearer tokens for the distribution API."""

    async def get_token(self) -> str | None:
        """Current access token, None when the user has no session."""
        ...

    async def force_refresh(self) -> str | None:
        """Refresh and return the access token."""
        ...


class StaticTokenProvider:
    """Token provider backed by a fixed token (or none)."""

    def __init__(self, token: str | None = None) -> None:
        self.token = token

    async def get_token(self) -> str | None:
        return self.token

    async def force_refresh(self) -> str | None:
        return self.token


class OfficialStatusListener(Protocol):
    """Receives the outcome of every authoritative API call."""

    def report_official_success(self) -> None: ...

    def report_official_failure(self, error: str) -> None: ...


class OfficialStep(BaseModel):
    """One entry of the patches API ``steps`` array."""

    model_config = ConfigDict(populate_by_name=True)

    from_version: int = Field(..., alias="from")
    to_version: int = Field(..., alias="to")
    pwr: str = Field(..., description="Signed artifact URL")
    pwr_head: str | None = Field(default=None, alias="pwrHead")
    sig: str | None = Field(default=None, description="Signature URL")


class OfficialPatches(BaseModel):
    """Patches API response."""

    steps: list[OfficialStep] = Field(default_factory=list)


class AuthoritativeSource(VersionSource):
    """The first-party patches API.

    ``from_build=0`` returns the latest full build; any other ``from_build``
    returns the diff steps leading away from that build. Responses are cached
    in memory for ``metadata_ttl``. On 401/403 the token is refreshed and the
    cache cleared, up to ``max_auth_retries`` attempts.

    Args:
        config: Authoritative endpoint configuration
        client: Shared async HTTP client
        token_provider: Source of bearer tokens
        user_agent: Default User-Agent when the config sets none
        clock: Monotonic time source for the metadata cache
    """

    kind = SourceKind.OFFICIAL

    def __init__(
        self,
        config: OfficialConfig,
        client: httpx.AsyncClient,
        token_provider: TokenProvider,
        user_agent: str = "patchline",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(
            source_id=OFFICIAL_SOURCE_ID,
            display_name="Official",
            priority=0,
            enabled=config.enabled,
            capabilities=Capabilities(has_full_builds=True, has_diff_patches=True),
        )
        self.config = config
        self.client = client
        self.token_provider = token_provider
        self.user_agent = config.user_agent or user_agent
        self.clock = clock
        self.listener: OfficialStatusListener | None = None

        self._cache: dict[str, tuple[float, list[OfficialStep]]] = {}
        self._token_missing = False

    @property
    def cache_ttl(self) -> float:
        return float(self.config.metadata_ttl)

    @property
    def available(self) -> bool:
        """False when disabled or when the last token lookup found no session."""
        return self.enabled and not self._token_missing

    def attach_listener(self, listener: OfficialStatusListener) -> None:
        """Route call outcomes to ``listener``."""
        self.listener = listener

    def invalidate(self) -> None:
        self._cache.clear()
        logger.info("official_cache_cleared")

    async def list_versions(
        self,
        branch: str,
        os_name: str,
        arch: str,
        cancel: CancellationToken | None = None,
    ) -> list[int]:
        """The latest full build, as a one-element list."""
        steps = await self.get_steps(branch, os_name, arch, 0, cancel)
        if not steps:
            return []
        return [max(step.to_version for step in steps)]

    async def get_full_build_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        step = await self._find_step(branch, os_name, arch, 0, version, cancel)
        return step.pwr if step is not None else None

    async def get_diff_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        from_version: int,
        to_version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        step = await self._find_step(branch, os_name, arch, from_version, to_version, cancel)
        return step.pwr if step is not None else None

    async def get_signature_url(
        self,
        branch: str,
        os_name: str,
        arch: str,
        version: int,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        step = await self._find_step(branch, os_name, arch, 0, version, cancel)
        return step.sig if step is not None else None

    async def get_patch_chain(
        self,
        from_version: int,
        to_version: int,
        os_name: str,
        arch: str,
        branch: str,
        cancel: CancellationToken | None = None,
    ) -> list[PatchStep] | None:
        """Walk the steps returned for ``from_build=from_version``."""
        steps = await self.get_steps(branch, os_name, arch, from_version, cancel)
        by_origin = {step.from_version: step for step in steps if step.to_version == step.from_version + 1}

        chain: list[PatchStep] = []
        for version in range(from_version, to_version):
            step = by_origin.get(version)
            if step is None:
                return await super().get_patch_chain(
                    from_version, to_version, os_name, arch, branch, cancel
                )
            chain.append(
                PatchStep(
                    from_version=version,
                    to_version=version + 1,
                    source_id=self.source_id,
                    url=step.pwr,
                )
            )
        return chain

    def layout_info(self) -> SourceLayoutInfo:
        base = self.config.api_base_url
        return SourceLayoutInfo(
            full_build_location=f"{base}/{{os}}/{{arch}}/{{branch}}/0 (signed URLs)",
            diff_location=f"{base}/{{os}}/{{arch}}/{{branch}}/{{from}} (signed URLs)",
            cache_policy=f"in-memory patch metadata TTL {self.config.metadata_ttl // 60}m",
        )

    async def probe(self, cancel: CancellationToken | None = None) -> ProbeResult:
        token = ensure_token(cancel)
        url = self.config.api_base_url
        result = ProbeResult(source_id=self.source_id, url=url, tested_at=time.time())
        start = time.perf_counter()
        try:
            response = await token.run(self.client.head(url, headers=self._headers(None)))
        except httpx.HTTPError as e:
            result.error = str(e) or type(e).__name__
            return result
        result.latency_ms = int((time.perf_counter() - start) * 1000)
        result.available = response.status_code < 500
        if not result.available:
            result.error = f"HTTP {response.status_code}"
        return result

    async def _find_step(
        self,
        branch: str,
        os_name: str,
        arch: str,
        from_version: int,
        to_version: int,
        cancel: CancellationToken | None,
    ) -> OfficialStep | None:
        steps = await self.get_steps(branch, os_name, arch, from_version, cancel)
        for step in steps:
            if step.from_version == from_version and step.to_version == to_version:
                return step
        return None

    def _headers(self, access_token: str | None) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent, **self.config.client_headers}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def get_steps(
        self,
        branch: str,
        os_name: str,
        arch: str,
        from_build: int,
        cancel: CancellationToken | None = None,
    ) -> list[OfficialStep]:
        """Fetch the patch steps leading away from ``from_build``.

        Returns:
            Steps from the API, empty when there is no session or the call failed

        Raises:
            AuthorizationError: If the API keeps rejecting refreshed tokens
            OperationCancelledError: On cancellation
        """
        token = ensure_token(cancel)
        branch = normalize_branch(branch)
        key = f"{os_name}:{arch}:{branch}:{from_build}"

        cached = self._cache.get(key)
        if cached is not None and self.clock() - cached[0] < self.cache_ttl:
            return cached[1]

        url = f"{self.config.api_base_url}/{os_name}/{arch}/{branch}/{from_build}"
        max_attempts = self.config.max_auth_retries

        for attempt in range(1, max_attempts + 1):
            access_token = await self.token_provider.get_token()
            if not access_token:
                self._token_missing = True
                logger.debug("official_no_session")
                return []
            self._token_missing = False

            try:
                response = await token.run(
                    self.client.get(url, headers=self._headers(access_token), timeout=30.0)
                )
            except httpx.HTTPError as e:
                logger.warning("official_request_failed", url=url, error=str(e))
                self._report_failure(str(e) or type(e).__name__)
                return []

            if response.status_code in (401, 403):
                logger.warning(
                    "official_auth_rejected",
                    status=response.status_code,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                if attempt < max_attempts:
                    await self.token_provider.force_refresh()
                    self.invalidate()
                    continue
                self._report_failure(f"HTTP {response.status_code}")
                raise AuthorizationError(
                    f"Patches API rejected credentials after {max_attempts} attempts",
                    url=url,
                    status_code=response.status_code,
                )

            if not response.is_success:
                logger.warning("official_status", url=url, status=response.status_code)
                self._report_failure(f"HTTP {response.status_code}")
                return []

            try:
                patches = OfficialPatches.model_validate(response.json())
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("official_response_invalid", url=url, error=str(e))
                self._report_failure("invalid response")
                return []

            self._cache[key] = (self.clock(), patches.steps)
            self._report_success()
            logger.info("official_steps_fetched", branch=branch, from_build=from_build, count=len(patches.steps))
            return patches.steps

        return []

    def _report_success(self) -> None:
        if self.listener is not None:
            self.listener.report_official_success()

    def _report_failure(self, error: str) -> None:
        if self.listener is not None:
            self.listener.report_official_failure(error)
