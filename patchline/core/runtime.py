"""Wiring of the update engine from an application configuration."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from patchline.core.cache import VersionCache
from patchline.core.checkpoint import CheckpointStore
from patchline.core.config import AppConfig
from patchline.core.download import DownloadEngine
from patchline.core.orchestrator import UpdateOrchestrator
from patchline.core.patcher import ButlerPatchApplier, PatchApplier
from patchline.core.resolver import VersionResolver
from patchline.sources.loader import load_descriptors
from patchline.sources.mirror import MirrorSource
from patchline.sources.official import AuthoritativeSource, StaticTokenProvider, TokenProvider

logger = structlog.get_logger()


@dataclass
class Runtime:
    """Every long-lived engine component for one installation."""

    config: AppConfig
    client: httpx.AsyncClient
    engine: DownloadEngine
    resolver: VersionResolver
    checkpoints: CheckpointStore
    orchestrator: UpdateOrchestrator


def build_resolver(
    config: AppConfig,
    client: httpx.AsyncClient,
    token_provider: TokenProvider | None = None,
) -> VersionResolver:
    """Create the resolver and register the authoritative source and mirrors.

    The cache is loaded (and sanitized) after registration.
    """
    resolver = VersionResolver(
        cache=VersionCache(config.cache_file),
        cache_config=config.cache,
        official_config=config.official,
        diff_only_branches=config.diff_only_branches,
    )

    if config.official.enabled:
        resolver.register(
            AuthoritativeSource(
                config.official,
                client,
                token_provider or StaticTokenProvider(),
                user_agent=config.download.user_agent,
            )
        )

    for descriptor in load_descriptors(config.resolved_mirrors_dir):
        resolver.register(MirrorSource(descriptor, client))

    resolver.load()
    logger.debug("resolver_ready", sources=resolver.registered_ids)
    return resolver


@asynccontextmanager
async def open_runtime(
    config: AppConfig,
    token_provider: TokenProvider | None = None,
    applier: PatchApplier | None = None,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[Runtime]:
    """Build the engine for ``config`` and close its HTTP client on exit.

    Args:
        config: Application configuration
        token_provider: Bearer token source for the authoritative API
        applier: Patch applier, butler by default
        client: HTTP client to use instead of creating one
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=config.download.timeout,
            verify=config.download.verify_ssl,
            follow_redirects=True,
            headers={"User-Agent": config.download.user_agent},
        )

    try:
        engine = DownloadEngine(config.download, client)
        resolver = build_resolver(config, client, token_provider)
        checkpoints = CheckpointStore(config.install_dir)
        orchestrator = UpdateOrchestrator(
            resolver=resolver,
            engine=engine,
            applier=applier or ButlerPatchApplier(executable=config.butler_path),
            checkpoints=checkpoints,
            install_dir=config.install_dir,
            artifacts_dir=config.artifacts_dir,
            max_diff_chain_length=config.max_diff_chain_length,
        )
        yield Runtime(config, client, engine, resolver, checkpoints, orchestrator)
    finally:
        if owns_client:
            await client.aclose()
