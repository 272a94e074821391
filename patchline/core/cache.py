"""Persistent version metadata cache.

Layout of ``versions.json``::

    {
      "schema": 1,
      "branches": {
        "<branch>": {
          "<source id>": {
            "versions": {"values": [...], "fetched_at": 0.0, "ttl": 1800},
            "patches": {"<from>~<to>": {"values": [...] | null, ...}}
          }
        }
      },
      "probes": {"<source id>": {"values": {...}, "fetched_at": 0.0, "ttl": 3600}}
    }

Expired records read as absent. Writes go through a temp file and
``os.replace``.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from patchline.core.utils import atomic_write_json

logger = structlog.get_logger()

CACHE_SCHEMA = 1
VERSIONS = "versions"
PATCHES = "patches"


@dataclass
class CacheRecord:
    """A cached value with its fetch time and time to live."""

    values: Any
    fetched_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        """Check whether the record is stale at ``now``."""
        return now - self.fetched_at >= self.ttl

    def to_dict(self) -> dict[str, Any]:
        return {"values": self.values, "fetched_at": self.fetched_at, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: Any) -> CacheRecord | None:
        """Build a record from its JSON form, None if malformed."""
        if not isinstance(data, dict) or "values" not in data:
            return None
        try:
            return cls(
                values=data["values"],
                fetched_at=float(data.get("fetched_at", 0.0)),
                ttl=float(data.get("ttl", 0.0)),
            )
        except (TypeError, ValueError):
            return None


def patch_key(from_version: int, to_version: int) -> str:
    """Key of a cached patch chain."""
    return f"{from_version}~{to_version}"


class VersionCache:
    """Per-(branch, source) version lists and patch chains with TTLs.

    Args:
        path: Cache file location
        clock: Time source, seconds since the epoch
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock
        self._branches: dict[str, dict[str, dict[str, Any]]] = {}
        self._probes: dict[str, CacheRecord] = {}

    def load(self) -> None:
        """Load the cache from disk.

        A missing or unreadable file leaves the cache empty.
        """
        self._branches = {}
        self._probes = {}

        if not self.path.exists():
            return

        try:
            with open(self.path, encoding="utf-8") as f:
                data: Any = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("version_cache_load_failed", path=str(self.path), error=str(e))
            return

        if not isinstance(data, dict) or data.get("schema") != CACHE_SCHEMA:
            logger.warning("version_cache_invalid_format", path=str(self.path))
            return

        branches = data.get("branches", {})
        if isinstance(branches, dict):
            for branch, sources in branches.items():
                if not isinstance(sources, dict):
                    continue
                for source_id, entry in sources.items():
                    self._load_source_entry(branch, source_id, entry)

        probes = data.get("probes", {})
        if isinstance(probes, dict):
            for source_id, raw in probes.items():
                record = CacheRecord.from_dict(raw)
                if record is not None:
                    self._probes[source_id] = record

        logger.debug("version_cache_loaded", path=str(self.path), branches=len(self._branches))

    def _load_source_entry(self, branch: str, source_id: str, entry: Any) -> None:
        if not isinstance(entry, dict):
            return
        loaded: dict[str, Any] = {}
        versions = CacheRecord.from_dict(entry.get(VERSIONS))
        if versions is not None:
            loaded[VERSIONS] = versions
        patches = entry.get(PATCHES)
        if isinstance(patches, dict):
            chains = {
                key: record
                for key, raw in patches.items()
                if (record := CacheRecord.from_dict(raw)) is not None
            }
            if chains:
                loaded[PATCHES] = chains
        if loaded:
            self._branches.setdefault(branch, {})[source_id] = loaded

    def save(self) -> None:
        """Write the cache to disk atomically."""
        branches: dict[str, Any] = {}
        for branch, sources in self._branches.items():
            branches[branch] = {}
            for source_id, entry in sources.items():
                out: dict[str, Any] = {}
                if VERSIONS in entry:
                    out[VERSIONS] = entry[VERSIONS].to_dict()
                if PATCHES in entry:
                    out[PATCHES] = {k: r.to_dict() for k, r in entry[PATCHES].items()}
                branches[branch][source_id] = out

        data = {
            "schema": CACHE_SCHEMA,
            "branches": branches,
            "probes": {sid: r.to_dict() for sid, r in self._probes.items()},
        }
        try:
            atomic_write_json(self.path, data)
        except OSError as e:
            logger.warning("version_cache_save_failed", path=str(self.path), error=str(e))

    def get_versions(self, branch: str, source_id: str) -> list[int] | None:
        """Get a fresh cached version list, None if absent or expired."""
        record = self._branches.get(branch, {}).get(source_id, {}).get(VERSIONS)
        if record is None or record.is_expired(self.clock()):
            return None
        return [int(v) for v in record.values]

    def put_versions(self, branch: str, source_id: str, versions: Iterable[int], ttl: float) -> None:
        """Store a version list."""
        entry = self._branches.setdefault(branch, {}).setdefault(source_id, {})
        entry[VERSIONS] = CacheRecord(sorted(set(versions)), self.clock(), ttl)

    def get_patch_chain(
        self, branch: str, source_id: str, from_version: int, to_version: int
    ) -> CacheRecord | None:
        """Get a fresh cached patch chain record.

        The record's ``values`` is a list of step dicts, or None when the
        source was known to have no chain.
        """
        chains = self._branches.get(branch, {}).get(source_id, {}).get(PATCHES, {})
        record = chains.get(patch_key(from_version, to_version))
        if record is None or record.is_expired(self.clock()):
            return None
        return record

    def put_patch_chain(
        self,
        branch: str,
        source_id: str,
        from_version: int,
        to_version: int,
        steps: list[dict[str, Any]] | None,
        ttl: float,
    ) -> None:
        """Store a patch chain (None records that no chain exists)."""
        entry = self._branches.setdefault(branch, {}).setdefault(source_id, {})
        chains = entry.setdefault(PATCHES, {})
        chains[patch_key(from_version, to_version)] = CacheRecord(steps, self.clock(), ttl)

    def get_probe(self, source_id: str) -> dict[str, Any] | None:
        """Get a fresh cached probe result."""
        record = self._probes.get(source_id)
        if record is None or record.is_expired(self.clock()):
            return None
        return record.values

    def put_probe(self, source_id: str, result: dict[str, Any], ttl: float) -> None:
        """Store a probe result."""
        self._probes[source_id] = CacheRecord(result, self.clock(), ttl)

    def source_ids(self) -> set[str]:
        """All source ids with at least one record."""
        ids = set(self._probes)
        for sources in self._branches.values():
            ids.update(sources)
        return ids

    def sanitize(self, registered_ids: Iterable[str]) -> int:
        """Drop records belonging to sources that are no longer registered.

        Args:
            registered_ids: Currently registered source ids

        Returns:
            Number of source entries removed
        """
        keep = set(registered_ids)
        removed = 0
        for branch in list(self._branches):
            sources = self._branches[branch]
            for source_id in list(sources):
                if source_id not in keep:
                    del sources[source_id]
                    removed += 1
                    logger.info("version_cache_sanitized", branch=branch, source_id=source_id)
            if not sources:
                del self._branches[branch]

        for source_id in list(self._probes):
            if source_id not in keep:
                del self._probes[source_id]
                removed += 1

        return removed

    def invalidate(self, branch: str | None = None, source_id: str | None = None) -> None:
        """Drop cached metadata.

        Args:
            branch: Branch to drop, all branches if None
            source_id: Source to drop, all sources if None
        """
        branches = [branch] if branch is not None else list(self._branches)
        for b in branches:
            sources = self._branches.get(b)
            if sources is None:
                continue
            if source_id is None:
                del self._branches[b]
            else:
                sources.pop(source_id, None)
                if not sources:
                    del self._branches[b]
        logger.debug("version_cache_invalidated", branch=branch, source_id=source_id)

    def discard_version(self, branch: str, version: int, source_id: str | None = None) -> None:
        """Forget a version that turned out to be unavailable.

        Removes it from cached version lists and drops patch chains that
        touch it.
        """
        for sid, entry in self._branches.get(branch, {}).items():
            if source_id is not None and sid != source_id:
                continue
            record = entry.get(VERSIONS)
            if record is not None and version in record.values:
                record.values = [v for v in record.values if v != version]
            chains = entry.get(PATCHES, {})
            for key in list(chains):
                start, _, end = key.partition("~")
                if int(start) <= version <= int(end):
                    del chains[key]
        logger.debug("version_discarded", branch=branch, version=version, source_id=source_id)
