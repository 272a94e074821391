"""Tests for patchline.core.resolver module."""

import asyncio
import json
from pathlib import Path

import httpx

from patchline.core.config import OfficialConfig
from patchline.core.resolver import is_contiguous_chain
from patchline.core.types import PatchStep
from patchline.sources.official import AuthoritativeSource, StaticTokenProvider


def _official(token: str | None = "token") -> AuthoritativeSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    return AuthoritativeSource(OfficialConfig(), client, StaticTokenProvider(token))


class TestRegistry:
    """Test source registration and ordering."""

    def test_priority_order_stable_ties(self, make_resolver, fake_source):
        """Test ascending priority with registration order breaking ties."""
        b = fake_source("b", priority=200)
        a = fake_source("a", priority=100)
        c = fake_source("c", priority=100)
        resolver = make_resolver(b, a, c)

        assert [s.source_id for s in resolver.sources] == ["a", "c", "b"]
        assert resolver.registered_ids == ["b", "a", "c"]

    def test_duplicate_id_ignored(self, make_resolver, fake_source):
        """Test the first source with an id wins."""
        first = fake_source("dup", priority=100)
        second = fake_source("dup", priority=150)
        resolver = make_resolver(first)

        assert resolver.register(second) is False
        assert resolver.get_source("dup") is first

    def test_disabled_sources_hidden(self, make_resolver, fake_source):
        """Test disabled sources are not consulted."""
        off = fake_source("off")
        off.enabled = False
        resolver = make_resolver(off, fake_source("on"))
        assert [s.source_id for s in resolver.sources] == ["on"]

    def test_official_first(self, make_resolver, fake_source):
        """Test the authoritative source precedes every mirror."""
        official = _official()
        resolver = make_resolver(fake_source("mirror", priority=100), official)

        assert resolver.official is official
        assert resolver.sources[0] is official
        assert [s.source_id for s in resolver.mirrors] == ["mirror"]


class TestVersions:
    """Test version listing and caching."""

    def test_merged_versions(self, make_resolver, fake_source):
        """Test lists are merged ascending and unique."""
        resolver = make_resolver(
            fake_source("a", versions=[1, 3]),
            fake_source("b", versions=[2, 3, 5]),
        )

        async def _run() -> tuple[list[int], int | None]:
            return await resolver.list_versions("release"), await resolver.latest_version("release")

        assert asyncio.run(_run()) == ([1, 2, 3, 5], 5)

    def test_ttl_refetch(self, make_resolver, fake_source, clock):
        """Test a stale list is refetched exactly once."""
        source = fake_source("mirror", versions=[1, 2])
        resolver = make_resolver(source)

        asyncio.run(resolver.list_versions("release"))
        assert source.list_calls == 1

        clock.advance(10 * 60)
        asyncio.run(resolver.list_versions("release"))
        assert source.list_calls == 1

        clock.advance(21 * 60)
        asyncio.run(resolver.list_versions("release"))
        asyncio.run(resolver.list_versions("release"))
        assert source.list_calls == 2

    def test_failing_source_isolated(self, make_resolver, fake_source):
        """Test one failing source does not hide the others."""
        resolver = make_resolver(
            fake_source("broken", priority=100, fail_list=True),
            fake_source("good", priority=200, versions=[4]),
        )

        by_source = asyncio.run(resolver.versions_by_source("release"))
        assert by_source == {"good": [4]}

    def test_cache_persisted(self, make_resolver, fake_source, tmp_path: Path):
        """Test refetched lists are written to disk."""
        resolver = make_resolver(fake_source("mirror", versions=[7]))
        asyncio.run(resolver.list_versions("release"))

        data = json.loads((tmp_path / "cache" / "versions.json").read_text())
        assert data["branches"]["release"]["mirror"]["versions"]["values"] == [7]

    def test_sanitize_on_load(self, make_resolver, fake_source, tmp_path: Path, clock):
        """Test records of unregistered sources are removed at startup."""
        path = tmp_path / "cache" / "versions.json"
        path.parent.mkdir(parents=True)
        record = {"values": [1], "fetched_at": clock.now, "ttl": 1800}
        path.write_text(json.dumps({
            "schema": 1,
            "branches": {"release": {"ghost": {"versions": record}, "mirror": {"versions": record}}},
            "probes": {},
        }))

        resolver = make_resolver(fake_source("mirror"))

        assert resolver.cache.source_ids() == {"mirror"}
        assert "ghost" not in path.read_text()

    def test_refresh(self, make_resolver, fake_source):
        """Test refresh drops the cache and refetches."""
        source = fake_source("mirror", versions=[1])
        resolver = make_resolver(source)
        asyncio.run(resolver.list_versions("release"))

        source.versions = [1, 2]
        by_source = asyncio.run(resolver.refresh("release"))

        assert by_source == {"mirror": [1, 2]}
        assert source.list_calls == 2
        assert source.invalidated == 1

    def test_discard_version(self, make_resolver, fake_source):
        """Test a discarded version disappears from the cached list."""
        resolver = make_resolver(fake_source("mirror", versions=[1, 2, 3]))
        asyncio.run(resolver.list_versions("release"))

        resolver.discard_version("release", 3, "mirror")

        assert asyncio.run(resolver.list_versions("release")) == [1, 2]


class TestPatchChains:
    """Test patch chain resolution."""

    def test_first_complete_chain(self, make_resolver, fake_source):
        """Test a gap on one source falls through to the next."""
        gappy = fake_source("gappy", priority=100, diffs=[(4, 5), (6, 7)])
        full = fake_source("full", priority=200, diffs=[(4, 5), (5, 6), (6, 7)])
        resolver = make_resolver(gappy, full)

        chain = asyncio.run(resolver.get_patch_chain("release", 4, 7))

        assert chain is not None
        assert [(s.from_version, s.to_version) for s in chain] == [(4, 5), (5, 6), (6, 7)]
        assert {s.source_id for s in chain} == {"full"}

        negative = resolver.cache.get_patch_chain("release", "gappy", 4, 7)
        assert negative is not None
        assert negative.values is None

    def test_chain_from_cache(self, make_resolver, fake_source):
        """Test a cached chain is served without asking the source."""
        source = fake_source("mirror", diffs=[(1, 2)])
        resolver = make_resolver(source)
        asyncio.run(resolver.get_patch_chain("release", 1, 2))

        source.diffs = set()
        chain = asyncio.run(resolver.get_patch_chain("release", 1, 2))
        assert chain is not None
        assert chain[0].url == "https://mirror.test/diff/1~2.pwr"

    def test_no_chain(self, make_resolver, fake_source):
        """Test None when no single source covers the range."""
        resolver = make_resolver(
            fake_source("a", diffs=[(0, 1)]),
            fake_source("b", diffs=[(1, 2)]),
        )
        assert asyncio.run(resolver.get_patch_chain("release", 0, 2)) is None

    def test_is_contiguous_chain(self):
        """Test chain validation."""
        steps = [
            PatchStep(from_version=3, to_version=4, source_id="x"),
            PatchStep(from_version=4, to_version=5, source_id="x"),
        ]
        assert is_contiguous_chain(steps, 3, 5)
        assert not is_contiguous_chain(steps, 3, 6)
        assert not is_contiguous_chain(steps[1:], 3, 5)
        assert not is_contiguous_chain(
            [PatchStep(from_version=3, to_version=5, source_id="x")], 3, 5
        )


class TestBranchState:
    """Test diff-only branches and authoritative reachability."""

    def test_diff_only_from_config(self, make_resolver, fake_source):
        """Test configured diff-only branches."""
        resolver = make_resolver(fake_source("m"), diff_only_branches=["PreRelease"])
        assert resolver.is_diff_only("pre-release")
        assert not resolver.is_diff_only("release")

    def test_diff_only_from_mirror(self, make_resolver, fake_source):
        """Test a mirror declaring a branch diff-only."""
        resolver = make_resolver(fake_source("m", diff_only=["beta"]))
        assert resolver.is_diff_only("beta")

    def test_unreachable_without_official(self, make_resolver, fake_source):
        """Test no authoritative source means unreachable."""
        resolver = make_resolver(fake_source("m"))
        assert resolver.official_unreachable
        assert [s.source_id for s in resolver.candidate_sources()] == ["m"]

    def test_failure_window(self, make_resolver, fake_source, clock):
        """Test a failure marks the source unreachable until the window passes."""
        resolver = make_resolver(_official(), fake_source("m"))
        assert not resolver.official_unreachable

        resolver.report_official_failure("HTTP 503")
        assert resolver.official_unreachable
        assert [s.source_id for s in resolver.candidate_sources()] == ["m"]

        clock.advance(resolver.official_config.failure_window + 1)
        assert not resolver.official_unreachable

    def test_success_clears_failures(self, make_resolver):
        """Test a success makes the source reachable again."""
        resolver = make_resolver(_official())
        resolver.report_official_failure("timeout")
        resolver.report_official_success()
        assert not resolver.official_unreachable

    def test_failure_threshold(self, make_resolver):
        """Test a higher threshold tolerates isolated failures."""
        resolver = make_resolver(_official(), official_config=OfficialConfig(failure_threshold=2))
        resolver.report_official_failure("timeout")
        assert not resolver.official_unreachable
        resolver.report_official_failure("timeout")
        assert resolver.official_unreachable

    def test_official_failure_reported_by_source(self, make_resolver):
        """Test the authoritative source reports failed calls to the resolver."""
        resolver = make_resolver(_official())

        versions = asyncio.run(resolver.list_versions("release"))

        assert versions == []
        assert resolver.official_unreachable


class TestProbe:
    """Test mirror probing."""

    def test_probe_cached(self, make_resolver, fake_source):
        """Test probe results are cached and reused."""
        resolver = make_resolver(fake_source("m"))

        results = asyncio.run(resolver.probe_mirrors())

        assert [r.source_id for r in results] == ["m"]
        assert results[0].available
        assert resolver.cache.get_probe("m")["latency_ms"] == 5
