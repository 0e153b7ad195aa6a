"""Tests for fetch orchestration: retries, the fetch cache and transport routing."""

from __future__ import annotations

import asyncio
import os
from unittest.mock import AsyncMock, patch

import pytest

from vendorkit.exceptions import AmbiguousRef, ConfigError, NetworkFailure, NotFound
from vendorkit.fetcher import FetchCache, SourceFetcher, Transport, with_retry
from vendorkit.models import DownloadSource, FetchedTree

SOURCE = DownloadSource("git", "https://example.com/widget.git")
COMMIT = "a" * 40


class FakeTransport:
    def __init__(self, refs=None, files=None):
        self.refs = refs if refs is not None else {"v1.0": COMMIT, "main": COMMIT}
        self.files = files if files is not None else {"lib/widget.rb": b"module Widget\nend\n"}
        self.resolve_calls = 0
        self.download_calls: list[str] = []
        self.download_errors: list[Exception] = []

    async def resolve(self, location, ref):
        self.resolve_calls += 1
        if ref not in self.refs:
            raise NotFound(f"ref '{ref}' not found in {location}")
        return self.refs[ref]

    async def download(self, location, revision):
        self.download_calls.append(revision)
        if self.download_errors:
            raise self.download_errors.pop(0)
        await asyncio.sleep(0)
        return self.refs.get(revision) or revision, dict(self.files)


def _tree(commit=COMMIT):
    return FetchedTree(SOURCE.location, "v1.0", commit, {})


# ── with_retry ──


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_network_failure_with_backoff(self):
        op = AsyncMock(side_effect=[NetworkFailure("reset"), NetworkFailure("reset"), "ok"])
        with patch("vendorkit.fetcher.base.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await with_retry(op, attempts=3, base_delay=1.0, what="test")
        assert result == "ok"
        assert op.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        op = AsyncMock(side_effect=NetworkFailure("down"))
        with patch("vendorkit.fetcher.base.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(NetworkFailure):
                await with_retry(op, attempts=3, base_delay=1.0, what="test")
        assert op.await_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [NotFound("gone"), AmbiguousRef("v1", ["refs/heads/v1", "refs/tags/v1"])],
    )
    async def test_permanent_errors_not_retried(self, error):
        op = AsyncMock(side_effect=error)
        with pytest.raises(type(error)):
            await with_retry(op, attempts=3, base_delay=0, what="test")
        assert op.await_count == 1


# ── FetchCache ──


class TestFetchCache:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self):
        cache = FetchCache()
        calls = 0
        release = asyncio.Event()

        async def factory():
            nonlocal calls
            calls += 1
            await release.wait()
            return _tree()

        waiters = [asyncio.ensure_future(cache.get_or_fetch(("s", COMMIT), factory)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        trees = await asyncio.gather(*waiters)
        assert calls == 1
        assert all(t is trees[0] for t in trees)
        assert ("s", COMMIT) in cache

    @pytest.mark.asyncio
    async def test_failed_fetch_is_evicted(self):
        cache = FetchCache()

        async def failing():
            raise NetworkFailure("reset")

        with pytest.raises(NetworkFailure):
            await cache.get_or_fetch(("s", COMMIT), failing)
        await asyncio.sleep(0)
        assert len(cache) == 0

        async def working():
            return _tree()

        assert (await cache.get_or_fetch(("s", COMMIT), working)).commit == COMMIT

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = FetchCache()

        async def factory():
            return _tree()

        await cache.get_or_fetch(("s", COMMIT), factory)
        cache.clear()
        assert len(cache) == 0


# ── SourceFetcher ──


class TestSourceFetcher:
    def test_fake_transport_satisfies_protocol(self):
        assert isinstance(FakeTransport(), Transport)

    @pytest.mark.asyncio
    async def test_fetch_returns_tree_at_resolved_commit(self):
        transport = FakeTransport()
        fetcher = SourceFetcher({"git": transport}, base_delay=0)
        tree = await fetcher.fetch(SOURCE, "v1.0")
        assert tree.commit == COMMIT
        assert tree.ref == "v1.0"
        assert tree.source == SOURCE.location
        assert tree.files == transport.files
        assert transport.download_calls == [COMMIT]

    @pytest.mark.asyncio
    async def test_refs_resolving_to_same_commit_share_download(self):
        transport = FakeTransport()
        fetcher = SourceFetcher({"git": transport}, base_delay=0)
        first, second = await asyncio.gather(
            fetcher.fetch(SOURCE, "v1.0"), fetcher.fetch(SOURCE, "main")
        )
        assert transport.download_calls == [COMMIT]
        assert (first.ref, second.ref) == ("v1.0", "main")
        assert first.files == second.files

    @pytest.mark.asyncio
    async def test_repeated_resolve_is_cached(self):
        transport = FakeTransport()
        fetcher = SourceFetcher({"git": transport}, base_delay=0)
        await fetcher.fetch(SOURCE, "v1.0")
        await fetcher.fetch(SOURCE, "v1.0")
        assert transport.resolve_calls == 1

    @pytest.mark.asyncio
    async def test_unresolved_ref_downloaded_directly(self):
        transport = FakeTransport(refs={"abc1234": None})
        fetcher = SourceFetcher({"git": transport}, base_delay=0)
        tree = await fetcher.fetch(SOURCE, "abc1234")
        assert transport.download_calls == ["abc1234"]
        assert tree.commit == "abc1234"

    @pytest.mark.asyncio
    async def test_transient_download_failure_retried(self):
        transport = FakeTransport()
        transport.download_errors = [NetworkFailure("connection reset")]
        fetcher = SourceFetcher({"git": transport}, attempts=3, base_delay=0)
        tree = await fetcher.fetch(SOURCE, "v1.0")
        assert tree.commit == COMMIT
        assert transport.download_calls == [COMMIT, COMMIT]

    @pytest.mark.asyncio
    async def test_missing_ref_not_retried(self):
        transport = FakeTransport()
        fetcher = SourceFetcher({"git": transport}, attempts=3, base_delay=0)
        with pytest.raises(NotFound):
            await fetcher.fetch(SOURCE, "v9.9")
        assert transport.resolve_calls == 1
        assert transport.download_calls == []

    @pytest.mark.asyncio
    async def test_unknown_source_kind(self):
        fetcher = SourceFetcher({"git": FakeTransport()})
        with pytest.raises(ConfigError, match="no transport configured for 'github'"):
            await fetcher.fetch(DownloadSource("github", "o/r"), "v1")

    def test_retry_settings_from_environment(self):
        env = {"VENDORKIT_FETCH_ATTEMPTS": "5", "VENDORKIT_FETCH_BACKOFF": "0.25"}
        with patch.dict(os.environ, env):
            fetcher = SourceFetcher({})
        assert fetcher.attempts == 5
        assert fetcher.base_delay == 0.25

    def test_explicit_attempts_override_environment(self):
        with patch.dict(os.environ, {"VENDORKIT_FETCH_ATTEMPTS": "5"}):
            fetcher = SourceFetcher({}, attempts=1)
        assert fetcher.attempts == 1

    def test_zero_attempts_rejected(self):
        with patch.dict(os.environ, {"VENDORKIT_FETCH_ATTEMPTS": "5"}):
            with pytest.raises(ConfigError, match="at least 1, got 0"):
                SourceFetcher({}, attempts=0)

    def test_negative_backoff_rejected(self):
        with pytest.raises(ConfigError, match="must not be negative"):
            SourceFetcher({}, base_delay=-1)

    @pytest.mark.parametrize(
        "key, value",
        [("VENDORKIT_FETCH_ATTEMPTS", "three"), ("VENDORKIT_FETCH_BACKOFF", "fast")],
    )
    def test_malformed_environment_rejected(self, key, value):
        with patch.dict(os.environ, {key: value}):
            with pytest.raises(ConfigError, match=key):
                SourceFetcher({})

    def test_zero_attempts_in_environment_rejected(self):
        with patch.dict(os.environ, {"VENDORKIT_FETCH_ATTEMPTS": "0"}):
            with pytest.raises(ConfigError, match="at least 1"):
                SourceFetcher({})

    @pytest.mark.asyncio
    async def test_aclose_closes_transports(self):
        transport = FakeTransport()
        transport.aclose = AsyncMock()
        async with SourceFetcher({"git": transport}):
            pass
        transport.aclose.assert_awaited_once()
