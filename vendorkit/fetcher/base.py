"""Fetch orchestration: transport routing, retries, and the shared fetch cache."""

from __future__ import annotations

import asyncio
import dataclasses
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol, TypeVar, runtime_checkable

import structlog

from vendorkit.exceptions import ConfigError, NetworkFailure
from vendorkit.models import DownloadSource, FetchedTree

log = structlog.get_logger("vendorkit.fetcher")

T = TypeVar("T")

_DEFAULT_ATTEMPTS = 3
_DEFAULT_BACKOFF = 1.0  # seconds


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None



@runtime_checkable
class Transport(Protocol):
    """How one kind of download source is talked to."""

    async def resolve(self, location: str, ref: str) -> str | None:
        """Return the full commit *ref* points at, or None if only a download can tell."""
        ...

    async def download(self, location: str, revision: str) -> tuple[str, dict[str, bytes]]:
        """Return ``(commit, files)`` for *revision*."""
        ...


@runtime_checkable
class Fetcher(Protocol):
    """Anything that can turn ``(source, ref)`` into a :class:`FetchedTree`."""

    async def fetch(self, source: DownloadSource, ref: str) -> FetchedTree: ...


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    what: str,
) -> T:
    """Run *operation*, retrying :class:`NetworkFailure` with exponential backoff.

    Every other error, ``NotFound`` and ``AmbiguousRef`` included, propagates
    on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except NetworkFailure as exc:
            if attempt >= attempts - 1:
                raise
            delay = base_delay * (2**attempt)
            log.warning(
                "fetch.retry",
                what=what,
                attempt=attempt + 1,
                max_attempts=attempts,
                delay=delay,
                error=exc.message,
            )
            await asyncio.sleep(delay)
    raise ValueError("attempts must be at least 1")


class FetchCache:
    """In-flight and completed fetches keyed by ``(source, resolved commit)``.

    The first requester of a key runs the fetch; concurrent requesters await
    the same task instead of refetching.  Failed fetches are evicted so a
    later run can try again.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], asyncio.Task[FetchedTree]] = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_fetch(
        self,
        key: tuple[str, str],
        factory: Callable[[], Awaitable[FetchedTree]],
    ) -> FetchedTree:
        task = self._entries.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._entries[key] = task
            task.add_done_callback(lambda t: self._evict_failed(key, t))
        else:
            log.debug("fetch.cache_hit", source=key[0], commit=key[1])
        return await asyncio.shield(task)

    def _evict_failed(self, key: tuple[str, str], task: asyncio.Task[FetchedTree]) -> None:
        if task.cancelled() or task.exception() is not None:
            if self._entries.get(key) is task:
                del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


class SourceFetcher:
    """Fetches library snapshots through the transport matching each source kind."""

    def __init__(
        self,
        transports: dict[str, Transport],
        *,
        cache: FetchCache | None = None,
        attempts: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        self._transports = transports
        self.cache = cache if cache is not None else FetchCache()
        self.attempts = (
            attempts
            if attempts is not None
            else _env_int("VENDORKIT_FETCH_ATTEMPTS", _DEFAULT_ATTEMPTS)
        )
        self.base_delay = (
            base_delay
            if base_delay is not None
            else _env_float("VENDORKIT_FETCH_BACKOFF", _DEFAULT_BACKOFF)
        )
        if self.attempts < 1:
            raise ConfigError(f"fetch attempts must be at least 1, got {self.attempts}")
        if self.base_delay < 0:
            raise ConfigError(f"fetch backoff must not be negative, got {self.base_delay}")
        self._resolved: dict[tuple[str, str], asyncio.Task[str | None]] = {}

    @classmethod
    def default(cls, *, workdir=None, github_token: str | None = None) -> SourceFetcher:
        from vendorkit.fetcher.git import GitTransport
        from vendorkit.fetcher.github import GitHubTransport

        return cls(
            {
                "git": GitTransport(workdir=workdir),
                "github": GitHubTransport(token=github_token),
            }
        )

    async def aclose(self) -> None:
        for transport in self._transports.values():
            close = getattr(transport, "aclose", None)
            if close is not None:
                await close()

    async def __aenter__(self) -> SourceFetcher:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    def _transport(self, source: DownloadSource) -> Transport:
        try:
            return self._transports[source.kind]
        except KeyError:
            raise ConfigError(f"no transport configured for '{source.kind}' sources") from None

    async def resolve(self, source: DownloadSource, ref: str) -> str | None:
        key = (source.location, ref)
        task = self._resolved.get(key)
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            transport = self._transport(source)
            task = asyncio.ensure_future(
                with_retry(
                    lambda: transport.resolve(source.location, ref),
                    attempts=self.attempts,
                    base_delay=self.base_delay,
                    what=f"resolve {source.location}@{ref}",
                )
            )
            self._resolved[key] = task
        return await asyncio.shield(task)

    async def fetch(self, source: DownloadSource, ref: str) -> FetchedTree:
        transport = self._transport(source)
        commit = await self.resolve(source, ref)
        revision = commit or ref

        async def _download() -> FetchedTree:
            log.info("fetch.start", source=source.location, ref=ref, revision=revision)
            resolved, files = await with_retry(
                lambda: transport.download(source.location, revision),
                attempts=self.attempts,
                base_delay=self.base_delay,
                what=f"download {source.location}@{revision}",
            )
            log.info("fetch.done", source=source.location, commit=resolved, files=len(files))
            return FetchedTree(
                source=source.location,
                ref=ref,
                commit=resolved,
                files=files,
                fetched_at=datetime.now(timezone.utc),
            )

        tree = await self.cache.get_or_fetch((source.location, revision), _download)
        if tree.ref != ref:
            tree = dataclasses.replace(tree, ref=ref)
        return tree
