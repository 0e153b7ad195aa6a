"""Shared pytest fixtures for vendorkit tests.

Nothing here touches the network: libraries are served from memory by
``FakeFetcher``.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from vendorkit.exceptions import NotFound
from vendorkit.models import DownloadSource, FetchedTree, LibrarySpec

FETCHED_AT = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

WIDGET_URL = "https://example.com/widget.git"
GADGET_URL = "https://example.com/gadget.git"

WIDGET_FILES = {
    "lib/widget.rb": (
        b'require "widget/helper"\n'
        b"\n"
        b"module Widget\n"
        b"  def self.build\n"
        b"    Widget::Helper.new\n"
        b"  end\n"
        b"end\n"
    ),
    "lib/widget/helper.rb": b"module Widget\n  class Helper\n  end\nend\n",
    "LICENSE": b"MIT License\n\nCopyright (c) Widget authors\n",
    "README.md": b"# Widget\n",
}

GADGET_FILES = {
    "lib/gadget.rb": b'module Gadget\n  VERSION = "2.0"\nend\n',
    "LICENSE.txt": b"BSD 2-Clause\n",
}


class FakeFetcher:
    """In-memory fetcher: ``repos[(location, ref)] = (commit, files)``."""

    def __init__(self) -> None:
        self.repos: dict[tuple[str, str], tuple[str, dict[str, bytes]]] = {}
        self.calls: list[tuple[str, str]] = []

    def add(self, location: str, ref: str, commit: str, files: dict[str, bytes]) -> None:
        self.repos[(location, ref)] = (commit, files)

    async def fetch(self, source: DownloadSource, ref: str) -> FetchedTree:
        self.calls.append((source.location, ref))
        try:
            commit, files = self.repos[(source.location, ref)]
        except KeyError:
            raise NotFound(f"ref '{ref}' not found in {source.location}") from None
        return FetchedTree(source.location, ref, commit, dict(files), FETCHED_AT)


@pytest.fixture
def fetched_at():
    return FETCHED_AT


@pytest.fixture
def make_tree():
    """Factory: ``make_tree({"a.rb": "..."})`` -> FetchedTree."""

    def _make(files, *, source="https://example.com/widget.git", commit="c" * 40):
        encoded = {p: c.encode() if isinstance(c, str) else c for p, c in files.items()}
        return FetchedTree(source, "v1", commit, encoded, FETCHED_AT)

    return _make


@pytest.fixture
def fetcher():
    fake = FakeFetcher()
    fake.add(WIDGET_URL, "v1.0", "a" * 40, WIDGET_FILES)
    fake.add(GADGET_URL, "v2.0", "b" * 40, GADGET_FILES)
    return fake


@pytest.fixture
def widget_spec():
    return (
        LibrarySpec.builder("widget")
        .version("v1.0")
        .git(WIDGET_URL)
        .namespace("Widget")
        .prefix("Host")
        .destination("vendor/widget")
        .license("LICENSE")
        .build()
    )


@pytest.fixture
def gadget_spec():
    return (
        LibrarySpec.builder("gadget")
        .version("v2.0")
        .git(GADGET_URL)
        .namespace("Gadget")
        .prefix("Host")
        .destination("gadget")
        .license("LICENSE.txt")
        .build()
    )


@pytest.fixture
def read_tree():
    """Every file under a directory, keyed by POSIX relative path."""

    def _read(root):
        return {
            p.relative_to(root).as_posix(): p.read_bytes()
            for p in sorted(root.rglob("*"))
            if p.is_file()
        }

    return _read
