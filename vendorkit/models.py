"""Data models for the vendoring engine."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

GIT = "git"
GITHUB = "github"
DOWNLOAD_KINDS = (GIT, GITHUB)


@dataclass(frozen=True)
class DownloadSource:
    """Where a library is fetched from: a git remote or a GitHub repository."""

    kind: str
    location: str

    def __post_init__(self) -> None:
        if self.kind not in DOWNLOAD_KINDS:
            raise ValueError(f"unknown download kind {self.kind!r}")

    def __str__(self) -> str:
        return self.location


@dataclass(frozen=True)
class LibrarySpec:
    """Configuration describing one vendored library.

    ``destination`` of a dependency is relative to its parent's destination.
    Instances are immutable; build them with :meth:`builder`.
    """

    name: str
    version: str
    download: DownloadSource
    namespace: str
    prefix: str
    destination: str
    license_path: str | None = None
    dependencies: tuple[LibrarySpec, ...] = ()
    source_dir: str = "lib"
    require_entrypoint: str | None = None

    @classmethod
    def builder(cls, name: str) -> LibrarySpecBuilder:
        return LibrarySpecBuilder(name)

    @property
    def identity(self) -> tuple[str, str]:
        """What makes two specs "the same library" for cycle detection."""
        return (self.download.location, self.namespace)

    @property
    def pin(self) -> tuple[str, str]:
        return (self.download.location, self.version)

    @property
    def entrypoint(self) -> str:
        return self.require_entrypoint or self.name

    def walk(self, destination: str | None = None):
        """Yield ``(spec, effective_destination)`` depth-first, self first."""
        here = destination if destination is not None else self.destination
        yield self, here
        for dep in self.dependencies:
            yield from dep.walk(posixpath.join(here, dep.destination))


class LibrarySpecBuilder:
    """Fluent builder for :class:`LibrarySpec` trees.

    Example::

        spec = (
            LibrarySpec.builder("molinillo")
            .version("master")
            .github("https://github.com/CocoaPods/Molinillo")
            .namespace("Molinillo")
            .prefix("Bundler")
            .destination("lib/bundler/vendor/molinillo")
            .license("LICENSE")
            .dependency(tsort_spec)
            .build()
        )
    """

    def __init__(self, name: str) -> None:
        self._fields: dict[str, Any] = {"name": name}
        self._dependencies: list[LibrarySpec] = []

    def version(self, ref: str) -> LibrarySpecBuilder:
        self._fields["version"] = ref
        return self

    def git(self, location: str) -> LibrarySpecBuilder:
        self._fields["download"] = DownloadSource(GIT, location)
        return self

    def github(self, location: str) -> LibrarySpecBuilder:
        self._fields["download"] = DownloadSource(GITHUB, location)
        return self

    def download(self, source: DownloadSource) -> LibrarySpecBuilder:
        self._fields["download"] = source
        return self

    def namespace(self, namespace: str) -> LibrarySpecBuilder:
        self._fields["namespace"] = namespace
        return self

    def prefix(self, prefix: str) -> LibrarySpecBuilder:
        self._fields["prefix"] = prefix
        return self

    def destination(self, path: str) -> LibrarySpecBuilder:
        self._fields["destination"] = path
        return self

    def license(self, path: str | None) -> LibrarySpecBuilder:
        self._fields["license_path"] = path
        return self

    def source_dir(self, path: str) -> LibrarySpecBuilder:
        self._fields["source_dir"] = path
        return self

    def require_entrypoint(self, entrypoint: str) -> LibrarySpecBuilder:
        self._fields["require_entrypoint"] = entrypoint
        return self

    def dependency(self, dep: LibrarySpec | LibrarySpecBuilder) -> LibrarySpecBuilder:
        if isinstance(dep, LibrarySpecBuilder):
            dep = dep.build()
        self._dependencies.append(dep)
        return self

    def build(self) -> LibrarySpec:
        missing = [
            name
            for name in ("version", "download", "namespace", "prefix", "destination")
            if name not in self._fields
        ]
        if missing:
            raise ValueError(
                f"library '{self._fields['name']}' is missing: {', '.join(missing)}"
            )
        return LibrarySpec(dependencies=tuple(self._dependencies), **self._fields)


@dataclass(frozen=True)
class FetchedTree:
    """Snapshot of a repository at one resolved commit."""

    source: str
    ref: str
    commit: str
    files: dict[str, bytes]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def subtree(self, prefix: str) -> FetchedTree:
        """Re-root the tree at *prefix* (``""`` keeps everything)."""
        prefix = prefix.strip("/")
        if not prefix:
            return self
        marker = prefix + "/"
        files = {
            path[len(marker):]: content
            for path, content in self.files.items()
            if path.startswith(marker)
        }
        return FetchedTree(self.source, self.ref, self.commit, files, self.fetched_at)


@dataclass(frozen=True)
class RenameRecord:
    """One rewritten occurrence."""

    path: str
    line: int
    column: int
    original: str
    replacement: str
    kind: str  # declaration | reference | require


@dataclass
class RewriteResult:
    files: dict[str, bytes]
    renames: list[RenameRecord] = field(default_factory=list)

    def renamed_in(self, path: str) -> list[RenameRecord]:
        return [r for r in self.renames if r.path == path]


@dataclass(frozen=True)
class VendorManifestEntry:
    """Persisted record of one vendored library."""

    name: str
    commit: str
    prefix: str
    destination: str
    fetched_at: str
    version: str | None = None
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "commit": self.commit,
            "prefix": self.prefix,
            "destination": self.destination,
            "fetched_at": self.fetched_at,
            "version": self.version,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VendorManifestEntry:
        return cls(
            name=data["name"],
            commit=data["commit"],
            prefix=data["prefix"],
            destination=data["destination"],
            fetched_at=data["fetched_at"],
            version=data.get("version"),
            source=data.get("source"),
        )


class LibraryState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    REWRITING = "rewriting"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[LibraryState, frozenset[LibraryState]] = {
    LibraryState.PENDING: frozenset({LibraryState.FETCHING}),
    LibraryState.FETCHING: frozenset({LibraryState.REWRITING, LibraryState.FAILED}),
    LibraryState.REWRITING: frozenset({LibraryState.WRITING, LibraryState.FAILED}),
    LibraryState.WRITING: frozenset({LibraryState.DONE, LibraryState.FAILED}),
    LibraryState.DONE: frozenset(),
    LibraryState.FAILED: frozenset(),
}


def can_transition(current: LibraryState, new: LibraryState) -> bool:
    return new in _TRANSITIONS[current]
