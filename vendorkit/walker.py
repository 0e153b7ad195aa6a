"""Dependency graph walker: validate a spec tree, then fetch and rewrite it depth-first."""

from __future__ import annotations

import dataclasses
import posixpath
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field

import structlog

from vendorkit.exceptions import ConflictingDependency, CycleDetected, VendorError
from vendorkit.fetcher.base import Fetcher
from vendorkit.license import propagate_license
from vendorkit.models import (
    FetchedTree,
    LibrarySpec,
    LibraryState,
    RewriteResult,
    VendorManifestEntry,
)
from vendorkit.rewriter import rewrite

log = structlog.get_logger("vendorkit.walker")

StateCallback = Callable[[LibrarySpec, str, LibraryState], None]


def _normalize(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


def _overlaps(a: str, b: str) -> bool:
    a, b = _normalize(a), _normalize(b)
    return a == b or a.startswith(b.rstrip("/") + "/") or b.startswith(a.rstrip("/") + "/")


# ── validation ───────────────────────────────────────────────────────────


def dedupe_siblings(specs: Sequence[LibrarySpec], parent: str | None) -> list[LibrarySpec]:
    """Drop repeated siblings pinned identically; reject same-name siblings pinned differently."""
    seen: dict[str, LibrarySpec] = {}
    unique: list[LibrarySpec] = []
    for spec in specs:
        prior = seen.get(spec.name)
        if prior is None:
            seen[spec.name] = spec
            unique.append(spec)
        elif prior.pin == spec.pin:
            log.debug("walker.deduplicated", library=spec.name, parent=parent)
        else:
            raise ConflictingDependency(
                f"'{spec.name}' is declared twice with different pins: "
                f"{prior.download}@{prior.version} and {spec.download}@{spec.version}",
                library=parent or spec.name,
            )

    for i, spec in enumerate(unique):
        for other in unique[i + 1:]:
            if _overlaps(spec.destination, other.destination):
                raise ConflictingDependency(
                    f"'{spec.name}' ({spec.destination}) and '{other.name}' "
                    f"({other.destination}) write overlapping destinations",
                    library=parent or other.name,
                )
    return unique


def validate(spec: LibrarySpec, ancestors: tuple[LibrarySpec, ...] = ()) -> LibrarySpec:
    """Check the whole tree under *spec* before anything is fetched.

    Returns *spec* with identically pinned duplicate dependencies removed.
    """
    for i, ancestor in enumerate(ancestors):
        if ancestor.identity == spec.identity:
            chain = [s.name for s in ancestors[i:]] + [spec.name]
            raise CycleDetected(chain, library=ancestors[0].name)

    for dep in spec.dependencies:
        nested = _normalize(dep.destination)
        if posixpath.isabs(dep.destination) or nested in (".", "..") or nested.startswith("../"):
            raise ConflictingDependency(
                f"dependency '{dep.name}' destination '{dep.destination}' must be a "
                f"relative path beneath '{spec.name}'",
                library=spec.name,
            )

    deps = dedupe_siblings(spec.dependencies, spec.name)
    lineage = ancestors + (spec,)
    children = tuple(validate(dep, lineage) for dep in deps)
    if children != spec.dependencies:
        spec = dataclasses.replace(spec, dependencies=children)
    return spec


# ── plan ─────────────────────────────────────────────────────────────────


@dataclass
class PlanNode:
    """One fetched and rewritten library inside a plan.

    ``destination`` is relative to the top-level library's destination
    (``""`` for the top-level library itself).
    """

    spec: LibrarySpec
    destination: str
    tree: FetchedTree
    result: RewriteResult
    license: dict[str, bytes]
    children: list[PlanNode] = field(default_factory=list)

    def walk(self) -> Iterator[PlanNode]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass
class VendorPlan:
    """Everything one top-level library will write, held in memory until written."""

    spec: LibrarySpec
    root: PlanNode

    @property
    def destination(self) -> str:
        return self.spec.destination

    def nodes(self) -> list[PlanNode]:
        return list(self.root.walk())

    def files(self) -> dict[str, bytes]:
        """Every file of the tree, keyed by path relative to :attr:`destination`."""
        out: dict[str, bytes] = {}
        for node in self.root.walk():
            for relative, content in [*node.result.files.items(), *node.license.items()]:
                path = posixpath.join(node.destination, relative) if node.destination else relative
                if path in out and out[path] != content:
                    raise ConflictingDependency(
                        f"'{path}' is written by more than one library",
                        library=node.spec.name,
                    )
                out[path] = content
        return out

    def entries(self) -> list[VendorManifestEntry]:
        return [
            VendorManifestEntry(
                name=node.spec.name,
                commit=node.tree.commit,
                prefix=node.spec.prefix,
                destination=_normalize(posixpath.join(self.destination, node.destination)),
                fetched_at=node.tree.fetched_at.isoformat(),
                version=node.spec.version,
                source=node.spec.download.location,
            )
            for node in self.root.walk()
        ]


class DependencyWalker:
    """Drives Fetch → Rewrite over a library and, depth-first, its dependencies."""

    def __init__(self, fetcher: Fetcher, *, on_state: StateCallback | None = None) -> None:
        self._fetcher = fetcher
        self._on_state = on_state

    def _state(self, spec: LibrarySpec, destination: str, state: LibraryState) -> None:
        if self._on_state is not None:
            self._on_state(spec, destination, state)

    async def plan(self, spec: LibrarySpec) -> VendorPlan:
        spec = validate(spec)
        root = await self._process(spec, "")
        return VendorPlan(spec=spec, root=root)

    async def _process(self, spec: LibrarySpec, destination: str) -> PlanNode:
        state = LibraryState.FETCHING
        self._state(spec, destination, state)
        try:
            tree = await self._fetcher.fetch(spec.download, spec.version)
            state = LibraryState.REWRITING
            self._state(spec, destination, state)
            result = rewrite(
                tree.subtree(spec.source_dir),
                spec.namespace,
                spec.prefix,
                extra_namespaces=[(dep.namespace, dep.prefix) for dep in spec.dependencies],
                requires=self._require_locations(spec),
                verbatim=self._license_in_source(spec),
            )
            license_files = propagate_license(tree, spec.license_path)
        except VendorError as exc:
            if exc.library is None:
                exc.library = spec.name
            log.error("library.failed", library=spec.name, stage=state.value, error=exc.describe())
            self._state(spec, destination, LibraryState.FAILED)
            raise

        log.info(
            "library.rewritten",
            library=spec.name,
            commit=tree.commit,
            files=len(result.files),
            renames=len(result.renames),
        )
        node = PlanNode(spec, destination, tree, result, license_files)
        for dep in spec.dependencies:
            nested = _normalize(posixpath.join(destination, dep.destination))
            node.children.append(await self._process(dep, nested))
        return node

    @staticmethod
    def _license_in_source(spec: LibrarySpec) -> list[str]:
        """The license path relative to the vendored subtree, if it lies inside it."""
        if not spec.license_path:
            return []
        path = spec.license_path.strip("/")
        root = spec.source_dir.strip("/")
        if not root:
            return [path]
        if path.startswith(root + "/"):
            return [path[len(root) + 1:]]
        return []

    @staticmethod
    def _require_locations(spec: LibrarySpec) -> dict[str, str]:
        locations = {spec.entrypoint: ""}
        for dep in spec.dependencies:
            locations[dep.entrypoint] = _normalize(dep.destination)
        return locations
