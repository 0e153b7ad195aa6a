"""Vendoring engine: plan every library, write all of them, then commit the manifest.

A run is all-or-nothing: every top-level library is fetched and rewritten in
memory first, then every destination is swapped in, then the manifest is
saved.  Any error before the manifest is saved leaves the tree and the
manifest exactly as they were.
"""

from __future__ import annotations

import asyncio
import posixpath
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from vendorkit.exceptions import PartialWriteDetected, VendorError
from vendorkit.fetcher.base import Fetcher, SourceFetcher
from vendorkit.manifest import update_manifest
from vendorkit.models import LibrarySpec, LibraryState, VendorManifestEntry, can_transition
from vendorkit.walker import DependencyWalker, VendorPlan, dedupe_siblings, validate
from vendorkit.writer import VendorWriter

log = structlog.get_logger("vendorkit.engine")


def declared_destinations(specs: Iterable[LibrarySpec]) -> list[str]:
    """Effective destination of every library in *specs*, dependencies included."""
    return [posixpath.normpath(dest) for spec in specs for _, dest in spec.walk()]


class StateTracker:
    """Per-library state machine, keyed by effective destination."""

    def __init__(self) -> None:
        self.states: dict[str, LibraryState] = {}
        self.names: dict[str, str] = {}

    def register(self, spec: LibrarySpec) -> None:
        for node, destination in spec.walk():
            key = posixpath.normpath(destination)
            self.states[key] = LibraryState.PENDING
            self.names[key] = node.name

    def advance(self, destination: str, new: LibraryState) -> None:
        key = posixpath.normpath(destination)
        current = self.states[key]
        if not can_transition(current, new):
            raise RuntimeError(
                f"illegal state transition for '{self.names[key]}': "
                f"{current.value} -> {new.value}"
            )
        self.states[key] = new
        log.debug("library.state", library=self.names[key], state=new.value)

    def advance_all(self, new: LibraryState, *, only: Iterable[LibraryState]) -> None:
        allowed = set(only)
        for key, state in self.states.items():
            if state in allowed:
                self.advance(key, new)

    def fail_in_flight(self) -> None:
        self.advance_all(
            LibraryState.FAILED,
            only=(LibraryState.FETCHING, LibraryState.REWRITING, LibraryState.WRITING),
        )


@dataclass
class RunReport:
    plans: list[VendorPlan]
    entries: list[VendorManifestEntry]
    states: dict[str, LibraryState] = field(default_factory=dict)


class VendorEngine:
    """Vendors LibrarySpecs into a project rooted at *root*."""

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        root: Path | str = ".",
        writer: VendorWriter | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.root = Path(root)
        self.writer = writer or VendorWriter()

    def _owner(self, plans: Sequence[VendorPlan], destination: str) -> str | None:
        for plan in plans:
            if Path(destination) == self.root / plan.destination:
                return plan.spec.name
        return None

    def _walker(self, tracker: StateTracker, spec: LibrarySpec) -> DependencyWalker:
        def _on_state(node: LibrarySpec, relative: str, state: LibraryState) -> None:
            tracker.advance(posixpath.join(spec.destination, relative), state)

        return DependencyWalker(self.fetcher, on_state=_on_state)

    async def plan(
        self, specs: Sequence[LibrarySpec], tracker: StateTracker | None = None
    ) -> list[VendorPlan]:
        """Fetch and rewrite every library without touching the filesystem."""
        tracker = tracker or StateTracker()
        specs = [validate(spec) for spec in dedupe_siblings(specs, None)]
        for spec in specs:
            tracker.register(spec)

        results = await asyncio.gather(
            *(self._walker(tracker, spec).plan(spec) for spec in specs),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            tracker.fail_in_flight()
            for extra in errors[1:]:
                log.error("run.additional_failure", error=str(extra))
            raise errors[0]
        return list(results)  # type: ignore[arg-type]

    async def run(
        self,
        specs: Sequence[LibrarySpec],
        *,
        manifest_path: Path | None = None,
        declared: Iterable[LibrarySpec] | None = None,
    ) -> RunReport:
        """Vendor *specs* and, if *manifest_path* is set, record them.

        *declared* is every library the project still declares; manifest
        entries for anything else are pruned.
        """
        tracker = StateTracker()
        plans = await self.plan(specs, tracker)

        try:
            batches = [(self.root / plan.destination, plan.files()) for plan in plans]
        except VendorError:
            tracker.fail_in_flight()
            raise

        entries = [entry for plan in plans for entry in plan.entries()]
        tracker.advance_all(LibraryState.WRITING, only=(LibraryState.REWRITING,))

        def _commit_manifest() -> None:
            if manifest_path is None:
                return
            update_manifest(
                manifest_path,
                entries,
                replaced_roots=[plan.destination for plan in plans],
                declared=declared_destinations(declared) if declared is not None else None,
            )

        try:
            self.writer.write_all(batches, before_commit=_commit_manifest)
        except PartialWriteDetected as exc:
            tracker.fail_in_flight()
            if exc.library is None:
                exc.library = self._owner(plans, exc.destination)
            log.error("run.write_failed", library=exc.library, error=exc.message)
            raise
        except BaseException:
            tracker.fail_in_flight()
            raise

        tracker.advance_all(LibraryState.DONE, only=(LibraryState.WRITING,))
        for entry in entries:
            log.info(
                "library.vendored",
                library=entry.name,
                commit=entry.commit,
                destination=entry.destination,
            )
        return RunReport(plans=plans, entries=entries, states=dict(tracker.states))


async def vendor(
    specs: Sequence[LibrarySpec],
    *,
    root: Path | str = ".",
    fetcher: Fetcher | None = None,
    manifest_path: Path | None = None,
    declared: Iterable[LibrarySpec] | None = None,
) -> RunReport:
    """Vendor *specs* under *root*; a default git/GitHub fetcher is used if none is given."""
    if fetcher is not None:
        return await VendorEngine(fetcher, root=root).run(
            specs, manifest_path=manifest_path, declared=declared
        )
    async with SourceFetcher.default() as default_fetcher:
        return await VendorEngine(default_fetcher, root=root).run(
            specs, manifest_path=manifest_path, declared=declared
        )
