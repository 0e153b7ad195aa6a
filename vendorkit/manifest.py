"""The vendor manifest: which library sits where, at which commit."""

from __future__ import annotations

import json
import os
import posixpath
import tempfile
from collections.abc import Iterable
from pathlib import Path

import structlog

from vendorkit.exceptions import ConfigError
from vendorkit.models import VendorManifestEntry

log = structlog.get_logger("vendorkit.manifest")

MANIFEST_VERSION = 1


def _under(path: str, root: str) -> bool:
    path, root = posixpath.normpath(path), posixpath.normpath(root)
    return path == root or path.startswith(root.rstrip("/") + "/")


def load_manifest(path: Path) -> list[VendorManifestEntry]:
    """Read the manifest; a missing file is an empty manifest."""
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return [VendorManifestEntry.from_dict(item) for item in data.get("libraries", [])]
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
        raise ConfigError(f"manifest {path} is malformed: {exc}") from exc


def dump_manifest(entries: Iterable[VendorManifestEntry]) -> str:
    ordered = sorted(entries, key=lambda e: (e.destination, e.name))
    payload = {
        "version": MANIFEST_VERSION,
        "libraries": [entry.to_dict() for entry in ordered],
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def save_manifest(path: Path, entries: Iterable[VendorManifestEntry]) -> None:
    """Replace the manifest file atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(dump_manifest(entries))
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def merge_entries(
    existing: Iterable[VendorManifestEntry],
    updated: Iterable[VendorManifestEntry],
    *,
    replaced_roots: Iterable[str],
    declared: Iterable[str] | None = None,
) -> list[VendorManifestEntry]:
    """Combine a run's entries with the previous manifest.

    Entries under any of *replaced_roots* (the top-level destinations written
    by this run) are replaced wholesale by *updated*.  When *declared*
    destinations are given, entries for libraries no longer declared are
    pruned; the rest of the previous manifest is kept as is.
    """
    roots = list(replaced_roots)
    declared_set = {posixpath.normpath(d) for d in declared} if declared is not None else None

    kept: list[VendorManifestEntry] = []
    for entry in existing:
        if any(_under(entry.destination, root) for root in roots):
            continue
        if declared_set is not None and posixpath.normpath(entry.destination) not in declared_set:
            log.info("manifest.pruned", library=entry.name, destination=entry.destination)
            continue
        kept.append(entry)
    return kept + list(updated)


def update_manifest(
    path: Path,
    updated: Iterable[VendorManifestEntry],
    *,
    replaced_roots: Iterable[str],
    declared: Iterable[str] | None = None,
) -> list[VendorManifestEntry]:
    entries = merge_entries(
        load_manifest(path), updated, replaced_roots=replaced_roots, declared=declared
    )
    save_manifest(path, entries)
    log.info("manifest.saved", path=str(path), libraries=len(entries))
    return entries
