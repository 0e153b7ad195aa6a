"""Atomic vendor writes: stage beside the destination, verify, then swap in.

The destination directory is the managed subtree.  It is replaced as a whole
by renaming a fully written and verified staging directory into place; files
next to it are never touched.  Until the run commits, the previous tree is
kept as a hidden backup so a failure anywhere can put it back.
"""

from __future__ import annotations

import posixpath
import shutil
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path

import structlog

from vendorkit.exceptions import PartialWriteDetected
from vendorkit.models import RewriteResult

log = structlog.get_logger("vendorkit.writer")


def _sibling(destination: Path, tag: str) -> Path:
    return destination.parent / f".{destination.name}.vendorkit-{tag}-{uuid.uuid4().hex[:8]}"


def _safe_relative(path: str) -> str:
    normalized = posixpath.normpath(path)
    if path.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"unsafe path {path!r}")
    return normalized


def _make_parents(directory: Path) -> list[Path]:
    """Create *directory* and its missing ancestors; return the ones created, deepest first."""
    missing: list[Path] = []
    current = directory
    while not current.exists() and current != current.parent:
        missing.append(current)
        current = current.parent
    directory.mkdir(parents=True, exist_ok=True)
    return missing


def _remove_created(created: list[Path]) -> None:
    for directory in created:
        try:
            directory.rmdir()
        except OSError:
            # Not empty: something else now lives there.
            return
        log.debug("writer.removed_parent", directory=str(directory))


class StagedWrite:
    """One library's file set, written out but not yet visible at its destination."""

    def __init__(
        self,
        destination: Path,
        staging: Path,
        files: Mapping[str, bytes],
        created: list[Path] | None = None,
    ) -> None:
        self.destination = destination
        self.staging = staging
        self.files = files
        # Parent directories staging had to create; removed again on rollback.
        self.created = created or []
        self.backup: Path | None = None
        self.promoted = False

    def promote(self) -> None:
        """Swap the staged tree into place, keeping the old one as a backup."""
        if self.destination.exists():
            self.backup = _sibling(self.destination, "backup")
            self.destination.rename(self.backup)
        try:
            self.staging.rename(self.destination)
        except OSError as exc:
            if self.backup is not None:
                self.backup.rename(self.destination)
                self.backup = None
            raise PartialWriteDetected(str(self.destination), f"promotion failed: {exc}") from exc
        self.promoted = True
        log.info("writer.promoted", destination=str(self.destination), files=len(self.files))

    def rollback(self) -> None:
        """Undo :meth:`promote`, restoring the previous tree byte for byte."""
        if not self.promoted:
            self.discard()
            return
        shutil.rmtree(self.destination, ignore_errors=True)
        if self.backup is not None:
            self.backup.rename(self.destination)
            self.backup = None
        else:
            _remove_created(self.created)
        self.promoted = False
        log.warning("writer.rolled_back", destination=str(self.destination))

    def commit(self) -> None:
        """Drop the backup; the new tree is final."""
        if self.backup is not None:
            shutil.rmtree(self.backup, ignore_errors=True)
            self.backup = None

    def discard(self) -> None:
        shutil.rmtree(self.staging, ignore_errors=True)
        _remove_created(self.created)


class VendorWriter:
    """Writes vendored file sets so a destination is either fully old or fully new."""

    def stage(self, destination: Path, files: Mapping[str, bytes] | RewriteResult) -> StagedWrite:
        if isinstance(files, RewriteResult):
            files = files.files
        destination = Path(destination)
        created = _make_parents(destination.parent)
        staging = _sibling(destination, "stage")
        try:
            staging.mkdir()
            for relative, content in sorted(files.items()):
                target = staging / _safe_relative(relative)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            self._verify(destination, staging, files)
        except (OSError, ValueError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            _remove_created(created)
            raise PartialWriteDetected(str(destination), f"staging failed: {exc}") from exc
        except PartialWriteDetected:
            shutil.rmtree(staging, ignore_errors=True)
            _remove_created(created)
            raise
        log.debug("writer.staged", destination=str(destination), files=len(files))
        return StagedWrite(destination, staging, files, created)

    @staticmethod
    def _verify(destination: Path, staging: Path, files: Mapping[str, bytes]) -> None:
        written = {
            path.relative_to(staging).as_posix()
            for path in staging.rglob("*")
            if path.is_file()
        }
        expected = {_safe_relative(p) for p in files}
        if written != expected:
            raise PartialWriteDetected(
                str(destination),
                f"staged tree differs: missing {sorted(expected - written)}, "
                f"unexpected {sorted(written - expected)}",
            )
        for relative, content in files.items():
            if (staging / _safe_relative(relative)).read_bytes() != content:
                raise PartialWriteDetected(str(destination), f"staged '{relative}' does not match")

    def write(self, destination: Path, files: Mapping[str, bytes] | RewriteResult) -> None:
        """Replace *destination* with *files* atomically."""
        self.write_all([(Path(destination), files)])

    def write_all(
        self,
        batches: list[tuple[Path, Mapping[str, bytes] | RewriteResult]],
        *,
        before_commit: Callable[[], None] | None = None,
    ) -> None:
        """Replace several destinations; either all of them change or none does.

        *before_commit* runs once every destination has been swapped in; if it
        raises, every destination is restored.
        """
        staged: list[StagedWrite] = []
        try:
            for destination, files in batches:
                staged.append(self.stage(destination, files))
        except BaseException:
            for item in reversed(staged):
                item.discard()
            raise

        promoted: list[StagedWrite] = []
        try:
            for item in staged:
                item.promote()
                promoted.append(item)
            if before_commit is not None:
                before_commit()
        except BaseException:
            # Later batches may sit inside parents an earlier batch created.
            for item in reversed(staged[len(promoted):]):
                item.discard()
            for item in reversed(promoted):
                item.rollback()
            raise

        for item in promoted:
            item.commit()
