"""Tests for atomic vendor writes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from vendorkit.exceptions import PartialWriteDetected
from vendorkit.models import RewriteResult
from vendorkit.writer import VendorWriter

OLD = {"widget.rb": b"old\n", "widget/old_only.rb": b"gone soon\n"}
NEW = {"widget.rb": b"new\n", "widget/helper.rb": b"helper\n", "LICENSE": b"MIT\n"}


@pytest.fixture
def project(tmp_path):
    writer = VendorWriter()
    writer.write(tmp_path / "vendor" / "widget", OLD)
    (tmp_path / "vendor" / "README").write_bytes(b"not managed\n")
    return tmp_path


def _failing_write_bytes(fail_on: str):
    real = Path.write_bytes

    def write_bytes(self, data):
        if self.name == fail_on:
            raise OSError(28, "No space left on device")
        return real(self, data)

    return write_bytes


# ── write ──


class TestWrite:
    def test_creates_destination(self, tmp_path, read_tree):
        VendorWriter().write(tmp_path / "vendor" / "widget", NEW)
        assert read_tree(tmp_path / "vendor" / "widget") == NEW

    def test_replaces_whole_subtree(self, project, read_tree):
        VendorWriter().write(project / "vendor" / "widget", NEW)
        assert read_tree(project / "vendor" / "widget") == NEW

    def test_siblings_untouched(self, project):
        VendorWriter().write(project / "vendor" / "widget", NEW)
        assert (project / "vendor" / "README").read_bytes() == b"not managed\n"

    def test_no_leftovers(self, project):
        VendorWriter().write(project / "vendor" / "widget", NEW)
        assert sorted(p.name for p in (project / "vendor").iterdir()) == ["README", "widget"]

    def test_accepts_rewrite_result(self, tmp_path, read_tree):
        VendorWriter().write(tmp_path / "w", RewriteResult(files={"a.rb": b"a"}))
        assert read_tree(tmp_path / "w") == {"a.rb": b"a"}

    def test_write_is_idempotent(self, project, read_tree):
        writer = VendorWriter()
        writer.write(project / "vendor" / "widget", NEW)
        writer.write(project / "vendor" / "widget", NEW)
        assert read_tree(project / "vendor" / "widget") == NEW


# ── failure ──


class TestAtomicFailure:
    def test_failure_on_last_file_leaves_old_tree(self, project, read_tree):
        before = read_tree(project)
        with patch.object(Path, "write_bytes", _failing_write_bytes("helper.rb")):
            with pytest.raises(PartialWriteDetected, match="staging failed"):
                VendorWriter().write(project / "vendor" / "widget", NEW)
        assert read_tree(project) == before
        assert sorted(p.name for p in (project / "vendor").iterdir()) == ["README", "widget"]

    def test_failure_on_fresh_destination_creates_nothing(self, tmp_path):
        with patch.object(Path, "write_bytes", _failing_write_bytes("LICENSE")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write(tmp_path / "vendor" / "widget", NEW)
        assert list(tmp_path.iterdir()) == []

    def test_failure_removes_every_created_parent(self, tmp_path):
        (tmp_path / "third_party").mkdir()
        with patch.object(Path, "write_bytes", _failing_write_bytes("LICENSE")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write(tmp_path / "third_party" / "ruby" / "lib" / "widget", NEW)
        assert list((tmp_path / "third_party").iterdir()) == []

    def test_failure_keeps_existing_parents(self, project):
        with patch.object(Path, "write_bytes", _failing_write_bytes("LICENSE")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write(project / "vendor" / "gadget", NEW)
        assert sorted(p.name for p in (project / "vendor").iterdir()) == ["README", "widget"]


    @pytest.mark.parametrize("path", ["../escape.rb", "/etc/passwd"])
    def test_unsafe_paths_rejected(self, project, read_tree, path):
        before = read_tree(project)
        with pytest.raises(PartialWriteDetected, match="unsafe path"):
            VendorWriter().write(project / "vendor" / "widget", {path: b"x"})
        assert read_tree(project) == before

    def test_verification_mismatch(self, project, read_tree):
        before = read_tree(project)
        with patch.object(VendorWriter, "_verify", side_effect=PartialWriteDetected("x", "mismatch")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write(project / "vendor" / "widget", NEW)
        assert read_tree(project) == before


# ── write_all ──


class TestWriteAll:
    def test_all_destinations_replaced(self, project, read_tree):
        VendorWriter().write_all(
            [(project / "vendor" / "widget", NEW), (project / "vendor" / "gadget", {"g.rb": b"g"})]
        )
        assert read_tree(project / "vendor" / "widget") == NEW
        assert read_tree(project / "vendor" / "gadget") == {"g.rb": b"g"}

    def test_staging_failure_in_second_batch_changes_nothing(self, project, read_tree):
        before = read_tree(project)
        with patch.object(Path, "write_bytes", _failing_write_bytes("g.rb")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write_all(
                    [(project / "vendor" / "widget", NEW), (project / "vendor" / "gadget", {"g.rb": b"g"})]
                )
        assert read_tree(project) == before
        assert sorted(p.name for p in (project / "vendor").iterdir()) == ["README", "widget"]

    def test_before_commit_failure_rolls_back(self, project, read_tree):
        before = read_tree(project)

        def boom():
            raise RuntimeError("manifest write failed")

        with pytest.raises(RuntimeError):
            VendorWriter().write_all([(project / "vendor" / "widget", NEW)], before_commit=boom)
        assert read_tree(project) == before
        assert sorted(p.name for p in (project / "vendor").iterdir()) == ["README", "widget"]

    def test_before_commit_sees_new_tree(self, project):
        seen = {}

        def check():
            seen["content"] = (project / "vendor" / "widget" / "widget.rb").read_bytes()

        VendorWriter().write_all([(project / "vendor" / "widget", NEW)], before_commit=check)
        assert seen["content"] == b"new\n"

    def test_failure_removes_parents_created_by_earlier_batch(self, tmp_path):
        with patch.object(Path, "write_bytes", _failing_write_bytes("g.rb")):
            with pytest.raises(PartialWriteDetected):
                VendorWriter().write_all(
                    [(tmp_path / "vendor" / "widget", NEW), (tmp_path / "vendor" / "gadget", {"g.rb": b"g"})]
                )
        assert list(tmp_path.iterdir()) == []

    def test_rollback_of_fresh_destination_removes_created_parents(self, tmp_path):
        def boom():
            raise RuntimeError("manifest write failed")

        with pytest.raises(RuntimeError):
            VendorWriter().write_all(
                [(tmp_path / "vendor" / "widget", NEW), (tmp_path / "vendor" / "gadget", {"g.rb": b"g"})],
                before_commit=boom,
            )
        assert list(tmp_path.iterdir()) == []
