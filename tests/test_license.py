"""Tests for license propagation."""

from __future__ import annotations

import pytest

from vendorkit.exceptions import NotFound
from vendorkit.license import propagate_license


class TestPropagateLicense:
    def test_copies_bytes_under_base_name(self, make_tree):
        text = b"MIT License\r\n\r\nexact bytes\xe2\x80\x99\n"
        tree = make_tree({"docs/LICENSE.md": text, "lib/a.rb": "x"})
        assert propagate_license(tree, "docs/LICENSE.md") == {"LICENSE.md": text}

    def test_leading_slash_tolerated(self, make_tree):
        tree = make_tree({"LICENSE": b"L"})
        assert propagate_license(tree, "/LICENSE") == {"LICENSE": b"L"}

    @pytest.mark.parametrize("path", [None, ""])
    def test_no_license_declared(self, make_tree, path):
        assert propagate_license(make_tree({"LICENSE": b"L"}), path) == {}

    def test_declared_but_missing(self, make_tree):
        tree = make_tree({"lib/a.rb": "x"}, commit="d" * 40)
        with pytest.raises(NotFound, match="license file 'COPYING' not found") as exc_info:
            propagate_license(tree, "COPYING")
        assert "dddddddddddd" in exc_info.value.message
