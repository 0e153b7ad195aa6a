"""License propagation from a fetched tree to the destination root."""

from __future__ import annotations

import posixpath

import structlog

from vendorkit.exceptions import NotFound
from vendorkit.models import FetchedTree

log = structlog.get_logger("vendorkit.license")


def propagate_license(tree: FetchedTree, license_path: str | None) -> dict[str, bytes]:
    """Return the license file to place at the destination root.

    The file keeps its base name and exact bytes.  No declared path means no
    license file, which is not an error.
    """
    if not license_path:
        log.debug("license.skipped", source=tree.source)
        return {}

    key = license_path.strip("/")
    try:
        content = tree.files[key]
    except KeyError:
        raise NotFound(
            f"license file '{license_path}' not found in {tree.source} at {tree.commit[:12]}"
        ) from None
    return {posixpath.basename(key): content}
