"""vendorkit: vendor pinned, namespace-rewritten snapshots of source libraries."""

__version__ = "0.1.0"

from vendorkit.engine import RunReport, VendorEngine, vendor
from vendorkit.exceptions import (
    AmbiguousMatch,
    AmbiguousRef,
    ConfigError,
    ConflictingDependency,
    CycleDetected,
    FetchError,
    NetworkFailure,
    NoMatchFound,
    NotFound,
    PartialWriteDetected,
    RewriteError,
    StructuralError,
    VendorError,
    WriteError,
)
from vendorkit.models import (
    DownloadSource,
    FetchedTree,
    LibrarySpec,
    LibrarySpecBuilder,
    LibraryState,
    RewriteResult,
    VendorManifestEntry,
)
from vendorkit.rewriter import rewrite

__all__ = [
    "AmbiguousMatch",
    "AmbiguousRef",
    "ConfigError",
    "ConflictingDependency",
    "CycleDetected",
    "DownloadSource",
    "FetchError",
    "FetchedTree",
    "LibrarySpec",
    "LibrarySpecBuilder",
    "LibraryState",
    "NetworkFailure",
    "NoMatchFound",
    "NotFound",
    "PartialWriteDetected",
    "RewriteError",
    "RewriteResult",
    "RunReport",
    "StructuralError",
    "VendorEngine",
    "VendorError",
    "VendorManifestEntry",
    "WriteError",
    "rewrite",
    "vendor",
]
