"""Custom exceptions for vendorkit.

Every failure aborts the whole run, so each error carries the name of the
library being processed when it was raised.  The walker fills ``library`` in
as the error propagates out of a spec's subtree.
"""

from __future__ import annotations


class VendorError(Exception):
    """Base exception for all vendoring errors."""

    def __init__(self, message: str, *, library: str | None = None) -> None:
        self.message = message
        self.library = library
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        """One-line diagnostic: ``[library] Kind: message``."""
        where = f"[{self.library}] " if self.library else ""
        return f"{where}{self.kind}: {self.message}"

    def __str__(self) -> str:
        return self.describe()


class ConfigError(VendorError):
    """Raised when the vendoring configuration is invalid."""


# ── fetch ────────────────────────────────────────────────────────────────


class FetchError(VendorError):
    """Raised when a library snapshot cannot be fetched."""

    retryable = False


class NotFound(FetchError):
    """The source, the ref, or a declared file does not exist."""


class NetworkFailure(FetchError):
    """Transient I/O error while talking to the source."""

    retryable = True


class AmbiguousRef(FetchError):
    """The ref matches more than one object."""

    def __init__(self, ref: str, candidates: list[str], *, library: str | None = None):
        self.ref = ref
        self.candidates = candidates
        super().__init__(
            f"ref '{ref}' matches {len(candidates)} objects: {', '.join(candidates)}",
            library=library,
        )


# ── rewrite ──────────────────────────────────────────────────────────────


class RewriteError(VendorError):
    """Raised when a fetched tree cannot be rewritten."""


class NoMatchFound(RewriteError):
    """The namespace is never declared at top level in the fetched tree."""

    def __init__(self, namespace: str, pattern: str, *, library: str | None = None):
        self.namespace = namespace
        self.pattern = pattern
        super().__init__(
            f"no top-level declaration of '{namespace}' found "
            f"(pattern {pattern!r}); is the version stale or the namespace misconfigured?",
            library=library,
        )


class AmbiguousMatch(RewriteError):
    """A reference cannot be attributed to the namespace being rewritten."""

    def __init__(
        self, path: str, line: int, symbol: str, reason: str, *, library: str | None = None
    ):
        self.path = path
        self.line = line
        self.symbol = symbol
        super().__init__(f"{path}:{line}: '{symbol}' {reason}", library=library)


# ── structure ────────────────────────────────────────────────────────────


class StructuralError(VendorError):
    """Raised when the dependency graph itself is invalid."""


class CycleDetected(StructuralError):
    """A spec transitively depends on itself."""

    def __init__(self, chain: list[str], *, library: str | None = None):
        self.chain = chain
        super().__init__(f"dependency cycle: {' -> '.join(chain)}", library=library)


class ConflictingDependency(StructuralError):
    """Two specs claim the same name or overlapping destinations."""


# ── write ────────────────────────────────────────────────────────────────


class WriteError(VendorError):
    """Raised when vendored files cannot be written."""


class PartialWriteDetected(WriteError):
    """A write did not complete; the destination was left untouched."""

    def __init__(self, destination: str, reason: str, *, library: str | None = None):
        self.destination = destination
        super().__init__(f"{destination}: {reason}", library=library)
