"""Namespace and reference rewriting for fetched source trees.

A vendored library keeps its structure byte for byte; only the spots that name
its namespace change.  ``module Widget`` becomes ``module Host::Widget`` and
``Widget::Helper`` becomes ``Host::Widget::Helper``, so the vendored copy can
never collide with a separately installed ``Widget``.

Matching works on identifier boundaries, never on raw substrings:

* ``WidgetFactory``, ``MyWidget``, ``@Widget``, ``$Widget``, ``obj.Widget``,
  ``:Widget``, ``Widget: 1`` and ``def Widget`` are not references;
* ``Other::Widget`` belongs to another scope and is left alone;
* ``Host::Widget`` is already rewritten and is left alone, which makes the
  rewrite idempotent;
* ``::Widget`` is rooted and becomes ``::Host::Widget``;
* an indented ``module Widget`` declares a constant nested in some other
  scope, after which plain ``Widget`` in that file no longer names the
  library: that is an :class:`AmbiguousMatch`;
* ``module ::Widget`` declares the top-level constant at any indentation.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import structlog

from vendorkit.exceptions import AmbiguousMatch, NoMatchFound
from vendorkit.models import FetchedTree, RenameRecord, RewriteResult

log = structlog.get_logger("vendorkit.rewriter")

_QUALIFIER_RE = re.compile(r"((?:[A-Za-z_]\w*::)*[A-Za-z_]\w*)?::\Z")
_DECL_KEYWORD_RE = re.compile(r"\b(?:module|class)[ \t]+\Z")
_TOP_LEVEL_DECL_RE = re.compile(r"(?:module|class)[ \t]+")
_METHOD_DEF_RE = re.compile(r"\bdef[ \t]+\Z")
_REQUIRE_RE = re.compile(
    r"""^([ \t]*)require([ \t]*\(?[ \t]*)(["'])([^"'\n]+)\3""", re.MULTILINE
)


def declaration_pattern(namespace: str) -> str:
    """The pattern a top-level declaration of *namespace* must match."""
    return rf"^(?:module|class)\s+{re.escape(namespace)}\b"


def _position(text: str, offset: int) -> tuple[int, int]:
    line = text.count("\n", 0, offset) + 1
    column = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, column


def _is_prefixed(qualifier: str, prefix: str) -> bool:
    return qualifier == prefix or qualifier.endswith("::" + prefix)


@dataclass
class _FileRewrite:
    text: str
    renames: list[RenameRecord]
    declared: set[str]


class NamespaceRewriter:
    """Rewrites declarations of and references to a set of namespaces.

    *targets* maps each original namespace to the prefix it moves under.
    Longer namespaces win when they overlap (``Net::HTTP::Persistent`` before
    ``Net::HTTP``).
    """

    def __init__(self, targets: Mapping[str, str]) -> None:
        if not targets:
            raise ValueError("at least one namespace is required")
        self.targets = dict(targets)
        alternatives = "|".join(
            re.escape(ns) for ns in sorted(self.targets, key=len, reverse=True)
        )
        # A trailing lone ':' makes a hash key (`Widget: 1`), not a constant.
        self._pattern = re.compile(
            rf"(?<![A-Za-z0-9_@$.])(?:{alternatives})(?![A-Za-z0-9_])(?!:(?!:))"
        )

    def rewrite_text(self, path: str, text: str) -> _FileRewrite:
        pieces: list[str] = []
        renames: list[RenameRecord] = []
        declared: set[str] = set()
        cursor = 0

        for match in self._pattern.finditer(text):
            namespace = match.group(0)
            prefix = self.targets[namespace]
            start = match.start()
            line_start = text.rfind("\n", 0, start) + 1
            before = text[line_start:start]

            if before.endswith(":") and not before.endswith("::"):
                continue  # symbol
            if _METHOD_DEF_RE.search(before):
                continue

            qualifier: str | None = None
            head = before
            rooted = False
            qualified = before.endswith("::")
            if qualified:
                q = _QUALIFIER_RE.search(before)
                qualifier = q.group(1) if q else None
                head = before[: q.start()] if q else before[:-2]
                if qualifier is None:
                    rooted = True
                elif head.endswith("::"):
                    head, rooted = head[:-2], True

            keyword = _DECL_KEYWORD_RE.search(head)
            # `module ::Widget` names the top-level constant at any indentation.
            top_level = keyword is not None and (
                rooted or _TOP_LEVEL_DECL_RE.fullmatch(head) is not None
            )

            if qualifier is not None:
                if _is_prefixed(qualifier, prefix) and top_level:
                    declared.add(namespace)
                continue  # already rewritten, or a constant of another scope

            line, column = _position(text, start)
            if keyword is not None and not top_level:
                raise AmbiguousMatch(
                    path,
                    line,
                    namespace,
                    "is declared inside another scope, so references to it in "
                    "this file cannot be attributed to the vendored library",
                )

            replacement = f"{prefix}::{namespace}"
            pieces.append(text[cursor:start])
            pieces.append(replacement)
            cursor = match.end()

            if top_level:
                declared.add(namespace)
            renames.append(
                RenameRecord(
                    path=path,
                    line=line,
                    column=column,
                    original=namespace if not qualified else "::" + namespace,
                    replacement=replacement if not qualified else "::" + replacement,
                    kind="declaration" if top_level else "reference",
                )
            )

        pieces.append(text[cursor:])
        return _FileRewrite("".join(pieces), renames, declared)


class RequireRewriter:
    """Turns ``require "entry/..."`` into ``require_relative`` paths.

    *locations* maps a require entrypoint to the directory, relative to the
    vendored tree root, under which its load path lives (``""`` for the
    library itself, the dependency's nested destination otherwise).
    """

    def __init__(self, locations: Mapping[str, str]) -> None:
        self.locations = dict(locations)

    def _target(self, load_path: str) -> str | None:
        for entry in sorted(self.locations, key=len, reverse=True):
            if load_path == entry or load_path.startswith(entry + "/"):
                return posixpath.normpath(posixpath.join(self.locations[entry], load_path))
        return None

    def rewrite_text(self, path: str, text: str) -> tuple[str, list[RenameRecord]]:
        renames: list[RenameRecord] = []
        here = posixpath.dirname(path) or "."

        def _sub(match: re.Match[str]) -> str:
            indent, sep, quote, load_path = match.groups()
            target = self._target(load_path)
            if target is None:
                return match.group(0)
            relative = posixpath.relpath(target, here)
            line, column = _position(text, match.start())
            renames.append(
                RenameRecord(
                    path=path,
                    line=line,
                    column=column,
                    original=f"require {load_path}",
                    replacement=f"require_relative {relative}",
                    kind="require",
                )
            )
            return f"{indent}require_relative{sep}{quote}{relative}{quote}"

        return _REQUIRE_RE.sub(_sub, text), renames


def rewrite(
    tree: FetchedTree,
    original_namespace: str,
    prefix: str,
    *,
    extra_namespaces: Iterable[tuple[str, str]] = (),
    requires: Mapping[str, str] | None = None,
    verbatim: Iterable[str] = (),
) -> RewriteResult:
    """Nest *original_namespace* under *prefix* throughout *tree*.

    *extra_namespaces* are ``(namespace, prefix)`` pairs rewritten in the same
    pass, typically the library's own vendored dependencies.  *requires* maps
    require entrypoints to their location in the vendored tree.  Paths in
    *verbatim* are copied through untouched.

    Raises :class:`NoMatchFound` if no file declares *original_namespace* at
    top level, and :class:`AmbiguousMatch` if a file makes attribution
    impossible.
    """
    targets = {original_namespace: prefix}
    for namespace, extra_prefix in extra_namespaces:
        claimed = targets.setdefault(namespace, extra_prefix)
        if claimed != extra_prefix:
            raise AmbiguousMatch(
                "*", 0, namespace, f"is claimed by both '{claimed}' and '{extra_prefix}'"
            )

    namespaces = NamespaceRewriter(targets)
    require_rewriter = RequireRewriter(requires) if requires else None

    files: dict[str, bytes] = {}
    renames: list[RenameRecord] = []
    declared = False

    untouched = set(verbatim)
    for path in sorted(tree.files):
        raw = tree.files[path]
        if path in untouched:
            files[path] = raw
            continue
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            files[path] = raw
            continue

        result = namespaces.rewrite_text(path, text)
        new_text = result.text
        renames.extend(result.renames)
        declared = declared or original_namespace in result.declared

        if require_rewriter is not None:
            new_text, require_renames = require_rewriter.rewrite_text(path, new_text)
            renames.extend(require_renames)

        files[path] = new_text.encode("utf-8") if new_text != text else raw

    if not declared:
        raise NoMatchFound(original_namespace, declaration_pattern(original_namespace))

    log.debug(
        "rewrite.done",
        namespace=original_namespace,
        prefix=prefix,
        files=len(files),
        renames=len(renames),
    )
    return RewriteResult(files=files, renames=renames)
