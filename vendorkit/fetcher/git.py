"""Plain git transport: any URL or local path git can clone."""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from pathlib import Path

import structlog

from vendorkit.exceptions import AmbiguousRef, FetchError, NetworkFailure, NotFound

log = structlog.get_logger("vendorkit.fetcher")

_HEX_RE = re.compile(r"^[0-9a-f]{7,40}$")
_FULL_SHA_RE = re.compile(r"^[0-9a-f]{40}$")

_AMBIGUOUS_MARKERS = ("is ambiguous",)
_NOT_FOUND_MARKERS = (
    "repository not found",
    "does not appear to be a git repository",
    "does not exist",
    "couldn't find remote ref",
    "not found in upstream",
    "did not match any",
    "unknown revision",
    "reference is not a tree",
    "not a valid object name",
    "needed a single revision",
    "returned error: 404",
    "could not read username",
)


def classify_git_error(stderr: str) -> type[FetchError]:
    """Map git's stderr to a fetch error kind; anything unrecognised is transient."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in _AMBIGUOUS_MARKERS):
        return AmbiguousRef
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFound
    return NetworkFailure


async def _git(*args: str, cwd: Path | None = None) -> str:
    """Run a git command and return stdout, raising a classified FetchError on failure."""
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        error = classify_git_error(message)
        detail = f"git {args[0]} failed (exit {proc.returncode}): {message}"
        if error is AmbiguousRef:
            raise AmbiguousRef(args[-1], [message])
        raise error(detail)
    return stdout.decode(errors="replace")


def parse_ls_remote(output: str, ref: str) -> dict[str, str]:
    """Return ``{refname: commit}`` for refs that name *ref* exactly.

    Annotated tags are peeled to the commit they point at.
    """
    wanted = {ref, f"refs/heads/{ref}", f"refs/tags/{ref}"}
    found: dict[str, str] = {}
    peeled: dict[str, str] = {}
    for line in output.splitlines():
        if "\t" not in line:
            continue
        sha, name = line.split("\t", 1)
        if name.endswith("^{}"):
            base = name[:-3]
            if base in wanted:
                peeled[base] = sha
        elif name in wanted:
            found[name] = sha
    found.update(peeled)
    return found


class GitTransport:
    """Clones with the ``git`` binary into a throwaway directory."""

    def __init__(self, workdir: Path | None = None) -> None:
        self._workdir = workdir

    async def resolve(self, location: str, ref: str) -> str | None:
        if _FULL_SHA_RE.match(ref):
            return ref
        output = await _git("ls-remote", location, ref)
        matches = parse_ls_remote(output, ref)
        commits = sorted(set(matches.values()))
        if len(commits) > 1:
            raise AmbiguousRef(ref, [f"{name}@{sha[:12]}" for name, sha in sorted(matches.items())])
        if commits:
            return commits[0]
        if _HEX_RE.match(ref):
            # Possibly an abbreviated commit; only a clone can tell.
            return None
        raise NotFound(f"ref '{ref}' not found in {location}")

    async def download(self, location: str, revision: str) -> tuple[str, dict[str, bytes]]:
        if self._workdir is not None:
            self._workdir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="vendorkit-", dir=self._workdir) as tmpdir:
            target = Path(tmpdir) / "repo"
            await _git(
                "clone",
                "--quiet",
                "--no-checkout",
                "--config",
                "core.autocrlf=false",
                "--",
                location,
                str(target),
            )
            commit = (
                await _git("rev-parse", "--verify", f"{revision}^{{commit}}", cwd=target)
            ).strip()
            await _git("checkout", "--quiet", "--detach", commit, cwd=target)
            listing = await _git("ls-files", "-z", cwd=target)

            files: dict[str, bytes] = {}
            for name in sorted(filter(None, listing.split("\0"))):
                path = target / name
                if path.is_symlink() or not path.is_file():
                    log.debug("fetch.skip_entry", path=name)
                    continue
                files[name] = path.read_bytes()
        return commit, files
