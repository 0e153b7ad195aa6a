"""GitHub transport: resolves refs through the REST API and downloads tarballs."""

from __future__ import annotations

import io
import os
import tarfile
from typing import Any

import httpx
import structlog

from vendorkit.exceptions import AmbiguousRef, ConfigError, NetworkFailure, NotFound

log = structlog.get_logger("vendorkit.fetcher")

_API_URL = "https://api.github.com"


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """Extract (owner, repo) from a GitHub URL.

    Handles:
      - https://github.com/owner/repo
      - https://github.com/owner/repo.git
      - git@github.com:owner/repo.git
      - owner/repo

    Raises ValueError if the URL cannot be parsed.
    """
    url = repo_url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    if url.startswith("git@"):
        url = url.split(":", 1)[-1]
    parts = [p for p in url.split("/") if p]
    if len(parts) < 2 or (len(parts) == 2 and ":" in parts[0]):
        raise ValueError(f"cannot parse GitHub repo URL: {repo_url!r}")
    return parts[-2], parts[-1]


class GitHubTransport:
    """Thin async wrapper around the GitHub REST endpoints vendoring needs."""

    def __init__(
        self,
        token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        api_url: str = _API_URL,
    ) -> None:
        resolved_token = token or os.environ.get("GITHUB_TOKEN")
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if resolved_token:
            headers["Authorization"] = f"token {resolved_token}"
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            headers=headers,
            timeout=60.0,
            follow_redirects=True,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubTransport:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ── transport ──────────────────────────────────────────────────────────

    async def resolve(self, location: str, ref: str) -> str | None:
        owner, repo = self._repo(location)
        matches: dict[str, str] = {}
        for kind in ("heads", "tags"):
            commit = await self._ref_commit(owner, repo, f"{kind}/{ref}")
            if commit is not None:
                matches[f"refs/{kind}/{ref}"] = commit

        commits = sorted(set(matches.values()))
        if len(commits) > 1:
            raise AmbiguousRef(ref, [f"{name}@{sha[:12]}" for name, sha in sorted(matches.items())])
        if commits:
            return commits[0]

        # Not a branch or tag: let GitHub resolve it as a commit SHA.
        data = await self._get_json(f"/repos/{owner}/{repo}/commits/{ref}", what=f"{location}@{ref}")
        return data["sha"]

    async def download(self, location: str, revision: str) -> tuple[str, dict[str, bytes]]:
        owner, repo = self._repo(location)
        response = await self._request(
            f"/repos/{owner}/{repo}/tarball/{revision}", what=f"{location}@{revision}"
        )
        return revision, extract_tarball(response.content)

    # ── internal ───────────────────────────────────────────────────────────

    @staticmethod
    def _repo(location: str) -> tuple[str, str]:
        try:
            return parse_repo_url(location)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    async def _ref_commit(self, owner: str, repo: str, name: str) -> str | None:
        """Commit a ``heads/x`` or ``tags/x`` ref points at, or None if absent."""
        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/git/ref/{name}", what=name)
        except NotFound:
            return None
        obj = data["object"]
        # Annotated tags point at tag objects; peel until we reach the commit.
        while obj["type"] == "tag":
            tag = await self._get_json(f"/repos/{owner}/{repo}/git/tags/{obj['sha']}", what=name)
            obj = tag["object"]
        return obj["sha"]

    async def _get_json(self, path: str, *, what: str) -> dict[str, Any]:
        response = await self._request(path, what=what)
        return response.json()

    async def _request(self, path: str, *, what: str) -> httpx.Response:
        try:
            response = await self._client.get(path)
        except httpx.TimeoutException as exc:
            raise NetworkFailure(f"timeout fetching {what}: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkFailure(f"transport error fetching {what}: {exc}") from exc

        status = response.status_code
        if status < 400:
            return response
        if status >= 500:
            raise NetworkFailure(f"GitHub returned {status} for {what}")
        if status in (403, 429) and self._is_rate_limited(response):
            raise NetworkFailure(f"GitHub rate limit exceeded while fetching {what}")
        raise NotFound(f"GitHub returned {status} for {what}")

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        return "Retry-After" in response.headers


def extract_tarball(content: bytes) -> dict[str, bytes]:
    """Read a GitHub tarball into ``{path: bytes}``, dropping the top-level directory."""
    files: dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as archive:
        for member in archive.getmembers():
            if not member.isfile():
                continue
            _, _, relative = member.name.partition("/")
            if not relative:
                continue
            handle = archive.extractfile(member)
            if handle is None:
                continue
            files[relative] = handle.read()
    return dict(sorted(files.items()))
