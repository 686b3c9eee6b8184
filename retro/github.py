"""Async GitHub REST client used by the scanning phases."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from retro.errors import GitHubError
from retro.utils import parse_timestamp

log = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
_TIMEOUT = 15.0
_PER_PAGE = 100


# ---------------------------------------------------------------------------
# Records handed to the scanner
# ---------------------------------------------------------------------------


@dataclass
class RepoRecord:
    name: str
    full_name: str
    description: str = ""
    language: str = ""
    default_branch: str = "main"
    is_archived: bool = False
    is_private: bool = False


@dataclass
class FileRecord:
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str = ""


@dataclass
class CommitRecord:
    sha: str
    author_login: str
    committed_at: datetime
    message: str = ""
    author_email: str = ""
    additions: int = 0
    deletions: int = 0
    files: list[FileRecord] = field(default_factory=list)


@dataclass
class PullRequestRecord:
    number: int
    author_login: str
    title: str
    state: str
    created_at: datetime
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    additions: int = 0
    deletions: int = 0


class CommitSource(Protocol):
    """What the scanning phases need from a version-control provider."""

    async def list_repositories(self, org: str, include_archived: bool = False) -> list[RepoRecord]: ...

    async def list_commit_shas(self, full_name: str, author: str, since: datetime, until: datetime) -> list[str]: ...

    async def get_commit(self, full_name: str, sha: str) -> CommitRecord: ...

    async def list_pull_requests(self, full_name: str, author: str, since: datetime,
                                 until: datetime) -> list[PullRequestRecord]: ...


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class _GitHubRateLimiter:
    """Minimum spacing between a client's calls, with backoff on 403/429."""

    def __init__(self, min_delay: float = 0.1, max_delay: float = 60.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            wait = self._current_delay - (now - self._last_call)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(max(self._current_delay, 0.5) * 2, self._max_delay)
        log.warning("GitHub rate limited, backing off to %.1fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GitHubClient:
    """Minimal GitHub REST client implementing :class:`CommitSource`.

    Use as an async context manager so the underlying ``httpx.AsyncClient``
    is closed::

        async with GitHubClient(token) as gh:
            repos = await gh.list_repositories("acme")
    """

    def __init__(self, token: str = "", base_url: str = GITHUB_API, timeout: float = _TIMEOUT,
                 min_interval: float = 0.1, transport: httpx.AsyncBaseTransport | None = None):
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=httpx.Timeout(timeout), transport=transport,
        )
        self._limiter = _GitHubRateLimiter(min_delay=min_interval)

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        await self._limiter.acquire()
        try:
            resp = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise GitHubError(f"GitHub request failed for {url}: {exc}", retryable=True) from exc
        rate_limited = resp.status_code == 429 or (
            resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
        )
        if rate_limited:
            self._limiter.backoff()
            raise GitHubError(f"GitHub rate limit hit for {url}", status=resp.status_code, retryable=True)
        if resp.status_code >= 400:
            raise GitHubError(
                f"GitHub returned {resp.status_code} for {url}",
                status=resp.status_code, retryable=resp.status_code >= 500,
            )
        self._limiter.reset()
        return resp

    async def _paginate(self, url: str, params: dict[str, Any] | None = None,
                        stop=None) -> list[dict]:
        """Follow ``Link: rel="next"`` until exhausted or ``stop(page)`` returns True."""
        items: list[dict] = []
        next_url: str | None = url
        next_params = {**(params or {}), "per_page": _PER_PAGE}
        while next_url:
            resp = await self._get(next_url, next_params)
            page = resp.json()
            if not isinstance(page, list):
                break
            items.extend(page)
            if stop is not None and stop(page):
                break
            next_link = resp.links.get("next")
            next_url = next_link["url"] if next_link else None
            next_params = None
        return items

    async def list_repositories(self, org: str, include_archived: bool = False) -> list[RepoRecord]:
        raw = await self._paginate(f"/orgs/{org}/repos", {"type": "all", "sort": "pushed"})
        repos = []
        for r in raw:
            if r.get("archived") and not include_archived:
                continue
            repos.append(RepoRecord(
                name=r["name"],
                full_name=r["full_name"],
                description=r.get("description") or "",
                language=r.get("language") or "",
                default_branch=r.get("default_branch") or "main",
                is_archived=bool(r.get("archived")),
                is_private=bool(r.get("private")),
            ))
        return repos

    async def list_commit_shas(self, full_name: str, author: str, since: datetime, until: datetime) -> list[str]:
        params = {"author": author, "since": since.isoformat() + "Z", "until": until.isoformat() + "Z"}
        try:
            raw = await self._paginate(f"/repos/{full_name}/commits", params)
        except GitHubError as exc:
            # 409: empty repository
            if exc.status == 409:
                return []
            raise
        return [c["sha"] for c in raw if c.get("sha")]

    async def get_commit(self, full_name: str, sha: str) -> CommitRecord:
        data = (await self._get(f"/repos/{full_name}/commits/{sha}")).json()
        commit = data.get("commit") or {}
        author = commit.get("author") or {}
        stats = data.get("stats") or {}
        files = [
            FileRecord(
                path=f["filename"],
                status=f.get("status", "modified"),
                additions=f.get("additions", 0),
                deletions=f.get("deletions", 0),
                patch=f.get("patch") or "",
            )
            for f in data.get("files") or []
        ]
        return CommitRecord(
            sha=data["sha"],
            author_login=(data.get("author") or {}).get("login") or author.get("name", ""),
            author_email=author.get("email", ""),
            committed_at=parse_timestamp(author.get("date")) or datetime.min,
            message=commit.get("message", ""),
            additions=stats.get("additions", sum(f.additions for f in files)),
            deletions=stats.get("deletions", sum(f.deletions for f in files)),
            files=files,
        )

    async def list_pull_requests(self, full_name: str, author: str, since: datetime,
                                 until: datetime) -> list[PullRequestRecord]:
        def older_than_window(page: list[dict]) -> bool:
            last = parse_timestamp(page[-1].get("created_at")) if page else None
            return last is not None and last < since

        raw = await self._paginate(
            f"/repos/{full_name}/pulls",
            {"state": "all", "sort": "created", "direction": "desc"},
            stop=older_than_window,
        )
        prs = []
        for p in raw:
            created = parse_timestamp(p.get("created_at"))
            if created is None or not (since <= created < until):
                continue
            if ((p.get("user") or {}).get("login") or "").lower() != author.lower():
                continue
            merged_at = parse_timestamp(p.get("merged_at"))
            prs.append(PullRequestRecord(
                number=p["number"],
                author_login=p["user"]["login"],
                title=p.get("title") or "",
                state="merged" if merged_at else p.get("state", "open"),
                created_at=created,
                merged_at=merged_at,
                closed_at=parse_timestamp(p.get("closed_at")),
            ))
        return prs
