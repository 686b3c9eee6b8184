"""Repository and commit ingestion for the scanning phases.

Ingested rows (repositories, commits, files, pull requests) are never
deleted by the pipeline; re-scans only insert what is missing.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from fnmatch import fnmatch

from sqlalchemy import select
from sqlalchemy.orm import Session

from retro.errors import GitHubError
from retro.github import CommitRecord, CommitSource, PullRequestRecord, RepoRecord
from retro.models import Commit, CommitFile, PullRequest, Repository
from retro.utils import utc_now

log = logging.getLogger(__name__)


def is_excluded(full_name: str, patterns: list[str]) -> bool:
    name = full_name.split("/")[-1]
    return any(fnmatch(full_name, p) or fnmatch(name, p) for p in patterns)


def upsert_repository(session: Session, org_login: str, record: RepoRecord) -> Repository:
    repo = session.execute(
        select(Repository).where(Repository.full_name == record.full_name)
    ).scalars().first()
    if repo is None:
        repo = Repository(org_login=org_login, name=record.name, full_name=record.full_name)
        session.add(repo)
    repo.description = record.description
    repo.language = record.language
    repo.default_branch = record.default_branch
    repo.is_archived = record.is_archived
    repo.is_private = record.is_private
    return repo


def store_commit(session: Session, repo: Repository, record: CommitRecord) -> Commit:
    commit = Commit(
        repo_id=repo.id,
        sha=record.sha,
        author_login=record.author_login,
        author_email=record.author_email,
        message=record.message,
        committed_at=record.committed_at,
        additions=record.additions,
        deletions=record.deletions,
        files_changed=len(record.files),
    )
    commit.files = [
        CommitFile(path=f.path, status=f.status, additions=f.additions, deletions=f.deletions, patch=f.patch)
        for f in record.files
    ]
    session.add(commit)
    return commit


def store_pull_request(session: Session, repo: Repository, record: PullRequestRecord) -> PullRequest:
    pr = session.execute(
        select(PullRequest).where(PullRequest.repo_id == repo.id, PullRequest.number == record.number)
    ).scalars().first()
    if pr is None:
        pr = PullRequest(repo_id=repo.id, number=record.number, author_login=record.author_login,
                         created_at=record.created_at)
        session.add(pr)
    pr.title = record.title
    pr.state = record.state
    pr.merged_at = record.merged_at
    pr.closed_at = record.closed_at
    pr.additions = record.additions
    pr.deletions = record.deletions
    return pr


async def scan_repositories(session: Session, source: CommitSource, org_login: str, *,
                            include_archived: bool = False, exclude: list[str] | None = None) -> list[Repository]:
    records = await source.list_repositories(org_login, include_archived=include_archived)
    repos = []
    for record in records:
        if exclude and is_excluded(record.full_name, exclude):
            log.info("Skipping excluded repository %s", record.full_name)
            continue
        repos.append(upsert_repository(session, org_login, record))
    session.commit()
    return repos


async def scan_repository_commits(session: Session, source: CommitSource, repo: Repository, author: str,
                                  since: datetime, until: datetime, *, concurrency: int = 10) -> int:
    """Ingest one repository's commits and PRs by *author* in ``[since, until)``.

    Returns the number of commits stored for the window (new and existing).
    """
    shas = await source.list_commit_shas(repo.full_name, author, since, until)
    known = set(session.execute(
        select(Commit.sha).where(Commit.repo_id == repo.id, Commit.sha.in_(shas))
    ).scalars().all()) if shas else set()
    missing = [s for s in shas if s not in known]

    sem = asyncio.Semaphore(concurrency)

    async def fetch(sha: str) -> CommitRecord:
        async with sem:
            return await source.get_commit(repo.full_name, sha)

    records = await asyncio.gather(*(fetch(s) for s in missing))
    prs = await source.list_pull_requests(repo.full_name, author, since, until)

    # Writes start only after the last await; concurrent scans share the session.
    records = [r for r in records if since <= r.committed_at < until]
    for record in records:
        store_commit(session, repo, record)
    for pr in prs:
        store_pull_request(session, repo, pr)

    repo.synced_at = utc_now()
    session.commit()
    return len(known) + len(records)


async def scan_with_retries(session: Session, source: CommitSource, repo: Repository, author: str,
                            since: datetime, until: datetime, *, concurrency: int = 10,
                            max_retries: int = 3, retry_delay: float = 2.0) -> int:
    attempt = 1
    while True:
        try:
            return await scan_repository_commits(session, source, repo, author, since, until,
                                                 concurrency=concurrency)
        except GitHubError as exc:
            if not exc.retryable or attempt >= max_retries:
                raise
            log.warning("Scan of %s failed (attempt %d/%d): %s", repo.full_name, attempt, max_retries, exc)
            await asyncio.sleep(retry_delay * attempt)
            attempt += 1
