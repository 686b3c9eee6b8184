"""Prepare bounded diff excerpts for stage-1 review prompts."""
from __future__ import annotations

import math
import re
from typing import Iterable

from retro.models import Commit

TRUNCATED = "... (truncated)"
CHARS_PER_TOKEN = 4

_FILE_SPLIT_RE = re.compile(r"(?m)^(?=diff --git |--- a/)")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def summarize_diff(diff: str, max_lines: int = 80, max_chars_per_file: int = 1500) -> str:
    """Truncate each file section of a unified diff.

    Sections are split on ``diff --git`` or ``--- a/`` headers; each keeps at
    most ``max_lines`` lines and ``max_chars_per_file`` characters.
    """
    if not diff or not diff.strip():
        return ""
    sections = [s for s in _FILE_SPLIT_RE.split(diff) if s.strip()]
    out = []
    for section in sections:
        lines = section.rstrip("\n").split("\n")
        truncated = len(lines) > max_lines
        text = "\n".join(lines[:max_lines])
        if len(text) > max_chars_per_file:
            text = text[:max_chars_per_file]
            truncated = True
        if truncated:
            text = f"{text}\n{TRUNCATED}"
        out.append(text)
    return "\n".join(out)


def commit_diff(commit: Commit, max_files: int | None = None) -> str:
    """Render a commit's stored per-file patches as a unified diff."""
    files = [f for f in commit.files if f.patch]
    files.sort(key=lambda f: -(f.additions + f.deletions))
    if max_files is not None:
        files = files[:max_files]
    parts = [f"--- a/{f.path}\n+++ b/{f.path}\n{f.patch}" for f in files]
    return "\n".join(parts)


def build_unit_diff(commits: Iterable[Commit], max_commits: int = 3, max_tokens: int = 4000,
                    max_lines: int = 80, max_chars_per_file: int = 1500) -> str:
    """Diff excerpt for a work unit, taken from its largest commits.

    Returns ``""`` when none of the commits carry patch text.
    """
    largest = sorted(commits, key=lambda c: (-(c.additions + c.deletions), c.sha))[:max_commits]
    budget = max_tokens * CHARS_PER_TOKEN
    blocks: list[str] = []
    used = 0
    for commit in largest:
        diff = summarize_diff(commit_diff(commit), max_lines, max_chars_per_file)
        if not diff:
            continue
        subject = (commit.message or "").strip().split("\n")[0]
        block = f"### {commit.sha[:7]} {subject}\n{diff}"
        if used + len(block) > budget:
            remaining = budget - used
            if remaining > 200:
                blocks.append(f"{block[:remaining]}\n{TRUNCATED}")
            break
        blocks.append(block)
        used += len(block)
    return "\n\n".join(blocks)
