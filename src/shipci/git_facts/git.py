# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Mapping, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    A non-zero exit raises subprocess.CalledProcessError; a missing git binary
    raises FileNotFoundError. Callers decide how to report either.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Full SHA of the current HEAD commit.

    Artifacts are tagged from this (sha-<first 7>), so it must be the full,
    resolved hash rather than a symbolic ref.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref of the checked-out branch (refs/heads/<name>).

    A detached HEAD has no branch; the commit SHA is returned instead.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(name: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


_SLUG_RE = re.compile(r"[:/](?P<slug>[^/:]+/[^/]+?)(?:\.git)?/?$")


def repository_slug(url: str) -> str:
    """
    owner/name from a remote URL.

    git@github.com:acme/image-processor.git -> acme/image-processor
    https://github.com/acme/image-processor -> acme/image-processor
    """
    m = _SLUG_RE.search(url)
    if not m:
        return url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
    return m.group("slug")


def context_from_git(
    event: str = "push",
    *,
    ref: Optional[str] = None,
    sha: Optional[str] = None,
    inputs: Optional[Mapping[str, str]] = None,
    base_branch: Optional[str] = None,
    repository: Optional[str] = None,
    cwd: Optional[str] = None,
):
    """Build a RunContext from the local checkout, filling in what the caller left out."""
    from ..context import RunContext

    if repository is None:
        try:
            repository = repository_slug(remote_url(cwd=cwd))
        except (subprocess.CalledProcessError, FileNotFoundError):
            repository = repo_root(cwd=cwd).name if cwd else Path(".").resolve().name

    return RunContext.create(
        event,
        ref or current_ref(cwd=cwd),
        sha or head_sha(cwd=cwd),
        inputs=inputs,
        base_branch=base_branch,
        repository=repository,
    )
