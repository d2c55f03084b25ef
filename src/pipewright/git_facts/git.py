# git.py
# Thin wrapper around the Git CLI.
# Trigger contexts are filled from here when the caller does not pass an
# explicit branch / sha, so the rest of the code never shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


class GitError(Exception):
    """A git command exited non-zero (not a repo, detached HEAD, ...)."""


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout stripped of whitespace.

    Args:
        args: git arguments, e.g. ["rev-parse", "HEAD"]
        cwd: optional working directory (defaults to the process cwd)

    Raises:
        GitError: git ran but exited non-zero
        FileNotFoundError: git is not installed
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=cwd,
            text=True,
            stderr=subprocess.PIPE,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e

    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path of the repository root, as git reports it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> str:
    """
    Name of the checked-out branch.

    A detached HEAD has no branch; in that case an empty string is
    returned so branch conditions simply evaluate false.
    """
    # `--abbrev-ref HEAD` prints "HEAD" when detached
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return "" if name == "HEAD" else name


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True when the working tree has staged, unstaged or untracked changes."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def repository_name(cwd: Optional[str] = None) -> str:
    """
    Short repository name: last path component of the origin URL, or the
    root directory name when no remote is configured.
    """
    try:
        url = get_remote_url("origin", cwd=cwd)
    except GitError:
        return repo_root(cwd=cwd).name
    return url.rstrip("/").split("/")[-1].replace(".git", "")
