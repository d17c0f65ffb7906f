# vcs.py
# Read-only commit facts from the Git CLI. Version control is an external
# collaborator: every fact here is optional and None when git can't tell.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run git and return stripped stdout. Raises CalledProcessError on failure."""
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _try_git(args: list[str], cwd: str | Path | None = None) -> Optional[str]:
    try:
        return _git(args, cwd) or None
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def head_sha(cwd: str | Path | None = None) -> Optional[str]:
    """Full SHA of HEAD, or None outside a repository."""
    return _try_git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: str | Path | None = None) -> Optional[str]:
    """Current branch name; None on a detached HEAD or outside a repository."""
    ref = _try_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if ref == "HEAD":
        return None
    return ref
