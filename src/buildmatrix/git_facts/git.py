# git.py
# Small, focused wrapper around the Git CLI.
# Checkout and run metadata go through here so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing cwd."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD; recorded on the source snapshot for provenance."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.

    Used as the branch in notifications when BRANCH_NAME is not set.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        # detached HEAD (typical on CI checkouts)
        return head_sha(cwd=cwd)
    return ref


def archive(ref: str, output: str | Path, cwd: Optional[str | Path] = None) -> Path:
    """
    Write the tree at `ref` to a .tar.gz file.

    Only tracked content ends up in the archive: no .git directory and no
    untracked build leftovers, which is what every job should start from.
    """
    out = Path(output)
    out.parent.mkdir(parents=True, exist_ok=True)
    _git(["archive", "--format=tar.gz", "-o", str(out), ref], cwd=cwd)
    return out
