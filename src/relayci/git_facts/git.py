# git.py
# Small, focused wrapper around the Git CLI for the local `relayci run`
# command: deriving the triggering event (ref, sha, changed files) from
# the repository the user is standing in.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD sha when detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return branch


def remote_url(name: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit SHA of the merge-base between HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files (relative to the repo root) changed between two refs."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd=cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def changed_since(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Changed files for local change filtering: working-tree changes when the
    tree is dirty, otherwise HEAD against its merge-base with `compare_ref`
    (falling back to HEAD~1).
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)
    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # no remote configured
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        # first commit: everything tracked counts as changed
        tracked = _git(["ls-files"], cwd=cwd)
        return tracked.splitlines() if tracked else []
