"""Resolve the source revision a build is made from.

The revision recorded for a build is always the commit checked out in the
working tree. Callers may name a ref (``--revision``) but only to assert which
commit they expect; a mismatch with HEAD is an error, never a relabel.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from image_provenance.foundation.commands import CommandError, Runner, run_command

COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
SHORT_LEN = 12

_log = logging.getLogger(__name__)


class GitError(CommandError):
    """Raised when a git command fails."""


class RevisionMismatchError(RuntimeError):
    """Raised when a revision label would differ from the checked-out commit."""


class DirtyWorktreeError(RuntimeError):
    """Raised when building from a worktree with uncommitted changes."""


@dataclass(frozen=True)
class SourceRevision:
    commit: str
    branch: str | None
    dirty: bool
    describe: str | None = None
    committed_at: str | None = None

    @property
    def short(self) -> str:
        return self.commit[:SHORT_LEN]

    @property
    def detached(self) -> bool:
        return self.branch is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit": self.commit,
            "short": self.short,
            "branch": self.branch,
            "dirty": self.dirty,
            "describe": self.describe,
            "committed_at": self.committed_at,
        }


def _git(runner: Runner, repo_dir: str, *args: str) -> str:
    try:
        result = runner(["git", "-C", repo_dir, *args])
    except CommandError as exc:
        raise GitError(
            f"git {' '.join(args)} failed in {repo_dir}: {exc}",
            cmd=exc.cmd,
            returncode=exc.returncode,
            stdout=exc.stdout,
            stderr=exc.stderr,
        ) from exc
    return result.stdout.strip()


def _parse_commit(raw: str, *, what: str) -> str:
    commit = raw.strip().lower()
    if not COMMIT_RE.match(commit):
        raise GitError(f"Unexpected output resolving {what}: {raw!r}")
    return commit


def resolve_revision(
    repo_dir: str,
    *,
    ref: str | None = None,
    runner: Runner = run_command,
    logger: logging.Logger | None = None,
) -> SourceRevision:
    log = logger or _log

    head = _parse_commit(_git(runner, repo_dir, "rev-parse", "--verify", "HEAD^{commit}"), what="HEAD")

    if ref is not None and ref.strip():
        requested = _parse_commit(
            _git(runner, repo_dir, "rev-parse", "--verify", f"{ref.strip()}^{{commit}}"),
            what=ref,
        )
        if requested != head:
            raise RevisionMismatchError(
                f"Requested revision {ref!r} resolves to {requested} but the checked-out commit is {head}; "
                "check out the revision before building"
            )

    branch_raw = _git(runner, repo_dir, "rev-parse", "--abbrev-ref", "HEAD")
    branch = None if branch_raw in ("", "HEAD") else branch_raw

    # Untracked files end up in the build context too; ignored ones are excluded.
    status = _git(runner, repo_dir, "status", "--porcelain", "--untracked-files=normal")
    dirty = bool(status.strip())

    try:
        describe = _git(runner, repo_dir, "describe", "--tags", "--always", "--dirty") or None
    except GitError:
        describe = None

    committed_at = _git(runner, repo_dir, "show", "-s", "--format=%cI", head) or None

    revision = SourceRevision(
        commit=head,
        branch=branch,
        dirty=dirty,
        describe=describe,
        committed_at=committed_at,
    )
    log.info(
        "Resolved revision %s (branch=%s dirty=%s)",
        revision.commit,
        revision.branch or "<detached>",
        revision.dirty,
    )
    return revision


def ensure_clean(revision: SourceRevision, *, allow_dirty: bool) -> None:
    if revision.dirty and not allow_dirty:
        raise DirtyWorktreeError(
            f"Working tree at {revision.short} has uncommitted changes; commit them or set build.allow_dirty=true"
        )
