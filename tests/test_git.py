import shutil

import pytest

from fakes import COMMIT, OTHER_COMMIT, FakeRunner, add_git
from image_provenance.foundation.commands import run_command
from image_provenance.framework.git import (
    DirtyWorktreeError,
    GitError,
    RevisionMismatchError,
    ensure_clean,
    resolve_revision,
)


def test_resolve_revision_reads_head_branch_and_metadata():
    runner = add_git(FakeRunner(), branch="feature/login")

    revision = resolve_revision("/src", runner=runner)

    assert revision.commit == COMMIT
    assert revision.short == COMMIT[:12]
    assert revision.branch == "feature/login"
    assert revision.dirty is False
    assert revision.describe == f"v1.0-3-g{COMMIT[:7]}"
    assert revision.committed_at == "2026-10-01T12:00:00+00:00"
    assert all(call[:3] == ["git", "-C", "/src"] for call in runner.calls)


def test_detached_head_has_no_branch():
    runner = add_git(FakeRunner(), branch="HEAD")
    revision = resolve_revision("/src", runner=runner)
    assert revision.branch is None
    assert revision.detached


def test_requested_ref_must_match_checkout():
    runner = add_git(FakeRunner(), refs={"v1.0": OTHER_COMMIT})

    with pytest.raises(RevisionMismatchError, match="check out the revision"):
        resolve_revision("/src", ref="v1.0", runner=runner)


def test_requested_ref_matching_head_is_accepted():
    runner = add_git(FakeRunner(), refs={"v1.0": COMMIT})
    assert resolve_revision("/src", ref="v1.0", runner=runner).commit == COMMIT


def test_describe_failure_is_tolerated():
    runner = FakeRunner().on("describe", fail=True)
    add_git(runner)
    assert resolve_revision("/src", runner=runner).describe is None


def test_not_a_repository_raises_git_error():
    runner = FakeRunner().on("rev-parse", fail=True)
    with pytest.raises(GitError, match="rev-parse"):
        resolve_revision("/src", runner=runner)


def test_garbage_commit_output_is_rejected():
    runner = FakeRunner().on("rev-parse", "--verify", stdout="not-a-sha\n")
    with pytest.raises(GitError, match="Unexpected output"):
        resolve_revision("/src", runner=runner)


def test_dirty_worktree_refused_unless_allowed():
    revision = resolve_revision("/src", runner=add_git(FakeRunner(), dirty=True))
    assert revision.dirty

    with pytest.raises(DirtyWorktreeError, match="uncommitted changes"):
        ensure_clean(revision, allow_dirty=False)
    ensure_clean(revision, allow_dirty=True)


def test_untracked_files_mark_the_worktree_dirty():
    runner = FakeRunner().on("status", stdout="?? injected.py\n")
    add_git(runner)

    revision = resolve_revision("/src", runner=runner)

    assert revision.dirty is True
    assert "--untracked-files=normal" in runner.calls_with("status")[0]
    with pytest.raises(DirtyWorktreeError):
        ensure_clean(revision, allow_dirty=False)


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_untracked_file_in_real_repository_is_dirty(tmp_path):
    repo = str(tmp_path)

    def git(*args):
        return run_command(["git", "-C", repo, "-c", "user.name=t", "-c", "user.email=t@example.com", "-c", "commit.gpgsign=false", *args])

    git("init", "-q")
    (tmp_path / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (tmp_path / ".gitignore").write_text("*.log\n", encoding="utf-8")
    git("add", "app.py", ".gitignore")
    git("commit", "-q", "-m", "init")

    (tmp_path / "debug.log").write_text("ignored\n", encoding="utf-8")
    assert resolve_revision(repo).dirty is False

    (tmp_path / "injected.py").write_text("print('extra')\n", encoding="utf-8")
    assert resolve_revision(repo).dirty is True
