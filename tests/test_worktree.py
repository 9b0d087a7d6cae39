import shutil
import subprocess
from pathlib import Path

import pytest

from pleb.core.git_utils import run_git
from pleb.core.worktree import WorktreeError, WorktreeManager, job_number_from_dirname

NAME = "42-fix-the-bug_octocat_pleb"


class RecordingGit:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, args, cwd, **kwargs):
        self.calls.append(list(args))
        return run_git(args, cwd, **kwargs)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if tuple(call[: len(prefix)]) == prefix)


def _branches(repo: Path) -> list:
    out = subprocess.run(
        ["git", "-C", str(repo), "branch", "--format=%(refname:short)"],
        check=True,
        capture_output=True,
        text=True,
    ).stdout
    return sorted(line.strip() for line in out.splitlines() if line.strip())


@pytest.fixture()
def manager(git_repo: Path, tmp_path: Path):
    git = RecordingGit()
    return WorktreeManager(git_repo, tmp_path / "worktrees", runner=git), git


def test_job_number_from_dirname() -> None:
    assert job_number_from_dirname(NAME) == 42
    assert job_number_from_dirname("main") is None
    assert job_number_from_dirname("issue-42") is None


def test_fresh_creation_registers_worktree_on_new_branch(manager) -> None:
    mgr, _ = manager
    entry = mgr.create_worktree(42, NAME, NAME)
    assert entry.path == mgr.worktree_base / NAME
    assert (entry.path / "README.md").exists()
    assert mgr.list_worktrees() == [42]
    assert mgr.registered_worktrees()[42].branch == NAME
    assert NAME in _branches(mgr.repo_dir)


def test_second_call_is_a_fast_path(manager) -> None:
    mgr, git = manager
    first = mgr.create_worktree(42, NAME, NAME)
    before = (git.count("branch"), git.count("worktree", "add"))
    second = mgr.create_worktree(42, NAME, NAME)
    assert second.path == first.path
    assert (git.count("branch"), git.count("worktree", "add")) == before


def test_registered_but_missing_path_is_recreated(manager) -> None:
    mgr, _ = manager
    entry = mgr.create_worktree(42, NAME, NAME)
    shutil.rmtree(entry.path)
    assert mgr.is_worktree_registered(42)

    recreated = mgr.create_worktree(42, NAME, NAME)
    assert recreated.path.exists()
    assert mgr.list_worktrees() == [42]


def test_orphaned_directory_is_replaced(manager) -> None:
    mgr, _ = manager
    orphan = mgr.worktree_base / NAME
    orphan.mkdir(parents=True)
    (orphan / "leftover.txt").write_text("partial", encoding="utf-8")

    entry = mgr.create_worktree(42, NAME, NAME)
    assert entry.path == orphan
    assert not (orphan / "leftover.txt").exists()
    assert (orphan / "README.md").exists()
    assert mgr.is_worktree_registered(42)


def test_existing_branch_is_reused(manager) -> None:
    mgr, git = manager
    run_git(["branch", NAME, "main"], mgr.repo_dir)
    assert mgr.branch_exists(NAME)
    assert not mgr.branch_exists("43-other")
    entry = mgr.create_worktree(42, NAME, NAME)
    assert entry.path.exists()
    assert _branches(mgr.repo_dir).count(NAME) == 1
    assert git.count("branch") == 0


def test_worktree_add_failure_raises_transient_error(manager) -> None:
    mgr, _ = manager
    mgr.create_worktree(42, NAME, NAME)
    # Same branch cannot be checked out in a second worktree.
    with pytest.raises(WorktreeError) as excinfo:
        mgr.create_worktree(43, NAME, "43-other")
    assert excinfo.value.retryable


def test_remove_worktree_deletes_directory_and_branch(manager) -> None:
    mgr, _ = manager
    entry = mgr.create_worktree(42, NAME, NAME)
    mgr.remove_worktree(42)
    assert not entry.path.exists()
    assert mgr.list_worktrees() == []
    assert NAME not in _branches(mgr.repo_dir)
    # Removing again is a no-op.
    mgr.remove_worktree(42)


def test_get_worktree_path(manager) -> None:
    mgr, _ = manager
    assert mgr.get_worktree_path(42) is None
    entry = mgr.create_worktree(42, NAME, NAME)
    assert mgr.get_worktree_path(42) == entry.path
    assert mgr.get_worktree_path(4) is None


def test_ensure_repo_skips_existing_clone(manager) -> None:
    mgr, git = manager
    mgr.ensure_repo("acme", "widgets")
    assert git.count("clone") == 0


def test_remove_unregistered_directory(manager) -> None:
    mgr, git = manager
    orphan = mgr.worktree_base / NAME
    orphan.mkdir(parents=True)
    (orphan / "leftover.txt").write_text("partial", encoding="utf-8")

    mgr.remove_worktree(42)
    assert not orphan.exists()
    assert git.count("worktree", "remove") == 0


def test_remove_worktree_failure_raises(manager) -> None:
    mgr, _ = manager
    mgr.create_worktree(42, NAME, NAME)

    def _failing(args, cwd, **kwargs):
        if args[:2] == ["worktree", "remove"]:
            return subprocess.CompletedProcess(args, 128, stdout="", stderr="locked")
        return run_git(args, cwd, **kwargs)

    broken = WorktreeManager(mgr.repo_dir, mgr.worktree_base, runner=_failing)
    with pytest.raises(WorktreeError):
        broken.remove_worktree(42)
