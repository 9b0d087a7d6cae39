from pathlib import Path

import pytest

from pleb.core.errors import FailureKind
from pleb.core.git_utils import GitError, git_default_branch, parse_worktree_porcelain

PORCELAIN = """\
worktree /src/repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /src/worktrees/42-fix-the-bug_octocat_pleb
HEAD 2222222222222222222222222222222222222222
branch refs/heads/42-fix-the-bug_octocat_pleb

worktree /src/worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached
prunable gitdir file points to non-existent location
"""


def test_parse_worktree_porcelain_blocks() -> None:
    entries = parse_worktree_porcelain(PORCELAIN)
    assert [e.path for e in entries] == [
        Path("/src/repo"),
        Path("/src/worktrees/42-fix-the-bug_octocat_pleb"),
        Path("/src/worktrees/detached"),
    ]
    assert entries[0].branch == "main"
    assert entries[1].branch == "42-fix-the-bug_octocat_pleb"
    assert entries[1].head == "2" * 40
    assert entries[2].branch is None
    assert entries[2].detached
    assert entries[2].prunable


def test_parse_worktree_porcelain_empty() -> None:
    assert parse_worktree_porcelain("") == []


def test_git_default_branch(git_repo: Path) -> None:
    assert git_default_branch(git_repo) == "main"


def test_git_default_branch_failure_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(GitError) as excinfo:
        git_default_branch(tmp_path)
    assert excinfo.value.kind is FailureKind.FATAL
