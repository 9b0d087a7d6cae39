import dataclasses
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from .errors import FailureKind, PlebError


class GitError(PlebError):
    def __init__(
        self,
        message: str,
        *,
        kind: Optional[FailureKind] = None,
        returncode: Optional[int] = None,
    ):
        super().__init__(message, kind=kind)
        self.returncode = returncode


GitRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def run_git(
    args: List[str],
    cwd: Path,
    *,
    check: bool = True,
    timeout_seconds: Optional[int] = None,
) -> "subprocess.CompletedProcess[str]":
    cmd = ["git", "-C", str(cwd), *args]
    try:
        proc = subprocess.run(
            cmd,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("Missing binary: git", kind=FailureKind.FATAL) from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"Command timed out: git {' '.join(args)}") from exc
    if check and proc.returncode != 0:
        raise GitError(
            f"Command failed: git {' '.join(args)}: {git_failure_detail(proc)}",
            returncode=proc.returncode,
        )
    return proc


def git_failure_detail(proc: "subprocess.CompletedProcess[str]") -> str:
    return (proc.stderr or proc.stdout or "").strip() or f"exit {proc.returncode}"


@dataclasses.dataclass(frozen=True)
class WorktreeEntry:
    path: Path
    head: Optional[str] = None
    branch: Optional[str] = None
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def parse_worktree_porcelain(output: str) -> List[WorktreeEntry]:
    """Parse ``git worktree list --porcelain`` (blank-line separated blocks)."""
    entries: List[WorktreeEntry] = []
    block: dict[str, str] = {}

    def _flush() -> None:
        path = block.get("worktree")
        if path:
            branch = block.get("branch")
            if branch and branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/") :]
            entries.append(
                WorktreeEntry(
                    path=Path(path),
                    head=block.get("HEAD"),
                    branch=branch,
                    bare="bare" in block,
                    detached="detached" in block,
                    prunable="prunable" in block,
                )
            )
        block.clear()

    for raw in (output or "").splitlines():
        line = raw.strip()
        if not line:
            _flush()
            continue
        key, _, value = line.partition(" ")
        block[key] = value.strip()
    _flush()
    return entries


def git_default_branch(repo_dir: Path, *, runner: GitRunner = run_git) -> str:
    proc = runner(["rev-parse", "--abbrev-ref", "HEAD"], repo_dir, check=False)
    branch = (proc.stdout or "").strip()
    if proc.returncode != 0 or not branch or branch == "HEAD":
        raise GitError(
            f"Failed to determine default branch: {git_failure_detail(proc)}",
            kind=FailureKind.FATAL,
            returncode=proc.returncode,
        )
    return branch
