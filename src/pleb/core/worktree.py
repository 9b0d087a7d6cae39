import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .errors import FailureKind, PlebError
from .git_utils import (
    GitError,
    GitRunner,
    WorktreeEntry,
    git_default_branch,
    git_failure_detail,
    parse_worktree_porcelain,
    run_git,
)

logger = logging.getLogger("pleb.worktree")


class WorktreeError(PlebError):
    pass


def job_number_from_dirname(name: str) -> Optional[int]:
    head, sep, _ = name.partition("-")
    if not sep or not head.isdigit():
        return None
    return int(head)


class WorktreeManager:
    """Per-job git worktrees under ``worktree_base``, one branch each.

    Nothing is recorded locally: git's worktree registry and the filesystem are
    inspected on every call, so an interrupted run is repaired on the next one.
    """

    def __init__(
        self,
        repo_dir: Path,
        worktree_base: Path,
        *,
        runner: GitRunner = run_git,
    ) -> None:
        # git reports absolute, symlink-free paths.
        self.repo_dir = Path(repo_dir).expanduser().resolve()
        self.worktree_base = Path(worktree_base).expanduser().resolve()
        self._run = runner

    def list_entries(self) -> List[WorktreeEntry]:
        proc = self._run(["worktree", "list", "--porcelain"], self.repo_dir, check=False)
        if proc.returncode != 0:
            raise WorktreeError(
                f"Failed to list worktrees: {git_failure_detail(proc)}"
            )
        return parse_worktree_porcelain(proc.stdout or "")

    def registered_worktrees(self) -> Dict[int, WorktreeEntry]:
        found: Dict[int, WorktreeEntry] = {}
        for entry in self.list_entries():
            path = entry.path
            if path.parent != self.worktree_base:
                continue
            number = job_number_from_dirname(path.name)
            if number is not None and number not in found:
                found[number] = entry
        return found

    def list_worktrees(self) -> List[int]:
        numbers = sorted(self.registered_worktrees())
        logger.debug("Found %d job worktrees: %s", len(numbers), numbers)
        return numbers

    def is_worktree_registered(self, job_number: int) -> bool:
        return job_number in self.registered_worktrees()

    def default_branch(self) -> str:
        return git_default_branch(self.repo_dir, runner=self._run)

    def create_worktree(
        self, job_number: int, branch: str, worktree_name: str
    ) -> WorktreeEntry:
        worktree_path = self.worktree_base / worktree_name
        registered = self.registered_worktrees().get(job_number)

        if registered is not None and registered.path.exists():
            logger.debug(
                "Worktree for job #%s already exists at %s",
                job_number,
                registered.path,
            )
            return registered
        if registered is not None:
            logger.info(
                "Cleaning up stale worktree registration for job #%s (%s)",
                job_number,
                registered.path,
            )
            self._force_deregister(registered.path)
        elif worktree_path.exists():
            logger.info(
                "Removing orphaned worktree directory for job #%s: %s",
                job_number,
                worktree_path,
            )
            try:
                shutil.rmtree(worktree_path)
            except OSError as exc:
                raise WorktreeError(
                    f"Failed to remove orphaned worktree directory {worktree_path}: {exc}"
                ) from exc

        if self.branch_exists(branch):
            logger.debug("Reusing existing branch '%s'", branch)
        else:
            default_branch = self.default_branch()
            proc = self._run(
                ["branch", branch, default_branch], self.repo_dir, check=False
            )
            if proc.returncode != 0:
                raise WorktreeError(
                    f"Failed to create branch '{branch}' from '{default_branch}': "
                    f"{git_failure_detail(proc)}"
                )

        try:
            self.worktree_base.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorktreeError(
                f"Failed to create worktree base directory {self.worktree_base}: {exc}"
            ) from exc

        proc = self._run(
            ["worktree", "add", str(worktree_path), branch], self.repo_dir, check=False
        )
        if proc.returncode != 0:
            raise WorktreeError(
                f"Failed to create worktree for job #{job_number}: {git_failure_detail(proc)}"
            )
        logger.info("Created worktree for job #%s at %s", job_number, worktree_path)
        return WorktreeEntry(path=worktree_path, branch=branch)

    def branch_exists(self, branch: str) -> bool:
        proc = self._run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            self.repo_dir,
            check=False,
        )
        return proc.returncode == 0

    def _force_deregister(self, path: Path) -> None:
        # Both steps tolerate failure; prune covers the case remove cannot.
        for args in (["worktree", "remove", "--force", str(path)], ["worktree", "prune"]):
            try:
                proc = self._run(args, self.repo_dir, check=False)
            except GitError as exc:
                logger.warning("git %s failed: %s", " ".join(args[:2]), exc)
                continue
            if proc.returncode != 0:
                logger.debug(
                    "git %s failed: %s", " ".join(args[:2]), git_failure_detail(proc)
                )

    def get_worktree_path(self, job_number: int) -> Optional[Path]:
        prefix = f"{job_number}-"
        try:
            children = sorted(self.worktree_base.iterdir())
        except OSError:
            return None
        for child in children:
            if child.name.startswith(prefix) and child.is_dir():
                return child
        return None

    def remove_worktree(self, job_number: int) -> None:
        registered = self.registered_worktrees().get(job_number)
        worktree_path = registered.path if registered else self.get_worktree_path(job_number)
        if worktree_path is None:
            logger.debug("Worktree for job #%s doesn't exist", job_number)
            return
        branch = (registered.branch if registered else None) or worktree_path.name

        if registered is not None:
            proc = self._run(
                ["worktree", "remove", "--force", str(worktree_path)],
                self.repo_dir,
                check=False,
            )
            if proc.returncode != 0:
                raise WorktreeError(
                    f"Failed to remove worktree for job #{job_number}: "
                    f"{git_failure_detail(proc)}"
                )
        else:
            # Directory git does not know about.
            shutil.rmtree(worktree_path, ignore_errors=True)
        logger.info("Removed worktree for job #%s at %s", job_number, worktree_path)

        proc = self._run(["branch", "-D", branch], self.repo_dir, check=False)
        if proc.returncode != 0:
            logger.warning(
                "Failed to delete branch '%s' (may have been already deleted): %s",
                branch,
                git_failure_detail(proc),
            )
        else:
            logger.debug("Deleted branch '%s'", branch)

    def ensure_repo(self, owner: str, repo: str) -> None:
        if (self.repo_dir / ".git").exists():
            logger.debug("Repository already exists at %s", self.repo_dir)
            return
        logger.info("Cloning repository %s/%s to %s", owner, repo, self.repo_dir)
        try:
            self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorktreeError(
                f"Failed to create parent directory for repo: {exc}",
                kind=FailureKind.FATAL,
            ) from exc
        clone_url = f"git@github.com:{owner}/{repo}.git"
        proc = self._run(
            ["clone", clone_url, str(self.repo_dir)], self.repo_dir.parent, check=False
        )
        if proc.returncode != 0:
            raise WorktreeError(
                f"Failed to clone repository {owner}/{repo}: {git_failure_detail(proc)}",
                kind=FailureKind.FATAL,
            )
        logger.info("Cloned repository %s/%s to %s", owner, repo, self.repo_dir)
