import logging
from typing import Optional

from .jobs import ResourceHandle
from .tmux import TmuxManager
from .worktree import WorktreeManager

logger = logging.getLogger("pleb.provisioner")


class ResourceProvisioner:
    """Ensures each job has exactly one worktree and one tmux window.

    Every call reconciles against git and tmux directly, so calling it again
    after a crash (or for an already provisioned job) converges on the same
    handle without creating anything twice.
    """

    def __init__(self, worktree: WorktreeManager, tmux: TmuxManager) -> None:
        self.worktree = worktree
        self.tmux = tmux

    def provision(self, job_number: int, name: str) -> ResourceHandle:
        entry = self.worktree.create_worktree(job_number, name, name)
        window = self.tmux.create_window(job_number, entry.path)
        handle = ResourceHandle(
            job_number=job_number,
            worktree_path=entry.path,
            branch=entry.branch or name,
            window_name=window.name,
            window_index=window.index,
        )
        logger.debug(
            "Provisioned job #%s: worktree=%s window=%s:%s",
            job_number,
            handle.worktree_path,
            self.tmux.session_name,
            handle.window_index,
        )
        return handle

    def session_exists(self, job_number: int) -> bool:
        return self.tmux.window_exists(job_number)

    def handle_for(self, job_number: int) -> Optional[ResourceHandle]:
        entry = self.worktree.registered_worktrees().get(job_number)
        if entry is None or not entry.path.exists():
            return None
        window = self.tmux.find_window(job_number)
        if window is None:
            return None
        return ResourceHandle(
            job_number=job_number,
            worktree_path=entry.path,
            branch=entry.branch or entry.path.name,
            window_name=window.name,
            window_index=window.index,
        )

    def release(self, job_number: int) -> None:
        self.tmux.kill_window(job_number)
        self.worktree.remove_worktree(job_number)
