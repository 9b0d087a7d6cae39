"""The daemon's event loop.

A single task owns every state transition. Each iteration re-checks, in
order: the stop signal, one pending hook message, then the poll deadline.
A burst of hook messages therefore never delays shutdown, and a slow poll
never reorders messages for the same job.
"""

import asyncio
import logging
import shutil
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple

from ..logging_utils import log_event
from .errors import PlebError
from .hooks import install_hooks, is_known_event, resolve_hook_target
from .ipc import HookMessage, HookServer
from .jobs import Job, ResourceHandle, SeenSet, branch_name_for
from .launcher import WorkerLauncher
from .prompts import IssueContext, PromptRenderer
from .provisioner import ResourceProvisioner
from .state import State, is_terminal

if TYPE_CHECKING:
    from ..config import Config
    from ..integrations.github.state_store import StateStore

logger = logging.getLogger("pleb.scheduler")


class Orchestrator:
    def __init__(
        self,
        config: "Config",
        store: "StateStore",
        provisioner: ResourceProvisioner,
        launcher: WorkerLauncher,
        renderer: PromptRenderer,
        *,
        hook_server: Optional[HookServer] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.provisioner = provisioner
        self.launcher = launcher
        self.renderer = renderer
        self.hook_server = hook_server
        self.queue: "asyncio.Queue[HookMessage]" = (
            hook_server.queue if hook_server is not None else asyncio.Queue()
        )
        self.stop_event = asyncio.Event()
        self.seen = SeenSet()
        self.username: Optional[str] = None
        self._held: Optional[HookMessage] = None

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Shutdown requested")
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig)

    async def startup(self) -> None:
        """Everything here is fatal: errors propagate and the daemon exits."""
        await self.store.verify_connection()
        self.username = await self.store.get_authenticated_user()
        logger.info("Authenticated to GitHub as %s", self.username)
        worktrees = self.provisioner.worktree
        await asyncio.to_thread(
            worktrees.ensure_repo, self.config.github_owner, self.config.github_repo
        )
        default_branch = await asyncio.to_thread(worktrees.default_branch)
        logger.info("Default branch: %s", default_branch)
        self.renderer.load(self.config.prompt_new_issue)
        await asyncio.to_thread(self.provisioner.tmux.ensure_session)
        if self.hook_server is not None:
            self.queue = await self.hook_server.start()

    async def shutdown(self) -> None:
        if self.hook_server is not None:
            await self.hook_server.close()
        if self._held is not None:
            logger.debug(
                "Dropping hook %s for job #%s on shutdown",
                self._held.event_name,
                self._held.issue_number,
            )
            self._held = None
        logger.info("Stopped")

    async def run(self) -> None:
        await self.startup()
        log_event(
            logger,
            logging.INFO,
            "pleb.watch.started",
            repo=f"{self.config.github_owner}/{self.config.github_repo}",
            interval=self.config.poll_interval_seconds,
        )
        try:
            await self.run_loop()
        finally:
            await self.shutdown()

    async def run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            if self.stop_event.is_set():
                return
            message = self._next_message()
            if message is not None:
                try:
                    await self.handle_hook_message(message)
                except Exception as exc:
                    log_event(
                        logger,
                        logging.ERROR,
                        "pleb.hook.failed",
                        exc=exc,
                        job=message.issue_number,
                        hook_event=message.event_name,
                    )
                continue
            now = loop.time()
            if now >= deadline:
                try:
                    await self.poll_cycle()
                except Exception as exc:
                    log_event(logger, logging.ERROR, "pleb.poll.failed", exc=exc)
                deadline = loop.time() + self.config.poll_interval_seconds
                continue
            await self._wait(deadline - now)

    def _next_message(self) -> Optional[HookMessage]:
        if self._held is not None:
            message, self._held = self._held, None
            return message
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def _wait(self, timeout: float) -> None:
        stop_task = asyncio.ensure_future(self.stop_event.wait())
        get_task = asyncio.ensure_future(self.queue.get())
        try:
            await asyncio.wait(
                {stop_task, get_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (stop_task, get_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(stop_task, get_task, return_exceptions=True)
        if get_task.done() and not get_task.cancelled():
            self._held = get_task.result()

    async def poll_cycle(self) -> int:
        """Provision every ready or half-provisioned job without a live session.

        Returns how many jobs reached ``working``. A job left in
        ``provisioning`` by a failed attempt or an unclean exit is picked up
        again here, since the provisioner converges on existing resources.
        """
        try:
            jobs = await self.store.list_jobs_with(State.READY)
            jobs += await self.store.list_jobs_with(State.PROVISIONING)
        except Exception as exc:
            log_event(logger, logging.WARNING, "pleb.poll.fetch_failed", exc=exc)
            return 0
        if not jobs:
            self.seen.clear()
            return 0
        self.seen.retain(job.number for job in jobs)
        logger.debug("Found %d pending jobs", len(jobs))

        provisioned = 0
        for job in jobs:
            if self.stop_event.is_set():
                break
            try:
                exists = await asyncio.to_thread(
                    self.provisioner.session_exists, job.number
                )
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "pleb.poll.session_check_failed",
                    exc=exc,
                    job=job.number,
                )
                continue
            if exists:
                if self.seen.mark(job.number):
                    logger.info("Job #%s already has a session, skipping", job.number)
                continue
            try:
                handle = await self.process_job(job)
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "pleb.job.provision_failed",
                    exc=exc,
                    job=job.number,
                )
                continue
            if handle is not None:
                provisioned += 1
        return provisioned

    async def process_job(self, job: Job) -> Optional[ResourceHandle]:
        number = job.number
        current = await self.store.get_state(number)
        if current is State.READY:
            log_event(
                logger, logging.INFO, "pleb.job.provisioning", job=number, title=job.title
            )
            await self.store.replace_label(number, State.READY, State.PROVISIONING)
        elif current is State.PROVISIONING:
            log_event(
                logger, logging.INFO, "pleb.job.resuming", job=number, title=job.title
            )
        else:
            logger.debug(
                "Job #%s is %s, not provisioning",
                number,
                current.value if current else "untracked",
            )
            return None

        try:
            handle = await self._provision_and_launch(job)
        except Exception:
            # Without a window the next poll retries the job.
            await self._release_window(number)
            raise
        await self._rename_window(number, State.WORKING)
        log_event(
            logger,
            logging.INFO,
            "pleb.job.provisioned",
            job=number,
            worktree=handle.worktree_path,
            window=handle.window_name,
        )
        return handle

    async def _provision_and_launch(self, job: Job) -> ResourceHandle:
        number = job.number
        if self.username is None:
            self.username = await self.store.get_authenticated_user()
        name = branch_name_for(job, self.username, self.config.branch_suffix)
        handle = await asyncio.to_thread(self.provisioner.provision, number, name)

        self._copy_config(handle.worktree_path)
        try:
            await asyncio.to_thread(install_hooks, handle.worktree_path)
        except (PlebError, OSError) as exc:
            log_event(
                logger, logging.WARNING, "pleb.job.hooks_failed", exc=exc, job=number
            )
        if self.config.on_provision:
            await asyncio.to_thread(
                self.launcher.run_commands, number, self.config.on_provision
            )

        context = IssueContext.from_job(
            job, handle.branch, handle.worktree_path, self.config.repo_dir
        )
        prompt = self.renderer.render(self.config.prompt_new_issue, context)
        await asyncio.to_thread(
            self.launcher.launch, number, prompt, self.config.daemon_dir
        )
        await self.store.replace_label(number, State.PROVISIONING, State.WORKING)
        return handle

    async def handle_hook_message(
        self, message: HookMessage
    ) -> Optional[Tuple[State, State]]:
        """Apply one hook; failures are logged, never raised."""
        number = message.issue_number
        event = message.event_name
        target = resolve_hook_target(event, message.payload)
        if target is None:
            if is_known_event(event):
                logger.debug("Hook %s for job #%s needs no transition", event, number)
            else:
                log_event(
                    logger,
                    logging.WARNING,
                    "pleb.hook.unknown_event",
                    job=number,
                    hook_event=event,
                )
            return None

        try:
            current = await self.store.get_state(number)
        except Exception as exc:
            log_event(
                logger, logging.WARNING, "pleb.hook.state_failed", exc=exc, job=number
            )
            return None
        if current is None:
            logger.debug("Job #%s is not tracked, ignoring %s", number, event)
            return None
        if is_terminal(current):
            logger.debug("Job #%s is %s, ignoring %s", number, current.value, event)
            return None
        if current == target:
            logger.debug("Job #%s already %s, ignoring %s", number, target.value, event)
            return None

        try:
            await self.store.replace_label(number, current, target)
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pleb.hook.transition_failed",
                exc=exc,
                job=number,
                hook_event=event,
                from_state=current.value,
                to_state=target.value,
            )
            return None
        log_event(
            logger,
            logging.INFO,
            "pleb.hook.transitioned",
            job=number,
            hook_event=event,
            from_state=current.value,
            to_state=target.value,
        )
        await self._rename_window(number, target)
        return current, target

    async def _rename_window(self, job_number: int, state: State) -> None:
        try:
            await asyncio.to_thread(
                self.provisioner.tmux.rename_window, job_number, state.value
            )
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pleb.tmux.rename_failed",
                exc=exc,
                job=job_number,
                state=state.value,
            )

    async def _release_window(self, job_number: int) -> None:
        try:
            await asyncio.to_thread(self.provisioner.tmux.kill_window, job_number)
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pleb.tmux.kill_failed",
                exc=exc,
                job=job_number,
            )

    def _copy_config(self, worktree_path: Path) -> None:
        # Hook processes started inside the worktree find the config here.
        source = self.config.config_path
        if source is None or not source.exists():
            return
        try:
            shutil.copy2(source, worktree_path / source.name)
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "pleb.job.config_copy_failed",
                exc=exc,
                worktree=worktree_path,
            )
