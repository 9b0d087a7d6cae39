import dataclasses
import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import FailureKind, PlebError

logger = logging.getLogger("pleb.tmux")

TmuxRunner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


class TmuxError(PlebError):
    pass


def run_tmux(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    try:
        return subprocess.run(
            ["tmux", *args],
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise TmuxError("Missing binary: tmux", kind=FailureKind.FATAL) from exc


def _detail(proc: "subprocess.CompletedProcess[str]") -> str:
    return (proc.stderr or proc.stdout or "").strip() or f"exit {proc.returncode}"


def window_name_for(job_number: int, state: Optional[str] = None) -> str:
    base = f"issue-{job_number}"
    return f"{base}-{state}" if state else base


def job_number_from_window(name: str) -> Optional[int]:
    if not name.startswith("issue-"):
        return None
    digits = name[len("issue-") :].split("-", 1)[0]
    return int(digits) if digits.isdigit() else None


@dataclasses.dataclass(frozen=True)
class TmuxWindow:
    index: int
    name: str

    @property
    def job_number(self) -> Optional[int]:
        return job_number_from_window(self.name)


class TmuxManager:
    """One tmux session holding one window per job (``issue-N[-state]``)."""

    def __init__(
        self,
        session_name: str,
        *,
        env: Optional[Dict[str, str]] = None,
        runner: TmuxRunner = run_tmux,
    ) -> None:
        self.session_name = session_name
        self._env: Dict[str, str] = dict(env or {})
        self._run = runner

    def with_env(self, name: str, value: str) -> "TmuxManager":
        self._env[name] = value
        return self

    def session_exists(self) -> bool:
        return self._run(["has-session", "-t", self.session_name]).returncode == 0

    def ensure_session(self) -> None:
        if not self.session_exists():
            logger.info("Creating tmux session: %s", self.session_name)
            proc = self._run(["new-session", "-d", "-s", self.session_name])
            if proc.returncode != 0 and not self.session_exists():
                raise TmuxError(
                    f"Failed to create tmux session {self.session_name}: {_detail(proc)}"
                )
        # Re-applied every time: an existing session keeps stale values otherwise.
        for name, value in self._env.items():
            logger.debug("Setting tmux environment variable: %s", name)
            proc = self._run(
                ["set-environment", "-t", self.session_name, name, value]
            )
            if proc.returncode != 0:
                raise TmuxError(
                    f"Failed to set tmux environment variable {name}: {_detail(proc)}"
                )

    def list_windows(self) -> List[TmuxWindow]:
        proc = self._run(
            [
                "list-windows",
                "-t",
                self.session_name,
                "-F",
                "#{window_index}\t#{window_name}",
            ]
        )
        if proc.returncode != 0:
            # Session not created yet.
            return []
        windows: List[TmuxWindow] = []
        for line in (proc.stdout or "").splitlines():
            index, sep, name = line.partition("\t")
            if not sep or not index.strip().isdigit():
                continue
            windows.append(TmuxWindow(index=int(index), name=name.strip()))
        return windows

    def list_job_windows(self) -> List[int]:
        numbers: List[int] = []
        for window in self.list_windows():
            number = window.job_number
            if number is not None and number not in numbers:
                numbers.append(number)
        return numbers

    def find_window(self, job_number: int) -> Optional[TmuxWindow]:
        for window in self.list_windows():
            if window.job_number == job_number:
                return window
        return None

    def window_exists(self, job_number: int) -> bool:
        return self.find_window(job_number) is not None

    def next_free_index(self) -> int:
        used = {window.index for window in self.list_windows()}
        index = 0
        while index in used:
            index += 1
        return index

    def create_window(self, job_number: int, working_dir: Path) -> TmuxWindow:
        self.ensure_session()
        existing = self.find_window(job_number)
        if existing is not None:
            logger.info("Window %s already exists", existing.name)
            return existing

        name = window_name_for(job_number)
        index = self.next_free_index()
        logger.info(
            "Creating tmux window %s at index %s in session %s",
            name,
            index,
            self.session_name,
        )
        proc = self._run(
            [
                "new-window",
                "-d",
                "-t",
                f"{self.session_name}:{index}",
                "-n",
                name,
                "-c",
                str(working_dir),
            ]
        )
        created = self.find_window(job_number)
        if created is not None:
            return created
        if proc.returncode != 0:
            # Slot taken by a concurrently created window: retry at a fresh slot.
            retry = self._run(
                [
                    "new-window",
                    "-d",
                    "-t",
                    f"{self.session_name}:{self.next_free_index()}",
                    "-n",
                    name,
                    "-c",
                    str(working_dir),
                ]
            )
            created = self.find_window(job_number)
            if created is not None:
                return created
            raise TmuxError(
                f"Failed to create tmux window {name}: {_detail(retry)}"
            )
        raise TmuxError(f"tmux window {name} missing after creation")

    def _target(self, job_number: int) -> str:
        window = self.find_window(job_number)
        if window is None:
            raise TmuxError(f"No tmux window for job #{job_number}")
        return f"{self.session_name}:{window.index}"

    def send_keys(self, job_number: int, keys: str) -> None:
        target = self._target(job_number)
        logger.debug("Sending keys to %s: %s", target, keys)
        proc = self._run(["send-keys", "-t", target, "-l", keys])
        if proc.returncode == 0:
            proc = self._run(["send-keys", "-t", target, "Enter"])
        if proc.returncode != 0:
            raise TmuxError(f"Failed to send keys to {target}: {_detail(proc)}")

    def select_pane(self, job_number: int) -> None:
        target = self._target(job_number)
        proc = self._run(["select-pane", "-t", target])
        if proc.returncode != 0:
            raise TmuxError(f"Failed to select pane {target}: {_detail(proc)}")

    def rename_window(self, job_number: int, state: str) -> None:
        target = self._target(job_number)
        new_name = window_name_for(job_number, state)
        logger.debug("Renaming window %s to %s", target, new_name)
        proc = self._run(["rename-window", "-t", target, new_name])
        if proc.returncode != 0:
            raise TmuxError(f"Failed to rename window to {new_name}: {_detail(proc)}")

    def kill_window(self, job_number: int) -> None:
        window = self.find_window(job_number)
        if window is None:
            logger.debug("No tmux window to kill for job #%s", job_number)
            return
        target = f"{self.session_name}:{window.index}"
        logger.info("Killing tmux window: %s", target)
        proc = self._run(["kill-window", "-t", target])
        if proc.returncode != 0:
            logger.warning("Window %s may already be gone: %s", target, _detail(proc))

    def attach_command(self) -> List[str]:
        return ["tmux", "attach", "-t", self.session_name]
