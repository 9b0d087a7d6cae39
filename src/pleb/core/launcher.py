import logging
import shlex
import time
from pathlib import Path
from typing import List, Sequence

from .tmux import TmuxManager

logger = logging.getLogger("pleb.launcher")

PROMPT_FILENAME = "prompt.md"


class WorkerLauncher:
    """Starts the interactive worker in a job's tmux window."""

    def __init__(
        self, tmux: TmuxManager, command: str, args: Sequence[str] = ()
    ) -> None:
        self.tmux = tmux
        self.command = command
        self.args: List[str] = list(args)

    def prompt_path(self, job_number: int, daemon_dir: Path) -> Path:
        return Path(daemon_dir) / str(job_number) / PROMPT_FILENAME

    def build_command(self, prompt_file: Path) -> str:
        # The prompt goes through a file so nothing in it needs shell escaping.
        parts = [shlex.quote(self.command), *(shlex.quote(a) for a in self.args)]
        parts.append(f'"$(cat {shlex.quote(str(prompt_file))})"')
        return " ".join(parts)

    def launch(self, job_number: int, prompt: str, daemon_dir: Path) -> Path:
        prompt_file = self.prompt_path(job_number, daemon_dir)
        prompt_file.parent.mkdir(parents=True, exist_ok=True)
        prompt_file.write_text(prompt, encoding="utf-8")
        command = self.build_command(prompt_file)
        logger.info("Launching worker for job #%s: %s", job_number, command)
        self.tmux.send_keys(job_number, command)
        return prompt_file

    def run_commands(
        self, job_number: int, commands: Sequence[str], *, delay_seconds: float = 0.1
    ) -> None:
        for idx, command in enumerate(commands):
            if idx and delay_seconds > 0:
                time.sleep(delay_seconds)
            logger.info("Running on_provision command for job #%s: %s", job_number, command)
            self.tmux.send_keys(job_number, command)
