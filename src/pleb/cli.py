import asyncio
import collections
import json
import os
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import (
    CONFIG_FILENAME,
    EXAMPLE_CONFIG,
    Config,
    ConfigError,
    load_config,
)
from .core.errors import PlebError
from .core.hooks import generate_hooks_settings, install_hooks
from .core.ipc import HookServer, run_hook_command
from .core.launcher import WorkerLauncher
from .core.prompts import DEFAULT_NEW_ISSUE_PROMPT, PromptRenderer
from .core.provisioner import ResourceProvisioner
from .core.scheduler import Orchestrator
from .core.state import parse_state
from .core.tmux import TmuxManager, window_name_for
from .core.worktree import WorktreeManager
from .integrations.github.client import GitHubClient
from .integrations.github.state_store import LabelStateStore
from .logging_utils import configure_logging

app = typer.Typer(add_completion=False, help="Issue-driven worker orchestrator.")
hooks_app = typer.Typer(add_completion=False, help="Manage worker hooks.")
config_app = typer.Typer(add_completion=False, help="Manage configuration.")
app.add_typer(hooks_app, name="hooks")
app.add_typer(config_app, name="config")

T = TypeVar("T")


def _require_config() -> Config:
    try:
        return load_config(Path.cwd())
    except ConfigError as exc:
        raise typer.Exit(str(exc))


def _require_runtime_config() -> Config:
    config = _require_config()
    try:
        config.validate_runtime()
    except ConfigError as exc:
        raise typer.Exit(str(exc))
    return config


def _github_client(config: Config) -> GitHubClient:
    return GitHubClient(
        config.github_owner,
        config.github_repo,
        config.github_token() or "",
        api_url=config.github_api_url,
    )


def _tmux_manager(config: Config) -> TmuxManager:
    tmux = TmuxManager(config.tmux_session_name)
    token = config.github_token()
    if token:
        # Workers inside the session use the same token (gh, git push).
        tmux.with_env(config.github_token_env, token)
    return tmux


def _with_store(
    config: Config, fn: Callable[[LabelStateStore], Awaitable[T]]
) -> T:
    async def _run() -> T:
        client = _github_client(config)
        try:
            return await fn(LabelStateStore(client, config.labels))
        finally:
            await client.close()

    try:
        return asyncio.run(_run())
    except PlebError as exc:
        raise typer.Exit(str(exc))


def _read_pid(pid_file: Path) -> Optional[int]:
    try:
        text = pid_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text.isdigit():
        raise typer.Exit(f"Invalid PID in file {pid_file}: {text!r}")
    return int(text)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def build_orchestrator(config: Config) -> Orchestrator:
    tmux = _tmux_manager(config)
    worktree = WorktreeManager(config.repo_dir, config.worktree_base)
    return Orchestrator(
        config,
        LabelStateStore(_github_client(config), config.labels),
        ResourceProvisioner(worktree, tmux),
        WorkerLauncher(tmux, config.worker_command, config.worker_args),
        PromptRenderer(config.prompts_dir),
        hook_server=HookServer(config.socket_path),
    )


async def _watch(config: Config) -> None:
    orchestrator = build_orchestrator(config)
    orchestrator.install_signal_handlers()
    try:
        await orchestrator.run()
    finally:
        await orchestrator.store.client.close()


@app.command()
def watch(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Watch for ready issues and run workers in the foreground."""
    config = _require_runtime_config()
    pid_file = config.pid_file
    pid = _read_pid(pid_file)
    if pid is not None:
        if _pid_alive(pid):
            raise typer.Exit(f"Daemon already running (PID: {pid}). Use 'pleb stop' first.")
        typer.echo(f"Removing stale PID file (process {pid} not found)")
        pid_file.unlink(missing_ok=True)

    configure_logging(config.log, verbose=verbose)
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")
    typer.echo(f"Log file: {config.log_file}")
    typer.echo(f"PID file: {pid_file}")
    try:
        asyncio.run(_watch(config))
    except PlebError as exc:
        raise typer.Exit(str(exc))
    finally:
        pid_file.unlink(missing_ok=True)


@app.command()
def log(
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
):
    """Show the daemon log."""
    config = _require_config()
    log_path = config.log_file
    if not log_path.exists():
        raise typer.Exit(f"No log file found. Is the daemon running? Expected: {log_path}")
    if follow:
        os.execvp("tail", ["tail", "-f", "-n", str(lines), str(log_path)])
    with log_path.open("r", encoding="utf-8", errors="replace") as f:
        tail = collections.deque(f, maxlen=max(lines, 0))
    typer.echo("".join(tail), nl=False)


@app.command()
def stop():
    """Send SIGTERM to a running daemon."""
    config = _require_config()
    pid_file = config.pid_file
    pid = _read_pid(pid_file)
    if pid is None:
        raise typer.Exit(f"No PID file found. Is the daemon running? Expected: {pid_file}")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_file.unlink(missing_ok=True)
        typer.echo("Daemon was not running (stale PID file removed).")
        return
    except PermissionError as exc:
        raise typer.Exit(f"Failed to send signal to daemon: {exc}")
    pid_file.unlink(missing_ok=True)
    typer.echo(f"Sent SIGTERM to daemon (PID: {pid})")


@app.command("list")
def list_windows():
    """List job windows in the tmux session."""
    config = _require_config()
    try:
        numbers = TmuxManager(config.tmux_session_name).list_job_windows()
    except PlebError as exc:
        raise typer.Exit(str(exc))
    if not numbers:
        typer.echo(f"No active issue windows in session '{config.tmux_session_name}'")
        return
    typer.echo(f"Active issue windows in session '{config.tmux_session_name}':")
    for number in numbers:
        typer.echo(f"  - {window_name_for(number)}")


@app.command()
def attach():
    """Attach to the tmux session, creating it if needed."""
    config = _require_config()
    tmux = _tmux_manager(config)
    try:
        tmux.ensure_session()
    except PlebError as exc:
        raise typer.Exit(str(exc))
    command = tmux.attach_command()
    os.execvp(command[0], command)


@app.command()
def transition(
    issue_number: int = typer.Argument(..., min=0, help="Issue number"),
    state: str = typer.Argument(..., help="Target state, or 'none' to untrack"),
):
    """Manually move an issue to a state."""
    config = _require_runtime_config()
    if state.strip().lower() == "none":
        _with_store(config, lambda store: store.clear(issue_number))
        typer.echo(
            f"Issue #{issue_number} is no longer managed by pleb (all pleb labels removed)"
        )
        return
    try:
        target = parse_state(state)
    except PlebError as exc:
        raise typer.Exit(str(exc))
    _with_store(config, lambda store: store.force_state(issue_number, target))
    typer.echo(f"Issue #{issue_number} transitioned to {target.value}")


@app.command()
def status(issue_number: int = typer.Argument(..., min=0, help="Issue number")):
    """Show the pleb state of an issue."""
    config = _require_runtime_config()
    job = _with_store(config, lambda store: store.get_job(issue_number))
    current = job.state(config.labels)
    typer.echo(f"Issue #{job.number}: {job.title}")
    typer.echo(f"State: {current.value if current else 'not managed by pleb'}")
    typer.echo(f"URL: {job.html_url}")


@app.command("cc-run-hook")
def cc_run_hook(event: str = typer.Argument(..., help="Worker hook event name")):
    """Forward a worker hook (JSON on stdin) to the daemon."""
    config = _require_config()
    stdin_text = sys.stdin.read()
    try:
        asyncio.run(run_hook_command(event, stdin_text, config.daemon_dir))
    except PlebError as exc:
        raise typer.Exit(str(exc))


@hooks_app.command("generate")
def hooks_generate():
    """Print the hook settings JSON."""
    typer.echo(json.dumps(generate_hooks_settings(), indent=2))


@hooks_app.command("install")
def hooks_install(
    path: Optional[Path] = typer.Argument(None, help="Directory; defaults to CWD"),
):
    """Install hooks and slash commands into a directory."""
    target = (path or Path.cwd()).resolve()
    try:
        settings_file = install_hooks(target)
    except (PlebError, OSError) as exc:
        raise typer.Exit(str(exc))
    typer.echo(f"Installed hooks to {settings_file}")


@config_app.command("show")
def config_show():
    """Print the effective configuration."""
    config = _require_config()
    typer.echo(f"# {config.config_path}")
    typer.echo(yaml.safe_dump(config.to_dict(), sort_keys=False), nl=False)


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing files"),
):
    """Write a starter pleb.yml and prompt template in the current directory."""
    root = Path.cwd()
    config_path = root / CONFIG_FILENAME
    if config_path.exists() and not force:
        raise typer.Exit(f"{config_path} already exists; use --force to overwrite")
    config_path.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    typer.echo(f"Wrote {config_path}")
    prompt_path = root / "prompts" / "new_issue.md"
    if not prompt_path.exists() or force:
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(DEFAULT_NEW_ISSUE_PROMPT, encoding="utf-8")
        typer.echo(f"Wrote {prompt_path}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
