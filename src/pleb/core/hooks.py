"""Worker hook wiring: settings, slash commands and event-to-state mapping."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import HookProtocolError
from .state import State

logger = logging.getLogger("pleb.hooks")

HOOK_EVENTS = ("Stop", "UserPromptSubmit", "PostToolUse", "PermissionRequest")

# Events that always map to a state. PostToolUse is conditional, see below.
HOOK_EVENT_TARGETS: Dict[str, State] = {
    "UserPromptSubmit": State.WORKING,
    "Stop": State.WAITING,
    "PermissionRequest": State.WAITING,
}

# The worker asked the human something: treat as waiting for input.
_WAITING_TOOLS = frozenset({"AskUserQuestion"})

SLASH_COMMANDS: Dict[str, str] = {
    "pleb-shipit": """\
# Ship It

Open a pull request for the work in this worktree and mark the issue done.

1. Commit any outstanding changes with a descriptive message (skip if clean).
2. Push the current branch to origin.
3. Create a pull request with `gh pr create`, referencing the issue (`Closes #<n>`).
   If one already exists for this branch, reuse it.
4. Run `pleb transition <issue-number> done`.
5. Report the pull request URL.

The issue number is the leading number of the worktree directory name.
""",
    "pleb-abandon": """\
# Abandon Issue

Stop working on this issue and hand it back.

1. Take the issue number from the worktree directory name.
2. Run `pleb transition <issue-number> none` to remove every pleb label.
3. Ask the user whether the worktree and tmux window should be removed.
4. Confirm the issue is no longer managed by pleb.

The issue stays open; re-adding the ready label restarts work later.
""",
    "pleb-status": """\
# Pleb Status

Show the pleb state of this issue.

1. Take the issue number from the worktree directory name.
2. Run `pleb status <issue-number>` and show its output.
""",
}


def hook_command(event: str, executable: str = "pleb") -> str:
    return f"{executable} cc-run-hook {event}"


def generate_hooks_settings(executable: str = "pleb") -> Dict[str, Any]:
    return {
        "hooks": {
            event: [
                {"hooks": [{"type": "command", "command": hook_command(event, executable)}]}
            ]
            for event in HOOK_EVENTS
        }
    }


def install_commands(path: Path) -> int:
    commands_dir = path / ".claude" / "commands"
    commands_dir.mkdir(parents=True, exist_ok=True)
    for name, content in SLASH_COMMANDS.items():
        (commands_dir / f"{name}.md").write_text(content, encoding="utf-8")
        logger.debug("Installed command %s", name)
    return len(SLASH_COMMANDS)


def install_hooks(path: Path, executable: str = "pleb") -> Path:
    """Merge hook settings into ``<path>/.claude/settings.json``.

    Only the ``hooks`` key is replaced; every other setting is preserved.
    """
    claude_dir = path / ".claude"
    claude_dir.mkdir(parents=True, exist_ok=True)
    settings_file = claude_dir / "settings.json"
    settings: Dict[str, Any] = {}
    if settings_file.exists():
        try:
            loaded = json.loads(settings_file.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise HookProtocolError(f"Failed to parse {settings_file}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise HookProtocolError(f"{settings_file} must contain a JSON object")
        settings = loaded
    settings["hooks"] = generate_hooks_settings(executable)["hooks"]
    settings_file.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    logger.info("Installed hooks to %s", settings_file)
    count = install_commands(path)
    logger.info("Installed %d slash commands to %s", count, claude_dir / "commands")
    return settings_file


def extract_job_number_from_path(path: str) -> Optional[int]:
    """Find ``issue-N`` or ``N-slug`` in the deepest matching path component."""
    for component in reversed(str(path).split("/")):
        if component.startswith("issue-"):
            rest = component[len("issue-") :]
            if rest.isdigit():
                return int(rest)
        head, sep, _ = component.partition("-")
        if sep and head.isdigit():
            return int(head)
    return None


def is_known_event(event: str) -> bool:
    return event in HOOK_EVENTS


def resolve_hook_target(event: str, payload: Mapping[str, Any]) -> Optional[State]:
    if event == "PostToolUse":
        tool = payload.get("tool_name") if isinstance(payload, Mapping) else None
        return State.WAITING if tool in _WAITING_TOOLS else None
    return HOOK_EVENT_TARGETS.get(event)
