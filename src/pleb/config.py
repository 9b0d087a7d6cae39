import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .core.errors import FailureKind, PlebError
from .core.state import LabelConfig

CONFIG_FILENAME = "pleb.yml"
# Current directory plus this many parents are searched.
CONFIG_SEARCH_PARENTS = 2

DEFAULT_CONFIG: Dict[str, Any] = {
    "github": {
        "owner": "",
        "repo": "",
        "token_env": "GITHUB_TOKEN",
        "api_url": "https://api.github.com",
    },
    "labels": dataclasses.asdict(LabelConfig()),
    "worker": {
        "command": "claude",
        "args": ["--dangerously-skip-permissions"],
    },
    "paths": {
        "repo_dir": "./repo",
        "worktree_base": "./worktrees",
    },
    "prompts": {
        "dir": "./prompts",
        "new_issue": "new_issue.md",
    },
    "watch": {
        "poll_interval_seconds": 5,
    },
    "tmux": {
        "session_name": "pleb",
    },
    "branch": {
        "suffix": "pleb",
    },
    "provision": {
        "on_provision": [],
    },
    "log": {
        "path": None,
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}


class ConfigError(PlebError):
    """Raised when configuration is invalid."""

    default_kind = FailureKind.FATAL


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class Config:
    raw: Dict[str, Any]
    root: Path
    config_path: Optional[Path]
    github_owner: str
    github_repo: str
    github_token_env: str
    github_api_url: str
    labels: LabelConfig
    worker_command: str
    worker_args: List[str]
    repo_dir: Path
    worktree_base: Path
    prompts_dir: Path
    prompt_new_issue: str
    poll_interval_seconds: float
    tmux_session_name: str
    branch_suffix: str
    on_provision: List[str]
    log: LogConfig
    home: Path = dataclasses.field(default_factory=Path.home)

    @property
    def daemon_dir(self) -> Path:
        return self.home / ".pleb" / f"{self.github_owner}-{self.github_repo}"

    @property
    def pid_file(self) -> Path:
        return self.daemon_dir / "pleb.pid"

    @property
    def socket_path(self) -> Path:
        return self.daemon_dir / "pleb.sock"

    @property
    def log_file(self) -> Path:
        return self.log.path

    def github_token(self) -> Optional[str]:
        token = os.environ.get(self.github_token_env)
        return token or None

    def validate_runtime(self) -> None:
        """Checks that only matter for commands that talk to GitHub or run work."""
        if not self.github_token():
            raise ConfigError(
                f"GitHub token not found or empty in environment variable "
                f"'{self.github_token_env}'. Set it with: export {self.github_token_env}=<token>"
            )
        if not self.prompts_dir.is_dir():
            raise ConfigError(f"Prompts directory does not exist: {self.prompts_dir}")
        prompt_path = self.prompts_dir / self.prompt_new_issue
        if not prompt_path.is_file():
            raise ConfigError(f"Prompt file does not exist: {prompt_path}")

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.raw))


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_config_path(
    start: Path, filename: str = CONFIG_FILENAME
) -> Optional[Tuple[Path, bool]]:
    """Return (path, found_in_parent) searching start and up to two parents."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    candidates = [search_dir] + list(search_dir.parents)[:CONFIG_SEARCH_PARENTS]
    for idx, current in enumerate(candidates):
        candidate = current / filename
        if candidate.is_file():
            return candidate, idx > 0
    return None


def _load_dotenv_for_config(config_path: Path) -> None:
    candidate = config_path.parent / ".env"
    if candidate.exists():
        try:
            load_dotenv(dotenv_path=candidate, override=False)
        except Exception:
            # Never fail config loading due to dotenv issues.
            pass


def load_config(start: Optional[Path] = None, filename: str = CONFIG_FILENAME) -> Config:
    start = start or Path.cwd()
    found = find_config_path(start, filename)
    if not found:
        raise ConfigError(
            f"Config file '{filename}' not found in {start} or up to "
            f"{CONFIG_SEARCH_PARENTS} parent directories. Run 'pleb config init'."
        )
    config_path, _ = found
    _load_dotenv_for_config(config_path)
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return build_config(data, root=config_path.parent.resolve(), config_path=config_path)


def build_config(
    data: Dict[str, Any],
    *,
    root: Path,
    config_path: Optional[Path] = None,
    home: Optional[Path] = None,
) -> Config:
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _validate_config(merged)

    def _resolve(value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else (root / path)

    github = merged["github"]
    labels = LabelConfig(**{k: str(v) for k, v in merged["labels"].items()})
    home_dir = home or Path.home()
    daemon_dir = home_dir / ".pleb" / f"{github['owner']}-{github['repo']}"
    log_cfg = merged["log"]
    log_path = _resolve(log_cfg["path"]) if log_cfg.get("path") else daemon_dir / "pleb.log"
    return Config(
        raw=merged,
        root=root,
        config_path=config_path,
        github_owner=str(github["owner"]),
        github_repo=str(github["repo"]),
        github_token_env=str(github["token_env"]),
        github_api_url=str(github["api_url"]).rstrip("/"),
        labels=labels,
        worker_command=str(merged["worker"]["command"]),
        worker_args=[str(a) for a in merged["worker"].get("args") or []],
        repo_dir=_resolve(merged["paths"]["repo_dir"]),
        worktree_base=_resolve(merged["paths"]["worktree_base"]),
        prompts_dir=_resolve(merged["prompts"]["dir"]),
        prompt_new_issue=str(merged["prompts"]["new_issue"]),
        poll_interval_seconds=float(merged["watch"]["poll_interval_seconds"]),
        tmux_session_name=str(merged["tmux"]["session_name"]),
        branch_suffix=str(merged["branch"]["suffix"]),
        on_provision=[str(c) for c in merged["provision"].get("on_provision") or []],
        log=LogConfig(
            path=log_path,
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
        home=home_dir,
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    for section in DEFAULT_CONFIG:
        if not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} section must be a mapping")
    github = cfg["github"]
    for key in ("owner", "repo", "token_env"):
        if not isinstance(github.get(key), str) or not github[key]:
            raise ConfigError(f"github.{key} must be a non-empty string")
    labels = cfg["labels"]
    for key in DEFAULT_CONFIG["labels"]:
        if not isinstance(labels.get(key), str) or not labels[key]:
            raise ConfigError(f"labels.{key} must be a non-empty string")
    unknown = set(labels) - set(DEFAULT_CONFIG["labels"])
    if unknown:
        raise ConfigError(f"Unknown label keys: {', '.join(sorted(unknown))}")
    dupes = LabelConfig(**labels).duplicates()
    if dupes:
        raise ConfigError(
            f"Label conflict: '{dupes[0]}' is used for multiple states"
        )
    worker = cfg["worker"]
    if not isinstance(worker.get("command"), str) or not worker["command"]:
        raise ConfigError("worker.command must be a non-empty string")
    if not isinstance(worker.get("args", []), list):
        raise ConfigError("worker.args must be a list")
    for key in ("repo_dir", "worktree_base"):
        if not isinstance(cfg["paths"].get(key), str) or not cfg["paths"][key]:
            raise ConfigError(f"paths.{key} must be a non-empty string path")
    prompts = cfg["prompts"]
    if not isinstance(prompts.get("dir"), str) or not prompts["dir"]:
        raise ConfigError("prompts.dir must be a non-empty string path")
    if not isinstance(prompts.get("new_issue"), str) or not prompts["new_issue"]:
        raise ConfigError("prompts.new_issue must not be empty")
    interval = cfg["watch"].get("poll_interval_seconds")
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError("watch.poll_interval_seconds must be greater than 0")
    if not isinstance(cfg["tmux"].get("session_name"), str) or not cfg["tmux"]["session_name"]:
        raise ConfigError("tmux.session_name must be a non-empty string")
    if not isinstance(cfg["branch"].get("suffix"), str):
        raise ConfigError("branch.suffix must be a string")
    on_provision = cfg["provision"].get("on_provision", [])
    if not isinstance(on_provision, list):
        raise ConfigError("provision.on_provision must be a list of commands")
    log_cfg = cfg["log"]
    if log_cfg.get("path") is not None and not isinstance(log_cfg.get("path"), str):
        raise ConfigError("log.path must be a string path or null")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")


EXAMPLE_CONFIG = """\
# pleb configuration. Relative paths resolve against this file's directory.
github:
  owner: my-org
  repo: my-repo
  token_env: GITHUB_TOKEN

labels:
  ready: "pleb:ready"
  provisioning: "pleb:provisioning"
  waiting: "pleb:waiting"
  working: "pleb:working"
  done: "pleb:done"
  finished: "pleb:finished"

worker:
  command: claude
  args: ["--dangerously-skip-permissions"]

paths:
  repo_dir: ./repo
  worktree_base: ./worktrees

prompts:
  dir: ./prompts
  new_issue: new_issue.md

watch:
  poll_interval_seconds: 5

tmux:
  session_name: pleb

branch:
  suffix: pleb

provision:
  on_provision: []
"""
