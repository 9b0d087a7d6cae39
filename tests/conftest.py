"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code
rather than an installed `pleb` package.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """An initialized repo on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "init")
    return repo


class FakeTmux:
    """In-memory stand-in for the tmux binary, passed as a ``TmuxRunner``."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.windows: Dict[str, Dict[int, str]] = {}
        self.calls: List[List[str]] = []
        self.sent: List[tuple] = []
        self.fail_commands: set = set()

    def _proc(self, args, code: int = 0, out: str = "", err: str = ""):
        return subprocess.CompletedProcess(list(args), code, stdout=out, stderr=err)

    def _split_target(self, target: str):
        session, _, index = target.partition(":")
        return session, int(index) if index.isdigit() else None

    def __call__(self, args: Sequence[str]):
        args = list(args)
        self.calls.append(args)
        cmd = args[0]
        if cmd in self.fail_commands:
            return self._proc(args, 1, err=f"{cmd} failed")
        if cmd == "has-session":
            return self._proc(args, 0 if args[2] in self.sessions else 1)
        if cmd == "new-session":
            name = args[args.index("-s") + 1]
            self.sessions.setdefault(name, {})
            self.windows.setdefault(name, {})
            return self._proc(args)
        if cmd == "set-environment":
            session, name, value = args[2], args[3], args[4]
            self.sessions[session][name] = value
            return self._proc(args)
        if cmd == "list-windows":
            session = args[2]
            if session not in self.sessions:
                return self._proc(args, 1, err="no server running")
            lines = [
                f"{idx}\t{name}" for idx, name in sorted(self.windows[session].items())
            ]
            return self._proc(args, out="\n".join(lines) + ("\n" if lines else ""))
        if cmd == "new-window":
            session, index = self._split_target(args[args.index("-t") + 1])
            name = args[args.index("-n") + 1]
            if index in self.windows[session]:
                return self._proc(args, 1, err=f"index {index} in use")
            self.windows[session][index] = name
            return self._proc(args)
        if cmd in ("send-keys", "rename-window", "kill-window", "select-pane"):
            session, index = self._split_target(args[args.index("-t") + 1])
            if index not in self.windows.get(session, {}):
                return self._proc(args, 1, err="can't find window")
            if cmd == "send-keys":
                self.sent.append((index, args[3:]))
            elif cmd == "rename-window":
                self.windows[session][index] = args[-1]
            elif cmd == "kill-window":
                del self.windows[session][index]
            return self._proc(args)
        return self._proc(args, 1, err=f"unknown command {cmd}")

    def count(self, cmd: str) -> int:
        return sum(1 for call in self.calls if call[0] == cmd)

    def typed_lines(self) -> List[str]:
        return [keys[1] for _, keys in self.sent if keys[:1] == ["-l"]]


@pytest.fixture()
def fake_tmux() -> FakeTmux:
    return FakeTmux()


class FakeStateStore:
    """Label store backed by a dict; records every write."""

    def __init__(self) -> None:
        from pleb.core.jobs import Job

        self._job_cls = Job
        self.jobs: Dict[int, "Job"] = {}
        self.states: Dict[int, object] = {}
        self.replace_calls: List[tuple] = []
        self.list_error: Optional[Exception] = None
        self.replace_error: Optional[Exception] = None
        self.username = "octocat"

    def add_job(self, number: int, title: str, state=None, body: str = ""):
        job = self._job_cls(
            number=number,
            title=title,
            body=body,
            html_url=f"https://github.com/acme/widgets/issues/{number}",
        )
        self.jobs[number] = job
        if state is not None:
            self.states[number] = state
        return job

    async def verify_connection(self) -> None:
        return None

    async def get_authenticated_user(self) -> str:
        return self.username

    async def get_job(self, number: int):
        return self.jobs[number]

    async def get_state(self, number: int):
        return self.states.get(number)

    async def list_jobs_with(self, state):
        if self.list_error is not None:
            raise self.list_error
        return [
            self.jobs[n] for n in sorted(self.jobs) if self.states.get(n) == state
        ]

    async def replace_label(self, number: int, from_state, to_state) -> None:
        from pleb.core.state import validate_transition

        validate_transition(from_state, to_state)
        if self.replace_error is not None:
            raise self.replace_error
        self.replace_calls.append((number, from_state, to_state))
        self.states[number] = to_state


@pytest.fixture()
def fake_store() -> FakeStateStore:
    return FakeStateStore()


@pytest.fixture()
def make_config(tmp_path: Path):
    """Build a ``Config`` rooted in ``tmp_path`` with a private home dir."""
    from pleb.config import build_config

    def _make(overrides: Optional[dict] = None, **kwargs):
        data = {"github": {"owner": "acme", "repo": "widgets"}}
        for key, value in (overrides or {}).items():
            data.setdefault(key, {}).update(value)
        return build_config(
            data,
            root=tmp_path,
            home=kwargs.get("home", tmp_path / "home"),
            config_path=kwargs.get("config_path"),
        )

    return _make
