from pathlib import Path

import pytest

from pleb.config import (
    CONFIG_FILENAME,
    EXAMPLE_CONFIG,
    ConfigError,
    build_config,
    find_config_path,
    load_config,
)
from pleb.core.errors import FailureKind


def _write_config(root: Path, text: str = EXAMPLE_CONFIG) -> Path:
    path = root / CONFIG_FILENAME
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_resolves_paths_against_config_dir(tmp_path: Path) -> None:
    _write_config(tmp_path)
    config = load_config(tmp_path)
    assert config.github_owner == "my-org"
    assert config.repo_dir == tmp_path.resolve() / "repo"
    assert config.worktree_base == tmp_path.resolve() / "worktrees"
    assert config.prompts_dir == tmp_path.resolve() / "prompts"
    assert config.worker_command == "claude"
    assert config.poll_interval_seconds == 5
    assert config.labels.ready == "pleb:ready"


def test_find_config_searches_two_parents(tmp_path: Path) -> None:
    path = _write_config(tmp_path)
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_config_path(nested) == (path.resolve(), True)
    assert find_config_path(tmp_path) == (path.resolve(), False)
    too_deep = nested / "c"
    too_deep.mkdir()
    assert find_config_path(too_deep) is None


def test_missing_config_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(tmp_path)
    assert excinfo.value.kind is FailureKind.FATAL


def test_daemon_paths_derive_from_owner_and_repo(tmp_path: Path) -> None:
    config = build_config(
        {"github": {"owner": "acme", "repo": "widgets"}},
        root=tmp_path,
        home=tmp_path / "home",
    )
    daemon_dir = tmp_path / "home" / ".pleb" / "acme-widgets"
    assert config.daemon_dir == daemon_dir
    assert config.socket_path == daemon_dir / "pleb.sock"
    assert config.pid_file == daemon_dir / "pleb.pid"
    assert config.log_file == daemon_dir / "pleb.log"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"github": {"owner": "", "repo": "r"}}, "github.owner"),
        (
            {"github": {"owner": "o", "repo": "r"}, "labels": {"waiting": "x", "working": "x"}},
            "Label conflict: 'x'",
        ),
        ({"github": {"owner": "o", "repo": "r"}, "labels": {"extra": "y"}}, "Unknown label"),
        (
            {"github": {"owner": "o", "repo": "r"}, "watch": {"poll_interval_seconds": 0}},
            "poll_interval_seconds",
        ),
        (
            {"github": {"owner": "o", "repo": "r"}, "provision": {"on_provision": "make"}},
            "on_provision",
        ),
        ({"github": {"owner": "o", "repo": "r"}, "worker": {"command": ""}}, "worker.command"),
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, data: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        build_config(data, root=tmp_path)


def test_validate_runtime_requires_token_and_prompt(tmp_path: Path, monkeypatch) -> None:
    config = build_config(
        {"github": {"owner": "o", "repo": "r", "token_env": "PLEB_TEST_TOKEN"}},
        root=tmp_path,
    )
    monkeypatch.delenv("PLEB_TEST_TOKEN", raising=False)
    with pytest.raises(ConfigError, match="PLEB_TEST_TOKEN"):
        config.validate_runtime()

    monkeypatch.setenv("PLEB_TEST_TOKEN", "secret")
    with pytest.raises(ConfigError, match="Prompts directory"):
        config.validate_runtime()

    (tmp_path / "prompts").mkdir()
    with pytest.raises(ConfigError, match="Prompt file"):
        config.validate_runtime()

    (tmp_path / "prompts" / "new_issue.md").write_text("hi", encoding="utf-8")
    config.validate_runtime()
    assert config.github_token() == "secret"


def test_dotenv_beside_config_is_loaded(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("PLEB_DOTENV_TOKEN", raising=False)
    _write_config(
        tmp_path,
        "github:\n  owner: o\n  repo: r\n  token_env: PLEB_DOTENV_TOKEN\n",
    )
    (tmp_path / ".env").write_text("PLEB_DOTENV_TOKEN=from-dotenv\n", encoding="utf-8")
    config = load_config(tmp_path)
    assert config.github_token() == "from-dotenv"
    monkeypatch.delenv("PLEB_DOTENV_TOKEN", raising=False)


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(tmp_path)
