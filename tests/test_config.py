"""Tests for configuration loading."""
from __future__ import annotations
import textwrap
import pytest

from cmdsync.config import (
    ENV_BRANCH,
    ENV_REPO_URL,
    ENV_SYNC_INTERVAL,
    ExternalCommandsConfig,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (ENV_REPO_URL, ENV_BRANCH, ENV_SYNC_INTERVAL):
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv from picking up a developer's .env
    monkeypatch.setattr("cmdsync.config.load_dotenv", lambda *args, **kwargs: False)


@pytest.fixture
def config_file(tmp_path):
    def _write(content: str):
        path = tmp_path / "config.toml"
        path.write_text(textwrap.dedent(content))
        return str(path)
    return _write


def test_load_full_config(config_file):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"
        allowed_rooms = "!only:example.org"
        allowed_operators = ["@admin:example.org"]

        [external]
        repo_url = "https://example.com/commands.git"
        branch = "stable"
        sync_interval = 60
        modules_dir = "commands"
    ''')

    cfg = load_config(path)

    assert cfg.homeserver == "https://matrix.example.org"
    assert cfg.allowed_rooms == ["!only:example.org"]
    assert cfg.allowed_operators == ["@admin:example.org"]
    assert cfg.external.repo_url == "https://example.com/commands.git"
    assert cfg.external.branch == "stable"
    assert cfg.external.sync_interval == 60
    assert cfg.external.modules_dir == "commands"
    assert cfg.external.local_path == "data/external_commands"


def test_defaults(config_file):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"

        [external]
        repo_url = "https://example.com/commands.git"
    ''')

    cfg = load_config(path)

    assert cfg.external.branch == "main"
    assert cfg.external.sync_interval == 300
    assert cfg.allowed_rooms == []
    assert cfg.log_level == "INFO"


def test_environment_overrides(config_file, monkeypatch):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"
    ''')
    monkeypatch.setenv(ENV_REPO_URL, "https://example.com/env.git")
    monkeypatch.setenv(ENV_BRANCH, "dev")
    monkeypatch.setenv(ENV_SYNC_INTERVAL, "90")

    cfg = load_config(path)

    assert cfg.external.repo_url == "https://example.com/env.git"
    assert cfg.external.branch == "dev"
    assert cfg.external.sync_interval == 90.0


def test_missing_repo_url(config_file):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"
    ''')

    with pytest.raises(ValueError, match="repo_url"):
        load_config(path)


def test_missing_bot_key(config_file):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"

        [external]
        repo_url = "https://example.com/commands.git"
    ''')

    with pytest.raises(ValueError, match="bot.user_id"):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.toml"))


def test_invalid_interval(monkeypatch, config_file):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"

        [external]
        repo_url = "https://example.com/commands.git"
    ''')
    monkeypatch.setenv(ENV_SYNC_INTERVAL, "soon")

    with pytest.raises(ValueError):
        load_config(path)

    with pytest.raises(ValueError, match="sync_interval"):
        ExternalCommandsConfig(repo_url="x", sync_interval=0)


def test_access_token_from_environment(config_file, monkeypatch):
    path = config_file('''
        [bot]
        homeserver = "https://matrix.example.org"
        user_id = "@bot:example.org"

        [external]
        repo_url = "https://example.com/commands.git"
    ''')
    cfg = load_config(path)

    monkeypatch.delenv("MATRIX_ACCESS_TOKEN", raising=False)
    with pytest.raises(RuntimeError):
        cfg.access_token

    monkeypatch.setenv("MATRIX_ACCESS_TOKEN", "syt_secret")
    assert cfg.access_token == "syt_secret"
