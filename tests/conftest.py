"""Shared fixtures for the external command loader tests."""
from __future__ import annotations
import subprocess
import textwrap
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock
import pytest

from cmdsync.bridge import RegistrationBridge
from cmdsync.discovery import ModuleDiscovery
from cmdsync.dispatch import Dispatcher
from cmdsync.git_mirror import RepositoryState
from cmdsync.loader import ModuleLoader
from cmdsync.scheduler import SyncScheduler

GIT_IDENTITY = ["-c", "user.name=Test", "-c", "user.email=test@example.com",
                "-c", "commit.gpgsign=false"]


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *GIT_IDENTITY, *args], cwd=cwd, check=True,
                            capture_output=True, text=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = "update") -> str:
    (repo / name).write_text(content)
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


class FakeMirror:
    """In-memory stand-in for GitMirror over an already populated directory."""

    def __init__(self, root: Path):
        self.local_path = root
        self.state = RepositoryState(
            remote_url="https://token@example.com/commands.git",
            branch="main",
            local_path=root,
        )
        self.revision = 1
        self.pending = False
        self.acquire_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.ensure_calls = 0
        self.update_calls = 0

    def commit(self) -> None:
        """Pretend a new revision landed on the remote branch."""
        self.revision += 1
        self.pending = True

    def current_revision(self) -> str:
        return f"{self.revision:040x}"

    async def ensure_present(self) -> None:
        self.ensure_calls += 1
        if self.acquire_error is not None:
            raise self.acquire_error

    async def update(self) -> bool:
        self.update_calls += 1
        if self.update_error is not None:
            raise self.update_error
        changed = self.pending
        self.pending = False
        return changed


@pytest.fixture
def repo_dir(tmp_path):
    """Empty directory acting as the mirror's working copy."""
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def write_module(repo_dir):
    """Write (or overwrite) a module file in the working copy."""
    def _write(name: str, source: str) -> Path:
        path = repo_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source))
        return path
    return _write


@pytest.fixture
def sender():
    return AsyncMock(return_value=None)


@pytest.fixture
def dispatcher(sender):
    return Dispatcher(sender=sender)


@pytest.fixture
def fake_mirror(repo_dir):
    return FakeMirror(repo_dir)


@pytest.fixture
def scheduler(fake_mirror, repo_dir, dispatcher):
    return SyncScheduler(
        fake_mirror,
        ModuleDiscovery(repo_dir),
        ModuleLoader(dispatcher),
        RegistrationBridge(dispatcher, timeout=0.5),
        interval=60
    )


HELLO_V1 = '''
metadata = {"name": "Hello World", "category": "Test",
            "description": "Says hello", "commands": ["/hello"]}


def register(bot):
    async def hello(message, match):
        await bot.send_message(message.chat_id, "hello " + message.sender)

    bot.on_text(r"^/hello(?:\\s|$)", hello)
'''

HELLO_V2 = '''
metadata = {"name": "Hello World", "category": "Test",
            "description": "Says hello", "commands": ["/hello", "/hi"]}


def register(bot):
    async def hello(message, match):
        await bot.send_message(message.chat_id, "hello again")

    bot.on_text(r"^/hello(?:\\s|$)", hello)
    bot.on_text(r"^/hi(?:\\s|$)", hello)
'''

BROKEN = '''
raise RuntimeError("broken at import")
'''

REGISTER_RAISES = '''
def register(bot):
    bot.on_text(r"^/partial", lambda message, match: None)
    bot.on_event("message", lambda message: None)
    raise ValueError("register blew up")
'''
