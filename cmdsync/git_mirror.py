"""Local git mirror of the external command repository."""
from __future__ import annotations
import asyncio
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
DEFAULT_TIMEOUT = 60  # seconds

_CREDENTIALS_RE = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


class AcquisitionError(Exception):
    """Raised when the initial clone of the repository is impossible."""
    pass


class SyncError(Exception):
    """Raised when updating an existing working copy fails."""

    def __init__(self, message: str, needs_reclone: bool = False):
        super().__init__(message)
        self.needs_reclone = needs_reclone


class GitCommandError(Exception):
    """Raised when a git subprocess fails, times out or cannot be started."""
    pass


@dataclass
class RepositoryState:
    """Where the mirror lives and what it last synced."""
    remote_url: str
    branch: str
    local_path: Path
    revision: Optional[str] = None


def redact_url(url: str) -> str:
    """Strip user/password/token from a remote URL before it is logged."""
    return _CREDENTIALS_RE.sub(r"\g<scheme>***@", url)


class GitMirror:
    """Keeps a local working copy of one branch of a remote repository.

    All git commands run in a worker thread so an unresponsive remote never
    blocks the event loop, and each is bounded by ``timeout`` seconds.
    """

    def __init__(self, remote_url: str, local_path: str | Path,
                 branch: str = DEFAULT_BRANCH, timeout: float = DEFAULT_TIMEOUT):
        self._state = RepositoryState(
            remote_url=remote_url,
            branch=branch,
            local_path=Path(local_path),
        )
        self.timeout = timeout
        self._needs_reclone = False

    @property
    def state(self) -> RepositoryState:
        return self._state

    @property
    def local_path(self) -> Path:
        return self._state.local_path

    @property
    def needs_reclone(self) -> bool:
        return self._needs_reclone

    @property
    def is_present(self) -> bool:
        """True when a usable working copy is on disk."""
        return not self._needs_reclone and (self.local_path / ".git").exists()

    def current_revision(self) -> Optional[str]:
        """Return the last successfully synced revision."""
        return self._state.revision

    def _run_git(self, args: list[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                env=env
            )
        except FileNotFoundError:
            raise GitCommandError("Git command not found. Please install git.")
        except subprocess.TimeoutExpired:
            raise GitCommandError(f"git {args[0]} timed out after {self.timeout}s")

        if result.returncode != 0:
            stderr = redact_url(result.stderr.strip())
            raise GitCommandError(f"git {args[0]} failed: {stderr}")
        return result

    async def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        result = await asyncio.to_thread(self._run_git, list(args), cwd)
        return result.stdout.strip()

    async def _rev_parse(self, ref: str) -> str:
        return await self._git("rev-parse", ref, cwd=self.local_path)

    def _discard_local_copy(self) -> None:
        if self.local_path.exists():
            logger.warning(f"Discarding local copy at {self.local_path}")
            shutil.rmtree(self.local_path, ignore_errors=True)

    async def _is_valid_working_copy(self) -> bool:
        if not (self.local_path / ".git").exists():
            return False
        try:
            top = await self._git("rev-parse", "--show-toplevel", cwd=self.local_path)
        except GitCommandError:
            return False
        if Path(top).resolve() != self.local_path.resolve():
            return False

        try:
            origin = await self._git("config", "--get", "remote.origin.url", cwd=self.local_path)
        except GitCommandError:
            return False
        if origin != self._state.remote_url:
            logger.warning(f"Working copy at {self.local_path} tracks a different remote")
            return False
        return True

    async def ensure_present(self) -> None:
        """Clone the configured branch unless a working copy already exists.

        Raises:
            AcquisitionError: If the remote is unreachable, the branch does
                not exist or the clone timed out
        """
        if self._needs_reclone:
            self._discard_local_copy()
            self._needs_reclone = False
        elif await self._is_valid_working_copy():
            if self._state.revision is None:
                try:
                    self._state.revision = await self._rev_parse("HEAD")
                except GitCommandError as e:
                    raise AcquisitionError(f"Existing copy is unreadable: {e}") from e
            return
        elif self.local_path.exists():
            self._discard_local_copy()

        remote = redact_url(self._state.remote_url)
        logger.info(f"Cloning {remote} (branch {self._state.branch}) into {self.local_path}")
        self.local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._git(
                "clone", "--quiet", "--branch", self._state.branch, "--single-branch",
                self._state.remote_url, str(self.local_path)
            )
            self._state.revision = await self._rev_parse("HEAD")
        except GitCommandError as e:
            self._discard_local_copy()
            raise AcquisitionError(
                f"Could not clone {remote} (branch {self._state.branch}): {e}") from e

        logger.info(f"Cloned {remote} at {self._state.revision}")

    async def update(self) -> bool:
        """Fast-forward the working copy to the remote branch tip.

        Returns:
            True if the revision changed

        Raises:
            SyncError: On network failure (copy untouched) or when the copy
                cannot be fast-forwarded (copy marked for reclone)
        """
        branch = self._state.branch
        try:
            await self._git("fetch", "--quiet", "origin", branch, cwd=self.local_path)
        except GitCommandError as e:
            raise SyncError(f"Fetch of branch {branch} failed: {e}") from e

        try:
            current_branch = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=self.local_path)
            if current_branch != branch:
                raise GitCommandError(f"working copy is on {current_branch!r}, expected {branch!r}")

            head = await self._rev_parse("HEAD")
            remote_head = await self._rev_parse("FETCH_HEAD")
            if head == remote_head:
                self._state.revision = head
                return False

            try:
                await self._git("merge-base", "--is-ancestor", "HEAD", "FETCH_HEAD", cwd=self.local_path)
            except GitCommandError:
                raise GitCommandError(f"local {head[:10]} diverged from remote {remote_head[:10]}")

            await self._git("merge", "--quiet", "--ff-only", "FETCH_HEAD", cwd=self.local_path)
        except GitCommandError as e:
            self._needs_reclone = True
            raise SyncError(f"Working copy is corrupted, will reclone: {e}", needs_reclone=True) from e

        previous = self._state.revision
        self._state.revision = remote_head
        logger.info(f"Updated {branch}: {(previous or 'none')[:10]} -> {remote_head[:10]}")
        return True
