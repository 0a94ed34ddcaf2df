"""Find command module files in the mirror and fingerprint them."""
from __future__ import annotations
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Mapping
import aiofiles

logger = logging.getLogger(__name__)

MODULE_SUFFIX = ".py"
EXCLUDED_DIRS = frozenset({"tests", "test", "docs", "doc", "venv", "node_modules"})
EXCLUDED_FILES = frozenset({"setup.py", "conftest.py", "noxfile.py"})


@dataclass(frozen=True)
class Candidate:
    """A module file found in the mirror."""
    path: str  # relative to the repository root, POSIX separators
    fingerprint: str


@dataclass
class SnapshotDiff:
    """Paths that were added, changed or removed between two snapshots."""
    added: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)


def fingerprint_bytes(data: bytes) -> str:
    """Deterministic content hash used to detect file changes."""
    return hashlib.sha256(data).hexdigest()


def is_module_file(name: str) -> bool:
    """Whether a file name follows the command module convention."""
    if not name.endswith(MODULE_SUFFIX):
        return False
    if name.startswith(("_", ".")) or name in EXCLUDED_FILES:
        return False
    if name.startswith("test_") or name.endswith("_test.py"):
        return False
    return True


def is_module_dir(name: str) -> bool:
    return not name.startswith((".", "_")) and name not in EXCLUDED_DIRS


def diff_snapshots(tracked: Mapping[str, str], current: Mapping[str, str]) -> SnapshotDiff:
    """Compare two {path: fingerprint} snapshots.

    Args:
        tracked: Snapshot the loaded state was built from
        current: Snapshot just taken from the mirror

    Returns:
        SnapshotDiff with three disjoint, sorted path lists
    """
    added = sorted(p for p in current if p not in tracked)
    changed = sorted(p for p in current if p in tracked and tracked[p] != current[p])
    removed = sorted(p for p in tracked if p not in current)
    return SnapshotDiff(added=added, changed=changed, removed=removed)


class ModuleDiscovery:
    """Walks the mirror's file tree looking for command modules."""

    def __init__(self, root: str | Path, modules_dir: str = ""):
        self.root = Path(root)
        self.modules_dir = modules_dir.strip("/")

    @property
    def search_root(self) -> Path:
        return self.root / self.modules_dir if self.modules_dir else self.root

    def _walk(self) -> list[Path]:
        files = []
        search_root = self.search_root
        if not search_root.is_dir():
            logger.warning(f"Module directory {search_root} does not exist")
            return files

        for dirpath, dirnames, filenames in os.walk(search_root):
            # Prune in place so os.walk skips excluded directories
            dirnames[:] = sorted(d for d in dirnames if is_module_dir(d))
            for name in sorted(filenames):
                file_path = Path(dirpath) / name
                if is_module_file(name) and not file_path.is_symlink():
                    files.append(file_path)
        return sorted(files)

    async def list_candidates(self) -> AsyncIterator[Candidate]:
        """Yield (path, fingerprint) for every module file, in path order.

        Each call walks the tree again, so the sequence can be restarted.
        """
        for file_path in self._walk():
            try:
                async with aiofiles.open(file_path, "rb") as f:
                    data = await f.read()
            except OSError as e:
                logger.warning(f"Skipping unreadable module file {file_path}: {e}")
                continue

            relative = file_path.relative_to(self.root).as_posix()
            yield Candidate(path=relative, fingerprint=fingerprint_bytes(data))

    async def snapshot(self) -> dict[str, str]:
        """Collect the current candidates as a {path: fingerprint} mapping."""
        return {c.path: c.fingerprint async for c in self.list_candidates()}
