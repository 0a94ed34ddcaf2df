"""Periodic sync of the external command repository.

One SyncScheduler owns the mapping from source file to ModuleRecord. Each
cycle updates the mirror, takes a fingerprint snapshot of the module files,
and reconciles the loaded modules against it:

- removed files are unloaded and forgotten
- changed files are unloaded, then loaded again (a failed reload leaves the
  command inert until the file is fixed)
- added files are loaded and registered

Only one cycle runs at a time. Failures are reported per module and never
escape a cycle.
"""
from __future__ import annotations
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Optional

from .bridge import RegistrationBridge
from .discovery import ModuleDiscovery, diff_snapshots
from .git_mirror import AcquisitionError, GitMirror, SyncError
from .loader import LoadError, ModuleLoader
from .models import ModuleMetadata, ModuleRecord, ModuleStatus, SyncCycleResult

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300.0  # seconds


class SchedulerState(Enum):
    """Sync pipeline state."""
    IDLE = "idle"
    SYNCING = "syncing"
    RECONCILING = "reconciling"
    STOPPED = "stopped"


class SyncScheduler:
    """Drives mirror updates and module reconciliation on a fixed interval."""

    def __init__(
        self,
        mirror: GitMirror,
        discovery: ModuleDiscovery,
        loader: ModuleLoader,
        bridge: RegistrationBridge,
        interval: float = DEFAULT_INTERVAL
    ):
        if interval <= 0:
            raise ValueError("Sync interval must be positive")
        self.mirror = mirror
        self.discovery = discovery
        self.loader = loader
        self.bridge = bridge
        self.interval = interval

        self._records: dict[str, ModuleRecord] = {}
        self._state = SchedulerState.IDLE
        self._reconciled_once = False
        self._reconciled_revision: Optional[str] = None
        self._stopping = False
        self._last_result: Optional[SyncCycleResult] = None
        self._last_sync_at: Optional[float] = None
        self._dropped_ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def records(self) -> dict[str, ModuleRecord]:
        """Copy of the current path -> ModuleRecord mapping."""
        return dict(self._records)

    @property
    def last_result(self) -> Optional[SyncCycleResult]:
        return self._last_result

    @property
    def last_sync_at(self) -> Optional[float]:
        """Time of the last cycle that reached the repository successfully."""
        return self._last_sync_at

    @property
    def dropped_ticks(self) -> int:
        return self._dropped_ticks

    @property
    def loaded_count(self) -> int:
        return sum(1 for r in self._records.values() if r.status is ModuleStatus.LOADED)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self) -> Optional[SyncCycleResult]:
        """Run one sync cycle.

        Returns:
            The cycle result, or None if a cycle was already running or the
            scheduler is stopped
        """
        if self._stopping:
            logger.info("Sync cycle requested while stopping; skipping")
            return None
        if self._state is not SchedulerState.IDLE:
            logger.info(f"Sync cycle requested while {self._state.value}; skipping")
            return None

        result = SyncCycleResult()
        self._state = SchedulerState.SYNCING
        self._idle.clear()
        try:
            if await self._sync_repository(result):
                self._state = SchedulerState.RECONCILING
                await self._reconcile(result)
                self._reconciled_once = True
                self._reconciled_revision = result.revision
            else:
                result.skipped = True
        except Exception as e:
            logger.exception("Unexpected error during sync cycle")
            result.errors.append(f"unexpected error: {e}")
        finally:
            result.finished_at = time.time()
            self._last_result = result
            if self._state is not SchedulerState.STOPPED:
                self._state = SchedulerState.IDLE
            self._idle.set()

        if result.errors or result.failed:
            logger.warning(f"Sync cycle finished with problems: {result.summary()}")
        else:
            logger.info(f"Sync cycle finished in {result.duration:.2f}s: {result.summary()}")
        return result

    async def _sync_repository(self, result: SyncCycleResult) -> bool:
        """Bring the mirror up to date. Returns True if reconciliation is needed."""
        try:
            await self.mirror.ensure_present()
        except AcquisitionError as e:
            logger.error(f"Could not acquire command repository: {e}")
            result.errors.append(str(e))
            return False

        try:
            updated = await self.mirror.update()
        except SyncError as e:
            logger.error(f"Could not update command repository at "
                         f"{self.mirror.current_revision()}: {e}")
            result.errors.append(str(e))
            result.revision = self.mirror.current_revision()
            # The first pass still loads whatever copy is on disk
            return not self._reconciled_once and not e.needs_reclone

        result.revision = self.mirror.current_revision()
        self._last_sync_at = time.time()
        # A reclone lands on the new tip without update() moving anything
        result.repository_changed = updated or result.revision != self._reconciled_revision
        if not result.repository_changed and self._reconciled_once:
            logger.debug(f"Repository unchanged at {result.revision}")
            return False
        return True

    async def _reconcile(self, result: SyncCycleResult) -> None:
        current = await self.discovery.snapshot()
        tracked = {path: record.fingerprint for path, record in self._records.items()}
        diff = diff_snapshots(tracked, current)

        for path in diff.removed:
            record = self._records.pop(path)
            self.loader.unload(record)
            result.removed += 1
            logger.info(f"Removed module {path}")

        for path in diff.changed:
            self.loader.unload(self._records[path])
            record = await self._load_and_register(path, current[path], result.revision)
            self._records[path] = record
            if record.status is ModuleStatus.LOADED:
                result.changed += 1
            else:
                result.failed += 1
                result.errors.append(record.error)

        for path in diff.added:
            record = await self._load_and_register(path, current[path], result.revision)
            self._records[path] = record
            if record.status is ModuleStatus.LOADED:
                result.added += 1
            else:
                result.failed += 1
                result.errors.append(record.error)

    async def _load_and_register(self, path: str, fingerprint: str,
                                 revision: Optional[str]) -> ModuleRecord:
        record = ModuleRecord(
            path=path,
            fingerprint=fingerprint,
            metadata=ModuleMetadata(name=path),
            revision=revision,
        )
        loaded = None
        try:
            loaded = self.loader.load(self.discovery.root, path, fingerprint)
            record.metadata = loaded.metadata
            record.module_name = loaded.module_name
            handle = await self.bridge.register(loaded, owner=path)
        except LoadError as e:
            if loaded is not None:
                self.loader.discard(loaded)
            record.status = ModuleStatus.FAILED
            record.error = str(e)
            logger.error(f"Failed to load module {path} at revision {revision}: {e.message}")
            return record
        except asyncio.CancelledError:
            if loaded is not None:
                self.loader.discard(loaded)
            raise

        record.handle = handle
        record.subscriptions = handle.subscriptions
        record.status = ModuleStatus.LOADED
        logger.info(f"Loaded module {path} ({record.metadata.name}, "
                    f"{len(record.subscriptions)} subscription(s))")
        return record

    async def _run_scheduler(self) -> None:
        """Background task: cycle now, then on every interval tick."""
        logger.info(f"External command sync started (interval {self.interval}s)")
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Error in sync scheduler loop")

                elapsed = time.monotonic() - started
                missed = int(elapsed // self.interval)
                if missed:
                    # Ticks that fell inside the cycle are dropped
                    self._dropped_ticks += missed
                    logger.warning(f"Sync cycle took {elapsed:.1f}s; dropped {missed} tick(s)")
                delay = self.interval - (elapsed % self.interval)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Continue loop
        finally:
            logger.info("External command sync stopped")

    def start(self) -> None:
        """Start the sync background task."""
        if self.is_running():
            logger.warning("Sync scheduler already running")
            return
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("Sync scheduler has been stopped")

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_scheduler())

    async def trigger(self) -> Optional[SyncCycleResult]:
        """Run a cycle immediately, unless one is already running."""
        return await self.run_cycle()

    async def stop(self) -> None:
        """Stop the loop, wait for the running cycle and unload all modules."""
        self._stopping = True
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        # A manually triggered cycle may still be running
        await self._idle.wait()

        for record in self._records.values():
            self.loader.unload(record)
        self._records.clear()
        self._state = SchedulerState.STOPPED
        logger.info("Sync scheduler stopped and all external modules unloaded")

    def status_snapshot(self) -> dict[str, Any]:
        """Read-only view of the scheduler state for diagnostics."""
        repo = self.mirror.state
        return {
            "state": self._state.value,
            "repository": repo.remote_url,
            "branch": repo.branch,
            "revision": self.mirror.current_revision(),
            "last_sync_at": self._last_sync_at,
            "loaded": self.loaded_count,
            "dropped_ticks": self._dropped_ticks,
            "last_result": self._last_result,
            "modules": [
                {
                    "path": record.path,
                    "name": record.metadata.name,
                    "category": record.metadata.category,
                    "status": record.status.value,
                    "subscriptions": len(
                        record.handle.subscriptions if record.handle is not None
                        else record.subscriptions),
                    "error": record.error,
                }
                for record in sorted(self._records.values(), key=lambda r: r.path)
            ],
        }
