"""Bookkeeping types for externally loaded command modules."""
from __future__ import annotations
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .bridge import ModuleHandle
    from .dispatch import Subscription

DEFAULT_CATEGORY = "Uncategorized"


class ModuleStatus(Enum):
    """Load status of one source file."""
    LOADED = "loaded"
    FAILED = "failed"
    UNLOADED = "unloaded"


@dataclass
class ModuleMetadata:
    """Optional metadata a module exports next to its register function."""
    name: str
    category: str = DEFAULT_CATEGORY
    description: str = ""
    commands: list[str] = field(default_factory=list)

    @classmethod
    def from_module_attr(cls, value: Any, default_name: str) -> ModuleMetadata:
        """Build metadata from a module's ``metadata`` export.

        Accepts a dict or any object exposing the fields as attributes.

        Raises:
            ValueError: If a field has the wrong type
        """
        if value is None:
            return cls(name=default_name)

        if isinstance(value, dict):
            get = value.get
        else:
            def get(key, default=None):
                return getattr(value, key, default)

        name = get("name") or default_name
        category = get("category") or DEFAULT_CATEGORY
        description = get("description") or ""
        commands = get("commands") or []

        for key, val in (("name", name), ("category", category),
                         ("description", description)):
            if not isinstance(val, str):
                raise ValueError(f"metadata.{key} must be a string, got {type(val).__name__}")

        if (not isinstance(commands, (list, tuple))
                or not all(isinstance(c, str) for c in commands)):
            raise ValueError("metadata.commands must be a sequence of strings")

        return cls(name=name, category=category, description=description,
                   commands=list(commands))


@dataclass
class ModuleRecord:
    """The scheduler's entry for one source file in the repository.

    Attributes:
        path: Path relative to the repository root (POSIX separators)
        fingerprint: SHA-256 of the file bytes this record was built from
        metadata: Metadata declared by the module (defaults when absent)
        status: Current load status
        subscriptions: Dispatch subscriptions owned by this module
        error: Last load/registration failure message
        revision: Repository revision the file was loaded from
        loaded_at: Unix timestamp of the last load attempt
    """
    path: str
    fingerprint: str
    metadata: ModuleMetadata
    status: ModuleStatus = ModuleStatus.UNLOADED
    subscriptions: list[Subscription] = field(default_factory=list)
    error: Optional[str] = None
    revision: Optional[str] = None
    loaded_at: float = field(default_factory=time.time)
    module_name: Optional[str] = None
    handle: Optional[ModuleHandle] = field(default=None, repr=False)


@dataclass
class SyncCycleResult:
    """Outcome of one scheduler tick. Only kept for observability."""
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    revision: Optional[str] = None
    repository_changed: bool = False
    skipped: bool = False
    added: int = 0
    changed: int = 0
    removed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def summary(self) -> str:
        revision = self.revision[:10] if self.revision else "none"
        if self.skipped:
            text = f"revision {revision}: no changes"
        else:
            text = (f"revision {revision}: {self.added} added, {self.changed} changed, "
                    f"{self.removed} removed, {self.failed} failed")
        if self.errors:
            text += f" ({len(self.errors)} error(s))"
        return text
