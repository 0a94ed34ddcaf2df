"""Bridge between loaded command modules and the dispatch layer.

A module only ever sees a ModuleHandle. The handle forwards the three
operations modules may use (text pattern subscription, event subscription
and sending messages) and remembers every subscription it created, which is
what lets the scheduler unload or roll back a module completely.
"""
from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Any, Optional

from .dispatch import Dispatcher, Handler, Pattern, Subscription, current_task_cancelling
from .loader import LoadedModule, LoadError
from .models import ModuleMetadata

logger = logging.getLogger(__name__)

DEFAULT_REGISTER_TIMEOUT = 10.0  # seconds


class PatternConflictError(LoadError):
    """Raised when a module subscribes a pattern another module already owns."""
    pass


class ModuleHandle:
    """The capability set passed to a module's register function."""

    def __init__(self, dispatcher: Dispatcher, owner: str, metadata: ModuleMetadata):
        self._dispatcher = dispatcher
        self._owner = owner
        self._metadata = metadata
        self._subscriptions: list[Subscription] = []
        self._closed = False

    @property
    def metadata(self) -> ModuleMetadata:
        return self._metadata

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Handle for {self._owner} is closed")

    def on_text(self, pattern: Pattern, handler: Handler) -> Subscription:
        """Call ``handler(message, match)`` for messages matching ``pattern``."""
        self._check_open()
        holder = self._dispatcher.pattern_owner(pattern)
        if holder is not None and holder != self._owner:
            raise PatternConflictError(
                self._owner, f"pattern {getattr(pattern, 'pattern', pattern)!r} is already registered by {holder}")
        sub = self._dispatcher.subscribe_text(pattern, handler, self._owner)
        self._subscriptions.append(sub)
        return sub

    def on_event(self, kind: str, handler: Handler) -> Subscription:
        """Call ``handler(payload)`` for every event of the given kind."""
        self._check_open()
        sub = self._dispatcher.subscribe_event(kind, handler, self._owner)
        self._subscriptions.append(sub)
        return sub

    async def send_message(self, chat_id: str, content: Any, options: Optional[dict] = None) -> Any:
        """Send a message to a room."""
        return await self._dispatcher.send_message(chat_id, content, options)

    def rollback(self) -> int:
        """Remove every subscription made through this handle."""
        removed = 0
        for sub in self._subscriptions:
            if self._dispatcher.remove(sub):
                removed += 1
        self._subscriptions.clear()
        return removed

    def close(self) -> None:
        """Refuse further subscriptions (used when the module is unloaded)."""
        self._closed = True


class RegistrationBridge:
    """Runs a module's register entry point with failure isolation."""

    def __init__(self, dispatcher: Dispatcher, timeout: float = DEFAULT_REGISTER_TIMEOUT):
        self.dispatcher = dispatcher
        self.timeout = timeout

    async def register(self, loaded: LoadedModule, owner: Optional[str] = None) -> ModuleHandle:
        """Call ``loaded.register(handle)`` and return the populated handle.

        Raises:
            LoadError: If register raises or times out. Subscriptions made
                before the failure are rolled back first.
        """
        owner = owner or loaded.path
        handle = ModuleHandle(self.dispatcher, owner, loaded.metadata)
        try:
            result = loaded.register(handle)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._abort(handle, loaded.path)
            raise LoadError(loaded.path, f"register timed out after {self.timeout}s") from e
        except PatternConflictError as e:
            self._abort(handle, loaded.path)
            raise PatternConflictError(loaded.path, e.message) from e
        except (Exception, SystemExit, asyncio.CancelledError) as e:
            self._abort(handle, loaded.path)
            if isinstance(e, asyncio.CancelledError) and current_task_cancelling():
                raise
            raise LoadError(loaded.path, f"{type(e).__name__} in register: {e}") from e

        logger.debug(f"{loaded.path} registered {len(handle.subscriptions)} subscription(s)")
        return handle

    def _abort(self, handle: ModuleHandle, path: str) -> None:
        removed = handle.rollback()
        handle.close()
        if removed:
            logger.info(f"Rolled back {removed} subscription(s) from failed register of {path}")
