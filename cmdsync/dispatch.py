"""Message dispatch layer that command modules subscribe to."""
from __future__ import annotations
import asyncio
import inspect
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TEXT = "text"
EVENT = "event"

Pattern = Union[str, "re.Pattern[str]"]
Handler = Callable[..., Any]
Sender = Callable[[str, Any, Optional[dict]], Awaitable[Any]]


@dataclass
class IncomingMessage:
    """A chat message as seen by command handlers."""
    room_id: str
    sender: str
    body: str
    event_id: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def chat_id(self) -> str:
        return self.room_id


@dataclass(frozen=True)
class Subscription:
    """Opaque handle for one pattern/handler or event/handler pair."""
    kind: str
    key: str
    owner: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class _TextEntry:
    subscription: Subscription
    regex: re.Pattern
    handler: Handler


@dataclass(frozen=True)
class _EventEntry:
    subscription: Subscription
    handler: Handler


def current_task_cancelling() -> bool:
    """True if the running task has a pending cancellation request.

    Separates a real cancellation of the caller from a callee that raised
    CancelledError on its own. Before Python 3.11 tasks do not track this and
    every CancelledError is treated as coming from the callee.
    """
    task = asyncio.current_task()
    if task is None or not hasattr(task, "cancelling"):
        return False
    return task.cancelling() > 0


def pattern_key(pattern: Pattern) -> str:
    """Canonical text of a pattern, used for ownership and collision checks."""
    if isinstance(pattern, re.Pattern):
        return pattern.pattern
    return pattern


class Dispatcher:
    """Routes incoming messages and events to subscribed handlers.

    The subscription tables are immutable tuples that are replaced on every
    change. A dispatch iterates over the tuple it started with, so a handler
    that is removed mid-dispatch is either called once more or not at all.
    """

    def __init__(self, sender: Optional[Sender] = None):
        self._sender = sender
        self._text: tuple[_TextEntry, ...] = ()
        self._events: dict[str, tuple[_EventEntry, ...]] = {}

    def set_sender(self, sender: Sender) -> None:
        """Set the coroutine used by send_message."""
        self._sender = sender

    def subscribe_text(self, pattern: Pattern, handler: Handler, owner: str) -> Subscription:
        """Subscribe a handler to messages matching a regex pattern."""
        if not callable(handler):
            raise TypeError("handler must be callable")
        regex = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)
        sub = Subscription(kind=TEXT, key=pattern_key(pattern), owner=owner)
        self._text = self._text + (_TextEntry(sub, regex, handler),)
        logger.debug(f"Subscribed {owner} to pattern {sub.key!r}")
        return sub

    def subscribe_event(self, kind: str, handler: Handler, owner: str) -> Subscription:
        """Subscribe a handler to an event kind (e.g. "message", "member")."""
        if not callable(handler):
            raise TypeError("handler must be callable")
        sub = Subscription(kind=EVENT, key=kind, owner=owner)
        entries = self._events.get(kind, ())
        self._events = {**self._events, kind: entries + (_EventEntry(sub, handler),)}
        logger.debug(f"Subscribed {owner} to event {kind!r}")
        return sub

    def remove(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was not active."""
        if subscription.kind == TEXT:
            remaining = tuple(e for e in self._text if e.subscription.id != subscription.id)
            removed = len(remaining) != len(self._text)
            self._text = remaining
        else:
            entries = self._events.get(subscription.key, ())
            remaining = tuple(e for e in entries if e.subscription.id != subscription.id)
            removed = len(remaining) != len(entries)
            events = dict(self._events)
            if remaining:
                events[subscription.key] = remaining
            else:
                events.pop(subscription.key, None)
            self._events = events

        if removed:
            logger.debug(f"Removed subscription {subscription.key!r} of {subscription.owner}")
        return removed

    def pattern_owner(self, pattern: Pattern) -> Optional[str]:
        """Return the owner holding an identical text pattern, if any."""
        key = pattern_key(pattern)
        for entry in self._text:
            if entry.subscription.key == key:
                return entry.subscription.owner
        return None

    def subscriptions(self, owner: Optional[str] = None) -> list[Subscription]:
        """Snapshot of active subscriptions, optionally for one owner."""
        subs = [e.subscription for e in self._text]
        for entries in self._events.values():
            subs.extend(e.subscription for e in entries)
        if owner is not None:
            subs = [s for s in subs if s.owner == owner]
        return subs

    async def _invoke(self, subscription: Subscription, handler: Handler, *args: Any) -> bool:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
            return True
        except (Exception, SystemExit, asyncio.CancelledError) as e:
            if isinstance(e, asyncio.CancelledError) and current_task_cancelling():
                raise
            logger.exception(
                f"Handler for {subscription.key!r} owned by {subscription.owner} failed")
            return False

    async def dispatch_text(self, message: IncomingMessage) -> int:
        """Call every handler whose pattern matches the message body.

        Handlers are called as ``handler(message, match)``. Their exceptions
        are logged and never reach the caller.

        Returns:
            Number of handlers invoked
        """
        calls = []
        for entry in self._text:
            match = entry.regex.search(message.body)
            if match:
                calls.append(self._invoke(entry.subscription, entry.handler, message, match))

        if calls:
            await asyncio.gather(*calls)
        return len(calls)

    async def dispatch_event(self, kind: str, payload: Any) -> int:
        """Call every handler subscribed to ``kind`` with the payload."""
        entries = self._events.get(kind, ())
        if entries:
            await asyncio.gather(*[self._invoke(e.subscription, e.handler, payload) for e in entries])
        return len(entries)

    async def send_message(self, chat_id: str, content: Any, options: Optional[dict] = None) -> Any:
        """Send a message through the configured transport."""
        if self._sender is None:
            raise RuntimeError("Dispatcher has no message sender configured")
        return await self._sender(chat_id, content, options)
