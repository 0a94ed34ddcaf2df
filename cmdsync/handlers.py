"""Matrix event callbacks that feed the dispatcher."""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Optional
from nio import AsyncClient, MatrixRoom, RoomMemberEvent, RoomMessageText

from .config import BotConfig
from .dispatch import Dispatcher, IncomingMessage

logger = logging.getLogger(__name__)

# Record bot start time (ms) to filter historical events on first sync.
START_TIME_MS = int(time.time() * 1000)
HISTORICAL_SKEW_MS = 5000  # allow 5s clock skew / startup delay


def is_old_event(event, start_time_ms: int = START_TIME_MS) -> bool:
    server_ts = getattr(event, "server_timestamp", None)
    return isinstance(server_ts, (int, float)) and server_ts < start_time_ms - HISTORICAL_SKEW_MS


def to_incoming_message(room: MatrixRoom, event: RoomMessageText) -> IncomingMessage:
    """Convert a nio text event into the message type handlers receive."""
    sender_name = None
    try:
        sender_name = room.user_name(event.sender)
    except Exception:
        logger.debug("Could not resolve display name for %s", event.sender)

    extra = {}
    if hasattr(event, "source") and isinstance(event.source, dict):
        relates_to = event.source.get("content", {}).get("m.relates_to", {})
        if relates_to.get("rel_type") == "m.thread":
            extra["thread_root"] = relates_to.get("event_id")

    return IncomingMessage(
        room_id=room.room_id,
        sender=event.sender,
        body=event.body or "",
        event_id=event.event_id,
        sender_name=sender_name or event.sender,
        timestamp=getattr(event, "server_timestamp", None),
        extra=extra,
    )


class EventRouter:
    """Filters incoming Matrix events and hands them to the dispatcher.

    Dispatch runs in background tasks so the nio sync loop returns
    immediately and handlers from slow modules never delay other messages.
    """

    def __init__(self, client: AsyncClient, dispatcher: Dispatcher,
                 config: Optional[BotConfig] = None, start_time_ms: int = START_TIME_MS):
        self.client = client
        self.dispatcher = dispatcher
        self.config = config
        self.start_time_ms = start_time_ms
        self._tasks: set[asyncio.Task] = set()

    def _should_ignore(self, room: MatrixRoom, event) -> bool:
        if is_old_event(event, self.start_time_ms):
            logger.debug("Ignoring old event %s from %s in %s",
                         event.event_id, event.sender, room.room_id)
            return True

        if event.sender == self.client.user_id:
            return True

        allowed = self.config.allowed_rooms if self.config else None
        if allowed and room.room_id not in allowed:
            logger.debug("Ignoring event from non-allowed room: %s", room.room_id)
            return True
        return False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch_message(self, message: IncomingMessage) -> None:
        try:
            await self.dispatcher.dispatch_event("message", message)
            handled = await self.dispatcher.dispatch_text(message)
            if handled:
                logger.debug("Message %s matched %d handler(s)", message.event_id, handled)
        except Exception:  # pragma: no cover - log unexpected
            logger.exception("Failed handling message event")

    async def _dispatch_member(self, payload: dict) -> None:
        try:
            await self.dispatcher.dispatch_event("member", payload)
        except Exception:  # pragma: no cover - log unexpected
            logger.exception("Failed handling membership event")

    async def on_message(self, room: MatrixRoom, event: RoomMessageText) -> None:
        """nio callback for RoomMessageText."""
        if self._should_ignore(room, event):
            return
        self._spawn(self._dispatch_message(to_incoming_message(room, event)))

    async def on_member(self, room: MatrixRoom, event: RoomMemberEvent) -> None:
        """nio callback for RoomMemberEvent."""
        if self._should_ignore(room, event):
            return
        payload = {
            "room_id": room.room_id,
            "user_id": event.state_key,
            "membership": event.membership,
            "prev_membership": event.prev_membership,
            "sender": event.sender,
        }
        self._spawn(self._dispatch_member(payload))

    async def drain(self) -> None:
        """Wait for in-flight dispatch tasks (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
