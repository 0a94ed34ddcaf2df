"""Host-side operator commands for the external command loader."""
from __future__ import annotations
import logging
import time
from collections import defaultdict
from typing import Optional

from .dispatch import Dispatcher, IncomingMessage, Subscription
from .git_mirror import redact_url
from .models import ModuleStatus
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)

HOST_OWNER = "host"

STATUS_PATTERN = r"^!extstatus\b"
SYNC_PATTERN = r"^!extsync\b"
HELP_PATTERN = r"^!commands\b"

STATUS_EMOJI = {
    ModuleStatus.LOADED.value: "✅",
    ModuleStatus.FAILED.value: "❌",
    ModuleStatus.UNLOADED.value: "⏸️",
}


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))


def format_status(scheduler: SyncScheduler) -> str:
    """Render the scheduler's state as a status message."""
    snapshot = scheduler.status_snapshot()
    modules = snapshot["modules"]
    revision = snapshot["revision"]

    message = "🧩 External Commands\n\n"
    message += f"• Repository: {redact_url(snapshot['repository'])} ({snapshot['branch']})\n"
    message += f"• Revision: {revision[:10] if revision else 'none'}\n"
    message += f"• Last sync: {_format_time(snapshot['last_sync_at'])}\n"
    message += f"• State: {snapshot['state']}\n"
    message += f"• Loaded modules: {snapshot['loaded']}/{len(modules)}\n"

    last = snapshot["last_result"]
    if last is not None:
        message += f"• Last cycle: {last.summary()}\n"

    if modules:
        message += "\nModules:\n"
        for module in modules:
            emoji = STATUS_EMOJI.get(module["status"], "•")
            message += f"{emoji} {module['path']} ({module['name']})"
            if module["status"] == ModuleStatus.LOADED.value:
                message += f" - {module['subscriptions']} handler(s)"
            message += "\n"
            if module["error"]:
                message += f"    {module['error']}\n"
    return message


def format_help(scheduler: SyncScheduler) -> str:
    """List loaded external commands grouped by category."""
    by_category = defaultdict(list)
    for record in scheduler.records.values():
        if record.status is ModuleStatus.LOADED:
            by_category[record.metadata.category].append(record.metadata)

    if not by_category:
        return "No external commands are loaded."

    message = "📚 Available commands\n"
    for category in sorted(by_category):
        message += f"\n{category}:\n"
        for meta in sorted(by_category[category], key=lambda m: m.name.lower()):
            line = f"• {meta.name}"
            if meta.commands:
                line += f" ({', '.join(meta.commands)})"
            if meta.description:
                line += f": {meta.description}"
            message += line + "\n"
    return message


class DiagnosticCommands:
    """Subscribes the operator commands to the dispatcher."""

    def __init__(self, dispatcher: Dispatcher, scheduler: SyncScheduler,
                 operators: Optional[list[str]] = None):
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.operators = operators or []
        self._subscriptions: list[Subscription] = []

    def register(self) -> None:
        self._subscriptions = [
            self.dispatcher.subscribe_text(STATUS_PATTERN, self.on_status, HOST_OWNER),
            self.dispatcher.subscribe_text(SYNC_PATTERN, self.on_sync, HOST_OWNER),
            self.dispatcher.subscribe_text(HELP_PATTERN, self.on_help, HOST_OWNER),
        ]

    def unregister(self) -> None:
        for sub in self._subscriptions:
            self.dispatcher.remove(sub)
        self._subscriptions = []

    def is_operator(self, user_id: str) -> bool:
        return not self.operators or user_id in self.operators

    async def _reply(self, message: IncomingMessage, text: str) -> None:
        await self.dispatcher.send_message(
            message.room_id, text, {"notice": True, "reply_to": message.event_id})

    async def on_status(self, message: IncomingMessage, match) -> None:
        if not self.is_operator(message.sender):
            logger.info(f"Ignoring !extstatus from non-operator {message.sender}")
            return
        await self._reply(message, format_status(self.scheduler))

    async def on_sync(self, message: IncomingMessage, match) -> None:
        if not self.is_operator(message.sender):
            logger.info(f"Ignoring !extsync from non-operator {message.sender}")
            return
        logger.info(f"Manual sync requested by {message.sender}")
        result = await self.scheduler.trigger()
        if result is None:
            await self._reply(message, "⏳ A sync is already running, try again shortly.")
            return
        await self._reply(message, f"🔄 Sync finished: {result.summary()}")

    async def on_help(self, message: IncomingMessage, match) -> None:
        await self._reply(message, format_help(self.scheduler))
