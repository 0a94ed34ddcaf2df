"""Matrix transport used by the dispatcher to send messages.

Wraps the matrix-nio AsyncClient so every outgoing message goes through one
asyncio.Lock. Command handlers from many modules may send concurrently with
each other and with the sync loop's callbacks.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Optional
from nio import AsyncClient

logger = logging.getLogger(__name__)

SEND_TIMEOUT = 30  # seconds


def build_content(content: Any, options: Optional[dict] = None) -> dict:
    """Turn handler output into a Matrix m.room.message content dict.

    Args:
        content: Plain text, or a complete content dict sent as is
        options: Optional keys:
            - html: HTML formatted body to send alongside the text
            - notice: Send as m.notice instead of m.text
            - reply_to: Event ID this message replies to
            - thread_root: Event ID of the thread root

    Returns:
        Message content dict
    """
    if isinstance(content, dict):
        return content

    options = options or {}
    message = {
        "msgtype": "m.notice" if options.get("notice") else "m.text",
        "body": str(content),
    }

    if options.get("html"):
        message["format"] = "org.matrix.custom.html"
        message["formatted_body"] = options["html"]

    thread_root = options.get("thread_root")
    reply_to = options.get("reply_to")
    if thread_root:
        message["m.relates_to"] = {
            "rel_type": "m.thread",
            "event_id": thread_root,
            "is_falling_back": True,
            "m.in_reply_to": {"event_id": reply_to or thread_root}
        }
    elif reply_to:
        message["m.relates_to"] = {"m.in_reply_to": {"event_id": reply_to}}

    return message


class MatrixTransport:
    """Serialized message sending over a matrix-nio client."""

    def __init__(self, client: AsyncClient, timeout: float = SEND_TIMEOUT):
        self._client = client
        self._lock = asyncio.Lock()
        self.timeout = timeout

    @property
    def client(self) -> AsyncClient:
        return self._client

    async def send_message(self, room_id: str, content: Any, options: Optional[dict] = None):
        """Send a message to a room.

        Returns:
            RoomSendResponse (or RoomSendError) from matrix-nio

        Raises:
            asyncio.TimeoutError: If the send did not complete in time
        """
        body = build_content(content, options)
        logger.debug(f"Acquiring lock for send to {room_id}...")
        async with self._lock:
            try:
                return await asyncio.wait_for(
                    self._client.room_send(
                        room_id,
                        "m.room.message",
                        body,
                        ignore_unverified_devices=True
                    ),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError:
                logger.error(f"Send to {room_id} timed out after {self.timeout}s")
                raise
            except Exception as e:
                logger.error(f"Error sending message to {room_id}: {e}")
                raise

    async def close(self):
        """Close the client connection."""
        async with self._lock:
            logger.info("Closing client connection")
            return await self._client.close()
