"""Test external command.

Command: !hello
"""
from __future__ import annotations

metadata = {
    "name": "Hello World",
    "category": "Test",
    "description": "A simple external command to test the loader",
    "commands": ["!hello"],
}


def register(bot):
    async def hello(message, match):
        await bot.send_message(
            message.chat_id,
            f"👋 Hello {message.sender_name}! This is an external command working perfectly! 🚀",
        )

    bot.on_text(r"^!hello(?:\s|$)", hello)
