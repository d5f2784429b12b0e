"""Chat update dispatch shared by the webhook and the long-polling runner."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from services.errors import TelegramError
from services.job_intake import IntakeResult, JobIntake
from services.telegram import TelegramClient

logger = logging.getLogger(__name__)

COMMAND_DESCRIPTIONS = {
    "help": "display this text.",
    "start": "start the bot.",
    "get": "gets the given url.",
}
WELCOME_TEXT = "Welcome to the media feed bot! Send me a YouTube link and I will add it to your podcast feed."


@dataclass(frozen=True)
class ChatMessage:
    chat_id: int | str
    sender_id: str
    text: str


def help_text() -> str:
    lines = ["These are the supported commands:", ""]
    lines.extend(f"/{name} - {description}" for name, description in COMMAND_DESCRIPTIONS.items())
    return "\n".join(lines)


def parse_update(update: Dict[str, Any]) -> Optional[ChatMessage]:
    """Extract a text message from a Bot API update; other updates yield None."""
    message = update.get("message") or update.get("edited_message")
    if not isinstance(message, dict):
        return None
    text = message.get("text")
    chat = message.get("chat") or {}
    chat_id = chat.get("id")
    if not isinstance(text, str) or not text.strip() or chat_id is None:
        return None
    sender = message.get("from") or {}
    sender_id = sender.get("id", chat_id)
    return ChatMessage(chat_id=chat_id, sender_id=str(sender_id), text=text)


def parse_command(text: str) -> Optional[Tuple[str, str]]:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    head, _, argument = stripped[1:].partition(" ")
    name = head.split("@", 1)[0].lower()
    if name not in COMMAND_DESCRIPTIONS:
        return None
    return name, argument.strip()


def answer_command(name: str, argument: str) -> str:
    if name == "help":
        return help_text()
    if name == "start":
        return WELCOME_TEXT
    logger.info("will get %s", argument)
    return argument or "Usage: /get <text>"


async def _reply(telegram: TelegramClient, chat_id: int | str, text: str) -> None:
    try:
        await telegram.send_message(chat_id, text)
    except TelegramError as exc:
        logger.warning("Could not reply to chat %s: %s", chat_id, exc)


async def handle_update(
    update: Dict[str, Any],
    intake: JobIntake,
    telegram: TelegramClient,
) -> Optional[IntakeResult]:
    """Answer commands, route everything else through job intake.

    A ``QueueError`` from intake propagates before any reply is sent.
    """
    message = parse_update(update)
    if message is None:
        return None

    command = parse_command(message.text)
    if command is not None:
        await _reply(telegram, message.chat_id, answer_command(*command))
        return None

    logger.info("Received plain text message: %s", message.text)
    result = await intake.submit(message.text, message.sender_id)
    await _reply(telegram, message.chat_id, result.reply_text)
    return result
