# faucet_bot/transport/adapters.py
"""
Convert Telegram updates into provider-neutral InboundMessages.
Pure converters: no faucet logic here.
"""
from __future__ import annotations

from faucet_bot.core.domain import InboundMessage
from faucet_bot.infra.logging_config import get_logger

logger = get_logger(__name__)


class TelegramAdapter:
    """
    Adapter for Telegram Bot API messages.

    Telegram sends JSON Updates with structure:
    {
      "update_id": 123456,
      "message": {
        "message_id": 42,
        "from": {"id": 123, "first_name": "User", "username": "user", ...},
        "chat": {"id": -100123, "type": "supergroup", ...},
        "text": "/faucet 0xabc..."
      }
    }
    """

    def adapt_update(self, update: dict) -> InboundMessage | None:
        """Return the message carried by ``update``, or None if there is nothing to handle."""
        # Only regular messages (not edits, channel posts, callbacks)
        message = update.get("message")
        if not message:
            logger.debug(f"Telegram update: no 'message' field, ignoring (keys={list(update.keys())})")
            return None

        sender = message.get("from") or {}
        if sender.get("is_bot"):
            return None

        chat_id = str((message.get("chat") or {}).get("id", ""))
        user_id = str(sender.get("id", ""))
        if not chat_id or not user_id:
            logger.warning("Telegram message: missing chat.id or from.id, ignoring")
            return None

        text = message.get("text") or message.get("caption")
        if not text:
            return None

        # "/faucet@MyBot 0x..." → "/faucet 0x..."
        if text.startswith("/"):
            parts = text.split()
            parts[0] = parts[0].split("@")[0]
            text = " ".join(parts)

        return InboundMessage(
            chat_id=chat_id,
            user_id=user_id,
            message_id=str(message.get("message_id", "")),
            text=text,
            provider="telegram",
            sender_name=self._extract_sender_name(sender),
        )

    @staticmethod
    def _extract_sender_name(sender: dict) -> str | None:
        """Prefer @username, fall back to first + last name."""
        username = sender.get("username")
        if username:
            return f"@{username}"
        full_name = " ".join(
            part for part in (sender.get("first_name"), sender.get("last_name")) if part
        )
        return full_name or None
