# faucet_bot/transport/telegram_polling.py
"""
Telegram Bot API long-polling loop.

Calls getUpdates in a loop, converts each update to an InboundMessage and
hands it to the faucet command handler.  Replies go out through
send_text_message.

Usage:
    poller = TelegramPoller(service)
    await poller.start()
    # ... on shutdown:
    await poller.stop()
"""
from __future__ import annotations

import asyncio

from faucet_bot.config import settings
from faucet_bot.core.commands import FaucetCommandHandler
from faucet_bot.core.service import FaucetService
from faucet_bot.infra.logging_config import LogContext, get_logger
from faucet_bot.infra.metrics import inc_counter
from faucet_bot.infra.rate_limiter import InMemoryRateLimiter
from faucet_bot.transport.adapters import TelegramAdapter
from faucet_bot.transport.telegram_sender import (
    TelegramSendError,
    delete_webhook,
    get_updates,
    send_text_message,
)

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 30


class TelegramPoller:
    """
    Long-polling loop for receiving Telegram updates.

    Error handling:
    - On API errors: exponential backoff (1s → 2s → 4s → ... → 30s max)
    - On processing errors: log and continue (the offset is already advanced)
    - On cancellation: graceful shutdown
    """

    def __init__(
        self,
        service: FaucetService,
        poll_timeout: int | None = None,
        *,
        token: str | None = None,
        rate_limit_per_minute: int | None = None,
    ):
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.telegram_poll_timeout
        self._token = token
        self._adapter = TelegramAdapter()
        self.handler = FaucetCommandHandler.from_settings(service, self._reply)
        self._task: asyncio.Task | None = None
        self._offset: int | None = None
        self._running = False
        self._backoff = 1  # seconds, doubles on error

        # Per-chat flood protection, independent of the faucet cooldown
        self._chat_rate_limiter = InMemoryRateLimiter(
            max_requests=rate_limit_per_minute or settings.chat_rate_limit_per_minute,
            window_seconds=60,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            logger.warning("Telegram poller already running")
            return

        try:
            await delete_webhook(token=self._token)
            logger.info("Telegram webhook removed (polling mode)")
        except TelegramSendError as e:
            logger.warning(f"Could not delete Telegram webhook: {e}")

        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="tg_poller")
        logger.info(f"Telegram poller started (timeout={self.poll_timeout}s)")

    async def stop(self) -> None:
        """Stop polling. Pending outcome notifications are left to finish on their own."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Telegram poller stopped")

    async def _reply(self, chat_id: str, text: str, reply_to_message_id: str | None = None) -> None:
        try:
            await send_text_message(
                chat_id, text,
                token=self._token,
                reply_to_message_id=reply_to_message_id,
            )
            inc_counter("outbound_messages_total", status="sent")
        except TelegramSendError as err:
            logger.error(f"Telegram outbound send failed: {err}", extra={"chat_id": chat_id})
            inc_counter("outbound_messages_total", status="failed")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                updates = await get_updates(
                    offset=self._offset,
                    timeout=self.poll_timeout,
                    token=self._token,
                )
                self._backoff = 1

                for update in updates:
                    # Acknowledge before processing so a crashing update is not redelivered forever
                    self._offset = update.get("update_id", 0) + 1
                    await self.process_update(update)

            except TelegramSendError as e:
                if not self._running:
                    break
                delay = max(self._backoff, e.retry_after or 0)
                logger.error(f"Telegram polling error: {e}, backing off {delay}s")
                await asyncio.sleep(delay)
                self._backoff = min(self._backoff * 2, MAX_BACKOFF_SECONDS)

            except asyncio.CancelledError:
                break

            except Exception as e:
                if not self._running:
                    break
                logger.error(f"Telegram polling unexpected error: {e}", exc_info=True)
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, MAX_BACKOFF_SECONDS)

    async def process_update(self, update: dict) -> str | None:
        """Handle one Update. Returns the command name handled, if any."""
        message = self._adapter.adapt_update(update)
        if message is None:
            return None

        log_ctx = LogContext(logger, chat_id=message.chat_id, user_id=message.user_id)

        allowed, retry_after = self._chat_rate_limiter.is_allowed(message.chat_id)
        if not allowed:
            log_ctx.warning(f"Rate limit exceeded for chat, retry_after={retry_after}s")
            inc_counter("chat_rate_limited")
            return None

        try:
            command = await self.handler.handle(message)
        except Exception as exc:
            log_ctx.error(
                f"Telegram update processing failed: {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            return None

        if command:
            inc_counter("inbound_commands_total", command=command)
            log_ctx.info(f"Telegram command handled: {command}")
        return command
