# faucet_bot/core/commands.py
"""
Chat commands on top of the request intake.

Transport-agnostic: the handler receives ``InboundMessage``s and answers
through a ``reply(chat_id, text, reply_to_message_id)`` coroutine supplied
by the transport (Telegram poller in production, an AsyncMock in tests).

Commands ("!" works as well as "/"):
    /faucet <address>        request the standard amount
    <any text with address>  same as /faucet
    /status [address]        totals for an address, faucet users (alias: /daily)
    /balance                 funding source balances (admin)
    /give <address> <amt>    admin grant, bypasses quotas (alias: /give-mon)
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable

from faucet_bot.core.addresses import find_address, is_valid_address
from faucet_bot.core.domain import (
    EnqueueResult,
    FailureReason,
    InboundMessage,
    RejectionReason,
    TransferHandle,
)
from faucet_bot.core.errors import ChainError, InvalidAmountError
from faucet_bot.core.service import FaucetService
from faucet_bot.core.units import format_units, parse_units
from faucet_bot.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

ReplyFunc = Callable[[str, str, "str | None"], Awaitable[None]]

NO_PERMISSION = "You don't have permission to use this command."
FAUCET_NO_PERMISSION = "You don't have permission to use the faucet."

MAX_REMEMBERED_ADDRESSES = 10_000


def format_duration(seconds: float) -> str:
    """43260 → "12h 1m"."""
    total_minutes = int(max(0.0, seconds) // 60)
    return f"{total_minutes // 60}h {total_minutes % 60}m"


class FaucetCommandHandler:

    def __init__(
        self,
        service: FaucetService,
        reply: ReplyFunc,
        *,
        allowed_chat_ids: Iterable[str] = (),
        admin_user_ids: Iterable[str] = (),
        faucet_user_ids: Iterable[str] = (),
        max_remembered_addresses: int = MAX_REMEMBERED_ADDRESSES,
    ):
        self._service = service
        self._reply = reply
        self._allowed_chats = set(allowed_chat_ids)
        self._admins = set(admin_user_ids)
        self._faucet_users = set(faucet_user_ids)
        self._symbol = service.settings.token_symbol
        self._decimals = service.settings.token_decimals
        # user -> last address, for /status without an argument; cleared each quota window
        self._last_address: dict[str, str] = {}
        self._max_remembered = max_remembered_addresses
        self._address_window = service.ledger.last_reset_at
        self._followups: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, service: FaucetService, reply: ReplyFunc) -> "FaucetCommandHandler":
        s = service.settings
        return cls(
            service,
            reply,
            allowed_chat_ids=s.allowed_chat_id_set,
            admin_user_ids=s.admin_user_id_set,
            faucet_user_ids=s.faucet_user_id_set,
        )

    def _fmt(self, amount: int) -> str:
        return f"{format_units(amount, self._decimals)} {self._symbol}"

    def _is_admin(self, user_id: str) -> bool:
        return user_id in self._admins

    def _may_request(self, user_id: str) -> bool:
        return not self._faucet_users or user_id in self._faucet_users or self._is_admin(user_id)

    def _sync_address_window(self) -> None:
        ledger = self._service.ledger
        ledger.maybe_reset()
        if ledger.last_reset_at != self._address_window:
            self._last_address.clear()
            self._address_window = ledger.last_reset_at

    def _remember_address(self, user_id: str, address: str) -> None:
        self._sync_address_window()
        self._last_address.pop(user_id, None)
        self._last_address[user_id] = address
        while len(self._last_address) > self._max_remembered:
            # dicts keep insertion order: drop the least recently used
            del self._last_address[next(iter(self._last_address))]

    def _recall_address(self, user_id: str) -> str | None:
        self._sync_address_window()
        return self._last_address.get(user_id)

    async def _send(self, message: InboundMessage, text: str) -> None:
        await self._reply(message.chat_id, text, message.message_id)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, message: InboundMessage) -> str | None:
        """Dispatch one message. Returns the command name handled, or None."""
        if self._allowed_chats and message.chat_id not in self._allowed_chats:
            return None

        text = (message.text or "").strip()
        if not text:
            return None

        parts = text.split()
        command = parts[0].lower()
        if command.startswith("!"):
            command = "/" + command[1:]
        command = command.split("@")[0]  # "/faucet@MyBot" → "/faucet"

        if command == "/balance":
            await self._cmd_balance(message)
            return "balance"
        if command in ("/give", "/give-mon"):
            await self._cmd_give(message, parts[1:])
            return "give"
        if command in ("/status", "/daily"):
            await self._cmd_status(message, parts[1:])
            return "status"
        if command == "/faucet":
            address = parts[1] if len(parts) > 1 else None
            if not address:
                await self._send(message, "Format: /faucet <address>")
                return "faucet"
            await self._cmd_faucet(message, address)
            return "faucet"

        address = find_address(text)
        if address is None:
            return None
        await self._cmd_faucet(message, address)
        return "faucet"

    async def wait_for_followups(self) -> None:
        """Wait for every pending transfer-outcome notification."""
        while self._followups:
            await asyncio.gather(*list(self._followups), return_exceptions=True)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _cmd_faucet(self, message: InboundMessage, address: str) -> None:
        if not self._may_request(message.user_id):
            await self._send(message, FAUCET_NO_PERMISSION)
            return

        if is_valid_address(address):
            self._remember_address(message.user_id, address)

        result = await self._service.intake.submit(message.user_id, address)
        await self._answer_enqueue(message, result, address, self._service.intake.default_amount)

    async def _cmd_give(self, message: InboundMessage, args: list[str]) -> None:
        if not self._is_admin(message.user_id):
            await self._send(message, NO_PERMISSION)
            return
        if len(args) != 2:
            await self._send(message, "Format: /give <address> <amount>")
            return

        address, amount_text = args
        if not is_valid_address(address):
            await self._send(message, "❌ Invalid address.")
            return
        try:
            amount = parse_units(amount_text, self._decimals)
        except InvalidAmountError:
            await self._send(message, "❌ Invalid amount.")
            return

        result = await self._service.intake.grant(message.user_id, address, amount)
        await self._answer_enqueue(message, result, address, amount)

    async def _cmd_status(self, message: InboundMessage, args: list[str]) -> None:
        if not self._may_request(message.user_id):
            await self._send(message, NO_PERMISSION)
            return

        address = args[0] if args else self._recall_address(message.user_id)
        if not address:
            await self._send(
                message,
                "No address found in your recent messages. Please send an address first.",
            )
            return
        if not is_valid_address(address):
            await self._send(message, "❌ Invalid address.")
            return

        status = self._service.ledger.status(address)
        await self._send(
            message,
            f"Status for {address}:\n"
            f"Received: {self._fmt(status.received)}\n"
            f"Remaining until limit: {self._fmt(status.recipient_remaining)}\n"
            f"Time until reset: {format_duration(status.reset_in_seconds)}",
        )

    async def _cmd_balance(self, message: InboundMessage) -> None:
        if not self._is_admin(message.user_id):
            await self._send(message, NO_PERMISSION)
            return
        try:
            identities = await self._service.pool.refresh_balances()
        except ChainError as exc:
            logger.error(f"Error while fetching balances: {exc}")
            await self._send(message, "An error occurred while fetching the balances.")
            return

        lines = ["Faucet wallets balance:"]
        lines.extend(f"{identity.id}: {self._fmt(identity.cached_balance)}" for identity in identities)
        lines.append(f"Remaining budget this period: {self._fmt(self._service.ledger.remaining())}")
        await self._send(message, "\n".join(lines))

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def _answer_enqueue(
        self,
        message: InboundMessage,
        result: EnqueueResult,
        address: str,
        amount: int,
    ) -> None:
        if not result.accepted:
            await self._send(message, self._rejection_text(result))
            return

        await self._send(
            message,
            f"⏳ Request queued: {self._fmt(amount)} to {address}.",
        )
        task = asyncio.create_task(
            self._report_outcome(message, result.handle, address, amount),
            name=f"faucet_followup_{result.handle.request_id}",
        )
        self._followups.add(task)
        task.add_done_callback(self._followups.discard)

    async def _report_outcome(
        self,
        message: InboundMessage,
        handle: TransferHandle,
        address: str,
        amount: int,
    ) -> None:
        log_ctx = LogContext(
            logger,
            transfer_id=handle.request_id,
            user_id=message.user_id,
            chat_id=message.chat_id,
            recipient=address,
        )
        outcome = await handle.wait()
        if outcome.confirmed:
            text = f"✅ Sent {self._fmt(amount)} to {address}.\nTx: {outcome.tx_id}"
        else:
            text = self._failure_text(outcome.reason, outcome.tx_id)
        try:
            await self._send(message, text)
        except Exception as exc:
            log_ctx.error(f"Could not deliver transfer outcome: {exc.__class__.__name__}: {exc}")

    def _rejection_text(self, result: EnqueueResult) -> str:
        reason = result.reason
        if reason is RejectionReason.COOLDOWN_ACTIVE:
            if result.retry_after:
                return f"⏳ Please wait {format_duration(result.retry_after)} before requesting again."
            return "⏳ Your previous request is still being processed."
        if reason is RejectionReason.RECIPIENT_CAP_EXCEEDED:
            cap = self._service.ledger.recipient_cap
            return f"❌ This address has reached the maximum limit of {self._fmt(cap)}."
        if reason is RejectionReason.GLOBAL_BUDGET_EXCEEDED:
            reset_in = format_duration(self._service.ledger.reset_in())
            return f"❌ Faucet limit reached for this period. Please try again in {reset_in}."
        if reason is RejectionReason.RECIPIENT_BALANCE_CEILING:
            return "❌ This address already has sufficient balance."
        if reason is RejectionReason.INVALID_AMOUNT:
            return "❌ Invalid amount."
        return "❌ Invalid address."

    @staticmethod
    def _failure_text(reason: FailureReason | None, tx_id: str | None) -> str:
        if reason is FailureReason.NO_FUNDING_AVAILABLE:
            return "❌ The faucet is out of funds right now. Please try again later."
        if reason is FailureReason.SUBMISSION_TIMEOUT:
            return (
                f"⚠️ Transfer was not confirmed in time (tx {tx_id}). "
                "It may still arrive; check the explorer before asking again."
            )
        if reason is FailureReason.TRANSIENT_RETRY_EXHAUSTED:
            return "❌ The network is busy and the transfer failed. Please try again later."
        if reason is FailureReason.ABORTED:
            return "❌ The faucet is restarting; your request was cancelled. Please try again."
        return "❌ Transfer failed."


__all__ = ["FaucetCommandHandler", "ReplyFunc", "format_duration"]
