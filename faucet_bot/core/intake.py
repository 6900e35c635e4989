# faucet_bot/core/intake.py
"""
Request intake: the boundary between the chat command layer and the
dispatch core.

``submit()`` runs every enqueue-time check and either returns a rejection
reason synchronously or queues the transfer and returns a handle the
caller can await for the terminal outcome.
"""
from __future__ import annotations

from typing import Callable

from faucet_bot.core.addresses import is_valid_address
from faucet_bot.core.chain import FundingSourceQuery
from faucet_bot.core.dispatch import TransferDispatcher
from faucet_bot.core.domain import EnqueueResult, RejectionReason, TransferRequest
from faucet_bot.core.errors import ChainError
from faucet_bot.core.ledger import QuotaLedger
from faucet_bot.infra.logging_config import LogContext, get_logger
from faucet_bot.infra.metrics import FaucetMetrics

logger = get_logger(__name__)


class RequestIntake:

    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        dispatcher: TransferDispatcher,
        default_amount: int,
        balance_probe: FundingSourceQuery | None = None,
        recipient_balance_ceiling: int | None = None,
        address_validator: Callable[[str], bool] = is_valid_address,
    ):
        self._ledger = ledger
        self._dispatcher = dispatcher
        self.default_amount = default_amount
        self._balance_probe = balance_probe
        self._ceiling = recipient_balance_ceiling
        self._is_valid_address = address_validator

    def _reject(self, reason: RejectionReason, retry_after: float | None = None) -> EnqueueResult:
        FaucetMetrics.request_rejected(reason.value)
        return EnqueueResult.rejected(reason, retry_after)

    async def submit(
        self,
        user_id: str,
        recipient: str,
        amount: int | None = None,
        now: float | None = None,
    ) -> EnqueueResult:
        """Check eligibility and queue a faucet transfer."""
        amount = self.default_amount if amount is None else amount
        recipient = recipient.strip()
        log_ctx = LogContext(logger, user_id=user_id, recipient=recipient)

        if not self._is_valid_address(recipient):
            return self._reject(RejectionReason.INVALID_ADDRESS)
        if amount <= 0:
            return self._reject(RejectionReason.INVALID_AMOUNT)

        self._ledger.maybe_reset(now)
        decision = self._ledger.check_and_reserve(user_id, recipient, amount, now)
        if not decision.accepted:
            log_ctx.info(f"Faucet request rejected: reason={decision.reason.value}")
            return self._reject(decision.reason, decision.retry_after)

        if await self._over_balance_ceiling(recipient, log_ctx):
            return self._reject(RejectionReason.RECIPIENT_BALANCE_CEILING)

        # Re-check: the balance probe is a suspension point
        decision = self._ledger.check_and_reserve(user_id, recipient, amount, now)
        if not decision.accepted:
            return self._reject(decision.reason, decision.retry_after)

        self._ledger.hold(user_id, recipient, amount)
        request = TransferRequest(user_id=user_id, recipient=recipient, amount=amount)
        handle = self._dispatcher.enqueue(request)
        FaucetMetrics.request_accepted("faucet")
        log_ctx.info(f"Faucet request accepted: id={request.id}, amount={amount}")
        return EnqueueResult.enqueued(handle)

    async def grant(self, user_id: str, recipient: str, amount: int) -> EnqueueResult:
        """Admin transfer: same queue, no quota checks, never charged to the ledger."""
        recipient = recipient.strip()
        if not self._is_valid_address(recipient):
            return self._reject(RejectionReason.INVALID_ADDRESS)
        if amount <= 0:
            return self._reject(RejectionReason.INVALID_AMOUNT)

        request = TransferRequest(
            user_id=user_id,
            recipient=recipient,
            amount=amount,
            charge_ledger=False,
        )
        handle = self._dispatcher.enqueue(request)
        FaucetMetrics.request_accepted("grant")
        LogContext(logger, user_id=user_id, recipient=recipient).info(
            f"Admin grant queued: id={request.id}, amount={amount}"
        )
        return EnqueueResult.enqueued(handle)

    async def _over_balance_ceiling(self, recipient: str, log_ctx: LogContext) -> bool:
        """True when the recipient already holds enough. Probe failures do not block."""
        if self._ceiling is None or self._balance_probe is None:
            return False
        try:
            balance = await self._balance_probe.get_available_balance(recipient)
        except ChainError as exc:
            log_ctx.warning(f"Recipient balance probe failed, skipping ceiling check: {exc}")
            return False
        if balance >= self._ceiling:
            log_ctx.info(f"Recipient already holds {balance} >= ceiling {self._ceiling}")
            return True
        return False
