# faucet_bot/core/ledger.py
"""
Quota ledger: cooldowns, per-recipient caps and the rolling global budget.

All state is process memory only and resets on a fixed interval.  The
reset has no timer of its own: ``maybe_reset()`` runs before every
eligibility check, every status query and every transfer the worker picks up.

Two kinds of numbers are kept:

- committed totals (``global_sent``, ``per_recipient_received``,
  ``per_user_last_request``), written only by ``commit()`` after a transfer
  is confirmed on chain;
- holds for accepted requests still waiting in the dispatch queue.  Holds
  count against caps and budget at check time, so a burst of concurrent
  requests cannot overshoot the budget, but they are released without a
  trace when a transfer fails.
"""
from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from faucet_bot.core.domain import LedgerStatus, QuotaDecision, RejectionReason
from faucet_bot.infra.logging_config import get_logger, mask_address
from faucet_bot.infra.metrics import FaucetMetrics

logger = get_logger(__name__)


class QuotaLedger:

    def __init__(
        self,
        *,
        global_budget: int,
        recipient_cap: int,
        cooldown_seconds: float,
        reset_interval_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.global_budget = global_budget
        self.recipient_cap = recipient_cap
        self.cooldown_seconds = cooldown_seconds
        self.reset_interval_seconds = reset_interval_seconds
        self._clock = clock

        self.per_user_last_request: dict[str, float] = {}
        self.per_recipient_received: dict[str, int] = {}
        self.global_sent: int = 0
        self.last_reset_at: float = clock()

        self._held_total: int = 0
        self._held_by_recipient: dict[str, int] = defaultdict(int)
        self._held_by_user: dict[str, int] = defaultdict(int)

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def maybe_reset(self, now: float | None = None) -> bool:
        """Zero the budget window if the reset interval has elapsed.

        Cooldown timestamps are not touched; they expire on their own window.
        Returns True when a reset happened.
        """
        now = self._now(now)
        if now - self.last_reset_at < self.reset_interval_seconds:
            return False

        sent = self.global_sent
        self.global_sent = 0
        self.per_recipient_received.clear()
        self.last_reset_at = now
        FaucetMetrics.ledger_reset()
        logger.info(f"Quota window reset: previous global_sent={sent}")
        return True

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def cooldown_remaining(self, user_id: str, now: float | None = None) -> float:
        """Seconds until ``user_id`` may request again (0 when free)."""
        last = self.per_user_last_request.get(user_id)
        if last is None:
            return 0.0
        return max(0.0, last + self.cooldown_seconds - self._now(now))

    def check_and_reserve(
        self,
        user_id: str,
        recipient: str,
        amount: int,
        now: float | None = None,
    ) -> QuotaDecision:
        """
        Decide whether a request may be enqueued.

        Checks, in priority order: user cooldown, recipient cap, global
        budget.  Does not mutate committed state; callers place a hold
        with ``hold()`` once the request is actually queued.
        """
        now = self._now(now)

        wait = self.cooldown_remaining(user_id, now)
        if wait > 0:
            return QuotaDecision.reject(RejectionReason.COOLDOWN_ACTIVE, retry_after=wait)
        if self._held_by_user.get(user_id):
            # A previous request of this user is still queued or in flight
            return QuotaDecision.reject(RejectionReason.COOLDOWN_ACTIVE)

        received = self.per_recipient_received.get(recipient, 0)
        if received + self._held_by_recipient.get(recipient, 0) + amount > self.recipient_cap:
            return QuotaDecision.reject(RejectionReason.RECIPIENT_CAP_EXCEEDED)

        if self.global_sent + self._held_total + amount > self.global_budget:
            return QuotaDecision.reject(RejectionReason.GLOBAL_BUDGET_EXCEEDED)

        return QuotaDecision.accept()

    # ------------------------------------------------------------------
    # Holds for queued requests
    # ------------------------------------------------------------------

    def hold(self, user_id: str, recipient: str, amount: int) -> None:
        self._held_total += amount
        self._held_by_recipient[recipient] += amount
        self._held_by_user[user_id] += 1

    def release(self, user_id: str, recipient: str, amount: int) -> None:
        self._held_total = max(0, self._held_total - amount)
        self._decrement(self._held_by_recipient, recipient, amount)
        self._decrement(self._held_by_user, user_id, 1)

    @staticmethod
    def _decrement(counts: dict[str, int], key: str, amount: int) -> None:
        left = counts.get(key, 0) - amount
        if left > 0:
            counts[key] = left
        else:
            counts.pop(key, None)

    @property
    def held_total(self) -> int:
        return self._held_total

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        user_id: str,
        recipient: str,
        amount: int,
        now: float | None = None,
    ) -> None:
        """Record a confirmed transfer. Call exactly once per confirmation."""
        now = self._now(now)
        self.release(user_id, recipient, amount)
        self.per_recipient_received[recipient] = (
            self.per_recipient_received.get(recipient, 0) + amount
        )
        self.global_sent += amount
        self.per_user_last_request[user_id] = now
        logger.info(
            f"Ledger commit: to={mask_address(recipient)}, amount={amount}, "
            f"global_sent={self.global_sent}/{self.global_budget}",
            extra={"user_id": user_id},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def remaining(self) -> int:
        """Budget left in the current window, floored at zero."""
        return max(0, self.global_budget - self.global_sent)

    def reset_in(self, now: float | None = None) -> float:
        return max(0.0, self.last_reset_at + self.reset_interval_seconds - self._now(now))

    def status(self, recipient: str, now: float | None = None) -> LedgerStatus:
        now = self._now(now)
        self.maybe_reset(now)
        received = self.per_recipient_received.get(recipient, 0)
        return LedgerStatus(
            recipient=recipient,
            received=received,
            recipient_remaining=max(0, self.recipient_cap - received),
            global_sent=self.global_sent,
            global_remaining=self.remaining(),
            reset_in_seconds=self.reset_in(now),
        )
