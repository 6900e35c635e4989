# tests/fakes.py
"""In-memory chain double and builders shared by the dispatch-core tests."""
from __future__ import annotations

import asyncio
from collections import defaultdict

from faucet_bot.config import Settings
from faucet_bot.core.dispatch import TransferDispatcher
from faucet_bot.core.domain import Confirmation, PendingTransfer
from faucet_bot.core.errors import ChainError
from faucet_bot.core.sources import SourcePool


def addr(n: int) -> str:
    """Deterministic valid address: addr(1) → 0x000...001"""
    return "0x" + f"{n:040x}"


SOURCE_A = addr(0xA)
SOURCE_B = addr(0xB)

HANG = "hang"


class FakeChain:
    """
    In-memory chain implementing both chain interfaces.

    - ``submit_errors``: raised one per submit() call, in order, before succeeding
    - ``confirm_outcomes``: consumed one per confirmation; a Confirmation,
      an exception to raise, or HANG to never confirm
    - ``in_flight`` / ``max_in_flight``: submissions between submit() and the
      end of await_confirmation()
    """

    def __init__(self, balances: dict[str, int] | None = None):
        self.balances: dict[str, int] = dict(balances or {})
        self.sequences: dict[str, int] = defaultdict(int)
        self.balance_errors: dict[str, ChainError] = {}
        self.submit_errors: list[ChainError] = []
        self.confirm_outcomes: list = []
        self.confirm_delay = 0.0
        self.submitted: list[tuple[str, str, int, int]] = []
        self.sequence_queries = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_available_balance(self, address: str) -> int:
        await asyncio.sleep(0)
        if address in self.balance_errors:
            raise self.balance_errors[address]
        return self.balances.get(address, 0)

    async def get_next_sequence_number(self, address: str) -> int:
        self.sequence_queries += 1
        return self.sequences[address]

    async def submit(self, identity_id, recipient, amount, sequence) -> PendingTransfer:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        if self.submit_errors:
            self.in_flight -= 1
            raise self.submit_errors.pop(0)

        self.submitted.append((identity_id, recipient, amount, sequence))
        self.sequences[identity_id] += 1
        self.balances[identity_id] = self.balances.get(identity_id, 0) - amount
        return PendingTransfer(
            tx_id=f"0xtx{len(self.submitted)}",
            identity_id=identity_id,
            sequence=sequence,
        )

    async def await_confirmation(self, pending: PendingTransfer, timeout: float) -> Confirmation:
        try:
            await asyncio.sleep(self.confirm_delay)
            outcome = self.confirm_outcomes.pop(0) if self.confirm_outcomes else None
            if outcome is None:
                return Confirmation.confirmed(pending.tx_id)
            if outcome == HANG:
                await asyncio.sleep(timeout + 10)
                return Confirmation.timed_out(pending.tx_id)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


def make_dispatcher(chain, ledger, sources=(SOURCE_A,), **overrides) -> TransferDispatcher:
    options = dict(
        no_funding_backoff=0.01,
        no_funding_max_wait=0.05,
        confirmation_timeout=0.2,
        transient_max_attempts=3,
        transient_retry_delay=0.01,
    )
    options.update(overrides)
    return TransferDispatcher(
        ledger=ledger,
        pool=SourcePool(chain, list(sources)),
        submitter=chain,
        **options,
    )


def make_settings(**overrides) -> Settings:
    """Settings with a single funded source and millisecond worker delays."""
    values = dict(
        funding_addresses=SOURCE_A,
        faucet_amount="0.05",
        global_budget="300",
        recipient_cap="0.1",
        recipient_balance_ceiling="10",
        cooldown_seconds=600,
        reset_interval_seconds=3600,
        no_funding_backoff_seconds=0.01,
        no_funding_max_wait_seconds=0.05,
        confirmation_timeout_seconds=0.2,
        transient_retry_delay_seconds=0.01,
        admin_user_ids="admin",
        allowed_chat_ids="",
        faucet_user_ids="",
        metrics_token=None,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)
