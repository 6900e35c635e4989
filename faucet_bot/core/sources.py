# faucet_bot/core/sources.py
"""
Funding source pool.

Selection is first-fit in configured order, not round-robin: the first
identity is drained until it cannot cover a request, then the next one is
used.  Operators see one account at a time go to zero and refill it
out-of-band.
"""
from __future__ import annotations

import time

from faucet_bot.core.chain import FundingSourceQuery
from faucet_bot.core.domain import FundingIdentity
from faucet_bot.core.errors import ChainError
from faucet_bot.infra.logging_config import get_logger, mask_address

logger = get_logger(__name__)


class SourcePool:

    def __init__(self, chain: FundingSourceQuery, identity_ids: list[str]):
        self._chain = chain
        self.identities: list[FundingIdentity] = [
            FundingIdentity(id=identity_id) for identity_id in identity_ids
        ]

    def __len__(self) -> int:
        return len(self.identities)

    async def _refresh_balance(self, identity: FundingIdentity) -> int:
        balance = await self._chain.get_available_balance(identity.id)
        identity.cached_balance = balance
        identity.balance_checked_at = time.time()
        return balance

    async def select_funded_identity(self, amount: int) -> FundingIdentity | None:
        """First identity (in preference order) whose fresh balance covers ``amount``.

        An identity whose balance cannot be read is skipped for this round.
        """
        for identity in self.identities:
            try:
                balance = await self._refresh_balance(identity)
            except ChainError as exc:
                logger.warning(
                    f"Balance query failed for source {mask_address(identity.id)}, "
                    f"skipping: {exc}"
                )
                continue

            if balance >= amount:
                return identity

            logger.debug(
                f"Source {mask_address(identity.id)} underfunded: "
                f"balance={balance} < amount={amount}"
            )
        return None

    async def next_sequence_for(self, identity: FundingIdentity) -> int:
        """Fresh sequence number from the chain; cached values are never reused."""
        sequence = await self._chain.get_next_sequence_number(identity.id)
        identity.next_sequence = sequence
        return sequence

    async def refresh_balances(self) -> list[FundingIdentity]:
        """Refresh every identity (admin report). Raises on the first failure."""
        for identity in self.identities:
            await self._refresh_balance(identity)
        return list(self.identities)
