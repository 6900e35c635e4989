# faucet_bot/core/chain.py
"""
Interfaces the dispatch core needs from the chain.

Implementations raise ``ChainError`` with an ``ErrorKind`` so callers can
tell transient faults from permanent ones.  The production adapter lives in
``faucet_bot.infra.evm_rpc``; tests use in-memory fakes.
"""
from __future__ import annotations

from typing import Protocol

from faucet_bot.core.domain import Confirmation, PendingTransfer


class FundingSourceQuery(Protocol):

    async def get_available_balance(self, address: str) -> int:
        """Spendable balance of ``address`` in base units."""
        ...

    async def get_next_sequence_number(self, address: str) -> int:
        """Next unused outgoing sequence number (nonce) of ``address``."""
        ...


class TransferSubmitter(Protocol):

    async def submit(
        self,
        identity_id: str,
        recipient: str,
        amount: int,
        sequence: int,
    ) -> PendingTransfer:
        """Broadcast a transfer; returns as soon as the node accepted it."""
        ...

    async def await_confirmation(
        self,
        pending: PendingTransfer,
        timeout: float,
    ) -> Confirmation:
        """Wait up to ``timeout`` seconds for the transfer to be included."""
        ...


class ChainClient(FundingSourceQuery, TransferSubmitter, Protocol):
    """Both halves, as implemented by a single RPC client."""
