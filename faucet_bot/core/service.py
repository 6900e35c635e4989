# faucet_bot/core/service.py
"""
Wiring of the dispatch core from settings.

One ``FaucetService`` per process; the HTTP app and the Telegram poller
share it through ``get_faucet_service()``.
"""
from __future__ import annotations

from dataclasses import dataclass

from faucet_bot.config import Settings
from faucet_bot.core.chain import ChainClient
from faucet_bot.core.dispatch import TransferDispatcher
from faucet_bot.core.intake import RequestIntake
from faucet_bot.core.ledger import QuotaLedger
from faucet_bot.core.sources import SourcePool
from faucet_bot.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class FaucetService:
    settings: Settings
    chain: ChainClient
    ledger: QuotaLedger
    pool: SourcePool
    dispatcher: TransferDispatcher
    intake: RequestIntake

    async def shutdown(self) -> None:
        await self.dispatcher.stop()


def build_faucet_service(settings: Settings, chain: ChainClient | None = None) -> FaucetService:
    """Assemble ledger, pool, dispatcher and intake. ``chain`` defaults to JSON-RPC."""
    if chain is None:
        from faucet_bot.infra.evm_rpc import EvmJsonRpcClient

        if not settings.rpc_url:
            raise RuntimeError("rpc_url is not configured")
        chain = EvmJsonRpcClient(
            settings.rpc_url,
            timeout=settings.rpc_timeout_seconds,
            receipt_poll_interval=settings.receipt_poll_interval_seconds,
            gas_limit=settings.transfer_gas_limit or None,
        )

    ledger = QuotaLedger(
        global_budget=settings.global_budget_units,
        recipient_cap=settings.recipient_cap_units,
        cooldown_seconds=settings.cooldown_seconds,
        reset_interval_seconds=settings.reset_interval_seconds,
    )
    pool = SourcePool(chain, settings.funding_address_list)
    dispatcher = TransferDispatcher(
        ledger=ledger,
        pool=pool,
        submitter=chain,
        no_funding_backoff=settings.no_funding_backoff_seconds,
        no_funding_max_wait=settings.no_funding_max_wait_seconds,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        transient_max_attempts=settings.transient_max_attempts,
        transient_retry_delay=settings.transient_retry_delay_seconds,
    )
    intake = RequestIntake(
        ledger=ledger,
        dispatcher=dispatcher,
        default_amount=settings.faucet_amount_units,
        balance_probe=chain,
        recipient_balance_ceiling=settings.recipient_balance_ceiling_units,
    )

    logger.info(
        f"Faucet service built: sources={len(pool)}, amount={settings.faucet_amount} "
        f"{settings.token_symbol}, budget={settings.global_budget}, "
        f"cap={settings.recipient_cap}, cooldown={settings.cooldown_seconds}s"
    )
    return FaucetService(
        settings=settings,
        chain=chain,
        ledger=ledger,
        pool=pool,
        dispatcher=dispatcher,
        intake=intake,
    )


# Global service instance
_service: FaucetService | None = None


def get_faucet_service() -> FaucetService:
    """Get the global faucet service built from ``faucet_bot.config.settings``."""
    global _service
    if _service is None:
        from faucet_bot.config import settings

        _service = build_faucet_service(settings)
    return _service


def set_faucet_service(service: FaucetService | None) -> None:
    """Replace the global instance (app startup, tests)."""
    global _service
    _service = service
