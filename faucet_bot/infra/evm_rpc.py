# faucet_bot/infra/evm_rpc.py
"""
EVM JSON-RPC chain client.

Implements both chain interfaces of the dispatch core over plain JSON-RPC:

- ``eth_getBalance`` / ``eth_getTransactionCount`` (``pending``) for the
  source pool and the recipient balance ceiling;
- ``eth_sendTransaction`` for submission.  The funding accounts are managed
  by the node (or a signer proxy in front of it), so this client never
  holds private keys;
- ``eth_getTransactionReceipt`` polling for confirmation.

Error classification (ChainError.kind):
- HTTP 429 / 5xx, connection errors, timeouts    → TRANSIENT
- "failed to serve request", internal errors     → TRANSIENT
- "nonce too low", "replacement ... underpriced" → STALE_SEQUENCE
- "already known" (tx already in the pool)       → PERMANENT
- everything else (insufficient funds, bad tx)   → PERMANENT

HTTP session lifecycle:
- Uses the shared ``rpc`` session from faucet_bot.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any

import aiohttp

from faucet_bot.core.domain import Confirmation, PendingTransfer
from faucet_bot.core.errors import ChainError, ErrorKind
from faucet_bot.infra.http_client import get_rpc_session
from faucet_bot.infra.logging_config import get_logger, mask_address
from faucet_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

# The node already holds this exact transaction; never resubmit
ALREADY_BROADCAST_MARKERS = (
    "already known",
    "known transaction",
)

STALE_SEQUENCE_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
    "nonce has already been used",
)

TRANSIENT_MARKERS = (
    "failed to serve request",
    "header not found",
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "try again",
)

# -32603 internal error, -32005 limit exceeded
TRANSIENT_CODES = {-32603, -32005}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def classify_rpc_error(error: dict) -> ChainError:
    """Map a JSON-RPC ``error`` object to a ChainError."""
    code = error.get("code")
    message = str(error.get("message") or "unknown RPC error")
    lowered = message.lower()

    if any(marker in lowered for marker in ALREADY_BROADCAST_MARKERS):
        kind = ErrorKind.PERMANENT
    elif any(marker in lowered for marker in STALE_SEQUENCE_MARKERS):
        kind = ErrorKind.STALE_SEQUENCE
    elif code in TRANSIENT_CODES or any(marker in lowered for marker in TRANSIENT_MARKERS):
        kind = ErrorKind.TRANSIENT
    else:
        kind = ErrorKind.PERMANENT

    return ChainError(kind, message, code=code)


def _parse_quantity(value: Any, method: str) -> int:
    """Decode a hex QUANTITY ("0x1bc16d674ec80000")."""
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ChainError(ErrorKind.PERMANENT, f"{method}: unexpected result {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise ChainError(ErrorKind.PERMANENT, f"{method}: unexpected result {value!r}")


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        data = await resp.json(content_type=None)
    except Exception:
        logger.warning(f"RPC returned non-JSON body: status={resp.status}")
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EvmJsonRpcClient:

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 15.0,
        receipt_poll_interval: float = 2.0,
        gas_limit: int | None = 21000,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._poll_interval = receipt_poll_interval
        self._gas_limit = gas_limit
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list) -> Any:
        """Execute one JSON-RPC call with error classification."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            session = get_rpc_session(self._timeout)
            async with session.post(self._rpc_url, json=payload) as resp:
                body = await _safe_response_json(resp)

                if resp.status == 429 or resp.status >= 500:
                    inc_counter("rpc_errors_total", method=method, kind="transient")
                    raise ChainError(
                        ErrorKind.TRANSIENT, f"{method}: HTTP {resp.status}", code=resp.status,
                    )

                if body is None:
                    inc_counter("rpc_errors_total", method=method, kind="permanent")
                    raise ChainError(
                        ErrorKind.PERMANENT, f"{method}: HTTP {resp.status}, no JSON body",
                        code=resp.status,
                    )

                if body.get("error"):
                    error = classify_rpc_error(body["error"])
                    inc_counter("rpc_errors_total", method=method, kind=error.kind.value)
                    raise error

                if resp.status != 200:
                    raise ChainError(
                        ErrorKind.PERMANENT, f"{method}: HTTP {resp.status}", code=resp.status,
                    )

                return body.get("result")

        except ChainError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"RPC {method} connection error: {exc.__class__.__name__}: {exc}")
            inc_counter("rpc_errors_total", method=method, kind="transient")
            raise ChainError(ErrorKind.TRANSIENT, f"{method}: {exc.__class__.__name__}: {exc}")

    # ------------------------------------------------------------------
    # FundingSourceQuery
    # ------------------------------------------------------------------

    async def get_available_balance(self, address: str) -> int:
        result = await self._call("eth_getBalance", [address, "latest"])
        return _parse_quantity(result, "eth_getBalance")

    async def get_next_sequence_number(self, address: str) -> int:
        result = await self._call("eth_getTransactionCount", [address, "pending"])
        return _parse_quantity(result, "eth_getTransactionCount")

    # ------------------------------------------------------------------
    # TransferSubmitter
    # ------------------------------------------------------------------

    async def submit(
        self,
        identity_id: str,
        recipient: str,
        amount: int,
        sequence: int,
    ) -> PendingTransfer:
        tx: dict[str, str] = {
            "from": identity_id,
            "to": recipient,
            "value": hex(amount),
            "nonce": hex(sequence),
        }
        if self._gas_limit:
            tx["gas"] = hex(self._gas_limit)

        tx_hash = await self._call("eth_sendTransaction", [tx])
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise ChainError(ErrorKind.PERMANENT, f"eth_sendTransaction: unexpected result {tx_hash!r}")

        logger.info(
            f"Transaction broadcast: from={mask_address(identity_id)}, "
            f"to={mask_address(recipient)}, nonce={sequence}, hash={tx_hash}"
        )
        return PendingTransfer(tx_id=tx_hash, identity_id=identity_id, sequence=sequence)

    async def await_confirmation(
        self,
        pending: PendingTransfer,
        timeout: float,
    ) -> Confirmation:
        """Poll for the receipt until ``timeout`` elapses.

        Transient errors while polling are tolerated; the transaction is
        already broadcast, so the only question left is whether it lands.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self._call("eth_getTransactionReceipt", [pending.tx_id])
            except ChainError as exc:
                if not exc.retryable:
                    raise
                logger.debug(f"Receipt poll failed for {pending.tx_id}, retrying: {exc}")
                receipt = None

            if receipt:
                status = receipt.get("status")
                if status is None or _parse_quantity(status, "receipt.status") == 1:
                    return Confirmation.confirmed(pending.tx_id)
                return Confirmation.failed(
                    ErrorKind.PERMANENT, "transaction reverted", tx_id=pending.tx_id,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                return Confirmation.timed_out(pending.tx_id)
            await asyncio.sleep(min(self._poll_interval, remaining))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def chain_id(self) -> int:
        result = await self._call("eth_chainId", [])
        return _parse_quantity(result, "eth_chainId")
