# faucet_bot/core/errors.py
"""
Typed errors for the faucet.

Enqueue-time rejections are not exceptions: they come back as
``EnqueueResult`` values.  The exceptions here cover configuration,
chain access, and caller mistakes that should surface loudly.
"""
from __future__ import annotations

from enum import Enum


class FaucetError(Exception):
    """Base class for all faucet errors."""


class ConfigurationError(FaucetError):
    """A setting is missing or cannot be interpreted."""


class InvalidAmountError(FaucetError, ValueError):
    """A token amount could not be parsed or is not positive."""


class ErrorKind(str, Enum):
    """How the dispatch worker should react to a chain error."""
    TRANSIENT = "transient"            # network blip, overloaded node: retry
    STALE_SEQUENCE = "stale_sequence"  # nonce already used: re-fetch and retry
    PERMANENT = "permanent"            # anything else: give up

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.PERMANENT


class ChainError(FaucetError):
    """Error talking to the chain (balance/sequence query or submission).

    Attributes:
        kind:  Classification used by the retry state machine.
        code:  JSON-RPC error code or HTTP status, when known.
    """

    def __init__(self, kind: ErrorKind, message: str, *, code: int | None = None):
        self.kind = kind
        self.code = code
        super().__init__(f"{kind.value}: {message}")

    @property
    def retryable(self) -> bool:
        return self.kind.retryable
