# faucet_bot/core/domain.py
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from faucet_bot.core.errors import ErrorKind


# ============================================================================
# OUTCOME ENUMS
# ============================================================================

class RejectionReason(str, Enum):
    """Why a request was refused before it reached the queue."""
    INVALID_ADDRESS = "invalid_address"
    INVALID_AMOUNT = "invalid_amount"
    COOLDOWN_ACTIVE = "cooldown_active"
    RECIPIENT_CAP_EXCEEDED = "recipient_cap_exceeded"
    GLOBAL_BUDGET_EXCEEDED = "global_budget_exceeded"
    RECIPIENT_BALANCE_CEILING = "recipient_balance_ceiling"


class FailureReason(str, Enum):
    """Why an accepted request ended without a confirmed transfer."""
    NO_FUNDING_AVAILABLE = "no_funding_available"
    SUBMISSION_TIMEOUT = "submission_timeout"  # outcome unknown, never retried
    SUBMISSION_ERROR = "submission_error"
    TRANSIENT_RETRY_EXHAUSTED = "transient_retry_exhausted"
    ABORTED = "aborted"  # dispatcher stopped before the request was picked up


class RequestState(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# ============================================================================
# LEDGER DECISIONS
# ============================================================================

@dataclass(frozen=True)
class QuotaDecision:
    accepted: bool
    reason: Optional[RejectionReason] = None
    retry_after: Optional[float] = None  # seconds, for cooldown rejections

    @classmethod
    def accept(cls) -> "QuotaDecision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: RejectionReason, retry_after: float | None = None) -> "QuotaDecision":
        return cls(accepted=False, reason=reason, retry_after=retry_after)


@dataclass(frozen=True)
class LedgerStatus:
    """Snapshot answered to a status query for one recipient."""
    recipient: str
    received: int
    recipient_remaining: int
    global_sent: int
    global_remaining: int
    reset_in_seconds: float


# ============================================================================
# FUNDING SOURCES / CHAIN
# ============================================================================

@dataclass
class FundingIdentity:
    """An account that signs and pays for outgoing transfers."""
    id: str
    cached_balance: int = 0
    next_sequence: Optional[int] = None
    balance_checked_at: Optional[float] = None


@dataclass(frozen=True)
class PendingTransfer:
    """Handle returned by the submission primitive."""
    tx_id: str
    identity_id: str
    sequence: int
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    tx_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @classmethod
    def confirmed(cls, tx_id: str) -> "Confirmation":
        return cls(ConfirmationStatus.CONFIRMED, tx_id=tx_id)

    @classmethod
    def timed_out(cls, tx_id: str | None = None) -> "Confirmation":
        return cls(ConfirmationStatus.TIMED_OUT, tx_id=tx_id)

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str, tx_id: str | None = None) -> "Confirmation":
        return cls(ConfirmationStatus.FAILED, tx_id=tx_id, error_kind=kind, detail=detail)


# ============================================================================
# TRANSFER REQUESTS
# ============================================================================

@dataclass(frozen=True)
class TransferResult:
    """Terminal outcome written once into a request's result slot."""
    state: RequestState
    tx_id: Optional[str] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None
    source: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state is RequestState.CONFIRMED

    @classmethod
    def success(cls, tx_id: str, source: str) -> "TransferResult":
        return cls(RequestState.CONFIRMED, tx_id=tx_id, source=source)

    @classmethod
    def failure(
        cls,
        reason: FailureReason,
        detail: str | None = None,
        *,
        tx_id: str | None = None,
        source: str | None = None,
    ) -> "TransferResult":
        return cls(RequestState.FAILED, tx_id=tx_id, reason=reason, detail=detail, source=source)


def _new_future() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class TransferRequest:
    """
    One queued transfer. Created by the intake, consumed by the worker.

    ``result`` is a single-use slot: ``resolve()`` writes it exactly once,
    later writes are ignored.
    """
    user_id: str
    recipient: str
    amount: int
    charge_ledger: bool = True
    submitted_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RequestState = RequestState.PENDING
    attempts: int = 0
    result: asyncio.Future = field(default_factory=_new_future, repr=False)

    def resolve(self, outcome: TransferResult) -> bool:
        """Write the terminal outcome. Returns False if already resolved."""
        if self.result.done():
            return False
        self.state = outcome.state
        self.result.set_result(outcome)
        return True


class TransferHandle:
    """Caller-side view of a queued request."""

    def __init__(self, request: TransferRequest):
        self._request = request

    @property
    def request_id(self) -> str:
        return self._request.id

    @property
    def state(self) -> RequestState:
        return self._request.state

    def done(self) -> bool:
        return self._request.result.done()

    async def wait(self) -> TransferResult:
        # shield: a caller giving up on waiting must not cancel the slot
        return await asyncio.shield(self._request.result)


@dataclass(frozen=True)
class EnqueueResult:
    accepted: bool
    reason: Optional[RejectionReason] = None
    retry_after: Optional[float] = None
    handle: Optional[TransferHandle] = None

    @classmethod
    def rejected(cls, reason: RejectionReason, retry_after: float | None = None) -> "EnqueueResult":
        return cls(accepted=False, reason=reason, retry_after=retry_after)

    @classmethod
    def enqueued(cls, handle: TransferHandle) -> "EnqueueResult":
        return cls(accepted=True, handle=handle)


# ============================================================================
# CHAT MESSAGES
# ============================================================================

@dataclass
class InboundMessage:
    """Provider-neutral chat message handed to the command handler."""
    chat_id: str
    user_id: str
    message_id: str
    text: str
    provider: str = "telegram"
    sender_name: Optional[str] = None
