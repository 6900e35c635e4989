# faucet_bot/core/dispatch.py
"""
Dispatch queue and transfer worker.

A strict FIFO of transfer requests drained by a single asyncio task:

- exactly one submission is in flight at any time, across all funding
  sources, which is what makes sequence numbers safe to re-fetch right
  before each use;
- the worker is started lazily on enqueue and exits when the queue is
  empty; the next enqueue starts a fresh one;
- every request gets exactly one terminal outcome in its result slot,
  and the quota ledger is committed only for confirmed transfers.

Per-request flow:
    PENDING → (wait for a funded source) → SUBMITTING → CONFIRMED | FAILED

Retry policy:
- no funded source:      sleep ``no_funding_backoff`` and re-scan, up to
                         ``no_funding_max_wait`` → NO_FUNDING_AVAILABLE
- transient/stale-seq:   re-fetch sequence and resubmit, up to
                         ``transient_max_attempts`` → TRANSIENT_RETRY_EXHAUSTED
- other submit errors:   SUBMISSION_ERROR, no retry
- confirmation timeout:  SUBMISSION_TIMEOUT, no retry (the transfer may
                         still land; resubmitting risks paying twice)
"""
from __future__ import annotations

import asyncio
from collections import deque

from faucet_bot.core.chain import TransferSubmitter
from faucet_bot.core.domain import (
    Confirmation,
    ConfirmationStatus,
    FailureReason,
    FundingIdentity,
    PendingTransfer,
    RequestState,
    TransferHandle,
    TransferRequest,
    TransferResult,
)
from faucet_bot.core.errors import ChainError
from faucet_bot.core.ledger import QuotaLedger
from faucet_bot.core.sources import SourcePool
from faucet_bot.infra.logging_config import LogContext, get_logger, mask_address
from faucet_bot.infra.metrics import FaucetMetrics

logger = get_logger(__name__)


class TransferDispatcher:
    """
    Single-consumer transfer queue.

    Usage:
        dispatcher = TransferDispatcher(ledger=ledger, pool=pool, submitter=chain)
        handle = dispatcher.enqueue(request)
        result = await handle.wait()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        pool: SourcePool,
        submitter: TransferSubmitter,
        no_funding_backoff: float = 5.0,
        no_funding_max_wait: float = 120.0,
        confirmation_timeout: float = 60.0,
        transient_max_attempts: int = 3,
        transient_retry_delay: float = 5.0,
    ):
        self._ledger = ledger
        self._pool = pool
        self._submitter = submitter
        self._no_funding_backoff = no_funding_backoff
        self._no_funding_max_wait = no_funding_max_wait
        self._confirmation_timeout = confirmation_timeout
        self._transient_max_attempts = transient_max_attempts
        self._transient_retry_delay = transient_retry_delay

        self._queue: deque[TransferRequest] = deque()
        self._task: asyncio.Task | None = None
        self._current: TransferRequest | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, request: TransferRequest) -> TransferHandle:
        """Append to the queue and make sure a worker is draining it."""
        handle = TransferHandle(request)
        if self._stopped:
            self._finish(request, TransferResult.failure(
                FailureReason.ABORTED, "dispatcher is stopped",
            ))
            return handle

        self._queue.append(request)
        logger.info(
            f"Transfer queued: id={request.id}, to={mask_address(request.recipient)}, "
            f"amount={request.amount}, queue_size={len(self._queue)}",
            extra={"transfer_id": request.id, "user_id": request.user_id},
        )
        self._ensure_worker()
        return handle

    def _ensure_worker(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain(), name="transfer_worker")
            self._task.add_done_callback(self._on_task_done)

    @property
    def queue_size(self) -> int:
        """Requests not yet finished, including the one in flight."""
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> TransferRequest | None:
        return self._current

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Wait until the queue is drained and the worker has exited."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def stop(self) -> None:
        """Cancel the worker and fail everything still queued with ABORTED."""
        self._stopped = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        aborted = 0
        while self._queue:
            request = self._queue.popleft()
            self._finish(request, TransferResult.failure(
                FailureReason.ABORTED, "dispatcher stopped",
            ))
            aborted += 1
        self._current = None
        logger.info(f"Transfer dispatcher stopped (aborted={aborted})")

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        """Process the queue head until the queue is empty."""
        while self._queue:
            request = self._queue[0]
            self._current = request

            try:
                with FaucetMetrics.track_transfer_time():
                    outcome = await self._process(request)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    f"Transfer {request.id} crashed: {exc.__class__.__name__}: {exc}",
                    exc_info=True,
                    extra={"transfer_id": request.id},
                )
                outcome = TransferResult.failure(
                    FailureReason.SUBMISSION_ERROR,
                    f"{exc.__class__.__name__}: {exc}"[:300],
                )

            self._queue.popleft()
            self._current = None
            self._finish(request, outcome)

    async def _process(self, request: TransferRequest) -> TransferResult:
        log_ctx = LogContext(
            logger,
            transfer_id=request.id,
            user_id=request.user_id,
            recipient=request.recipient,
        )
        self._ledger.maybe_reset()

        identity = await self._await_funded_identity(request, log_ctx)
        if identity is None:
            return TransferResult.failure(
                FailureReason.NO_FUNDING_AVAILABLE,
                f"no funding source covers {request.amount} "
                f"after {self._no_funding_max_wait:.0f}s",
            )

        submitted = await self._submit_with_retry(request, identity, log_ctx)
        if isinstance(submitted, TransferResult):
            return submitted

        log_ctx.info(
            f"Transfer submitted: tx={submitted.tx_id}, from={mask_address(identity.id)}, "
            f"seq={submitted.sequence}, attempt={request.attempts}"
        )
        confirmation = await self._await_confirmation(submitted, log_ctx)

        if confirmation.status is ConfirmationStatus.CONFIRMED:
            return TransferResult.success(confirmation.tx_id or submitted.tx_id, identity.id)

        if confirmation.status is ConfirmationStatus.TIMED_OUT:
            return TransferResult.failure(
                FailureReason.SUBMISSION_TIMEOUT,
                f"not confirmed within {self._confirmation_timeout:.0f}s",
                tx_id=submitted.tx_id,
                source=identity.id,
            )

        return TransferResult.failure(
            FailureReason.SUBMISSION_ERROR,
            confirmation.detail,
            tx_id=submitted.tx_id,
            source=identity.id,
        )

    async def _await_funded_identity(
        self,
        request: TransferRequest,
        log_ctx: LogContext,
    ) -> FundingIdentity | None:
        """Scan the pool, backing off while every source is underfunded."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._no_funding_max_wait

        while True:
            identity = await self._pool.select_funded_identity(request.amount)
            if identity is not None:
                return identity

            remaining = deadline - loop.time()
            if remaining <= 0:
                FaucetMetrics.funding_exhausted()
                log_ctx.error(
                    f"No funded source for amount={request.amount} "
                    f"(sources={len(self._pool)}), giving up"
                )
                return None

            delay = min(self._no_funding_backoff, remaining)
            log_ctx.warning(f"No funded source available, retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def _submit_with_retry(
        self,
        request: TransferRequest,
        identity: FundingIdentity,
        log_ctx: LogContext,
    ) -> PendingTransfer | TransferResult:
        """
        Bounded retry loop around (fetch sequence, submit).

        Returns the pending transfer on success, or a terminal failure.
        """
        attempt = 0
        while True:
            attempt += 1
            request.attempts = attempt
            try:
                sequence = await self._pool.next_sequence_for(identity)
                request.state = RequestState.SUBMITTING
                return await self._submitter.submit(
                    identity.id, request.recipient, request.amount, sequence,
                )
            except ChainError as exc:
                if not exc.retryable:
                    log_ctx.error(f"Submission rejected: {exc}")
                    return TransferResult.failure(
                        FailureReason.SUBMISSION_ERROR, str(exc), source=identity.id,
                    )

                if attempt >= self._transient_max_attempts:
                    log_ctx.error(f"Submission failed after {attempt} attempts: {exc}")
                    return TransferResult.failure(
                        FailureReason.TRANSIENT_RETRY_EXHAUSTED, str(exc), source=identity.id,
                    )

                FaucetMetrics.submission_retried(exc.kind.value)
                log_ctx.warning(
                    f"Transient submission error (attempt {attempt}/"
                    f"{self._transient_max_attempts}), retrying in "
                    f"{self._transient_retry_delay:.1f}s: {exc}"
                )
                await asyncio.sleep(self._transient_retry_delay)

    async def _await_confirmation(
        self,
        pending: PendingTransfer,
        log_ctx: LogContext,
    ) -> Confirmation:
        try:
            return await asyncio.wait_for(
                self._submitter.await_confirmation(pending, self._confirmation_timeout),
                timeout=self._confirmation_timeout,
            )
        except asyncio.TimeoutError:
            return Confirmation.timed_out(pending.tx_id)
        except ChainError as exc:
            # Already broadcast: never resubmit, report what we know
            log_ctx.error(f"Confirmation check failed for tx={pending.tx_id}: {exc}")
            return Confirmation.failed(exc.kind, str(exc), tx_id=pending.tx_id)

    def _finish(self, request: TransferRequest, outcome: TransferResult) -> None:
        """Settle the ledger, then resolve the caller's result slot."""
        if request.charge_ledger:
            if outcome.confirmed:
                self._ledger.commit(request.user_id, request.recipient, request.amount)
            else:
                self._ledger.release(request.user_id, request.recipient, request.amount)

        request.resolve(outcome)

        if outcome.confirmed:
            FaucetMetrics.transfer_confirmed(outcome.source or "unknown")
            logger.info(
                f"Transfer confirmed: id={request.id}, tx={outcome.tx_id}",
                extra={"transfer_id": request.id, "user_id": request.user_id},
            )
        else:
            reason = outcome.reason.value if outcome.reason else "unknown"
            FaucetMetrics.transfer_failed(reason)
            logger.warning(
                f"Transfer failed: id={request.id}, reason={reason}, detail={outcome.detail}",
                extra={"transfer_id": request.id, "user_id": request.user_id},
            )

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Transfer worker died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
