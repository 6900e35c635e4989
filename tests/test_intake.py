# tests/test_intake.py
"""Tests for faucet_bot/core/intake.py: enqueue-time checks and the handle contract."""
from __future__ import annotations

import asyncio

import pytest

from faucet_bot.core.domain import FailureReason, RejectionReason
from faucet_bot.core.errors import ChainError, ErrorKind
from faucet_bot.core.intake import RequestIntake
from faucet_bot.infra.metrics import get_metrics_collector

from tests.fakes import addr

R1 = addr(1)
R2 = addr(2)


class TestBudgetScenario:
    @pytest.mark.asyncio
    async def test_six_succeed_seventh_rejected(self, intake, ledger, dispatcher):
        for i in range(6):
            result = await intake.submit(f"user-{i}", addr(100 + i))
            assert result.accepted, i
            outcome = await result.handle.wait()
            assert outcome.confirmed

        assert ledger.global_sent == 300

        seventh = await intake.submit("user-6", addr(106))
        assert not seventh.accepted
        assert seventh.reason is RejectionReason.GLOBAL_BUDGET_EXCEEDED
        assert seventh.handle is None
        assert dispatcher.queue_size == 0

    @pytest.mark.asyncio
    async def test_concurrent_burst_cannot_overshoot_budget(self, intake, ledger, chain):
        chain.confirm_delay = 0.01
        results = await asyncio.gather(*(
            intake.submit(f"user-{i}", addr(100 + i)) for i in range(10)
        ))

        accepted = [r for r in results if r.accepted]
        rejected = [r for r in results if not r.accepted]
        assert len(accepted) == 6
        assert {r.reason for r in rejected} == {RejectionReason.GLOBAL_BUDGET_EXCEEDED}

        await asyncio.gather(*(r.handle.wait() for r in accepted))
        assert ledger.global_sent == 300
        assert ledger.held_total == 0


class TestRejections:
    @pytest.mark.asyncio
    async def test_invalid_address(self, intake, dispatcher):
        result = await intake.submit("u1", "0x1234")
        assert result.reason is RejectionReason.INVALID_ADDRESS
        assert dispatcher.queue_size == 0

    @pytest.mark.asyncio
    async def test_address_is_trimmed(self, intake):
        result = await intake.submit("u1", f"  {R1}\n")
        assert result.accepted
        assert (await result.handle.wait()).confirmed

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, intake):
        result = await intake.submit("u1", R1, amount=0)
        assert result.reason is RejectionReason.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_cooldown_after_confirmed_transfer(self, intake):
        first = await intake.submit("u1", R1)
        await first.handle.wait()

        second = await intake.submit("u1", R2)
        assert second.reason is RejectionReason.COOLDOWN_ACTIVE
        assert second.retry_after > 0

    @pytest.mark.asyncio
    async def test_second_request_while_first_is_queued(self, intake, chain):
        chain.confirm_delay = 0.02
        first = await intake.submit("u1", R1)
        second = await intake.submit("u1", R2)

        assert first.accepted
        assert second.reason is RejectionReason.COOLDOWN_ACTIVE
        await first.handle.wait()

    @pytest.mark.asyncio
    async def test_failed_transfer_does_not_consume_cooldown(self, intake, chain, ledger):
        chain.submit_errors = [ChainError(ErrorKind.PERMANENT, "bad tx")]

        first = await intake.submit("u1", R1)
        outcome = await first.handle.wait()
        assert outcome.reason is FailureReason.SUBMISSION_ERROR
        assert ledger.global_sent == 0

        retry = await intake.submit("u1", R1)
        assert retry.accepted
        assert (await retry.handle.wait()).confirmed

    @pytest.mark.asyncio
    async def test_recipient_cap(self, chain, ledger, dispatcher):
        ledger.recipient_cap = 80
        intake = RequestIntake(ledger=ledger, dispatcher=dispatcher, default_amount=50)

        first = await intake.submit("u1", R1)
        await first.handle.wait()

        second = await intake.submit("u2", R1)
        assert second.reason is RejectionReason.RECIPIENT_CAP_EXCEEDED

    @pytest.mark.asyncio
    async def test_rejections_are_counted(self, intake):
        await intake.submit("u1", "not-an-address")
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["faucet_requests_total{outcome=rejected,reason=invalid_address}"] == 1


class TestBalanceCeiling:
    @pytest.mark.asyncio
    async def test_rich_recipient_rejected(self, intake, chain, dispatcher):
        chain.balances[R1] = 1_000

        result = await intake.submit("u1", R1)

        assert result.reason is RejectionReason.RECIPIENT_BALANCE_CEILING
        assert dispatcher.queue_size == 0

    @pytest.mark.asyncio
    async def test_probe_failure_does_not_block(self, intake, chain):
        chain.balance_errors[R1] = ChainError(ErrorKind.TRANSIENT, "HTTP 503")

        result = await intake.submit("u1", R1)
        assert result.accepted
        assert (await result.handle.wait()).confirmed

    @pytest.mark.asyncio
    async def test_disabled_without_ceiling(self, chain, ledger, dispatcher):
        chain.balances[R1] = 10**9
        intake = RequestIntake(
            ledger=ledger,
            dispatcher=dispatcher,
            default_amount=50,
            balance_probe=chain,
            recipient_balance_ceiling=None,
        )
        assert (await intake.submit("u1", R1)).accepted
        await dispatcher.join()


class TestGrant:
    @pytest.mark.asyncio
    async def test_grant_bypasses_quotas(self, intake, ledger):
        ledger.global_sent = 300

        result = await intake.grant("admin", R1, 500)

        assert result.accepted
        outcome = await result.handle.wait()
        assert outcome.confirmed
        assert ledger.global_sent == 300

    @pytest.mark.asyncio
    async def test_grant_validates_address(self, intake):
        result = await intake.grant("admin", "nope", 500)
        assert result.reason is RejectionReason.INVALID_ADDRESS
