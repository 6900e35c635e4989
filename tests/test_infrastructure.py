# tests/test_infrastructure.py
"""Tests for faucet_bot/infra: metrics, rate limiter, logging, shared HTTP sessions."""
import json
import logging

import pytest


class TestMetrics:
    def test_metrics_counter_increment(self):
        from faucet_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        assert collector.get_metrics()["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        from faucet_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.5):
            collector.observe_histogram("test_histogram", value)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_histogram_keeps_bounded_window(self):
        from faucet_bot.infra.metrics import Histogram

        histogram = Histogram(window=10)
        for value in range(100):
            histogram.observe(float(value))

        stats = histogram.get_stats()
        assert stats["count"] == 100
        assert stats["min"] == 0.0
        assert stats["avg"] == 49.5
        assert stats["p95"] == 99.0
        assert len(histogram._recent) == 10

    def test_metrics_with_labels(self):
        from faucet_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("requests", 1, {"endpoint": "/status"})
        collector.inc_counter("requests", 2, {"endpoint": "/metrics"})

        counters = collector.get_metrics()["counters"]
        assert counters["requests{endpoint=/status}"] == 1
        assert counters["requests{endpoint=/metrics}"] == 2

    def test_faucet_metrics_keys(self):
        from faucet_bot.infra.metrics import FaucetMetrics, get_metrics_collector

        FaucetMetrics.transfer_confirmed("0xabc")
        FaucetMetrics.transfer_failed("submission_timeout")
        with FaucetMetrics.track_transfer_time():
            pass

        metrics = get_metrics_collector().get_metrics()
        assert metrics["counters"]["faucet_transfers_total{source=0xabc,status=confirmed}"] == 1
        assert metrics["counters"]["faucet_transfers_total{reason=submission_timeout,status=failed}"] == 1
        assert metrics["histograms"]["faucet_transfer_seconds"]["count"] == 1


class TestRateLimiter:
    def test_rate_limiter_allows_under_limit(self):
        from faucet_bot.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60)

        allowed, retry_after = limiter.is_allowed("chat-1")
        assert allowed is True
        assert retry_after is None

    def test_rate_limiter_blocks_over_limit(self):
        from faucet_bot.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60)
        limiter.is_allowed("chat-1")
        limiter.is_allowed("chat-1")

        allowed, retry_after = limiter.is_allowed("chat-1")
        assert allowed is False
        assert retry_after > 0

        # Keys are independent
        assert limiter.is_allowed("chat-2")[0] is True

    def test_cleanup_removes_stale_keys(self):
        from faucet_bot.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60)
        limiter.is_allowed("chat-1")

        assert limiter.cleanup(max_age_seconds=-1) == 1
        assert limiter.cleanup() == 0


class TestLogging:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("faucet_bot.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_context(self):
        from faucet_bot.infra.logging_config import JSONFormatter

        line = JSONFormatter().format(self._record(transfer_id="t1", user_id="u1"))
        data = json.loads(line)

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["transfer_id"] == "t1"
        assert data["user_id"] == "u1"
        assert "chat_id" not in data

    def test_console_formatter_masks_recipient(self):
        from faucet_bot.infra.logging_config import ConsoleFormatter

        recipient = "0x52908400098527886E0F7030069857D2E4169EE7"
        line = ConsoleFormatter().format(self._record(recipient=recipient))
        assert "to=0x5290…9EE7" in line
        assert recipient not in line

    def test_log_context_attaches_fields(self, caplog):
        from faucet_bot.infra.logging_config import LogContext, get_logger

        logger = get_logger("faucet_bot.test_ctx")
        with caplog.at_level(logging.INFO, logger="faucet_bot.test_ctx"):
            LogContext(logger, transfer_id="t9", chat_id="-1").info("queued")

        record = caplog.records[-1]
        assert record.transfer_id == "t9"
        assert record.chat_id == "-1"
        assert not hasattr(record, "user_id")

    def test_mask_short_address_unchanged(self):
        from faucet_bot.infra.logging_config import mask_address

        assert mask_address("0xabc") == "0xabc"


class TestHttpSessions:
    @pytest.mark.asyncio
    async def test_sessions_are_shared_and_closed(self):
        from faucet_bot.infra.http_client import (
            close_all_sessions,
            get_rpc_session,
            get_sender_session,
        )

        rpc = get_rpc_session()
        assert get_rpc_session() is rpc
        sender = get_sender_session()
        assert sender is not rpc

        await close_all_sessions()
        assert rpc.closed
        assert sender.closed
        assert get_rpc_session() is not rpc
        await close_all_sessions()
