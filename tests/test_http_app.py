# tests/test_http_app.py
"""Tests for faucet_bot/transport/http_app.py: health, readiness, status, metrics auth."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from faucet_bot.core.errors import ChainError, ErrorKind
from faucet_bot.core.service import build_faucet_service, set_faucet_service
from faucet_bot.infra.metrics import inc_counter
from faucet_bot.transport import http_app

from tests.fakes import SOURCE_A, FakeChain, make_settings


@pytest.fixture
def chain():
    return FakeChain({SOURCE_A: 2 * 10**18})


@pytest.fixture
def client(chain):
    service = build_faucet_service(make_settings(), chain=chain)
    set_faucet_service(service)
    try:
        with patch.object(http_app.settings, "telegram_bot_token", None), \
                patch.object(http_app.settings, "metrics_token", None):
            with TestClient(http_app.app) as test_client:
                yield test_client
    finally:
        set_faucet_service(None)


class TestPublicEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert "X-Request-ID" in resp.headers

    def test_ready_without_chain_probe(self, client):
        assert client.get("/ready").json() == {"status": "healthy"}

    def test_ready_checks_chain_id(self, client, chain):
        chain.chain_id = AsyncMock(return_value=10143)
        assert client.get("/ready").status_code == 200
        chain.chain_id.assert_awaited_once()

    def test_not_ready_when_rpc_fails(self, client, chain):
        chain.chain_id = AsyncMock(side_effect=ChainError(ErrorKind.TRANSIENT, "HTTP 502"))
        resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json() == {"status": "unhealthy"}


class TestStatusEndpoint:
    def test_status_snapshot(self, client):
        resp = client.get("/status")
        assert resp.status_code == 200

        data = resp.json()
        assert data["queue"] == {"size": 0, "worker_running": False, "in_flight": None}
        assert data["ledger"]["global_sent"] == "0"
        assert data["ledger"]["global_budget"] == "300"
        assert data["ledger"]["held"] == "0"
        assert data["token_symbol"] == "MON"
        assert data["poller_running"] is False
        assert len(data["sources"]) == 1
        assert data["sources"][0]["address"].startswith(SOURCE_A[:6])


class TestMetricsAuth:
    def test_metrics_open_without_token(self, client):
        inc_counter("faucet_requests_total", kind="faucet", outcome="accepted")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.json()["counters"]["faucet_requests_total{kind=faucet,outcome=accepted}"] == 1

    def test_metrics_requires_token(self, client):
        with patch.object(http_app.settings, "metrics_token", "s3cret"):
            assert client.get("/metrics").status_code == 401
            assert client.get("/status").status_code == 401

            wrong = client.get("/metrics", headers={"Authorization": "Bearer nope"})
            assert wrong.status_code == 403

            ok = client.get("/metrics", headers={"Authorization": "Bearer s3cret"})
            assert ok.status_code == 200

    def test_unauthorized_body_shape(self, client):
        with patch.object(http_app.settings, "metrics_token", "s3cret"):
            resp = client.get("/metrics")
        assert resp.json() == {"error": "Authentication required"}
        assert resp.headers["WWW-Authenticate"] == "Bearer"
