# tests/test_middleware.py
"""Tests for faucet_bot/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from faucet_bot.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None, logging_enabled: bool = True):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestLogging wraps RequestID
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=logging_enabled)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    return app


class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        assert len(resp.headers["X-Request-ID"]) == 32

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "my-custom-request-id-123"})
        assert resp.headers["X-Request-ID"] == "my-custom-request-id-123"


class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.json() == {"ok": True}

    def test_unhandled_exception_returns_json_500(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        resp = client.get("/test", headers={"X-Request-ID": "req-1"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "request_id": "req-1"}


class TestRequestLoggingMiddleware:
    def test_logs_completed_request(self, caplog):
        client = TestClient(_build_app())
        with caplog.at_level(logging.INFO, logger="faucet_bot.transport.middleware"):
            client.get("/test")

        records = [r for r in caplog.records if r.name == "faucet_bot.transport.middleware"]
        assert any("GET /test status=200" in r.getMessage() for r in records)
        assert all(hasattr(r, "request_id") for r in records)

    def test_disabled_logs_nothing(self, caplog):
        client = TestClient(_build_app(logging_enabled=False))
        with caplog.at_level(logging.INFO, logger="faucet_bot.transport.middleware"):
            client.get("/test")

        assert not [r for r in caplog.records if r.name == "faucet_bot.transport.middleware"]
