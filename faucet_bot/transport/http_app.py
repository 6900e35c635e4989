# faucet_bot/transport/http_app.py
"""
Operational HTTP surface of the faucet bot.

The faucet itself is driven from chat; HTTP only exposes:
1. Public: /health (liveness), /ready (RPC reachable)
2. Monitoring (Bearer METRICS_TOKEN when configured): /status, /metrics

The lifespan builds the faucet service, starts the Telegram poller and
tears both down again (aborting whatever is still queued).
"""
from __future__ import annotations

import hmac
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from faucet_bot.config import settings
from faucet_bot.core.errors import ChainError
from faucet_bot.core.service import FaucetService, get_faucet_service
from faucet_bot.core.units import format_units
from faucet_bot.infra.http_client import close_all_sessions
from faucet_bot.infra.logging_config import get_logger, mask_address, setup_logging
from faucet_bot.infra.metrics import get_metrics_collector
from faucet_bot.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from faucet_bot.transport.telegram_polling import TelegramPoller

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)

metrics_bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> FaucetService:
    """Get the faucet service from app state"""
    return request.app.state.service


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
) -> None:
    """Bearer METRICS_TOKEN check. Open when no token is configured."""
    if not settings.metrics_token:
        return

    if not credentials:
        logger.warning("Metrics endpoint accessed without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
        logger.warning("Invalid metrics token attempt")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting faucet bot: env={settings.app_env}, run_mode={settings.run_mode}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

    service = get_faucet_service()
    fastapi_app.state.service = service

    poller: TelegramPoller | None = None
    if settings.run_mode in ("all", "poller") and settings.telegram_enabled:
        poller = TelegramPoller(service)
        await poller.start()
    else:
        logger.info(
            f"Telegram poller skipped (run_mode={settings.run_mode}, "
            f"token_set={settings.telegram_enabled})"
        )
    fastapi_app.state.poller = poller

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if poller is not None:
        await poller.stop()

    await service.shutdown()
    await close_all_sessions()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Faucet Bot",
    description="Chat-driven testnet token faucet",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(service: FaucetService = Depends(get_service)):
    """Readiness probe: the chain RPC answers eth_chainId."""
    chain_id = getattr(service.chain, "chain_id", None)
    if chain_id is None:
        return {"status": "healthy"}

    try:
        await chain_id()
    except ChainError as exc:
        logger.warning(f"Readiness check failed: {exc}")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


# ============================================================================
# MONITORING ENDPOINTS (METRICS_TOKEN)
# ============================================================================

@app.get("/status", dependencies=[Depends(require_metrics_auth)])
def faucet_status(request: Request, service: FaucetService = Depends(get_service)):
    """Queue, ledger and funding source snapshot (cached balances, no RPC calls)."""
    decimals = service.settings.token_decimals
    ledger = service.ledger
    dispatcher = service.dispatcher
    in_flight = dispatcher.in_flight
    poller = getattr(request.app.state, "poller", None)

    return {
        "queue": {
            "size": dispatcher.queue_size,
            "worker_running": dispatcher.is_running,
            "in_flight": in_flight.id if in_flight else None,
        },
        "ledger": {
            "global_sent": format_units(ledger.global_sent, decimals),
            "global_budget": format_units(ledger.global_budget, decimals),
            "global_remaining": format_units(ledger.remaining(), decimals),
            "held": format_units(ledger.held_total, decimals),
            "reset_in_seconds": int(ledger.reset_in()),
        },
        "sources": [
            {
                "address": mask_address(identity.id),
                "cached_balance": format_units(identity.cached_balance, decimals),
                "balance_checked_at": identity.balance_checked_at,
            }
            for identity in service.pool.identities
        ],
        "token_symbol": service.settings.token_symbol,
        "poller_running": bool(poller and poller.is_running),
    }


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Operational counters and histograms."""
    return get_metrics_collector().get_metrics()
