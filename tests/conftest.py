# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faucet_bot.core.intake import RequestIntake  # noqa: E402
from faucet_bot.core.ledger import QuotaLedger  # noqa: E402
from faucet_bot.infra.metrics import get_metrics_collector  # noqa: E402
from tests.fakes import SOURCE_A, FakeChain, make_dispatcher  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def chain():
    return FakeChain({SOURCE_A: 10_000})


@pytest.fixture
def ledger():
    return QuotaLedger(
        global_budget=300,
        recipient_cap=300,
        cooldown_seconds=600,
        reset_interval_seconds=3600,
    )


@pytest.fixture
def dispatcher(chain, ledger):
    return make_dispatcher(chain, ledger)


@pytest.fixture
def intake(chain, ledger, dispatcher):
    return RequestIntake(
        ledger=ledger,
        dispatcher=dispatcher,
        default_amount=50,
        balance_probe=chain,
        recipient_balance_ceiling=1_000,
    )
