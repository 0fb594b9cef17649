"""
conftest.py - Shared pytest fixtures for farmledger tests

Provides common fixtures used across unit and functional tests:
- A test-mode ledger with a funded bank and two farms
- A lifecycle engine polling deal units
- A FarmFinanceService session with registered farms and a tractor
"""

import pytest
from decimal import Decimal

from farmledger import (
    Ledger, cash,
    BANK_WALLET, UNIT_TYPE_DEAL,
    FinanceConfig, FarmFinanceService,
    AssetKind, DealContract, LifecycleEngine,
)

from tests.helpers import START, add_asset


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Test-mode ledger: USD, a bank with 10M, farm_1 with 50k, farm_2 empty."""
    ledger = Ledger("test", START, test_mode=True)
    ledger.register_unit(cash("USD", "US Dollar"))
    ledger.register_wallet(BANK_WALLET)
    ledger.register_wallet("farm_1")
    ledger.register_wallet("farm_2")
    ledger.set_balance(BANK_WALLET, "USD", Decimal("10000000"))
    ledger.set_balance("farm_1", "USD", Decimal("50000"))
    return ledger


@pytest.fixture
def engine(ledger):
    """Lifecycle engine polling deal units with the default config."""
    engine = LifecycleEngine(ledger)
    engine.register(UNIT_TYPE_DEAL, DealContract())
    return engine


@pytest.fixture
def tractor_on_ledger(ledger):
    """A 25,000 tractor held by farm_1 (VEHICLE-000001)."""
    return add_asset(ledger, "farm_1", AssetKind.VEHICLE, 1, Decimal("25000"), "Tractor")


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def config():
    return FinanceConfig()


@pytest.fixture
def service(config):
    """Session at START: farm_1 with 100k cash, farm_2 with 20k cash."""
    service = FarmFinanceService(config, start_time=START)
    assert service.register_farm("farm_1", Decimal("100000")).ok
    assert service.register_farm("farm_2", Decimal("20000")).ok
    return service


@pytest.fixture
def tractor(service):
    """A 25,000 tractor registered to farm_1 (VEHICLE-000001)."""
    result = service.register_asset("farm_1", AssetKind.VEHICLE, "Tractor", Decimal("25000"))
    assert result.ok, result.message
    return result.value
