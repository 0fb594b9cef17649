"""
helpers.py - Builders shared by farmledger tests

Plain functions (no fixtures) for billing dates, asset units and deal
origination directly on a test-mode Ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from farmledger import (
    Ledger, ExecuteResult,
    BANK_WALLET,
    AssetId, AssetKind, create_asset_unit,
    DealKind, DealTerms, LeaseTerms,
    Origination, compute_origination,
    monthly_payment, add_months,
)


START = datetime(2025, 1, 1)


def month(n: int) -> datetime:
    """The n-th monthly billing date after START."""
    return add_months(START, n)


def add_asset(ledger: Ledger, farm: str, kind: AssetKind, serial: int,
              market_value, name: Optional[str] = None) -> str:
    """Register an asset unit directly and give it to farm (test mode only)."""
    unit = create_asset_unit(AssetId(kind, serial), name or f"{kind.value.title()} {serial}", market_value)
    ledger.register_unit(unit)
    ledger.set_balance(farm, unit.symbol, Decimal("1"))
    return unit.symbol


def loan_terms(farm: str = "farm_1", amount="100000", rate="0.08", months: int = 60,
               kind: DealKind = DealKind.CASH_LOAN, primary_asset: Optional[str] = None,
               lease: Optional[LeaseTerms] = None, base_payment=None) -> DealTerms:
    """Amortized terms with the payment computed from amount, rate and months."""
    if base_payment is None:
        base_payment, _ = monthly_payment(Decimal(str(amount)), Decimal(str(rate)), months)
    return DealTerms(
        kind=kind,
        farm_wallet=farm,
        lender_wallet=BANK_WALLET,
        currency="USD",
        amount_financed=Decimal(str(amount)),
        annual_rate=Decimal(str(rate)),
        term_months=months,
        base_payment=base_payment,
        primary_asset=primary_asset,
        lease=lease,
    )


def open_deal(ledger: Ledger, terms: DealTerms, symbol: str = "DEAL-000001",
              collateral: Sequence[str] = (), payee: Optional[str] = None, **kwargs) -> str:
    """Originate a deal and assert the ledger applied it."""
    pending = compute_origination(ledger, Origination(
        deal_symbol=symbol,
        name=f"Test {terms.kind.value}",
        terms=terms,
        collateral=tuple(collateral),
        payee=payee or terms.farm_wallet,
        **kwargs,
    ))
    result = ledger.execute(pending)
    assert result == ExecuteResult.APPLIED, ledger.last_rejection
    return symbol
