"""
savings.py - Bank Interest on Farm Cash

Once per month the bank pays interest on a farm's positive cash balance:

    monthly_interest = floor(balance * annual_rate / 12)

Amounts below one whole currency unit are not paid. The contract_id carries
the billing month, so the same month can never be paid twice even though the
intent would otherwise hash identically to last month's.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR

from ..core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType,
    BANK_WALLET, build_transaction, empty_pending_transaction, to_decimal,
)


SAVINGS_EVENT = "SAVINGS_INTEREST"


@dataclass(frozen=True, slots=True)
class SavingsEstimate:
    balance: Decimal
    annual_rate: Decimal
    monthly_interest: Decimal
    annual_interest: Decimal


def calculate_savings_interest(balance, annual_rate) -> Decimal:
    """Whole-unit monthly interest on a positive balance (0 otherwise)."""
    balance = to_decimal(balance)
    annual_rate = to_decimal(annual_rate)
    if balance <= 0 or annual_rate <= 0:
        return Decimal("0")
    return (balance * annual_rate / 12).to_integral_value(rounding=ROUND_FLOOR)


def estimate_savings(balance, annual_rate) -> SavingsEstimate:
    balance = to_decimal(balance)
    annual_rate = to_decimal(annual_rate)
    annual = (max(balance, Decimal("0")) * annual_rate).to_integral_value(rounding=ROUND_FLOOR)
    return SavingsEstimate(
        balance=balance,
        annual_rate=annual_rate,
        monthly_interest=calculate_savings_interest(balance, annual_rate),
        annual_interest=max(annual, Decimal("0")),
    )


def compute_savings_interest(
    view: LedgerView,
    farm_wallet: str,
    annual_rate,
    currency: str,
    timestamp: datetime,
    lender_wallet: str = BANK_WALLET,
) -> PendingTransaction:
    """
    Pay this month's savings interest from the bank to the farm.

    Returns an empty transaction when the interest rounds down below 1.
    """
    interest = calculate_savings_interest(view.get_balance(farm_wallet, currency), annual_rate)
    if interest < 1:
        return empty_pending_transaction(view)

    period = f"{timestamp.year:04d}-{timestamp.month:02d}"
    move = Move(
        quantity=interest,
        unit_symbol=currency,
        source=lender_wallet,
        dest=farm_wallet,
        contract_id=f"savings_{farm_wallet}_{period}",
        metadata={'period': period},
    )
    origin = TransactionOrigin(
        origin_type=OriginType.LIFECYCLE,
        source_id=farm_wallet,
        event_type=SAVINGS_EVENT,
    )
    return build_transaction(view, [move], origin=origin)
