"""
deal.py - Finance Deal Units

A deal (loan or lease) is a ledger unit whose state dict carries the complete
term sheet and progress. No wallet ever holds a position in a deal unit; the
unit exists so that every change to the deal goes through Ledger.execute()
together with the cash and asset moves it causes.

ARCHITECTURE (Pure Function Pattern):

1. FROZEN DATACLASSES (explicit inputs):
   - DealTerms: fixed at origination (kind, amounts, rate, wallets, lease terms)
   - DealState: changes over the lifecycle (balance, counters, collateral)

2. ADAPTER FUNCTIONS:
   - load_deal(view, symbol) -> (DealTerms, DealState)
   - to_state_dict(terms, state) -> dict stored on the unit

The state dict holds only plain data (enums as their string values,
collateral as a list of dicts) so it hashes canonically and persists as JSON.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import calendar
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..core import (
    LedgerView, Unit, ValidationError,
    UNIT_TYPE_DEAL, PAYOFF_EPSILON,
    _freeze_state, to_decimal,
)


class DealKind(Enum):
    FINANCE = "FINANCE"
    VEHICLE_LEASE = "VEHICLE_LEASE"
    LAND_LEASE = "LAND_LEASE"
    CASH_LOAN = "CASH_LOAN"


class DealStatus(Enum):
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"


LEASE_KINDS = frozenset({DealKind.VEHICLE_LEASE, DealKind.LAND_LEASE})
TERMINAL_STATUSES = frozenset({DealStatus.PAID_OFF, DealStatus.DEFAULTED})

MULTIPLIER_OPTIONS: Tuple[Decimal, ...] = (
    Decimal("1.0"), Decimal("1.2"), Decimal("1.5"), Decimal("2.0"), Decimal("3.0"),
)

# How a deal left the ACTIVE state
CLOSE_PAID_OFF = "PAID_OFF"
CLOSE_BUYOUT = "BUYOUT"
CLOSE_RETURNED = "RETURNED"
CLOSE_REPOSSESSED = "REPOSSESSED"


@dataclass(frozen=True, slots=True)
class LeaseTerms:
    """Lease-only terms. Mandatory for lease kinds, forbidden otherwise."""
    capitalized_cost: Decimal
    residual_value: Decimal
    security_deposit: Decimal = Decimal("0")

    def __post_init__(self):
        for name in ('capitalized_cost', 'residual_value', 'security_deposit'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if self.residual_value < 0 or self.security_deposit < 0:
            raise ValidationError("lease residual and deposit cannot be negative")
        if self.capitalized_cost < self.residual_value:
            raise ValidationError(
                f"capitalized_cost ({self.capitalized_cost}) below residual ({self.residual_value})"
            )

    @property
    def total_depreciation(self) -> Decimal:
        return self.capitalized_cost - self.residual_value


@dataclass(frozen=True, slots=True)
class PledgedCollateral:
    """An asset pledged to a deal with its valuation at pledge time."""
    asset: str
    kind: str
    pledged_value: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'pledged_value', to_decimal(self.pledged_value))


@dataclass(frozen=True, slots=True)
class DealTerms:
    """
    Immutable term sheet, fixed at origination.

    For leases amount_financed is the total scheduled lease obligation
    (base_payment * term_months) and the interest is embedded in the payment.
    """
    kind: DealKind
    farm_wallet: str
    lender_wallet: str
    currency: str
    amount_financed: Decimal
    annual_rate: Decimal
    term_months: int
    base_payment: Decimal
    primary_asset: Optional[str] = None
    lease: Optional[LeaseTerms] = None
    purpose: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.kind, DealKind):
            raise ValidationError(f"unknown deal kind: {self.kind!r}")
        for name in ('amount_financed', 'annual_rate', 'base_payment'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

        if not self.farm_wallet or not self.lender_wallet:
            raise ValidationError("farm_wallet and lender_wallet are required")
        if self.farm_wallet == self.lender_wallet:
            raise ValidationError("farm_wallet and lender_wallet must be different")
        if self.amount_financed <= 0:
            raise ValidationError(f"amount_financed must be positive, got {self.amount_financed}")
        if self.annual_rate < 0:
            raise ValidationError(f"annual_rate cannot be negative, got {self.annual_rate}")
        if self.term_months <= 0:
            raise ValidationError(f"term_months must be positive, got {self.term_months}")
        if self.base_payment <= 0:
            raise ValidationError(f"base_payment must be positive, got {self.base_payment}")

        if self.kind in LEASE_KINDS and self.lease is None:
            raise ValidationError(f"{self.kind.value} requires lease terms")
        if self.kind not in LEASE_KINDS and self.lease is not None:
            raise ValidationError(f"{self.kind.value} cannot carry lease terms")
        if self.kind in LEASE_KINDS and self.primary_asset is None:
            raise ValidationError("a lease needs the leased asset as primary_asset")

    @property
    def is_lease(self) -> bool:
        return self.kind in LEASE_KINDS


@dataclass(frozen=True, slots=True)
class DealState:
    """Lifecycle progress. Each change produces a new instance."""
    current_balance: Decimal
    status: DealStatus = DealStatus.ACTIVE
    months_paid: int = 0
    total_interest_paid: Decimal = Decimal("0")
    accrued_interest: Decimal = Decimal("0")
    missed_payments: int = 0
    total_missed_payments: int = 0
    payment_multiplier: Decimal = Decimal("1.0")
    collateral: Tuple[PledgedCollateral, ...] = ()
    origination_date: Optional[datetime] = None
    next_due_date: Optional[datetime] = None
    last_charge_date: Optional[datetime] = None
    interest_paid_to: Optional[datetime] = None
    closed_date: Optional[datetime] = None
    close_reason: Optional[str] = None
    repossessed_items: Tuple[str, ...] = field(default_factory=tuple)
    last_payment_status: Optional[str] = None
    last_payment_amount: Decimal = Decimal("0")

    def __post_init__(self):
        for name in ('current_balance', 'total_interest_paid', 'accrued_interest',
                     'payment_multiplier', 'last_payment_amount'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not isinstance(self.status, DealStatus):
            raise ValidationError(f"unknown deal status: {self.status!r}")
        if self.current_balance < 0:
            raise ValidationError(f"current_balance cannot be negative, got {self.current_balance}")
        if self.accrued_interest < 0:
            raise ValidationError("accrued_interest cannot be negative")
        if self.months_paid < 0 or self.missed_payments < 0:
            raise ValidationError("payment counters cannot be negative")
        if self.payment_multiplier not in MULTIPLIER_OPTIONS:
            raise ValidationError(f"payment_multiplier must be one of {MULTIPLIER_OPTIONS}")

    @property
    def is_active(self) -> bool:
        return self.status is DealStatus.ACTIVE

    @property
    def is_settled(self) -> bool:
        return self.current_balance <= PAYOFF_EPSILON

    def pledged_assets(self) -> Tuple[str, ...]:
        return tuple(c.asset for c in self.collateral)


def encumbered_assets(terms: DealTerms, state: DealState) -> Tuple[str, ...]:
    """Primary asset followed by pledged collateral, without duplicates."""
    ordered = []
    if terms.primary_asset:
        ordered.append(terms.primary_asset)
    for asset in state.pledged_assets():
        if asset not in ordered:
            ordered.append(asset)
    return tuple(ordered)


def remaining_months(terms: DealTerms, state: DealState) -> int:
    return max(0, terms.term_months - state.months_paid)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_deal(view: LedgerView, symbol: str) -> Tuple[DealTerms, DealState]:
    """
    Load a deal from ledger state as typed frozen dataclasses.

    Raises:
        ValidationError: If the unit is not a deal.
    """
    raw = view.get_unit_state(symbol)
    if raw.get('unit_type') != UNIT_TYPE_DEAL:
        raise ValidationError(f"{symbol} is not a finance deal")
    return terms_from_state(raw), state_from_state(raw)


def terms_from_state(raw: Dict[str, Any]) -> DealTerms:
    lease_raw = raw.get('lease')
    lease = None
    if lease_raw is not None:
        lease = LeaseTerms(
            capitalized_cost=lease_raw['capitalized_cost'],
            residual_value=lease_raw['residual_value'],
            security_deposit=lease_raw.get('security_deposit', Decimal("0")),
        )
    return DealTerms(
        kind=DealKind(raw['kind']),
        farm_wallet=raw['farm_wallet'],
        lender_wallet=raw['lender_wallet'],
        currency=raw['currency'],
        amount_financed=raw['amount_financed'],
        annual_rate=raw['annual_rate'],
        term_months=int(raw['term_months']),
        base_payment=raw['base_payment'],
        primary_asset=raw.get('primary_asset'),
        lease=lease,
        purpose=raw.get('purpose'),
    )


def state_from_state(raw: Dict[str, Any]) -> DealState:
    return DealState(
        current_balance=raw['current_balance'],
        status=DealStatus(raw.get('status', DealStatus.ACTIVE.value)),
        months_paid=int(raw.get('months_paid', 0)),
        total_interest_paid=raw.get('total_interest_paid', Decimal("0")),
        accrued_interest=raw.get('accrued_interest', Decimal("0")),
        missed_payments=int(raw.get('missed_payments', 0)),
        total_missed_payments=int(raw.get('total_missed_payments', 0)),
        payment_multiplier=raw.get('payment_multiplier', Decimal("1.0")),
        collateral=tuple(
            PledgedCollateral(c['asset'], c['kind'], c['pledged_value'])
            for c in raw.get('collateral', ())
        ),
        origination_date=raw.get('origination_date'),
        next_due_date=raw.get('next_due_date'),
        last_charge_date=raw.get('last_charge_date'),
        interest_paid_to=raw.get('interest_paid_to'),
        closed_date=raw.get('closed_date'),
        close_reason=raw.get('close_reason'),
        repossessed_items=tuple(raw.get('repossessed_items', ())),
        last_payment_status=raw.get('last_payment_status'),
        last_payment_amount=raw.get('last_payment_amount', Decimal("0")),
    )


def to_state_dict(terms: DealTerms, state: DealState) -> Dict[str, Any]:
    """Inverse of load_deal(): the dict stored on the deal unit."""
    lease = None
    if terms.lease is not None:
        lease = {
            'capitalized_cost': terms.lease.capitalized_cost,
            'residual_value': terms.lease.residual_value,
            'security_deposit': terms.lease.security_deposit,
        }
    return {
        'unit_type': UNIT_TYPE_DEAL,
        'kind': terms.kind.value,
        'farm_wallet': terms.farm_wallet,
        'lender_wallet': terms.lender_wallet,
        'currency': terms.currency,
        'amount_financed': terms.amount_financed,
        'annual_rate': terms.annual_rate,
        'term_months': terms.term_months,
        'base_payment': terms.base_payment,
        'primary_asset': terms.primary_asset,
        'lease': lease,
        'purpose': terms.purpose,
        'status': state.status.value,
        'current_balance': state.current_balance,
        'months_paid': state.months_paid,
        'total_interest_paid': state.total_interest_paid,
        'accrued_interest': state.accrued_interest,
        'missed_payments': state.missed_payments,
        'total_missed_payments': state.total_missed_payments,
        'payment_multiplier': state.payment_multiplier,
        'collateral': [
            {'asset': c.asset, 'kind': c.kind, 'pledged_value': c.pledged_value}
            for c in state.collateral
        ],
        'origination_date': state.origination_date,
        'next_due_date': state.next_due_date,
        'last_charge_date': state.last_charge_date,
        'interest_paid_to': state.interest_paid_to,
        'closed_date': state.closed_date,
        'close_reason': state.close_reason,
        'repossessed_items': list(state.repossessed_items),
        'last_payment_status': state.last_payment_status,
        'last_payment_amount': state.last_payment_amount,
    }


def create_deal_unit(symbol: str, name: str, terms: DealTerms, state: DealState) -> Unit:
    """
    Create the ledger unit carrying a deal.

    Example:
        terms = DealTerms(DealKind.FINANCE, "farm_1", BANK_WALLET, "USD",
                          Decimal("100000"), Decimal("0.08"), 60, Decimal("2027.64"),
                          primary_asset="VEHICLE-000001")
        unit = create_deal_unit("DEAL-000001", "Tractor finance", terms,
                                DealState(current_balance=Decimal("100000")))
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_DEAL,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        decimal_places=0,
        transfer_rule=None,
        _frozen_state=_freeze_state(to_state_dict(terms, state)),
    )



def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def following_due_date(state: DealState, due: datetime) -> datetime:
    """
    The first due date after `due` on the deal's schedule.

    Due dates are the origination date plus whole months, so a deal opened
    on the 31st is due on the last day of short months and on the 31st again
    when the month has one.
    """
    anchor = state.origination_date
    if anchor is None:
        return add_months(due, 1)
    months = (due.year - anchor.year) * 12 + due.month - anchor.month + 1
    candidate = add_months(anchor, months)
    while candidate <= due:
        months += 1
        candidate = add_months(anchor, months)
    return candidate
