"""
collateral.py - Collateral Ledger

Vehicles and land parcels are ledger units with quantity 1: owning an asset
means holding its unit. Each asset has a stable surrogate key (AssetId) so two
identical tractor models are two independent units and independently
pledgeable.

An asset is encumbered while an ACTIVE deal names it, either as the deal's
primary asset (the financed or leased item) or in its pledged collateral.
Encumbrance is read from deal unit state, so it changes in the same atomic
transaction that opens or closes the deal.

Borrowing base:

    contribution(asset) = floor(market_value * haircut)    vehicle 50%, land 60%
    max_loan = min(floor_to_granularity(max(0, (cash + sum(selected)) * tier_multiplier
                                              - existing_debt * 1.5)),
                   tier_cap)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import FinanceConfig, DEFAULT_CONFIG
from .core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType, TransferRuleViolation,
    ValidationError, CollateralConflictError,
    UNIT_TYPE_VEHICLE, UNIT_TYPE_LAND, UNIT_TYPE_DEAL, ASSET_UNIT_TYPES,
    _freeze_state, build_transaction, round_money, to_decimal,
)
from .credit import loan_limits


# Contract id prefixes allowed to move an encumbered asset out of its holder
REPOSSESSION_PREFIX = "repossess_"
LEASE_RETURN_PREFIX = "lease_return_"
RELEASING_PREFIXES = (REPOSSESSION_PREFIX, LEASE_RETURN_PREFIX)

MIN_OPTION_STEP = Decimal("10000")
OPTION_COUNT = 20

_ACTIVE = "active"


class AssetKind(Enum):
    VEHICLE = UNIT_TYPE_VEHICLE
    LAND = UNIT_TYPE_LAND


@dataclass(frozen=True, slots=True)
class AssetId:
    """Stable surrogate key for an asset: kind plus serial number."""
    kind: AssetKind
    serial: int

    def __post_init__(self):
        if not isinstance(self.kind, AssetKind):
            raise ValidationError(f"unknown asset kind: {self.kind!r}")
        if self.serial <= 0:
            raise ValidationError(f"asset serial must be positive, got {self.serial}")

    @property
    def symbol(self) -> str:
        return f"{self.kind.value}-{self.serial:06d}"

    @classmethod
    def parse(cls, symbol: str) -> AssetId:
        kind_text, _, serial_text = symbol.rpartition("-")
        try:
            return cls(AssetKind(kind_text), int(serial_text))
        except ValueError:
            raise ValidationError(f"not an asset symbol: {symbol!r}") from None

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True, slots=True)
class CollateralAsset:
    """A farm-held vehicle or parcel as seen by collateral enumeration."""
    asset_id: AssetId
    name: str
    market_value: Decimal
    owner: str
    pledged_to: Optional[str] = None

    @property
    def symbol(self) -> str:
        return self.asset_id.symbol

    @property
    def kind(self) -> AssetKind:
        return self.asset_id.kind

    @property
    def is_pledged(self) -> bool:
        return self.pledged_to is not None


# ============================================================================
# ASSET UNITS
# ============================================================================

def collateral_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Block moving an encumbered asset away from its holder.

    Moves into the borrowing farm are allowed (issuing a financed asset in
    the origination transaction). Any other move of an asset an ACTIVE deal
    still names must come from a repossession or lease return contract.
    """
    deal = encumbrances(view).get(move.unit_symbol)
    if deal is None:
        return
    if move.dest == view.get_unit_state(deal).get('farm_wallet'):
        return
    if move.contract_id.startswith(RELEASING_PREFIXES):
        return
    raise TransferRuleViolation(
        f"{move.unit_symbol} is encumbered by {deal} and cannot move to {move.dest}"
    )


def create_asset_unit(
    asset_id: AssetId,
    name: str,
    market_value,
    config_file: Optional[str] = None,
) -> Unit:
    """
    Create the ledger unit for one vehicle or parcel.

    config_file records which model this instance is; it is descriptive only,
    identity is the AssetId.
    """
    market_value = to_decimal(market_value)
    if market_value < 0:
        raise ValidationError(f"market_value cannot be negative, got {market_value}")
    if not name or not name.strip():
        raise ValidationError("asset name cannot be empty")

    return Unit(
        symbol=asset_id.symbol,
        name=name,
        unit_type=asset_id.kind.value,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=collateral_transfer_rule,
        _frozen_state=_freeze_state({
            'unit_type': asset_id.kind.value,
            'serial': asset_id.serial,
            'name': name,
            'market_value': round_money(market_value),
            'config_file': config_file,
            'pledged_to': None,
        }),
    )


# ============================================================================
# ENUMERATION
# ============================================================================

def _deal_units(view: LedgerView) -> Iterable[Tuple[str, dict]]:
    for symbol in view.list_units():
        if view.get_unit(symbol).unit_type == UNIT_TYPE_DEAL:
            yield symbol, view.get_unit_state(symbol)


def encumbrances(view: LedgerView) -> Dict[str, str]:
    """Map asset symbol -> ACTIVE deal symbol for every encumbered asset."""
    result: Dict[str, str] = {}
    for deal_symbol, state in _deal_units(view):
        if state.get('status') != _ACTIVE:
            continue
        primary = state.get('primary_asset')
        if primary:
            result[primary] = deal_symbol
        for item in state.get('collateral', ()):
            result[item['asset']] = deal_symbol
    return result


def _holder(view: LedgerView, symbol: str) -> Optional[str]:
    for wallet, qty in view.get_positions(symbol).items():
        if qty >= 1:
            return wallet
    return None


def load_asset(view: LedgerView, symbol: str, pledged: Optional[Dict[str, str]] = None) -> CollateralAsset:
    unit = view.get_unit(symbol)
    if unit.unit_type not in ASSET_UNIT_TYPES:
        raise ValidationError(f"{symbol} is not a vehicle or land parcel")
    state = view.get_unit_state(symbol)
    if pledged is None:
        pledged = encumbrances(view)
    return CollateralAsset(
        asset_id=AssetId(AssetKind(unit.unit_type), int(state['serial'])),
        name=state.get('name', symbol),
        market_value=to_decimal(state.get('market_value', 0)),
        owner=_holder(view, symbol) or "",
        pledged_to=pledged.get(symbol),
    )


def farm_assets(view: LedgerView, farm_id: str) -> List[CollateralAsset]:
    """Every vehicle and parcel the farm holds, pledged or not, by symbol."""
    pledged = encumbrances(view)
    assets = []
    for symbol in view.list_units():
        if view.get_unit(symbol).unit_type not in ASSET_UNIT_TYPES:
            continue
        if view.get_balance(farm_id, symbol) >= 1:
            assets.append(load_asset(view, symbol, pledged))
    return assets


def eligible_assets(view: LedgerView, farm_id: str) -> List[CollateralAsset]:
    """Farm-held assets not named by any ACTIVE deal."""
    return [a for a in farm_assets(view, farm_id) if not a.is_pledged]


def farm_debt(view: LedgerView, farm_id: str) -> Decimal:
    """Outstanding balance plus accrued interest across the farm's ACTIVE deals."""
    total = Decimal("0")
    for _, state in _deal_units(view):
        if state.get('status') == _ACTIVE and state.get('farm_wallet') == farm_id:
            total += to_decimal(state.get('current_balance', 0))
            total += to_decimal(state.get('accrued_interest', 0))
    return total


def validate_pledge(view: LedgerView, farm_id: str, asset_symbols: Sequence[str]) -> List[CollateralAsset]:
    """
    Check a set of assets can be pledged by farm_id right now.

    Raises:
        ValidationError: duplicates, unknown assets, or assets the farm does not hold
        CollateralConflictError: assets already encumbered by an ACTIVE deal
    """
    if len(set(asset_symbols)) != len(asset_symbols):
        raise ValidationError("the same asset was selected twice")
    known = set(view.list_units())
    pledged = encumbrances(view)

    assets = []
    conflicts = []
    for symbol in asset_symbols:
        if symbol not in known:
            raise ValidationError(f"unknown asset {symbol}")
        if view.get_balance(farm_id, symbol) < 1:
            raise ValidationError(f"{farm_id} does not hold {symbol}")
        if symbol in pledged:
            conflicts.append(symbol)
            continue
        assets.append(load_asset(view, symbol, pledged))

    if conflicts:
        raise CollateralConflictError(
            f"already pledged to an active deal: {', '.join(conflicts)}", conflicts
        )
    return assets


def pledge_changes(view: LedgerView, asset_symbols: Iterable[str], deal_symbol: str) -> List[UnitStateChange]:
    """
    Stamp pledged_to on existing assets.

    The old_state of each change is the asset's current state, so of two
    deals built against the same view only the first to execute can pledge
    a shared asset; the ledger rejects the other as stale.
    """
    changes = []
    for symbol in asset_symbols:
        state = view.get_unit_state(symbol)
        changes.append(UnitStateChange(symbol, state, {**state, 'pledged_to': deal_symbol}))
    return changes


def release_changes(view: LedgerView, asset_symbols: Iterable[str], deal_symbol: str) -> List[UnitStateChange]:
    """Clear pledged_to on assets still stamped with deal_symbol."""
    changes = []
    known = set(view.list_units())
    for symbol in asset_symbols:
        if symbol not in known:
            continue
        state = view.get_unit_state(symbol)
        if state.get('pledged_to') == deal_symbol:
            changes.append(UnitStateChange(symbol, state, {**state, 'pledged_to': None}))
    return changes


def stamp_new_asset(unit: Unit, deal_symbol: str) -> Unit:
    """Asset created inside an origination starts out pledged to that deal."""
    return replace(unit, _frozen_state=_freeze_state({**unit.state, 'pledged_to': deal_symbol}))


# ============================================================================
# VALUATION
# ============================================================================

def haircut(kind: AssetKind, config: FinanceConfig = DEFAULT_CONFIG) -> Decimal:
    return config.land_haircut if kind is AssetKind.LAND else config.vehicle_haircut


def collateral_value(asset: CollateralAsset, config: FinanceConfig = DEFAULT_CONFIG) -> Decimal:
    """Borrowing contribution of one asset, floored to whole currency."""
    value = asset.market_value * haircut(asset.kind, config)
    return max(Decimal("0"), value.to_integral_value(rounding=ROUND_FLOOR))


def calculate_collateral_value(assets: Iterable[CollateralAsset], config: FinanceConfig = DEFAULT_CONFIG) -> Decimal:
    return sum((collateral_value(a, config) for a in assets), Decimal("0"))


def max_loan_amount(
    cash,
    selected_values: Iterable,
    existing_debt,
    tier: int,
    config: FinanceConfig = DEFAULT_CONFIG,
) -> Decimal:
    """
    Largest loan the borrowing base supports.

    The tier multiplier and the existing-debt penalty apply before flooring
    to loan_granularity; the tier's absolute cap applies last.
    """
    limits = loan_limits(tier)
    base = to_decimal(cash) + sum((to_decimal(v) for v in selected_values), Decimal("0"))
    capacity = base * limits.collateral_multiplier - to_decimal(existing_debt) * config.existing_debt_weight
    capacity = max(Decimal("0"), capacity)
    granularity = config.loan_granularity
    floored = (capacity / granularity).to_integral_value(rounding=ROUND_FLOOR) * granularity
    return min(floored, limits.absolute_cap)


def loan_amount_options(max_amount) -> Tuple[Decimal, ...]:
    """
    Selectable loan amounts up to max_amount.

    Steps of max(10000, floor(max / 20 / 10000) * 10000); max_amount is always
    the last option. No options when nothing can be borrowed.
    """
    max_amount = to_decimal(max_amount)
    if max_amount <= 0:
        return ()
    stepped = (max_amount / OPTION_COUNT / MIN_OPTION_STEP).to_integral_value(rounding=ROUND_FLOOR)
    step = max(MIN_OPTION_STEP, stepped * MIN_OPTION_STEP)

    options = []
    amount = step
    while amount <= max_amount:
        options.append(amount)
        amount += step
    if not options or options[-1] != max_amount:
        options.append(max_amount)
    return tuple(options)


class CollateralSelection:
    """
    Mutable pre-confirmation collateral selection for a cash loan.

    Every toggle recomputes the max loan amount and its option list, then
    re-clamps the selected amount: it is kept if still offered, otherwise
    the largest option not above it is chosen (the first option if none).
    """

    def __init__(
        self,
        available: Sequence[CollateralAsset],
        cash,
        existing_debt,
        tier: int,
        config: FinanceConfig = DEFAULT_CONFIG,
    ):
        self.available = {a.symbol: a for a in available}
        self.cash = to_decimal(cash)
        self.existing_debt = to_decimal(existing_debt)
        self.tier = tier
        self.config = config
        self._selected: List[str] = []
        self.max_amount = Decimal("0")
        self.options: Tuple[Decimal, ...] = ()
        self.amount: Optional[Decimal] = None
        self._recompute()

    @property
    def selected(self) -> Tuple[str, ...]:
        return tuple(self._selected)

    @property
    def selected_value(self) -> Decimal:
        return calculate_collateral_value(
            (self.available[s] for s in self._selected), self.config
        )

    def toggle(self, asset_symbol: str) -> bool:
        """Flip selection of one asset; returns True if it is now selected."""
        if asset_symbol not in self.available:
            raise ValidationError(f"{asset_symbol} is not eligible collateral")
        if asset_symbol in self._selected:
            self._selected.remove(asset_symbol)
            now_selected = False
        else:
            self._selected.append(asset_symbol)
            now_selected = True
        self._recompute()
        return now_selected

    def choose_amount(self, amount) -> Decimal:
        """Select one of the offered amounts."""
        amount = to_decimal(amount)
        if amount not in self.options:
            raise ValidationError(f"{amount} is not an offered loan amount")
        self.amount = amount
        return amount

    def _recompute(self) -> None:
        values = [collateral_value(self.available[s], self.config) for s in self._selected]
        self.max_amount = max_loan_amount(self.cash, values, self.existing_debt, self.tier, self.config)
        self.options = loan_amount_options(self.max_amount)
        if not self.options:
            self.amount = None
        elif self.amount is None:
            self.amount = self.options[(len(self.options) - 1) // 2]
        elif self.amount not in self.options:
            below = [o for o in self.options if o <= self.amount]
            self.amount = below[-1] if below else self.options[0]


# ============================================================================
# REVALUATION
# ============================================================================

def compute_revaluation(
    view: LedgerView,
    asset_symbol: str,
    new_value,
    timestamp: Optional[datetime] = None,
) -> PendingTransaction:
    """Update an asset's market value (depreciation, repairs, land price changes)."""
    new_value = to_decimal(new_value)
    if new_value < 0:
        raise ValidationError(f"market_value cannot be negative, got {new_value}")
    if view.get_unit(asset_symbol).unit_type not in ASSET_UNIT_TYPES:
        raise ValidationError(f"{asset_symbol} is not a vehicle or land parcel")

    state = view.get_unit_state(asset_symbol)
    new_state = {**state, 'market_value': round_money(new_value)}
    if timestamp is not None:
        new_state['valued_at'] = timestamp
    origin = TransactionOrigin(
        origin_type=OriginType.EXTERNAL,
        source_id="registry",
        unit_symbol=asset_symbol,
        event_type="ASSET_REVALUED",
    )
    return build_transaction(
        view, [], [UnitStateChange(asset_symbol, state, new_state)], origin=origin
    )
