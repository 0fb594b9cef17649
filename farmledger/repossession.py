"""
repossession.py - Repossession Resolver

When a deal defaults, the lender seizes the deal's primary item together with
every asset explicitly pledged to it. Seizure is all-or-nothing within one
transaction, and the outstanding balance and accrued interest are
extinguished by it.

An asset the farm no longer holds is reported with found=False rather than
failing the default. An asset named by a different ACTIVE deal is never
touched.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .collateral import REPOSSESSION_PREFIX, encumbrances, release_changes
from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange,
    TransactionOrigin, OriginType, StateConflictError,
    build_transaction, to_decimal,
)
from .logging import get_logger
from .units.deal import (
    DealTerms, DealState, DealStatus, CLOSE_REPOSSESSED,
    encumbered_assets, load_deal, to_state_dict,
)


logger = get_logger(__name__)

DEAL_DEFAULTED = "DEAL_DEFAULTED"


@dataclass(frozen=True, slots=True)
class RepossessedItem:
    asset: str
    name: str
    value: Decimal
    found: bool


@dataclass(frozen=True, slots=True)
class RepossessionRecord:
    """Structured outcome of a repossession, for display by the host game."""
    deal_id: str
    farm_id: str
    items: Tuple[RepossessedItem, ...]
    missed_payments: int
    balance_cleared: Decimal

    @property
    def total_value(self) -> Decimal:
        return sum((item.value for item in self.items if item.found), Decimal("0"))

    @property
    def seized_assets(self) -> Tuple[str, ...]:
        return tuple(item.asset for item in self.items if item.found)


@dataclass(frozen=True, slots=True)
class RepossessionPlan:
    moves: Tuple[Move, ...]
    asset_changes: Tuple[UnitStateChange, ...]
    record: RepossessionRecord


def plan_repossession(
    view: LedgerView,
    deal_symbol: str,
    terms: DealTerms,
    state: DealState,
) -> RepossessionPlan:
    """
    Work out which assets to seize for a defaulting deal.

    Every asset the deal names is considered. Held assets move from the farm
    to the lender under a repossess_ contract id, which the collateral
    transfer rule lets through.
    """
    known = set(view.list_units())
    pledged = encumbrances(view)
    contract_id = f"{REPOSSESSION_PREFIX}{deal_symbol}"

    moves: List[Move] = []
    items: List[RepossessedItem] = []
    for asset in encumbered_assets(terms, state):
        if asset not in known:
            items.append(RepossessedItem(asset, asset, Decimal("0"), False))
            continue
        asset_state = view.get_unit_state(asset)
        name = asset_state.get('name', asset)
        value = to_decimal(asset_state.get('market_value', 0))

        owner = pledged.get(asset)
        if owner is not None and owner != deal_symbol:
            logger.warning("%s: %s is pledged to %s, not seized", deal_symbol, asset, owner)
            items.append(RepossessedItem(asset, name, value, False))
            continue
        if view.get_balance(terms.farm_wallet, asset) < 1:
            items.append(RepossessedItem(asset, name, value, False))
            continue

        moves.append(Move(
            quantity=Decimal("1"),
            unit_symbol=asset,
            source=terms.farm_wallet,
            dest=terms.lender_wallet,
            contract_id=contract_id,
        ))
        items.append(RepossessedItem(asset, name, value, True))

    record = RepossessionRecord(
        deal_id=deal_symbol,
        farm_id=terms.farm_wallet,
        items=tuple(items),
        missed_payments=state.missed_payments,
        balance_cleared=state.current_balance + state.accrued_interest,
    )
    changes = release_changes(view, [item.asset for item in items], deal_symbol)
    return RepossessionPlan(tuple(moves), tuple(changes), record)


def defaulted_state(state: DealState, record: RepossessionRecord, timestamp: datetime) -> DealState:
    """Terminal DEFAULTED state: balance and accrued interest extinguished."""
    return replace(
        state,
        status=DealStatus.DEFAULTED,
        current_balance=Decimal("0"),
        accrued_interest=Decimal("0"),
        closed_date=timestamp,
        close_reason=CLOSE_REPOSSESSED,
        repossessed_items=record.seized_assets,
    )


def record_to_dict(record: RepossessionRecord) -> Dict[str, Any]:
    return {
        'deal_id': record.deal_id,
        'farm_id': record.farm_id,
        'items': [
            {'asset': i.asset, 'name': i.name, 'value': i.value, 'found': i.found}
            for i in record.items
        ],
        'missed_payments': record.missed_payments,
        'balance_cleared': record.balance_cleared,
    }


def record_from_dict(data: Dict[str, Any]) -> RepossessionRecord:
    return RepossessionRecord(
        deal_id=data['deal_id'],
        farm_id=data['farm_id'],
        items=tuple(
            RepossessedItem(i['asset'], i['name'], to_decimal(i['value']), bool(i['found']))
            for i in data.get('items', ())
        ),
        missed_payments=int(data.get('missed_payments', 0)),
        balance_cleared=to_decimal(data.get('balance_cleared', 0)),
    )


def default_state_change(
    view: LedgerView,
    deal_symbol: str,
    terms: DealTerms,
    state: DealState,
    old_state: Dict[str, Any],
) -> Tuple[List[Move], List[UnitStateChange], RepossessionRecord]:
    """
    Moves and state changes that default a deal and repossess its assets.

    state is the deal's state at the moment of default (after any final
    missed payment was counted); old_state is the raw state currently on
    the ledger.
    """
    plan = plan_repossession(view, deal_symbol, terms, state)
    closed = defaulted_state(state, plan.record, view.current_time)
    new_state = {**to_state_dict(terms, closed), 'repossession': record_to_dict(plan.record)}
    changes = [UnitStateChange(deal_symbol, old_state, new_state)]
    changes.extend(plan.asset_changes)
    return list(plan.moves), changes, plan.record


def compute_repossession(view: LedgerView, deal_symbol: str) -> PendingTransaction:
    """
    Default an ACTIVE deal immediately and repossess its assets.

    Raises:
        StateConflictError: If the deal is not ACTIVE
    """
    terms, state = load_deal(view, deal_symbol)
    if not state.is_active:
        raise StateConflictError(f"{deal_symbol} is {state.status.value}, cannot repossess")

    old_state = view.get_unit_state(deal_symbol)
    moves, changes, record = default_state_change(view, deal_symbol, terms, state, old_state)
    logger.info(
        "%s defaulted: %d item(s) seized, %s cleared",
        deal_symbol, len(record.seized_assets), record.balance_cleared,
    )
    origin = TransactionOrigin(
        origin_type=OriginType.LIFECYCLE,
        source_id=terms.farm_wallet,
        unit_symbol=deal_symbol,
        event_type=DEAL_DEFAULTED,
    )
    return build_transaction(view, moves, changes, origin=origin)


def load_repossession_record(view: LedgerView, deal_symbol: str) -> Optional[RepossessionRecord]:
    """The stored record of a repossessed deal, or None if it was never repossessed."""
    data = view.get_unit_state(deal_symbol).get('repossession')
    return record_from_dict(data) if data else None
