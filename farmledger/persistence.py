"""
persistence.py - Save/Load Shapes

Plain-dict records for everything a game session needs to survive a save:
deals (the full deal unit state), assets, cash balances, payment history,
credit history and the service's id counters. JSON is the default file
format; Decimals and datetimes are tagged so they round-trip exactly.

Open offers and queued intents are not saved. They belong to a running
session and clients re-quote after a load.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
import json
from pathlib import Path
from typing import Any, Dict, List, Union

from .collateral import AssetId, AssetKind, create_asset_unit
from .config import FinanceConfig
from .core import (
    LedgerView, Move, Unit, TransactionOrigin, OriginType,
    ValidationError, SYSTEM_WALLET, BANK_WALLET, UNIT_TYPE_DEAL, ASSET_UNIT_TYPES,
    _freeze_state, build_transaction, to_decimal,
)
from .history import (
    CreditEvent, CreditEventType, CreditHistory, PaymentEntry, PaymentHistoryRecord,
    PaymentStatus, PERSISTED_PAYMENT_ENTRIES,
)
from .logging import get_logger
from .service import FarmFinanceService
from .units.deal import create_deal_unit, state_from_state, terms_from_state


logger = get_logger(__name__)

FORMAT_VERSION = 1
SESSION_RESTORED = "SESSION_RESTORED"


# ============================================================================
# JSON CODEC
# ============================================================================

class _SessionEncoder(json.JSONEncoder):
    def default(self, o):
        if isinstance(o, Decimal):
            return {'__decimal__': str(o)}
        if isinstance(o, datetime):
            return {'__datetime__': o.isoformat()}
        return super().default(o)


def _decode(obj: Dict[str, Any]) -> Any:
    if '__decimal__' in obj:
        return Decimal(obj['__decimal__'])
    if '__datetime__' in obj:
        return datetime.fromisoformat(obj['__datetime__'])
    return obj


def dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, cls=_SessionEncoder, indent=2, sort_keys=True)


def loads(text: str) -> Dict[str, Any]:
    return json.loads(text, object_hook=_decode)


# ============================================================================
# DEALS AND ASSETS
# ============================================================================

def deal_to_record(view: LedgerView, deal_symbol: str) -> Dict[str, Any]:
    unit = view.get_unit(deal_symbol)
    if unit.unit_type != UNIT_TYPE_DEAL:
        raise ValidationError(f"{deal_symbol} is not a deal")
    return {'symbol': deal_symbol, 'name': unit.name, 'state': view.get_unit_state(deal_symbol)}


def deal_from_record(record: Dict[str, Any]) -> Unit:
    """
    Rebuild a deal unit. The stored state is kept whole (repossession and
    lease-end records included) after checking it parses as terms and state.

    Raises:
        ValidationError: The record is malformed
    """
    try:
        raw = dict(record['state'])
        terms = terms_from_state(raw)
        state = state_from_state(raw)
        unit = create_deal_unit(record['symbol'], record['name'], terms, state)
    except (KeyError, TypeError) as exc:
        raise ValidationError(f"malformed deal record: {exc}") from None
    return replace(unit, _frozen_state=_freeze_state(raw))


def asset_to_record(view: LedgerView, asset_symbol: str, holder: str) -> Dict[str, Any]:
    unit = view.get_unit(asset_symbol)
    return {
        'symbol': asset_symbol,
        'name': unit.name,
        'unit_type': unit.unit_type,
        'state': view.get_unit_state(asset_symbol),
        'holder': holder,
    }


def asset_from_record(record: Dict[str, Any]) -> Unit:
    try:
        raw = dict(record['state'])
        asset_id = AssetId(AssetKind(record['unit_type']), int(raw['serial']))
        unit = create_asset_unit(asset_id, record['name'], raw.get('market_value', 0),
                                 raw.get('config_file'))
    except (KeyError, TypeError) as exc:
        raise ValidationError(f"malformed asset record: {exc}") from None
    if unit.symbol != record['symbol']:
        raise ValidationError(f"asset record {record['symbol']} does not match serial {asset_id.serial}")
    return replace(unit, _frozen_state=_freeze_state(raw))


# ============================================================================
# HISTORY
# ============================================================================

def history_to_record(record: PaymentHistoryRecord) -> Dict[str, Any]:
    """Counters plus the most recent entries."""
    return {
        'total_payments': record.total_payments,
        'on_time_payments': record.on_time_payments,
        'late_payments': record.late_payments,
        'missed_payments': record.missed_payments,
        'current_streak': record.current_streak,
        'longest_streak': record.longest_streak,
        'last_missed_index': record.last_missed_index,
        'recent': [
            {
                'index': e.index,
                'status': e.status.value,
                'deal_id': e.deal_id,
                'amount': e.amount,
                'timestamp': e.timestamp,
            }
            for e in record.recent[-PERSISTED_PAYMENT_ENTRIES:]
        ],
    }


def history_from_record(data: Dict[str, Any]) -> PaymentHistoryRecord:
    return PaymentHistoryRecord(
        total_payments=int(data.get('total_payments', 0)),
        on_time_payments=int(data.get('on_time_payments', 0)),
        late_payments=int(data.get('late_payments', 0)),
        missed_payments=int(data.get('missed_payments', 0)),
        current_streak=int(data.get('current_streak', 0)),
        longest_streak=int(data.get('longest_streak', 0)),
        last_missed_index=data.get('last_missed_index'),
        recent=tuple(
            PaymentEntry(
                index=int(e['index']),
                status=PaymentStatus(e['status']),
                deal_id=e.get('deal_id'),
                amount=to_decimal(e.get('amount', 0)),
                timestamp=e.get('timestamp'),
            )
            for e in data.get('recent', ())
        ),
    )


def credit_history_to_record(history: CreditHistory, farm_id: str) -> Dict[str, Any]:
    return {
        'adjustment': history.score_adjustment(farm_id),
        'events': [
            {
                'event_type': e.event_type.value,
                'change': e.change,
                'details': e.details,
                'deal_id': e.deal_id,
                'timestamp': e.timestamp,
            }
            for e in reversed(history.events(farm_id))
        ],
    }


def credit_history_from_record(history: CreditHistory, farm_id: str, data: Dict[str, Any]) -> None:
    events = [
        CreditEvent(
            event_type=CreditEventType(e['event_type']),
            change=int(e['change']),
            details=e.get('details', ""),
            deal_id=e.get('deal_id'),
            timestamp=e.get('timestamp'),
        )
        for e in data.get('events', ())
    ]
    history.restore(farm_id, int(data.get('adjustment', 0)), events)


# ============================================================================
# SESSION
# ============================================================================

def dump_session(service: FarmFinanceService) -> Dict[str, Any]:
    """Everything needed to rebuild the service, as plain data."""
    ledger = service.ledger
    currency = service.config.currency
    deals: List[Dict[str, Any]] = []
    assets: List[Dict[str, Any]] = []
    for symbol in ledger.list_units():
        unit = ledger.get_unit(symbol)
        if unit.unit_type == UNIT_TYPE_DEAL:
            deals.append(deal_to_record(ledger, symbol))
        elif unit.unit_type in ASSET_UNIT_TYPES:
            holders = [w for w, q in ledger.get_positions(symbol).items() if q >= 1]
            holder = holders[0] if holders else SYSTEM_WALLET
            assets.append(asset_to_record(ledger, symbol, holder))

    farms = service.farms
    return {
        'version': FORMAT_VERSION,
        'time': ledger.current_time,
        'config': service.config.to_dict(),
        'farms': farms,
        'cash': {w: ledger.get_balance(w, currency) for w in farms + [BANK_WALLET]},
        'assets': assets,
        'deals': deals,
        'payment_history': {f: history_to_record(service.payment_history.stats(f))
                            for f in service.payment_history.farms()},
        'credit_history': {f: credit_history_to_record(service.credit_history, f)
                           for f in service.credit_history.farms()},
        'counters': service.counters(),
    }


def restore_session(data: Dict[str, Any]) -> FarmFinanceService:
    """
    Rebuild a service from dump_session() output.

    Units are registered first, then a single issuance from the system wallet
    puts every cash balance and every held asset back where it was.

    Raises:
        ValidationError: Unsupported version or malformed records
    """
    version = data.get('version')
    if version != FORMAT_VERSION:
        raise ValidationError(f"unsupported session format version {version!r}")

    config = FinanceConfig.from_mapping(data['config'])
    service = FarmFinanceService(config, start_time=data['time'], fund_bank=False)
    for farm in data.get('farms', ()):
        result = service.register_farm(farm)
        if not result.ok:
            raise ValidationError(f"cannot restore farm {farm}: {result.message}")

    ledger = service.ledger
    for record in data.get('deals', ()):
        ledger.register_unit(deal_from_record(record))

    moves: List[Move] = []
    for record in data.get('assets', ()):
        unit = asset_from_record(record)
        ledger.register_unit(unit)
        holder = record.get('holder', SYSTEM_WALLET)
        if holder != SYSTEM_WALLET:
            moves.append(Move(Decimal("1"), unit.symbol, SYSTEM_WALLET, holder, f"restore_{unit.symbol}"))

    for wallet, amount in sorted(data.get('cash', {}).items()):
        amount = to_decimal(amount)
        if amount > 0:
            moves.append(Move(amount, config.currency, SYSTEM_WALLET, wallet, f"restore_{wallet}"))

    if moves:
        service._apply(build_transaction(
            ledger, moves,
            origin=TransactionOrigin(OriginType.SYSTEM, "persistence", event_type=SESSION_RESTORED),
        ))

    for farm, record in data.get('payment_history', {}).items():
        service.payment_history.restore(farm, history_from_record(record))
    for farm, record in data.get('credit_history', {}).items():
        credit_history_from_record(service.credit_history, farm, record)

    service.restore_counters(data.get('counters', {}))

    logger.info("restored session: %d farm(s), %d deal(s), %d asset(s)",
                len(service.farms), len(data.get('deals', ())), len(data.get('assets', ())))
    return service


def save_session(service: FarmFinanceService, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.write_text(dumps(dump_session(service)), encoding="utf-8")
    return path


def load_session(path: Union[str, Path]) -> FarmFinanceService:
    return restore_session(loads(Path(path).read_text(encoding="utf-8")))
