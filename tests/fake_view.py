"""
fake_view.py - Test Helper for LedgerView

Provides a minimal LedgerView implementation for testing pure functions
(collateral enumeration, pledge validation) without a full Ledger instance.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from farmledger.core import UNIT_TYPE_CASH


Positions = Dict[str, Decimal]
UnitState = Dict[str, Any]


class FakeUnit:
    """Minimal Unit for testing - carries symbol, unit_type and balance limits."""
    def __init__(self, symbol: str, unit_type: str = UNIT_TYPE_CASH,
                 min_balance: Decimal = Decimal("0"), max_balance: Decimal = Decimal("Infinity")):
        self.symbol = symbol
        self.name = symbol
        self.unit_type = unit_type
        self.min_balance = min_balance
        self.max_balance = max_balance


class FakeView:
    """
    Minimal LedgerView implementation for testing.

    A unit's type is taken from units[symbol] when given, otherwise from the
    'unit_type' key of its state.

    Example:
        view = FakeView(
            balances={'farm_1': {'USD': Decimal("5000"), 'VEHICLE-000001': Decimal("1")}},
            states={'VEHICLE-000001': {'unit_type': 'VEHICLE', 'serial': 1,
                                       'name': 'Tractor', 'market_value': Decimal("40000")}},
            time=datetime(2025, 1, 1),
        )

        view.get_positions('VEHICLE-000001')
        # Returns: {'farm_1': Decimal("1")}
    """

    def __init__(
        self,
        balances: Dict[str, Dict[str, Decimal]],
        states: Optional[Dict[str, UnitState]] = None,
        time: Optional[datetime] = None,
        units: Optional[Dict[str, Any]] = None
    ):
        self._balances = balances
        self._states = states or {}
        self._time = time or datetime(2025, 1, 1)
        self._units = units or {}

    @property
    def current_time(self) -> datetime:
        return self._time

    def get_balance(self, wallet: str, unit: str) -> Decimal:
        return Decimal(str(self._balances.get(wallet, {}).get(unit, 0)))

    def get_unit_state(self, unit: str) -> UnitState:
        return dict(self._states.get(unit, {}))

    def get_positions(self, unit: str) -> Positions:
        return {
            w: Decimal(str(b[unit]))
            for w, b in self._balances.items()
            if unit in b and b[unit] != 0
        }

    def list_wallets(self) -> Set[str]:
        return set(self._balances.keys())

    def list_units(self) -> List[str]:
        held = {u for b in self._balances.values() for u in b}
        return sorted(held | set(self._states) | set(self._units))

    def get_unit(self, symbol: str) -> Any:
        """Return the registered unit or a FakeUnit typed from its state."""
        if symbol in self._units:
            return self._units[symbol]
        unit_type = self._states.get(symbol, {}).get('unit_type', UNIT_TYPE_CASH)
        return FakeUnit(symbol, unit_type)
