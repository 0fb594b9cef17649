"""
Core types and pure functions for the farm finance ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access, SmartContract for lifecycle polling
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError (ledger plumbing) and FinanceError (domain failures)
4. Type aliases: Positions, BalanceMap, UnitState
5. Money helpers: to_decimal, round_money
6. Unit factories: cash()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, Iterable, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All money arithmetic is Decimal. The global context is configured once at
# import time; no other module may change it.
#
#   - prec=50: headroom for (1 + r) ** n with n up to 360 months
#   - rounding=ROUND_HALF_EVEN: banker's rounding
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption (asset registry, external income).
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Lender of record for every deal. Funded by issuance when the service starts.
BANK_WALLET = "bank"

DEFAULT_CURRENCY = "USD"

# Unit type constants (strings, not enum, so unit definitions stay plain data).
UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_VEHICLE = "VEHICLE"
UNIT_TYPE_LAND = "LAND"
UNIT_TYPE_DEAL = "FINANCE_DEAL"

ASSET_UNIT_TYPES = frozenset({UNIT_TYPE_VEHICLE, UNIT_TYPE_LAND})

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# Balances at or below one cent count as settled.
PAYOFF_EPSILON = Decimal("0.01")

MONEY_QUANTUM = Decimal("0.01")

DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_HALF_EVEN,
    UNIT_TYPE_VEHICLE: ROUND_DOWN,
    UNIT_TYPE_LAND: ROUND_DOWN,
    UNIT_TYPE_DEAL: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Internal state for a unit (deal terms and progress, asset valuation, ...).
UnitState = Dict[str, Any]


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert ints, floats and strings to Decimal via str() so that 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not numeric or not finite.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"expected a number, got {value!r}")
    else:
        try:
            result = Decimal(str(value))
        except ArithmeticError as exc:
            raise ValidationError(f"expected a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"expected a finite number, got {value!r}")
    return result


def round_money(value: Decimal) -> Decimal:
    """Quantize to cents with banker's rounding."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Contracts, transfer rules, credit scoring and collateral enumeration take a
    LedgerView to declare that they only read. The Ledger class implements
    this protocol; tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical (game) time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a specific unit in a wallet."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def list_units(self) -> List[str]:
        """Return all registered unit symbols, sorted."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


class SmartContract(Protocol):
    """
    Protocol for lifecycle-aware contracts polled once per tick.

    Contracts receive a LedgerView and return a PendingTransaction directly,
    empty when nothing is due.
    """

    def check_lifecycle(
        self,
        view: LedgerView,
        symbol: str,
        timestamp: datetime,
    ) -> 'PendingTransaction':
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied.
    ALREADY_APPLIED: The same intent was processed before (idempotent replay).
    REJECTED: Validation failed (balance limits, transfer rule, stale state).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Farm-submitted intent (loan, payment, payoff)
    CONTRACT = "contract"                 # Deal contract logic
    LIFECYCLE = "lifecycle"               # Monthly tick (charges, defaults, lease end)
    SYSTEM = "system"                     # Issuance, registry updates, setup
    EXTERNAL = "external"                 # Host game income/expenses


class ErrorKind(Enum):
    """Structured failure kinds returned across the service boundary."""
    VALIDATION = "validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    STATE_CONFLICT = "state_conflict"
    COLLATERAL_CONFLICT = "collateral_conflict"
    CREDIT_DENIED = "credit_denied"
    LEDGER_REJECTED = "ledger_rejected"
    UNKNOWN_FARM = "unknown_farm"
    UNKNOWN_DEAL = "unknown_deal"
    INVALID_TIME = "invalid_time"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class FinanceError(Exception):
    """Base exception for finance domain failures."""
    kind = ErrorKind.VALIDATION


class ValidationError(FinanceError, ValueError):
    """Malformed input: rejected before any mutation."""
    kind = ErrorKind.VALIDATION


class ConfigurationError(ValidationError):
    """Configuration value out of range or unknown preset."""


class UnknownFarmError(ValidationError):
    """No farm is registered under the given id."""
    kind = ErrorKind.UNKNOWN_FARM


class UnknownDealError(ValidationError):
    """No deal unit exists under the given symbol."""
    kind = ErrorKind.UNKNOWN_DEAL


class InvalidTimeError(FinanceError):
    """Game time asked to move backwards."""
    kind = ErrorKind.INVALID_TIME


class InsufficientFundsError(FinanceError):
    """The farm cannot cover a user-initiated payment, fee or down payment."""
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, message: str, required: Decimal = Decimal("0"),
                 available: Decimal = Decimal("0")):
        super().__init__(message)
        self.required = required
        self.available = available


class StateConflictError(FinanceError):
    """Transition attempted from a terminal or incompatible deal state."""
    kind = ErrorKind.STATE_CONFLICT


class CreditDeniedError(FinanceError):
    """The farm's credit score is below the product's minimum."""
    kind = ErrorKind.CREDIT_DENIED

    def __init__(self, message: str, min_score_required: int = 0, current_score: int = 0):
        super().__init__(message)
        self.min_score_required = min_score_required
        self.current_score = current_score


class CollateralConflictError(FinanceError):
    """One or more assets are already pledged to another active deal."""
    kind = ErrorKind.COLLATERAL_CONFLICT

    def __init__(self, message: str, asset_ids: Iterable[str] = ()):
        super().__init__(message)
        self.asset_ids = tuple(asset_ids)


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for the audit trail.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (farm id, contract name)
        unit_symbol: Deal or asset that triggered this (if applicable)
        event_type: Specific event (e.g. "PAYMENT_MADE", "DEAL_DEFAULTED")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Complete before/after snapshot of a unit's state.

    old_state doubles as the optimistic-concurrency token: the ledger rejects
    the change if the unit no longer holds old_state.
    """
    unit: str
    old_state: Any
    new_state: Any


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (Decimal, finite, non-zero).
        unit_symbol: Unit being transferred ("USD", "VEHICLE-000003", ...).
        source: Wallet debited.
        dest: Wallet credited.
        contract_id: Identifier of the operation generating this move.
        metadata: Optional additional information.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("1.0") and Decimal("1.00") both give "1"."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Independent of dict insertion order and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return _canonicalize(value.value)
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = ()
) -> str:
    """
    Deterministic content hash of a transaction's intent.

    Based only on moves, state changes, origin and created units, never on
    timestamps. Callers that can legitimately repeat an identical intent
    (two equal cash grants, say) must make the contract_id unique.
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        content_parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        content_parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}")

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.unit):
        content_parts.append(
            f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}"
        )

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A proposed transaction before execution: the INTENT.

    Built by compute_* functions and contracts, executed by Ledger.execute().
    intent_id is auto-computed from content.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if there is nothing to move, change or create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state changes.

    This is the standard way to create transactions.

    Example:
        def compute_fee(view, deal, farm, fee):
            moves = [Move(fee, "USD", farm, BANK_WALLET, f"fee_{deal}")]
            return build_transaction(view, moves)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.CONTRACT,
            source_id="contract",
        )

    # Deep copy state changes so later mutation of the caller's dicts cannot leak in
    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Create an empty PendingTransaction, for contracts with nothing to do."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.CONTRACT, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes: the FACT.

    Attributes:
        moves: Value transfers between wallets
        state_changes: Unit state changes (old and new state)
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash (idempotency key)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger
        contract_ids: Contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        return (
            f"Transaction({self.exec_id}, {len(self.moves)} moves, "
            f"{len(self.state_changes)} deltas, {self.origin})"
        )


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a tuple of (key, value) pairs sorted by key."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit in the ledger: cash, an asset, or a deal.

    Attributes:
        symbol: Identifier ("USD", "VEHICLE-000001", "DEAL-000001").
        name: Human-readable name.
        unit_type: Category (CASH, VEHICLE, LAND, FINANCE_DEAL).
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Rounding precision (None = no rounding).
        transfer_rule: Optional function validating moves of this unit.
        _frozen_state: Internal frozen state representation.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a new dict."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Round a value to this unit's precision (unchanged if decimal_places is None)."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def cash(symbol: str, name: str, decimal_places: int = 2,
         min_balance: Decimal = Decimal("0")) -> Unit:
    """
    Create a cash currency unit.

    Farm wallets may not overdraw: min_balance defaults to zero, so a move
    that would take a farm below zero is rejected by the ledger.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=min_balance,
        _frozen_state=_freeze_state({'issuer': BANK_WALLET}),
    )
