"""
farmledger - Farm Finance and Credit Engine

Credit scoring, amortized loan and lease math, collateral-backed borrowing and
default/repossession, built on a double-entry ledger and served through a
per-farm intent queue with typed results.

Usage:
    from farmledger import FarmFinanceService, FinanceConfig, AssetKind, IntentType

    service = FarmFinanceService(FinanceConfig(), start_time=datetime(2025, 1, 1))
    service.register_farm("farm_1", starting_cash=Decimal("25000"))
    tractor = service.register_asset("farm_1", AssetKind.VEHICLE, "Tractor", 60000).value

    offer = service.quote_cash_loan("farm_1", 20000, 3, collateral=[tractor]).value
    result = service.execute("farm_1", IntentType.ACCEPT_OFFER, offer_id=offer.offer_id)
    if not result.ok:
        print(result.error, result.message)
"""

# Core types
from .core import (
    LedgerView,
    SmartContract,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    ErrorKind,
    LedgerError,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    FinanceError,
    ValidationError,
    ConfigurationError,
    InsufficientFundsError,
    StateConflictError,
    CreditDeniedError,
    CollateralConflictError,
    UnknownFarmError,
    UnknownDealError,
    InvalidTimeError,
    cash,
    SYSTEM_WALLET,
    BANK_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_VEHICLE,
    UNIT_TYPE_LAND,
    UNIT_TYPE_DEAL,
)

# Ledger
from .ledger import Ledger

# Configuration and logging
from .config import FinanceConfig, PRESETS, DEFAULT_CONFIG
from .logging import setup_logging, get_logger

# Amortization
from .amortization import (
    MultiplierSavings,
    LeaseQuote,
    monthly_payment,
    remaining_payment_schedule,
    multiplier_savings,
    residual_value,
    lease_payment,
    security_deposit,
    quote_lease,
    lease_termination_fee,
    lease_buyout_price,
    security_deposit_refund,
    prepayment_penalty,
    payoff_amount,
    vehicle_interest_rate,
    land_interest_rate,
    lease_interest_rate,
    cash_loan_interest_rate,
    repair_interest_rate,
    repair_cost,
    adjusted_land_price,
)

# Credit
from .credit import (
    CreditRating,
    FarmSnapshot,
    FinanceEligibility,
    ScoreBreakdown,
    calculate_credit_score,
    can_finance,
    get_rating,
    get_interest_adjustment,
    loan_limits,
    score_breakdown,
)

# Payment and credit history
from .history import (
    PaymentStatus,
    PaymentHistoryRecord,
    PaymentHistoryTracker,
    CreditEventType,
    CreditEvent,
    CreditHistory,
)

# Collateral
from .collateral import (
    AssetKind,
    AssetId,
    CollateralAsset,
    CollateralSelection,
    create_asset_unit,
    encumbrances,
    eligible_assets,
    farm_assets,
    farm_debt,
    validate_pledge,
    collateral_value,
    calculate_collateral_value,
    max_loan_amount,
    loan_amount_options,
    compute_revaluation,
)

# Deals
from .units import (
    DealKind,
    DealStatus,
    DealTerms,
    DealState,
    LeaseTerms,
    PledgedCollateral,
    MULTIPLIER_OPTIONS,
    add_months,
    following_due_date,
    create_deal_unit,
    load_deal,
    compute_savings_interest,
)

from .deal_lifecycle import (
    Origination,
    ChargeOutcome,
    DealContract,
    compute_origination,
    compute_monthly_charge,
    compute_early_payment,
    compute_payoff,
    compute_set_multiplier,
    payoff_quote,
    early_payment_quote,
    interest_to_date,
    deal_multiplier_savings,
    lease_buyout_quote,
    compute_lease_buyout,
    compute_lease_return,
    charge_outcome,
    deal_contract,
    transact as deal_transact,
)

from .repossession import (
    RepossessedItem,
    RepossessionRecord,
    compute_repossession,
    plan_repossession,
    load_repossession_record,
)

# Lifecycle
from .engine import LifecycleEngine

# Events
from .events import EventBus, FinanceEvent, FinanceEventType

# Service boundary
from .service import (
    FarmFinanceService,
    IntentResult,
    IntentType,
    Intent,
    Offer,
    AssetSpec,
    CreditReport,
)

# Persistence
from .persistence import (
    dump_session,
    restore_session,
    save_session,
    load_session,
    deal_to_record,
    deal_from_record,
    history_to_record,
    history_from_record,
)


__all__ = [
    # Core
    'LedgerView', 'SmartContract', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult', 'ErrorKind',
    'LedgerError', 'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'FinanceError', 'ValidationError', 'ConfigurationError', 'InsufficientFundsError',
    'StateConflictError', 'CreditDeniedError', 'CollateralConflictError',
    'UnknownFarmError', 'UnknownDealError', 'InvalidTimeError',
    'cash', 'SYSTEM_WALLET', 'BANK_WALLET',
    'UNIT_TYPE_CASH', 'UNIT_TYPE_VEHICLE', 'UNIT_TYPE_LAND', 'UNIT_TYPE_DEAL',
    # Ledger
    'Ledger',
    # Config and logging
    'FinanceConfig', 'PRESETS', 'DEFAULT_CONFIG', 'setup_logging', 'get_logger',
    # Amortization
    'MultiplierSavings', 'LeaseQuote', 'monthly_payment', 'remaining_payment_schedule',
    'multiplier_savings', 'residual_value', 'lease_payment', 'security_deposit',
    'quote_lease', 'lease_termination_fee', 'lease_buyout_price', 'security_deposit_refund',
    'prepayment_penalty', 'payoff_amount', 'vehicle_interest_rate', 'land_interest_rate',
    'lease_interest_rate', 'cash_loan_interest_rate', 'repair_interest_rate', 'repair_cost',
    'adjusted_land_price',
    # Credit
    'CreditRating', 'FarmSnapshot', 'FinanceEligibility', 'ScoreBreakdown',
    'calculate_credit_score', 'can_finance', 'get_rating', 'get_interest_adjustment',
    'loan_limits', 'score_breakdown',
    # History
    'PaymentStatus', 'PaymentHistoryRecord', 'PaymentHistoryTracker',
    'CreditEventType', 'CreditEvent', 'CreditHistory',
    # Collateral
    'AssetKind', 'AssetId', 'CollateralAsset', 'CollateralSelection', 'create_asset_unit',
    'encumbrances', 'eligible_assets', 'farm_assets', 'farm_debt', 'validate_pledge',
    'collateral_value', 'calculate_collateral_value', 'max_loan_amount',
    'loan_amount_options', 'compute_revaluation',
    # Deals
    'DealKind', 'DealStatus', 'DealTerms', 'DealState', 'LeaseTerms', 'PledgedCollateral',
    'MULTIPLIER_OPTIONS', 'add_months', 'following_due_date', 'create_deal_unit', 'load_deal',
    'compute_savings_interest',
    'Origination', 'ChargeOutcome', 'DealContract', 'compute_origination',
    'compute_monthly_charge', 'compute_early_payment', 'compute_payoff',
    'compute_set_multiplier', 'payoff_quote', 'early_payment_quote', 'interest_to_date', 'deal_multiplier_savings', 'lease_buyout_quote',
    'compute_lease_buyout', 'compute_lease_return',
    'charge_outcome', 'deal_contract', 'deal_transact',
    'RepossessedItem', 'RepossessionRecord', 'compute_repossession', 'plan_repossession',
    'load_repossession_record',
    # Lifecycle
    'LifecycleEngine',
    # Events
    'EventBus', 'FinanceEvent', 'FinanceEventType',
    # Service
    'FarmFinanceService', 'IntentResult', 'IntentType', 'Intent', 'Offer', 'AssetSpec',
    'CreditReport',
    # Persistence
    'dump_session', 'restore_session', 'save_session', 'load_session',
    'deal_to_record', 'deal_from_record', 'history_to_record', 'history_from_record',
]

__version__ = '1.0.0'
