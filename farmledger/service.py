"""
service.py - Farm Finance Service

The single ownership authority for one game session. Clients never touch the
ledger: they ask for quotes (read-only, stored as offers with a game-time
expiry) and submit intents, which are queued per farm and drained one at a
time. Every intent is re-validated against the ledger as it stands when the
intent executes, so two clients racing for the same cash or the same tractor
get one success and one explicit rejection.

Nothing raises across this boundary. Every public call other than the plain
balance and listing accessors answers with an IntentResult; failures come back
as IntentResult(ok=False, error=ErrorKind...).

Usage:

    service = FarmFinanceService(FinanceConfig.from_preset("realistic"),
                                 start_time=datetime(2025, 1, 1))
    service.register_farm("farm_1", starting_cash=Decimal("50000"))
    tractor = service.register_asset("farm_1", AssetKind.VEHICLE, "Tractor", 80000).value

    quote = service.quote_cash_loan("farm_1", 40000, 5, collateral=[tractor])
    result = service.execute("farm_1", IntentType.ACCEPT_OFFER, offer_id=quote.value.offer_id)

    for month in range(1, 13):
        service.monthly_tick(add_months(datetime(2025, 1, 1), month))
    score = service.credit_score("farm_1").value
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from .amortization import (
    CASH_LOAN_TERM_YEARS, REPAIR_TERM_MONTHS, HUNDRED,
    LeaseQuote,
    adjusted_land_price,
    cash_loan_interest_rate,
    land_interest_rate,
    lease_interest_rate,
    meets_minimum_amount,
    monthly_payment,
    quote_lease,
    repair_cost,
    repair_interest_rate,
    validate_finance_params,
    validate_lease_params,
    vehicle_interest_rate,
)
from .collateral import (
    AssetId, AssetKind, CollateralAsset, CollateralSelection,
    collateral_value, compute_revaluation, create_asset_unit,
    eligible_assets, farm_assets, farm_debt, load_asset,
    max_loan_amount, validate_pledge,
)
from .config import FinanceConfig, DEFAULT_CONFIG
from .core import (
    Move, PendingTransaction, Transaction, TransactionOrigin, OriginType,
    ExecuteResult, ErrorKind, LedgerError, FinanceError,
    ValidationError, InsufficientFundsError, StateConflictError,
    CreditDeniedError, CollateralConflictError, WalletNotRegistered,
    UnknownFarmError, UnknownDealError, InvalidTimeError,
    SYSTEM_WALLET, BANK_WALLET, UNIT_TYPE_DEAL,
    build_transaction, cash, round_money, to_decimal,
)
from .credit import (
    FarmSnapshot, FinanceEligibility, ScoreBreakdown, PURPOSE_REPAIR,
    calculate_credit_score, can_finance, get_rating, score_breakdown,
)
from .deal_lifecycle import (
    DEAL_PAID_OFF, LEASE_ENDED,
    DealContract, Origination, charge_outcome,
    compute_early_payment, compute_lease_buyout, compute_lease_return,
    compute_origination, compute_payoff, compute_set_multiplier,
    deal_multiplier_savings, lease_buyout_quote, payoff_quote,
)
from .engine import LifecycleEngine
from .events import EventBus, FinanceEvent, FinanceEventType
from .history import (
    CreditEvent, CreditEventType, CreditHistory, CreditHistorySummary,
    PaymentHistoryRecord, PaymentHistoryTracker, PaymentStatus,
)
from .ledger import Ledger
from .logging import get_logger, set_package_level, setup_logging
from .repossession import load_repossession_record, record_to_dict
from .units.deal import (
    DealKind, DealTerms, DealState, LeaseTerms, load_deal,
)
from .units.savings import compute_savings_interest


logger = get_logger(__name__)

ASSET_REGISTERED = "ASSET_REGISTERED"
ASSET_REMOVED = "ASSET_REMOVED"
MONEY_CHANGED = "MONEY_CHANGED"


# ============================================================================
# RESULTS, INTENTS, OFFERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class IntentResult:
    """Typed outcome of anything a client asks the service to do."""
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""
    asset_ids: Tuple[str, ...] = ()

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> IntentResult:
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, exc: Exception) -> IntentResult:
        if isinstance(exc, FinanceError):
            kind = exc.kind
        elif isinstance(exc, WalletNotRegistered):
            kind = ErrorKind.UNKNOWN_FARM
        else:
            kind = ErrorKind.LEDGER_REJECTED
        asset_ids = exc.asset_ids if isinstance(exc, CollateralConflictError) else ()
        return cls(ok=False, error=kind, message=str(exc), asset_ids=asset_ids)


class IntentType(Enum):
    ACCEPT_OFFER = "ACCEPT_OFFER"
    DECLINE_OFFER = "DECLINE_OFFER"
    EARLY_PAYMENT = "EARLY_PAYMENT"
    PAYOFF = "PAYOFF"
    SET_MULTIPLIER = "SET_MULTIPLIER"
    LEASE_BUYOUT = "LEASE_BUYOUT"
    LEASE_RETURN = "LEASE_RETURN"


@dataclass(frozen=True, slots=True)
class Intent:
    """A queued client request. params is a frozen tuple of (key, value) pairs."""
    ticket: int
    farm_id: str
    intent_type: IntentType
    params: tuple = ()

    def param(self, key: str, default: Any = None) -> Any:
        return dict(self.params).get(key, default)


@dataclass(frozen=True, slots=True)
class AssetSpec:
    """An asset that does not exist yet: what a purchase or lease will deliver."""
    kind: AssetKind
    name: str
    market_value: Decimal
    config_file: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'market_value', to_decimal(self.market_value))
        if not isinstance(self.kind, AssetKind):
            raise ValidationError(f"unknown asset kind: {self.kind!r}")


@dataclass(frozen=True, slots=True)
class Offer:
    """
    A priced deal the farm may accept until expires_at (game time).

    amount_financed is what the deal's balance starts at: the principal for
    loans, the total scheduled obligation for leases.
    """
    offer_id: str
    farm_id: str
    kind: DealKind
    name: str
    price: Decimal
    amount_financed: Decimal
    annual_rate: Decimal
    term_months: int
    monthly_payment: Decimal
    total_interest: Decimal
    credit_score: int
    expires_at: datetime
    down_payment: Decimal = Decimal("0")
    collateral: Tuple[str, ...] = ()
    trade_in: Optional[str] = None
    trade_in_value: Decimal = Decimal("0")
    asset: Optional[AssetSpec] = None
    lease: Optional[LeaseQuote] = None
    purpose: Optional[str] = None
    repaired_asset: Optional[str] = None
    land_price_adjustment: Decimal = Decimal("0")

    @property
    def is_land(self) -> bool:
        return self.asset is not None and self.asset.kind is AssetKind.LAND

    @property
    def payee(self) -> str:
        """Cash loans pay the farm; purchases, leases and repairs pay the seller."""
        if self.kind is DealKind.CASH_LOAN and self.purpose != PURPOSE_REPAIR:
            return self.farm_id
        return SYSTEM_WALLET


@dataclass(frozen=True, slots=True)
class CreditReport:
    farm_id: str
    score: int
    breakdown: ScoreBreakdown
    payment_history: PaymentHistoryRecord
    summary: CreditHistorySummary
    recent_events: Tuple[CreditEvent, ...]
    total_assets: Decimal
    total_debt: Decimal


# ============================================================================
# SERVICE
# ============================================================================

class FarmFinanceService:
    """
    Owns the ledger, the lifecycle engine, payment and credit history, open
    offers and the per-farm intent queues for one game session.
    """

    def __init__(
        self,
        config: FinanceConfig = DEFAULT_CONFIG,
        start_time: Optional[datetime] = None,
        events: Optional[EventBus] = None,
        fund_bank: bool = True,
        configure_logging: bool = False,
    ):
        if configure_logging:
            setup_logging(config.log_level, config.log_format)
        else:
            set_package_level(config.log_level)
        self.config = config
        self.events = events or EventBus()
        self.ledger = Ledger("farmledger", initial_time=start_time)
        self.ledger.register_unit(cash(config.currency, f"{config.currency} cash"))
        self.ledger.register_wallet(BANK_WALLET)

        self.engine = LifecycleEngine(self.ledger)
        self.engine.register(UNIT_TYPE_DEAL, DealContract(config))

        self.payment_history = PaymentHistoryTracker()
        self.credit_history = CreditHistory(config.late_payment_penalty)

        self.offers: Dict[str, Offer] = {}
        self._queues: Dict[str, Deque[Intent]] = {}
        self._farms: List[str] = []
        self._next_ticket = 0
        self._next_offer = 0
        self._next_deal = 0
        self._next_asset = 0
        self._next_money = 0
        self._savings_paid: Dict[str, str] = {}

        if fund_bank and config.bank_capital > 0:
            self._apply(build_transaction(
                self.ledger,
                [Move(config.bank_capital, config.currency, SYSTEM_WALLET, BANK_WALLET, "bank_capital")],
                origin=TransactionOrigin(OriginType.SYSTEM, "bank", event_type=MONEY_CHANGED),
            ))

    @property
    def now(self) -> datetime:
        return self.ledger.current_time

    @property
    def farms(self) -> List[str]:
        return list(self._farms)

    def counters(self) -> Dict[str, Any]:
        """Id counters and savings periods; what a restored session needs to keep numbering."""
        return {
            'deal': self._next_deal,
            'asset': self._next_asset,
            'offer': self._next_offer,
            'money': self._next_money,
            'ticket': self._next_ticket,
            'savings_paid': dict(self._savings_paid),
        }

    def restore_counters(self, data: Dict[str, Any]) -> None:
        self._next_deal = int(data.get('deal', 0))
        self._next_asset = int(data.get('asset', 0))
        self._next_offer = int(data.get('offer', 0))
        self._next_money = int(data.get('money', 0))
        self._next_ticket = int(data.get('ticket', 0))
        self._savings_paid = dict(data.get('savings_paid', {}))

    # ------------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------------

    def _apply(self, pending: PendingTransaction) -> Optional[Transaction]:
        """Execute a transaction; the applied Transaction, or None if nothing changed."""
        result = self.ledger.execute(pending)
        if result is ExecuteResult.REJECTED:
            raise LedgerError(self.ledger.last_rejection or "transaction rejected")
        if result is ExecuteResult.APPLIED and not pending.is_empty():
            return self.ledger.transaction_log[-1]
        return None

    def _publish(self, event_type: FinanceEventType, farm_id: str,
                 deal_id: Optional[str] = None, **payload: Any) -> None:
        self.events.publish(FinanceEvent(
            event_type=event_type,
            farm_id=farm_id,
            timestamp=self.now,
            deal_id=deal_id,
            payload=tuple(sorted(payload.items())),
        ))

    def _credit(self, farm_id: str, event_type: CreditEventType,
                details: str = "", deal_id: Optional[str] = None) -> None:
        self.credit_history.record_event(farm_id, event_type, details, deal_id, self.now)

    def _require_farm(self, farm_id: str) -> None:
        if farm_id not in self._farms:
            raise UnknownFarmError(f"unknown farm {farm_id!r}")

    def _guard(self, action: Callable[[], Any]) -> IntentResult:
        try:
            value = action()
        except (FinanceError, LedgerError) as exc:
            logger.info("rejected: %s", exc)
            return IntentResult.failure(exc)
        if isinstance(value, IntentResult):
            return value
        return IntentResult.success(value)

    # ------------------------------------------------------------------------
    # Farm ledger
    # ------------------------------------------------------------------------

    def register_farm(self, farm_id: str, starting_cash=Decimal("0")) -> IntentResult:
        def action():
            if farm_id in (SYSTEM_WALLET, BANK_WALLET):
                raise ValidationError(f"{farm_id!r} is reserved")
            if farm_id in self._farms:
                raise ValidationError(f"farm {farm_id!r} already registered")
            self.ledger.register_wallet(farm_id)
            self._farms.append(farm_id)
            self._queues[farm_id] = deque()
            if to_decimal(starting_cash) > 0:
                self._move_money(farm_id, to_decimal(starting_cash), "starting_cash")
            logger.info("registered farm %s", farm_id)
            return farm_id
        return self._guard(action)

    def get_money(self, farm_id: str) -> Decimal:
        """Cash on hand; zero for a farm that was never registered."""
        if farm_id not in self._farms:
            return Decimal("0")
        return self.ledger.get_balance(farm_id, self.config.currency)

    def add_money(self, farm_id: str, delta, reason: str = "external") -> IntentResult:
        """Credit (delta > 0) or debit (delta < 0) a farm from outside the finance system."""
        return self._guard(lambda: self._move_money(farm_id, to_decimal(delta), reason))

    def _move_money(self, farm_id: str, delta: Decimal, reason: str) -> Decimal:
        self._require_farm(farm_id)
        delta = round_money(delta)
        if delta == 0:
            raise ValidationError("amount cannot be zero")
        available = self.get_money(farm_id)
        if delta < 0 and -delta > available:
            raise InsufficientFundsError(
                f"{farm_id} needs {-delta}, has {available}", required=-delta, available=available,
            )
        self._next_money += 1
        source, dest = (SYSTEM_WALLET, farm_id) if delta > 0 else (farm_id, SYSTEM_WALLET)
        move = Move(abs(delta), self.config.currency, source, dest,
                    f"{reason}_{self._next_money:08d}", metadata={'reason': reason})
        self._apply(build_transaction(
            self.ledger, [move],
            origin=TransactionOrigin(OriginType.EXTERNAL, farm_id, event_type=MONEY_CHANGED),
        ))
        return self.get_money(farm_id)

    # ------------------------------------------------------------------------
    # Vehicle and land registry
    # ------------------------------------------------------------------------

    def register_asset(self, farm_id: str, kind: AssetKind, name: str,
                       market_value, config_file: Optional[str] = None) -> IntentResult:
        """Bring an already-owned vehicle or parcel onto the ledger; value is its symbol."""
        def action():
            self._require_farm(farm_id)
            asset_id = AssetId(kind, self._next_asset + 1)
            unit = create_asset_unit(asset_id, name, market_value, config_file)
            move = Move(Decimal("1"), unit.symbol, SYSTEM_WALLET, farm_id, f"register_{unit.symbol}")
            self._apply(build_transaction(
                self.ledger, [move],
                origin=TransactionOrigin(OriginType.EXTERNAL, farm_id, unit.symbol, ASSET_REGISTERED),
                units_to_create=(unit,),
            ))
            self._next_asset = asset_id.serial
            return unit.symbol
        return self._guard(action)

    def remove_asset(self, asset_symbol: str, reason: str = "sold") -> IntentResult:
        """Take an unencumbered asset off the farm (sold, scrapped)."""
        def action():
            asset = self._asset(asset_symbol)
            if asset.is_pledged:
                raise CollateralConflictError(
                    f"{asset_symbol} is pledged to {asset.pledged_to}", [asset_symbol]
                )
            if not asset.owner or asset.owner in (SYSTEM_WALLET, BANK_WALLET):
                raise ValidationError(f"{asset_symbol} is not held by a farm")
            move = Move(Decimal("1"), asset_symbol, asset.owner, SYSTEM_WALLET,
                        f"remove_{asset_symbol}", metadata={'reason': reason})
            self._apply(build_transaction(
                self.ledger, [move],
                origin=TransactionOrigin(OriginType.EXTERNAL, asset.owner, asset_symbol, ASSET_REMOVED),
            ))
            return asset_symbol
        return self._guard(action)

    def revalue_asset(self, asset_symbol: str, market_value) -> IntentResult:
        def action():
            self._asset(asset_symbol)
            self._apply(compute_revaluation(self.ledger, asset_symbol, market_value, self.now))
            return to_decimal(self.ledger.get_unit_state(asset_symbol)['market_value'])
        return self._guard(action)

    def _asset(self, asset_symbol: str) -> CollateralAsset:
        if asset_symbol not in self.ledger.units:
            raise ValidationError(f"unknown asset {asset_symbol}")
        return load_asset(self.ledger, asset_symbol)

    def assets(self, farm_id: str) -> List[CollateralAsset]:
        return farm_assets(self.ledger, farm_id)

    # ------------------------------------------------------------------------
    # Deals and credit (read-only)
    # ------------------------------------------------------------------------

    def deal(self, deal_id: str) -> IntentResult:
        """value is the deal's (DealTerms, DealState)."""
        return self._guard(lambda: self._deal(deal_id))

    def _deal(self, deal_id: str) -> Tuple[DealTerms, DealState]:
        if deal_id not in self.ledger.units or self.ledger.get_unit(deal_id).unit_type != UNIT_TYPE_DEAL:
            raise UnknownDealError(f"unknown deal {deal_id}")
        return load_deal(self.ledger, deal_id)

    def deals(self, farm_id: str, active_only: bool = False) -> List[Tuple[str, DealTerms, DealState]]:
        """The farm's deals in symbol order."""
        found = []
        for symbol in self.ledger.list_units():
            if self.ledger.get_unit(symbol).unit_type != UNIT_TYPE_DEAL:
                continue
            terms, state = load_deal(self.ledger, symbol)
            if terms.farm_wallet != farm_id:
                continue
            if active_only and not state.is_active:
                continue
            found.append((symbol, terms, state))
        return found

    def credit_snapshot(self, farm_id: str) -> IntentResult:
        return self._guard(lambda: self._credit_snapshot(farm_id))

    def _credit_snapshot(self, farm_id: str) -> FarmSnapshot:
        self._require_farm(farm_id)
        money = self.get_money(farm_id)
        held = sum((a.market_value for a in farm_assets(self.ledger, farm_id)), Decimal("0"))
        all_deals = self.deals(farm_id)
        return FarmSnapshot(
            farm_id=farm_id,
            total_assets=money + held,
            total_debt=farm_debt(self.ledger, farm_id),
            cash=money,
            history=self.payment_history.stats(farm_id),
            account_count=len(all_deals),
            deal_kinds=frozenset(terms.kind for _, terms, _ in all_deals),
            history_adjustment=self.credit_history.score_adjustment(farm_id),
        )

    def credit_score(self, farm_id: str) -> IntentResult:
        return self._guard(lambda: self._credit_score(farm_id))

    def _credit_score(self, farm_id: str) -> int:
        return calculate_credit_score(self._credit_snapshot(farm_id), self.config)

    def credit_report(self, farm_id: str, recent: int = 10) -> IntentResult:
        def action():
            snapshot = self._credit_snapshot(farm_id)
            return CreditReport(
                farm_id=farm_id,
                score=calculate_credit_score(snapshot, self.config),
                breakdown=score_breakdown(snapshot),
                payment_history=snapshot.history,
                summary=self.credit_history.summary(farm_id),
                recent_events=tuple(self.credit_history.events(farm_id, recent)),
                total_assets=snapshot.total_assets,
                total_debt=snapshot.total_debt,
            )
        return self._guard(action)

    def can_finance(self, farm_id: str, kind: DealKind, *, is_land: bool = False,
                    purpose: Optional[str] = None) -> IntentResult:
        """value is a FinanceEligibility; a denial is still ok=True with allowed=False."""
        return self._guard(lambda: can_finance(self._credit_score(farm_id), kind, self.config,
                                               is_land=is_land, purpose=purpose))

    def eligible_collateral(self, farm_id: str) -> IntentResult:
        def action():
            self._require_farm(farm_id)
            return eligible_assets(self.ledger, farm_id)
        return self._guard(action)

    def collateral_selection(self, farm_id: str) -> IntentResult:
        """A fresh CollateralSelection for the cash loan screen."""
        def action():
            score = self._credit_score(farm_id)
            return CollateralSelection(
                eligible_assets(self.ledger, farm_id),
                self.get_money(farm_id),
                farm_debt(self.ledger, farm_id),
                get_rating(score).tier,
                self.config,
            )
        return self._guard(action)

    def payoff_quote(self, deal_id: str) -> IntentResult:
        """value is (total due to close the deal today, prepayment penalty within it)."""
        return self._deal_read(deal_id, lambda: payoff_quote(self.ledger, deal_id, self.config))

    def lease_buyout_quote(self, deal_id: str) -> IntentResult:
        return self._deal_read(deal_id, lambda: lease_buyout_quote(self.ledger, deal_id))

    def multiplier_savings(self, deal_id: str, multiplier=None) -> IntentResult:
        return self._deal_read(deal_id, lambda: deal_multiplier_savings(self.ledger, deal_id, multiplier))

    def repossession_record(self, deal_id: str) -> IntentResult:
        return self._deal_read(deal_id, lambda: load_repossession_record(self.ledger, deal_id))

    def _deal_read(self, deal_id: str, read: Callable[[], Any]) -> IntentResult:
        def action():
            self._deal(deal_id)
            return read()
        return self._guard(action)

    # ------------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------------

    def _eligibility(self, farm_id: str, kind: DealKind, *, is_land: bool = False,
                     purpose: Optional[str] = None) -> int:
        score = self._credit_score(farm_id)
        eligibility = can_finance(score, kind, self.config, is_land=is_land, purpose=purpose)
        if not eligibility.allowed:
            raise CreditDeniedError(
                f"credit score {score} below the {eligibility.min_score_required} required",
                eligibility.min_score_required, score,
            )
        return score

    def _borrowing_limit(self, farm_id: str, collateral: Sequence[str], score: int) -> Decimal:
        assets = validate_pledge(self.ledger, farm_id, list(collateral))
        return max_loan_amount(
            self.get_money(farm_id),
            [collateral_value(a, self.config) for a in assets],
            farm_debt(self.ledger, farm_id),
            get_rating(score).tier,
            self.config,
        )

    def _trade_in_value(self, farm_id: str, trade_in: Optional[str]) -> Decimal:
        if trade_in is None:
            return Decimal("0")
        return validate_pledge(self.ledger, farm_id, [trade_in])[0].market_value

    def _store_offer(self, **fields: Any) -> Offer:
        self._next_offer += 1
        offer = Offer(
            offer_id=f"OFFER-{self._next_offer:06d}",
            expires_at=self.now + timedelta(days=self.config.offer_validity_days),
            **fields,
        )
        self.offers[offer.offer_id] = offer
        logger.debug("%s: %s %s for %s", offer.offer_id, offer.kind.value,
                     offer.amount_financed, offer.farm_id)
        return offer

    def quote_cash_loan(self, farm_id: str, amount, term_years: int,
                        collateral: Sequence[str] = ()) -> IntentResult:
        """Price a collateralized cash loan paid out to the farm."""
        def action():
            self._require_farm(farm_id)
            principal = to_decimal(amount)
            if term_years not in CASH_LOAN_TERM_YEARS:
                raise ValidationError(f"term must be one of {CASH_LOAN_TERM_YEARS} years")
            ok, minimum = meets_minimum_amount(principal, DealKind.CASH_LOAN)
            if not ok:
                raise ValidationError(f"loan amount must be at least {minimum}")
            score = self._eligibility(farm_id, DealKind.CASH_LOAN)
            limit = self._borrowing_limit(farm_id, collateral, score)
            if principal > limit:
                raise ValidationError(f"loan amount {principal} exceeds the {limit} available")

            rate = self._rate(cash_loan_interest_rate, score)
            months = term_years * 12
            payment, interest = monthly_payment(principal, rate, months)
            return self._store_offer(
                farm_id=farm_id, kind=DealKind.CASH_LOAN, name="Cash loan",
                price=principal, amount_financed=principal, annual_rate=rate,
                term_months=months, monthly_payment=payment, total_interest=interest,
                credit_score=score, collateral=tuple(collateral),
            )
        return self._guard(action)

    def quote_finance(self, farm_id: str, asset: AssetSpec, price, down_payment,
                      term_years: int, trade_in: Optional[str] = None,
                      collateral: Sequence[str] = ()) -> IntentResult:
        """Price financing a vehicle or parcel bought from the shop."""
        def action():
            self._require_farm(farm_id)
            is_land = asset.kind is AssetKind.LAND
            score = self._eligibility(farm_id, DealKind.FINANCE, is_land=is_land)

            base_price = to_decimal(price)
            adjustment = Decimal("0")
            if is_land and self.config.enable_credit_system:
                final_price, adjustment = adjusted_land_price(base_price, score)
            else:
                final_price = base_price
            down = to_decimal(down_payment)
            validate_finance_params(final_price, down, term_years, is_land,
                                    self.config.min_down_payment_percent)
            trade_value = self._trade_in_value(farm_id, trade_in)

            financed = round_money(final_price - down - trade_value)
            ok, minimum = meets_minimum_amount(financed, DealKind.FINANCE, is_land)
            if not ok:
                raise ValidationError(f"amount financed must be at least {minimum}; pay cash instead")

            months = term_years * 12
            down_fraction = (down + trade_value) / final_price
            if is_land:
                rate = land_interest_rate(score, term_years, down_fraction, self.config.base_interest_rate)
            else:
                rate = vehicle_interest_rate(score, months, down_fraction, self.config.base_interest_rate)
            if not self.config.enable_credit_system:
                rate = self.config.base_interest_rate
            payment, interest = monthly_payment(financed, rate, months)
            return self._store_offer(
                farm_id=farm_id, kind=DealKind.FINANCE, name=f"{asset.name} finance",
                price=final_price, amount_financed=financed, annual_rate=rate,
                term_months=months, monthly_payment=payment, total_interest=interest,
                credit_score=score, down_payment=down, collateral=tuple(collateral),
                trade_in=trade_in, trade_in_value=trade_value, asset=asset,
                land_price_adjustment=adjustment,
            )
        return self._guard(action)

    def quote_lease(self, farm_id: str, asset: AssetSpec, price, down_payment,
                    term_years: int, trade_in: Optional[str] = None) -> IntentResult:
        """Price leasing a vehicle or parcel."""
        def action():
            self._require_farm(farm_id)
            kind = DealKind.LAND_LEASE if asset.kind is AssetKind.LAND else DealKind.VEHICLE_LEASE
            score = self._eligibility(farm_id, kind)
            lease_price = to_decimal(price)
            down = to_decimal(down_payment)
            validate_lease_params(lease_price, down, term_years)
            trade_value = self._trade_in_value(farm_id, trade_in)

            rate = lease_interest_rate(score, down / lease_price, self.config.base_interest_rate,
                                       self.config.lease_markup_percent)
            if not self.config.enable_credit_system:
                rate = self.config.base_interest_rate
            months = term_years * 12
            quote = quote_lease(lease_price, months, rate, score, down, trade_value)
            obligation = round_money(quote.monthly_payment * months)
            interest = max(Decimal("0"), obligation - (quote.capitalized_cost - quote.residual_value))
            return self._store_offer(
                farm_id=farm_id, kind=kind, name=f"{asset.name} lease",
                price=lease_price, amount_financed=obligation, annual_rate=rate,
                term_months=months, monthly_payment=quote.monthly_payment,
                total_interest=round_money(interest), credit_score=score,
                down_payment=down, trade_in=trade_in, trade_in_value=trade_value,
                asset=asset, lease=quote,
            )
        return self._guard(action)

    def quote_repair_finance(self, farm_id: str, vehicle: str, base_cost,
                             term_months: int, down_payment_percent=Decimal("0")) -> IntentResult:
        """Price financing a repair; the repair shop is paid at signing."""
        def action():
            self._require_farm(farm_id)
            asset = self._asset(vehicle)
            if asset.owner != farm_id:
                raise ValidationError(f"{farm_id} does not hold {vehicle}")
            if term_months not in REPAIR_TERM_MONTHS:
                raise ValidationError(f"term must be one of {REPAIR_TERM_MONTHS} months")
            pct = to_decimal(down_payment_percent)
            if pct < 0 or pct > 50:
                raise ValidationError("down payment must be 0-50% of the repair cost")
            score = self._eligibility(farm_id, DealKind.CASH_LOAN, purpose=PURPOSE_REPAIR)

            cost = repair_cost(base_cost, self.config.repair_cost_multiplier)
            down = round_money(cost * pct / HUNDRED)
            financed = cost - down
            if financed <= 0:
                raise ValidationError("nothing left to finance")
            rate = self._rate(repair_interest_rate, score)
            payment, interest = monthly_payment(financed, rate, term_months)
            return self._store_offer(
                farm_id=farm_id, kind=DealKind.CASH_LOAN, name=f"Repair {asset.name}",
                price=cost, amount_financed=financed, annual_rate=rate,
                term_months=term_months, monthly_payment=payment, total_interest=interest,
                credit_score=score, down_payment=down, purpose=PURPOSE_REPAIR,
                repaired_asset=vehicle,
            )
        return self._guard(action)

    def _rate(self, pricing: Callable[[int, Decimal], Decimal], score: int) -> Decimal:
        if not self.config.enable_credit_system:
            return self.config.base_interest_rate
        return pricing(score, self.config.base_interest_rate)

    # ------------------------------------------------------------------------
    # Intent queue
    # ------------------------------------------------------------------------

    def submit(self, farm_id: str, intent_type: IntentType, **params: Any) -> IntentResult:
        """Queue an intent for the farm; value is its ticket."""
        def action():
            self._require_farm(farm_id)
            if not isinstance(intent_type, IntentType):
                raise ValidationError(f"unknown intent type: {intent_type!r}")
            self._next_ticket += 1
            intent = Intent(self._next_ticket, farm_id, intent_type, tuple(sorted(params.items())))
            self._queues[farm_id].append(intent)
            return intent.ticket
        return self._guard(action)

    def pending(self, farm_id: str) -> List[Intent]:
        return list(self._queues.get(farm_id, ()))

    def process_pending(self, farm_id: Optional[str] = None) -> List[Tuple[Intent, IntentResult]]:
        """
        Drain queued intents, one farm at a time in sorted farm order and each
        farm's queue in submission order.
        """
        farms = [farm_id] if farm_id is not None else sorted(self._queues)
        results = []
        for farm in farms:
            queue = self._queues.get(farm)
            while queue:
                intent = queue.popleft()
                results.append((intent, self.execute_intent(intent)))
        return results

    def execute(self, farm_id: str, intent_type: IntentType, **params: Any) -> IntentResult:
        """Submit an intent and drain the farm's queue; the intent's own result."""
        submitted = self.submit(farm_id, intent_type, **params)
        if not submitted.ok:
            return submitted
        for intent, result in self.process_pending(farm_id):
            if intent.ticket == submitted.value:
                return result
        raise LedgerError(f"intent {submitted.value} was not processed")

    def execute_intent(self, intent: Intent) -> IntentResult:
        handler = self._HANDLERS[intent.intent_type]
        result = self._guard(lambda: handler(self, intent))
        logger.debug("intent %d %s for %s: %s", intent.ticket, intent.intent_type.value,
                     intent.farm_id, "ok" if result.ok else result.error.value)
        return result

    def _owned_deal(self, intent: Intent) -> str:
        deal_id = intent.param('deal_id')
        if not deal_id:
            raise ValidationError("deal_id is required")
        terms, _ = self._deal(deal_id)
        if terms.farm_wallet != intent.farm_id:
            raise ValidationError(f"{deal_id} does not belong to {intent.farm_id}")
        return deal_id

    def _open_offer(self, intent: Intent) -> Offer:
        offer_id = intent.param('offer_id')
        offer = self.offers.get(offer_id)
        if offer is None or offer.farm_id != intent.farm_id:
            raise ValidationError(f"no open offer {offer_id} for {intent.farm_id}")
        if self.now > offer.expires_at:
            self._expire(offer)
            raise StateConflictError(f"{offer_id} expired at {offer.expires_at}")
        return offer

    def _accept_offer(self, intent: Intent) -> str:
        offer = self._open_offer(intent)
        farm = offer.farm_id
        score = self._eligibility(farm, offer.kind, is_land=offer.is_land, purpose=offer.purpose)
        if offer.kind is DealKind.CASH_LOAN and offer.purpose != PURPOSE_REPAIR:
            limit = self._borrowing_limit(farm, offer.collateral, score)
            if offer.amount_financed > limit:
                raise ValidationError(
                    f"loan amount {offer.amount_financed} now exceeds the {limit} available"
                )
        if offer.trade_in is not None and self._trade_in_value(farm, offer.trade_in) != offer.trade_in_value:
            raise StateConflictError(f"{offer.trade_in} was revalued; request a new quote")

        deal_symbol = f"DEAL-{self._next_deal + 1:06d}"
        new_asset = None
        if offer.asset is not None:
            asset_id = AssetId(offer.asset.kind, self._next_asset + 1)
            new_asset = create_asset_unit(asset_id, offer.asset.name, offer.asset.market_value,
                                          offer.asset.config_file)
        lease = None
        if offer.lease is not None:
            lease = LeaseTerms(offer.lease.capitalized_cost, offer.lease.residual_value,
                               offer.lease.security_deposit)

        terms = DealTerms(
            kind=offer.kind,
            farm_wallet=farm,
            lender_wallet=BANK_WALLET,
            currency=self.config.currency,
            amount_financed=offer.amount_financed,
            annual_rate=offer.annual_rate,
            term_months=offer.term_months,
            base_payment=offer.monthly_payment,
            primary_asset=new_asset.symbol if new_asset else None,
            lease=lease,
            purpose=offer.purpose,
        )
        self._apply(compute_origination(self.ledger, Origination(
            deal_symbol=deal_symbol,
            name=offer.name,
            terms=terms,
            collateral=offer.collateral,
            down_payment=offer.down_payment,
            trade_in=offer.trade_in,
            new_asset=new_asset,
            payee=offer.payee,
        )))
        self._next_deal += 1
        if new_asset is not None:
            self._next_asset += 1
        del self.offers[offer.offer_id]

        if offer.purpose == PURPOSE_REPAIR:
            credit_event = CreditEventType.REPAIR_FINANCED
        elif offer.kind is DealKind.CASH_LOAN:
            credit_event = CreditEventType.LOAN_TAKEN
        else:
            credit_event = CreditEventType.NEW_DEBT_TAKEN
        self._credit(farm, credit_event, offer.name, deal_symbol)
        self._publish(
            FinanceEventType.LOAN_TAKEN, farm, deal_symbol,
            kind=offer.kind.value, amount=offer.amount_financed, rate=offer.annual_rate,
            term_months=offer.term_months, offer_id=offer.offer_id,
            asset=terms.primary_asset,
        )
        logger.info("%s opened %s (%s %s)", farm, deal_symbol, offer.kind.value, offer.amount_financed)
        return deal_symbol

    def _decline_offer(self, intent: Intent) -> str:
        offer_id = intent.param('offer_id')
        offer = self.offers.get(offer_id)
        if offer is None or offer.farm_id != intent.farm_id:
            raise ValidationError(f"no open offer {offer_id} for {intent.farm_id}")
        del self.offers[offer_id]
        return offer_id

    def _early_payment(self, intent: Intent) -> Decimal:
        deal_id = self._owned_deal(intent)
        amount = intent.param('amount')
        if amount is None:
            raise ValidationError("amount is required")
        tx = self._apply(compute_early_payment(self.ledger, deal_id, amount, self.config))
        self._credit(intent.farm_id, CreditEventType.PAYMENT_EXTRA, str(amount), deal_id)
        self._publish(FinanceEventType.PAYMENT_MADE, intent.farm_id, deal_id,
                      amount=to_decimal(amount), early=True)
        if tx is not None and tx.origin.event_type == DEAL_PAID_OFF:
            self._paid_off(intent.farm_id, deal_id)
        return self._deal(deal_id)[1].current_balance

    def _payoff(self, intent: Intent) -> Decimal:
        deal_id = self._owned_deal(intent)
        required, penalty = payoff_quote(self.ledger, deal_id, self.config)
        amount = intent.param('amount', required)
        self._apply(compute_payoff(self.ledger, deal_id, amount, self.config))
        self._paid_off(intent.farm_id, deal_id, penalty=penalty, total=required)
        return required

    def _paid_off(self, farm_id: str, deal_id: str, **payload: Any) -> None:
        self._credit(farm_id, CreditEventType.DEAL_PAID_OFF, "", deal_id)
        self._publish(FinanceEventType.DEAL_PAID_OFF, farm_id, deal_id, **payload)

    def _set_multiplier(self, intent: Intent) -> Decimal:
        deal_id = self._owned_deal(intent)
        multiplier = intent.param('multiplier')
        if multiplier is None:
            raise ValidationError("multiplier is required")
        self._apply(compute_set_multiplier(self.ledger, deal_id, multiplier))
        return self._deal(deal_id)[1].payment_multiplier

    def _lease_buyout(self, intent: Intent) -> Dict[str, Decimal]:
        deal_id = self._owned_deal(intent)
        quote = lease_buyout_quote(self.ledger, deal_id)
        self._apply(compute_lease_buyout(self.ledger, deal_id))
        self._credit(intent.farm_id, CreditEventType.LEASE_BUYOUT, "", deal_id)
        self._publish(FinanceEventType.LEASE_ENDED, intent.farm_id, deal_id,
                      outcome="buyout", total=quote['total'])
        return quote

    def _lease_return(self, intent: Intent) -> Dict[str, Any]:
        deal_id = self._owned_deal(intent)
        self._apply(compute_lease_return(self.ledger, deal_id, intent.param('damage_penalty', Decimal("0"))))
        outcome = self.ledger.get_unit_state(deal_id)['lease_end']
        if outcome['early']:
            self._credit(intent.farm_id, CreditEventType.LEASE_TERMINATED_EARLY, "", deal_id)
        self._publish(FinanceEventType.LEASE_ENDED, intent.farm_id, deal_id,
                      outcome="returned", early=outcome['early'],
                      deposit_refund=outcome['deposit_refund'])
        return outcome

    _HANDLERS: Dict[IntentType, Callable[["FarmFinanceService", Intent], Any]] = {
        IntentType.ACCEPT_OFFER: _accept_offer,
        IntentType.DECLINE_OFFER: _decline_offer,
        IntentType.EARLY_PAYMENT: _early_payment,
        IntentType.PAYOFF: _payoff,
        IntentType.SET_MULTIPLIER: _set_multiplier,
        IntentType.LEASE_BUYOUT: _lease_buyout,
        IntentType.LEASE_RETURN: _lease_return,
    }

    # ------------------------------------------------------------------------
    # Monthly tick
    # ------------------------------------------------------------------------

    def monthly_tick(self, timestamp: datetime) -> IntentResult:
        """
        Advance game time: charge every deal that has come due, pay savings
        interest, expire stale offers, and feed the outcomes into payment and
        credit history. value is the list of executed transactions.

        Queued intents are not drained here; call process_pending() first.
        """
        return self._guard(lambda: self._tick(timestamp))

    def _tick(self, timestamp: datetime) -> List[Transaction]:
        if timestamp < self.now:
            raise InvalidTimeError(f"cannot move time back from {self.now} to {timestamp}")
        executed = self.engine.step(timestamp)
        for tx in executed:
            self._record_lifecycle(tx)

        if self.config.enable_bank_interest:
            executed.extend(self._pay_savings_interest(timestamp))

        for offer in sorted(self.offers.values(), key=lambda o: o.offer_id):
            if timestamp > offer.expires_at:
                self._expire(offer)
        return executed

    def _record_lifecycle(self, tx: Transaction) -> None:
        outcome = charge_outcome(tx)
        if outcome is None:
            if tx.origin.event_type == LEASE_ENDED:
                farm = tx.origin.source_id
                self._publish(FinanceEventType.LEASE_ENDED, farm, tx.origin.unit_symbol,
                              outcome="matured")
            return

        farm, deal_id = outcome.farm_id, outcome.deal_id
        self.payment_history.record_payment(
            farm,
            outcome.status is PaymentStatus.ON_TIME,
            late=outcome.status is PaymentStatus.LATE,
            deal_id=deal_id,
            amount=outcome.amount,
            timestamp=tx.timestamp,
        )
        if outcome.status is PaymentStatus.MISSED:
            self._credit(farm, CreditEventType.PAYMENT_MISSED, "", deal_id)
            self._publish(FinanceEventType.PAYMENT_MISSED, farm, deal_id)
        else:
            credit_event = (CreditEventType.PAYMENT_LATE if outcome.status is PaymentStatus.LATE
                            else CreditEventType.PAYMENT_ON_TIME)
            self._credit(farm, credit_event, str(outcome.amount), deal_id)
            self._publish(FinanceEventType.PAYMENT_MADE, farm, deal_id,
                          amount=outcome.amount, status=outcome.status.value)

        if outcome.paid_off:
            self._paid_off(farm, deal_id)
        if outcome.defaulted:
            record = load_repossession_record(self.ledger, deal_id)
            self._credit(farm, CreditEventType.REPOSSESSION, "", deal_id)
            self._publish(FinanceEventType.DEAL_DEFAULTED, farm, deal_id,
                          repossession=record_to_dict(record) if record else None)
            logger.warning("%s defaulted on %s", farm, deal_id)

    def _pay_savings_interest(self, timestamp: datetime) -> List[Transaction]:
        period = f"{timestamp.year:04d}-{timestamp.month:02d}"
        paid = []
        for farm in sorted(self._farms):
            if self._savings_paid.get(farm) == period:
                continue
            tx = self._apply(compute_savings_interest(
                self.ledger, farm, self.config.bank_interest_rate, self.config.currency, timestamp,
            ))
            self._savings_paid[farm] = period
            if tx is not None:
                paid.append(tx)
        return paid

    def _expire(self, offer: Offer) -> None:
        self.offers.pop(offer.offer_id, None)
        self._publish(FinanceEventType.OFFER_EXPIRED, offer.farm_id, offer_id=offer.offer_id)
