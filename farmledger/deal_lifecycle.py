"""
deal_lifecycle.py - Deal Lifecycle State Machine

A deal is ACTIVE from origination until it is PAID_OFF (payoff, final
payment, lease buyout or lease return) or DEFAULTED (missed-payment
threshold, with repossession in the same transaction). Both terminal states
are final.

Every transition is a pure function of a LedgerView returning a
PendingTransaction: cash moves, asset moves and the deal's state change
travel together and are applied atomically by Ledger.execute().

Monthly charge (loans):

    interest = balance * rate / 12
    payment  = base_payment * multiplier     (falls back to base_payment if the
                                               farm cannot afford the multiplied amount)
    payment applies to accrued interest, then this month's interest, then principal

An early payment settles interest up to the day it is made; the next charge
then bills only the rest of that cycle. A missed charge leaves the balance
untouched and parks the month's interest in accrued_interest. Leases embed
interest in the payment; the lease balance is the remaining scheduled
obligation.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .amortization import (
    MultiplierSavings,
    lease_buyout_price,
    lease_equity,
    lease_termination_fee,
    multiplier_savings,
    payoff_amount,
    security_deposit_refund,
)
from .collateral import (
    LEASE_RETURN_PREFIX,
    pledge_changes,
    release_changes,
    stamp_new_asset,
    validate_pledge,
)
from .config import FinanceConfig, DEFAULT_CONFIG
from .core import (
    LedgerView, Move, PendingTransaction, Transaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    ValidationError, InsufficientFundsError, StateConflictError,
    SYSTEM_WALLET, PAYOFF_EPSILON, UNIT_TYPE_LAND,
    build_transaction, empty_pending_transaction, round_money, to_decimal,
)
from .history import PaymentStatus
from .logging import get_logger
from .repossession import DEAL_DEFAULTED, compute_repossession, default_state_change
from .units.deal import (
    DealKind, DealTerms, DealState, DealStatus, PledgedCollateral,
    MULTIPLIER_OPTIONS, CLOSE_PAID_OFF, CLOSE_BUYOUT, CLOSE_RETURNED,
    add_months, create_deal_unit, encumbered_assets, following_due_date, load_deal,
    remaining_months, state_from_state, to_state_dict,
)


logger = get_logger(__name__)

LOAN_TAKEN = "LOAN_TAKEN"
PAYMENT_MADE = "PAYMENT_MADE"
PAYMENT_LATE = "PAYMENT_LATE"
PAYMENT_MISSED = "PAYMENT_MISSED"
PAYMENT_EXTRA = "PAYMENT_EXTRA"
DEAL_PAID_OFF = "DEAL_PAID_OFF"
MULTIPLIER_CHANGED = "MULTIPLIER_CHANGED"
LEASE_BUYOUT = "LEASE_BUYOUT"
LEASE_ENDED = "LEASE_ENDED"

MONTHLY_CHARGE_EVENTS = frozenset({
    PAYMENT_MADE, PAYMENT_LATE, PAYMENT_MISSED, DEAL_PAID_OFF, DEAL_DEFAULTED,
})

DAYS_PER_BILLING_CYCLE = 30

_ZERO = Decimal("0")


# ============================================================================
# ORIGINATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Origination:
    """
    A priced, confirmed request to open a deal.

    Attributes:
        deal_symbol: Symbol for the new deal unit (must not exist)
        name: Display name of the deal
        terms: The deal's term sheet
        collateral: Existing farm assets pledged in addition to the primary asset
        down_payment: Paid by the farm to the seller at signing
        trade_in: Farm asset handed to the seller as part of the price
        new_asset: Asset unit created and delivered to the farm (purchases, leases)
        payee: Receives the disbursed principal: the seller for purchases and
            repairs, the farm itself for cash loans
    """
    deal_symbol: str
    name: str
    terms: DealTerms
    collateral: Tuple[str, ...] = ()
    down_payment: Decimal = _ZERO
    trade_in: Optional[str] = None
    new_asset: Optional[Unit] = None
    payee: str = SYSTEM_WALLET

    def __post_init__(self):
        object.__setattr__(self, 'down_payment', to_decimal(self.down_payment))
        object.__setattr__(self, 'collateral', tuple(self.collateral))
        if self.down_payment < 0:
            raise ValidationError(f"down_payment cannot be negative, got {self.down_payment}")
        if self.new_asset is not None and self.new_asset.symbol != self.terms.primary_asset:
            raise ValidationError("new_asset must be the deal's primary asset")

    @property
    def disbursement(self) -> Decimal:
        """Principal the lender pays out at signing."""
        if self.terms.lease is not None:
            return self.terms.lease.capitalized_cost
        return self.terms.amount_financed

    @property
    def upfront_cost(self) -> Decimal:
        deposit = self.terms.lease.security_deposit if self.terms.lease else _ZERO
        return self.down_payment + deposit


def compute_origination(view: LedgerView, origination: Origination) -> PendingTransaction:
    """
    Open a deal: create the deal unit, pledge collateral, move the money.

    Moves (as applicable):
        farm -> seller      down payment
        farm -> lender      lease security deposit
        lender -> payee     disbursed principal
        farm -> seller      trade-in asset
        seller -> farm      newly purchased or leased asset

    Raises:
        ValidationError: Deal exists, asset problems, trade-in also pledged
        CollateralConflictError: A pledged asset is already encumbered
        InsufficientFundsError: The farm cannot cover the upfront cost
    """
    terms = origination.terms
    deal = origination.deal_symbol
    farm = terms.farm_wallet
    known = set(view.list_units())

    if deal in known:
        raise ValidationError(f"deal {deal} already exists")
    if origination.new_asset is not None and origination.new_asset.symbol in known:
        raise ValidationError(f"asset {origination.new_asset.symbol} already exists")

    pledged = list(origination.collateral)
    if origination.new_asset is None and terms.primary_asset and terms.primary_asset not in pledged:
        pledged.insert(0, terms.primary_asset)
    assets = validate_pledge(view, farm, pledged)

    if origination.trade_in is not None:
        if origination.trade_in in pledged:
            raise ValidationError(f"{origination.trade_in} cannot be both traded in and pledged")
        trade_in = validate_pledge(view, farm, [origination.trade_in])[0]
    else:
        trade_in = None

    cash_available = view.get_balance(farm, terms.currency)
    if origination.upfront_cost > cash_available:
        raise InsufficientFundsError(
            f"{farm} needs {origination.upfront_cost} upfront, has {cash_available}",
            required=origination.upfront_cost,
            available=cash_available,
        )
    lender_cash = view.get_balance(terms.lender_wallet, terms.currency)
    if origination.disbursement > lender_cash:
        raise InsufficientFundsError(
            f"{terms.lender_wallet} cannot fund {origination.disbursement}",
            required=origination.disbursement,
            available=lender_cash,
        )

    moves: List[Move] = []
    if origination.down_payment > 0:
        moves.append(Move(round_money(origination.down_payment), terms.currency,
                          farm, SYSTEM_WALLET, f"down_payment_{deal}"))
    if terms.lease is not None and terms.lease.security_deposit > 0:
        moves.append(Move(round_money(terms.lease.security_deposit), terms.currency,
                          farm, terms.lender_wallet, f"deposit_{deal}"))
    moves.append(Move(round_money(origination.disbursement), terms.currency,
                      terms.lender_wallet, origination.payee, f"disburse_{deal}"))
    if trade_in is not None:
        moves.append(Move(Decimal("1"), trade_in.symbol, farm, SYSTEM_WALLET, f"trade_in_{deal}"))

    units_to_create = []
    if origination.new_asset is not None:
        units_to_create.append(stamp_new_asset(origination.new_asset, deal))
        moves.append(Move(Decimal("1"), origination.new_asset.symbol,
                          SYSTEM_WALLET, farm, f"deliver_{deal}"))

    now = view.current_time
    collateral = tuple(
        PledgedCollateral(a.symbol, a.kind.value, a.market_value)
        for a in assets if a.symbol != terms.primary_asset
    )
    state = DealState(
        current_balance=terms.amount_financed,
        collateral=collateral,
        origination_date=now,
        next_due_date=add_months(now, 1),
    )
    units_to_create.insert(0, create_deal_unit(deal, origination.name, terms, state))

    origin = TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=farm,
        unit_symbol=deal,
        event_type=LOAN_TAKEN,
    )
    return build_transaction(
        view,
        moves,
        pledge_changes(view, [a.symbol for a in assets], deal),
        origin=origin,
        units_to_create=tuple(units_to_create),
    )


# ============================================================================
# HELPERS
# ============================================================================

def _load_active(view: LedgerView, deal_symbol: str) -> Tuple[DealTerms, DealState, Dict[str, Any]]:
    terms, state = load_deal(view, deal_symbol)
    if not state.is_active:
        raise StateConflictError(f"{deal_symbol} is {state.status.value}")
    return terms, state, view.get_unit_state(deal_symbol)


def _origin(origin_type: OriginType, terms: DealTerms, deal_symbol: str, event: str) -> TransactionOrigin:
    return TransactionOrigin(origin_type, terms.farm_wallet, deal_symbol, event)


def _closed(state: DealState, reason: str, timestamp: datetime, **changes) -> DealState:
    return replace(
        state,
        status=DealStatus.PAID_OFF,
        current_balance=_ZERO,
        accrued_interest=_ZERO,
        closed_date=timestamp,
        close_reason=reason,
        **changes,
    )


def _release(view: LedgerView, deal_symbol: str, terms: DealTerms, state: DealState) -> List[UnitStateChange]:
    return release_changes(view, encumbered_assets(terms, state), deal_symbol)


def _require_cash(view: LedgerView, terms: DealTerms, amount: Decimal) -> None:
    available = view.get_balance(terms.farm_wallet, terms.currency)
    if amount > available:
        raise InsufficientFundsError(
            f"{terms.farm_wallet} needs {amount}, has {available}",
            required=amount,
            available=available,
        )


def monthly_interest(terms: DealTerms, balance: Decimal) -> Decimal:
    """One month of interest on balance; zero for leases (interest is in the payment)."""
    if terms.is_lease:
        return _ZERO
    return round_money(balance * terms.annual_rate / 12)


def _cycle_start(state: DealState, now: datetime) -> datetime:
    return state.last_charge_date or state.origination_date or now


def _days_settled(state: DealState) -> int:
    """Days of the current billing cycle whose interest an early payment already took."""
    if state.interest_paid_to is None:
        return 0
    days = (state.interest_paid_to - _cycle_start(state, state.interest_paid_to)).days
    return min(max(0, days), DAYS_PER_BILLING_CYCLE)


def _cycle_interest(terms: DealTerms, state: DealState, days: int) -> Decimal:
    if days >= DAYS_PER_BILLING_CYCLE:
        return monthly_interest(terms, state.current_balance)
    if days <= 0:
        return _ZERO
    return round_money(monthly_interest(terms, state.current_balance) * days / DAYS_PER_BILLING_CYCLE)


def interest_to_date(terms: DealTerms, state: DealState, now: datetime) -> Decimal:
    """
    Interest owed if the deal were settled now.

    Accrued interest plus this cycle's interest pro-rated over the days
    since the last charge (30-day cycle), less the days an earlier early
    payment already covered.
    """
    elapsed = min(max(0, (now - _cycle_start(state, now)).days), DAYS_PER_BILLING_CYCLE)
    return state.accrued_interest + _cycle_interest(terms, state, elapsed - _days_settled(state))


def is_matured(terms: DealTerms, state: DealState) -> bool:
    """A lease whose every scheduled payment is made, awaiting buyout or return."""
    return terms.is_lease and state.months_paid >= terms.term_months and state.is_settled


def scheduled_payment(
    terms: DealTerms,
    state: DealState,
    owed_interest: Decimal,
    cash_available: Decimal,
) -> Decimal:
    """
    The amount this month's charge tries to collect.

    The multiplied payment falls back to the base payment when the farm
    cannot afford it. The final month (and any month after the term) is a
    true-up that collects everything still owed.
    """
    full = state.current_balance + owed_interest
    payment = terms.base_payment
    if not terms.is_lease and state.payment_multiplier > 1:
        multiplied = round_money(terms.base_payment * state.payment_multiplier)
        if multiplied <= cash_available:
            payment = multiplied
    if state.months_paid + 1 >= terms.term_months:
        return round_money(full)
    return round_money(min(payment, full))


# ============================================================================
# MONTHLY CHARGE
# ============================================================================

def compute_monthly_charge(
    view: LedgerView,
    deal_symbol: str,
    config: FinanceConfig = DEFAULT_CONFIG,
) -> PendingTransaction:
    """
    Bill one month: collect the payment or record a missed payment.

    Due dates advance by exactly one month per charge, so a billing cycle
    is charged at most once. Reaching missed_payments_to_default consecutive
    misses defaults the deal and repossesses its assets in the same
    transaction.

    Raises:
        StateConflictError: If the deal is not ACTIVE or the lease has ended
    """
    terms, state, old_state = _load_active(view, deal_symbol)
    if is_matured(terms, state):
        raise StateConflictError(f"{deal_symbol}: lease has ended, buy out or return it")

    now = view.current_time
    due = state.next_due_date or now
    cash_available = view.get_balance(terms.farm_wallet, terms.currency)
    interest = _cycle_interest(terms, state, DAYS_PER_BILLING_CYCLE - _days_settled(state))
    owed_interest = state.accrued_interest + interest
    payment = scheduled_payment(terms, state, owed_interest, cash_available)
    schedule = dict(
        next_due_date=following_due_date(state, due),
        last_charge_date=now,
        interest_paid_to=None,
    )

    if payment > 0 and payment <= cash_available:
        interest_paid = min(payment, owed_interest)
        principal = payment - interest_paid
        new_balance = max(_ZERO, state.current_balance - principal)
        late = state.missed_payments > 0
        paid = replace(
            state,
            current_balance=new_balance,
            accrued_interest=owed_interest - interest_paid,
            total_interest_paid=state.total_interest_paid + interest_paid,
            months_paid=min(terms.term_months, state.months_paid + 1),
            missed_payments=0,
            last_payment_status=(PaymentStatus.LATE if late else PaymentStatus.ON_TIME).value,
            last_payment_amount=payment,
            **schedule,
        )
        event = PAYMENT_LATE if late else PAYMENT_MADE
        changes: List[UnitStateChange] = []
        if paid.is_settled and paid.accrued_interest <= PAYOFF_EPSILON:
            if terms.is_lease:
                paid = replace(paid, current_balance=_ZERO, months_paid=terms.term_months)
            else:
                paid = _closed(paid, CLOSE_PAID_OFF, now)
                changes = _release(view, deal_symbol, terms, state)
                event = DEAL_PAID_OFF

        moves = [Move(payment, terms.currency, terms.farm_wallet, terms.lender_wallet,
                      f"payment_{deal_symbol}_{due:%Y-%m}")]
        changes.insert(0, UnitStateChange(deal_symbol, old_state, to_state_dict(terms, paid)))
        return build_transaction(
            view, moves, changes,
            origin=_origin(OriginType.LIFECYCLE, terms, deal_symbol, event),
        )

    missed = replace(
        state,
        accrued_interest=owed_interest,
        missed_payments=state.missed_payments + 1,
        total_missed_payments=state.total_missed_payments + 1,
        last_payment_status=PaymentStatus.MISSED.value,
        last_payment_amount=_ZERO,
        **schedule,
    )
    if missed.missed_payments >= config.missed_payments_to_default:
        moves, changes, record = default_state_change(view, deal_symbol, terms, missed, old_state)
        logger.info(
            "%s defaulted after %d missed payments, %d item(s) seized",
            deal_symbol, missed.missed_payments, len(record.seized_assets),
        )
        return build_transaction(
            view, moves, changes,
            origin=_origin(OriginType.LIFECYCLE, terms, deal_symbol, DEAL_DEFAULTED),
        )

    change = UnitStateChange(deal_symbol, old_state, to_state_dict(terms, missed))
    return build_transaction(
        view, [], [change],
        origin=_origin(OriginType.LIFECYCLE, terms, deal_symbol, PAYMENT_MISSED),
    )


@dataclass(frozen=True, slots=True)
class ChargeOutcome:
    """What a monthly charge did, as read back from its executed transaction."""
    deal_id: str
    farm_id: str
    status: PaymentStatus
    amount: Decimal
    paid_off: bool
    defaulted: bool


def charge_outcome(tx: Transaction) -> Optional[ChargeOutcome]:
    """Decode a monthly charge transaction; None for any other transaction."""
    if tx.origin.origin_type is not OriginType.LIFECYCLE:
        return None
    if tx.origin.event_type not in MONTHLY_CHARGE_EVENTS:
        return None
    for sc in tx.state_changes:
        if sc.unit != tx.origin.unit_symbol:
            continue
        new = state_from_state(sc.new_state)
        if new.last_payment_status is None:
            return None
        return ChargeOutcome(
            deal_id=sc.unit,
            farm_id=sc.new_state['farm_wallet'],
            status=PaymentStatus(new.last_payment_status),
            amount=new.last_payment_amount,
            paid_off=new.status is DealStatus.PAID_OFF,
            defaulted=new.status is DealStatus.DEFAULTED,
        )
    return None


# ============================================================================
# USER ACTIONS
# ============================================================================

def early_payment_quote(terms: DealTerms, state: DealState, now: datetime) -> Tuple[Decimal, Decimal]:
    """
    Interest component and settle amount for an early payment made now.

    The settle amount is balance plus interest to date. Loans settled
    early also owe the prepayment penalty (see payoff_quote).

    Returns:
        (interest_component, settle_amount)
    """
    interest = interest_to_date(terms, state, now)
    return interest, state.current_balance + interest


def compute_early_payment(
    view: LedgerView,
    deal_symbol: str,
    amount,
    config: FinanceConfig = DEFAULT_CONFIG,
) -> PendingTransaction:
    """
    Pay extra toward a deal outside the monthly schedule.

    Interest to date is paid first, the rest reduces the balance, and the
    cycle's interest is settled up to now. A payment that settles a loan is
    a payoff and must be the full payoff_quote total, prepayment penalty
    included. On a lease it completes the scheduled obligation.

    Raises:
        ValidationError: amount not positive, above the settle amount, or
            settling a loan without the prepayment penalty
        StateConflictError: deal not ACTIVE or lease already ended
        InsufficientFundsError: farm cannot cover the amount
    """
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError(f"payment amount must be positive, got {amount}")
    terms, state, old_state = _load_active(view, deal_symbol)
    if is_matured(terms, state):
        raise StateConflictError(f"{deal_symbol}: lease has ended")

    now = view.current_time
    interest, settle_amount = early_payment_quote(terms, state, now)
    if not terms.is_lease and amount >= settle_amount:
        required, penalty = payoff_quote(view, deal_symbol, config)
        if amount != required:
            raise ValidationError(
                f"settling {deal_symbol} early costs {required} "
                f"including a {penalty} prepayment penalty"
            )
        return compute_payoff(view, deal_symbol, amount, config)
    if amount > settle_amount:
        raise ValidationError(f"payment {amount} exceeds the {settle_amount} still owed")
    _require_cash(view, terms, amount)

    interest_paid = min(amount, interest)
    principal = amount - interest_paid
    new = replace(
        state,
        current_balance=max(_ZERO, state.current_balance - principal),
        accrued_interest=interest - interest_paid,
        total_interest_paid=state.total_interest_paid + interest_paid,
        interest_paid_to=now,
    )
    if terms.is_lease and new.is_settled:
        new = replace(new, current_balance=_ZERO, months_paid=terms.term_months)

    moves = [Move(round_money(amount), terms.currency, terms.farm_wallet, terms.lender_wallet,
                  f"early_payment_{deal_symbol}")]
    changes = [UnitStateChange(deal_symbol, old_state, to_state_dict(terms, new))]
    return build_transaction(
        view, moves, changes,
        origin=_origin(OriginType.USER_ACTION, terms, deal_symbol, PAYMENT_EXTRA),
    )


def payoff_quote(
    view: LedgerView,
    deal_symbol: str,
    config: FinanceConfig = DEFAULT_CONFIG,
) -> Tuple[Decimal, Decimal]:
    """(total, prepayment_penalty) to close a loan today."""
    terms, state = load_deal(view, deal_symbol)
    return payoff_amount(
        state.current_balance,
        interest_to_date(terms, state, view.current_time),
        state.months_paid,
        terms.term_months,
        config.prepayment_penalty_rate,
        config.late_term_prepayment_penalty_rate,
    )


def compute_payoff(
    view: LedgerView,
    deal_symbol: str,
    total_payoff_amount,
    config: FinanceConfig = DEFAULT_CONFIG,
) -> PendingTransaction:
    """
    Close a loan early: pay balance, interest to date and prepayment penalty.

    Only the quoted total is collected even if total_payoff_amount is larger.

    Raises:
        ValidationError: total_payoff_amount below the quoted total
        StateConflictError: deal not ACTIVE, or a lease (use buyout or return)
        InsufficientFundsError: farm cannot cover the total
    """
    total_payoff_amount = to_decimal(total_payoff_amount)
    terms, state, old_state = _load_active(view, deal_symbol)
    if terms.is_lease:
        raise StateConflictError(f"{deal_symbol} is a lease: buy it out or return it")

    required, penalty = payoff_quote(view, deal_symbol, config)
    if total_payoff_amount < required:
        raise ValidationError(f"payoff requires {required}, offered {total_payoff_amount}")
    _require_cash(view, terms, required)

    closed = _closed(
        state, CLOSE_PAID_OFF, view.current_time,
        total_interest_paid=state.total_interest_paid + interest_to_date(terms, state, view.current_time),
    )
    moves = [Move(required, terms.currency, terms.farm_wallet, terms.lender_wallet,
                  f"payoff_{deal_symbol}", metadata={'penalty': penalty})]
    changes = [UnitStateChange(deal_symbol, old_state, to_state_dict(terms, closed))]
    changes.extend(_release(view, deal_symbol, terms, state))
    return build_transaction(
        view, moves, changes,
        origin=_origin(OriginType.USER_ACTION, terms, deal_symbol, DEAL_PAID_OFF),
    )


def compute_set_multiplier(view: LedgerView, deal_symbol: str, multiplier) -> PendingTransaction:
    """
    Change the payment multiplier for future monthly charges.

    Raises:
        ValidationError: multiplier outside the allowed set, or a lease
        StateConflictError: deal not ACTIVE
    """
    multiplier = to_decimal(multiplier)
    if multiplier not in MULTIPLIER_OPTIONS:
        raise ValidationError(
            f"multiplier must be one of {', '.join(str(m) for m in MULTIPLIER_OPTIONS)}"
        )
    terms, state, old_state = _load_active(view, deal_symbol)
    if terms.is_lease:
        raise ValidationError("lease payments are fixed")
    if state.payment_multiplier == multiplier:
        return empty_pending_transaction(view)

    new = replace(state, payment_multiplier=multiplier)
    change = UnitStateChange(deal_symbol, old_state, to_state_dict(terms, new))
    return build_transaction(
        view, [], [change],
        origin=_origin(OriginType.USER_ACTION, terms, deal_symbol, MULTIPLIER_CHANGED),
    )


def deal_multiplier_savings(
    view: LedgerView,
    deal_symbol: str,
    multiplier=None,
) -> MultiplierSavings:
    """Savings from paying the deal at `multiplier` (default: its current one)."""
    terms, state = load_deal(view, deal_symbol)
    if multiplier is None:
        multiplier = state.payment_multiplier
    return multiplier_savings(
        state.current_balance,
        terms.annual_rate,
        terms.base_payment,
        multiplier,
        remaining_months(terms, state),
    )


# ============================================================================
# LEASE END
# ============================================================================

def _require_lease(terms: DealTerms, deal_symbol: str) -> None:
    if not terms.is_lease:
        raise ValidationError(f"{deal_symbol} is not a lease")


def _is_land(terms: DealTerms, view: LedgerView) -> bool:
    if terms.kind is DealKind.LAND_LEASE:
        return True
    return view.get_unit(terms.primary_asset).unit_type == UNIT_TYPE_LAND


def lease_buyout_quote(view: LedgerView, deal_symbol: str) -> Dict[str, Decimal]:
    """Price to own the leased asset now, and the deposit refunded with it."""
    terms, state = load_deal(view, deal_symbol)
    _require_lease(terms, deal_symbol)
    lease = terms.lease
    equity = lease_equity(state.months_paid, lease.total_depreciation, terms.term_months)
    buyout = lease_buyout_price(lease.residual_value, equity)
    refund, _ = security_deposit_refund(
        lease.security_deposit, state.total_missed_payments, _is_land(terms, view)
    )
    return {
        'remaining_obligation': state.current_balance + state.accrued_interest,
        'equity': equity,
        'buyout_price': buyout,
        'total': state.current_balance + state.accrued_interest + buyout,
        'deposit_refund': refund,
    }


def compute_lease_buyout(view: LedgerView, deal_symbol: str) -> PendingTransaction:
    """
    Buy the leased asset: settle the remaining obligation plus residual less equity.

    The asset stays with the farm and the security deposit is refunded.

    Raises:
        ValidationError: deal is not a lease
        StateConflictError: deal not ACTIVE
        InsufficientFundsError: farm cannot cover the buyout net of the refund
    """
    terms, state, old_state = _load_active(view, deal_symbol)
    _require_lease(terms, deal_symbol)
    quote = lease_buyout_quote(view, deal_symbol)
    total = round_money(quote['total'])
    refund = quote['deposit_refund']
    _require_cash(view, terms, max(_ZERO, total - refund))

    moves = []
    if total > 0:
        moves.append(Move(total, terms.currency, terms.farm_wallet, terms.lender_wallet,
                          f"buyout_{deal_symbol}"))
    if refund > 0:
        moves.append(Move(refund, terms.currency, terms.lender_wallet, terms.farm_wallet,
                          f"deposit_refund_{deal_symbol}"))

    closed = _closed(state, CLOSE_BUYOUT, view.current_time)
    changes = [UnitStateChange(deal_symbol, old_state, to_state_dict(terms, closed))]
    changes.extend(_release(view, deal_symbol, terms, state))
    return build_transaction(
        view, moves, changes,
        origin=_origin(OriginType.USER_ACTION, terms, deal_symbol, LEASE_BUYOUT),
    )


def compute_lease_return(
    view: LedgerView,
    deal_symbol: str,
    damage_penalty=_ZERO,
    origin_type: OriginType = OriginType.USER_ACTION,
) -> PendingTransaction:
    """
    Hand the leased asset back to the lender.

    Returning before the lease matures costs the termination fee (50% of
    remaining payments plus residual). The deposit is refunded less
    deductions for damage (vehicles only) and missed payments.

    Raises:
        ValidationError: deal is not a lease
        StateConflictError: deal not ACTIVE
        InsufficientFundsError: farm cannot cover the fee net of the refund
    """
    terms, state, old_state = _load_active(view, deal_symbol)
    _require_lease(terms, deal_symbol)
    lease = terms.lease
    early = not is_matured(terms, state)

    fee = _ZERO
    if early:
        fee = lease_termination_fee(
            terms.base_payment, state.months_paid, terms.term_months, lease.residual_value
        )
    refund, deductions = security_deposit_refund(
        lease.security_deposit, state.total_missed_payments, _is_land(terms, view), damage_penalty
    )
    _require_cash(view, terms, max(_ZERO, fee - refund))

    moves = []
    if fee > 0:
        moves.append(Move(fee, terms.currency, terms.farm_wallet, terms.lender_wallet,
                          f"termination_fee_{deal_symbol}"))
    if view.get_balance(terms.farm_wallet, terms.primary_asset) >= 1:
        moves.append(Move(Decimal("1"), terms.primary_asset, terms.farm_wallet, terms.lender_wallet,
                          f"{LEASE_RETURN_PREFIX}{deal_symbol}"))
    if refund > 0:
        moves.append(Move(refund, terms.currency, terms.lender_wallet, terms.farm_wallet,
                          f"deposit_refund_{deal_symbol}"))

    closed = _closed(state, CLOSE_RETURNED, view.current_time)
    new_state = {
        **to_state_dict(terms, closed),
        'lease_end': {
            'early': early,
            'termination_fee': fee,
            'deposit_refund': refund,
            'deductions': [{'reason': r, 'amount': a} for r, a in deductions],
        },
    }
    changes = [UnitStateChange(deal_symbol, old_state, new_state)]
    changes.extend(_release(view, deal_symbol, terms, state))
    return build_transaction(
        view, moves, changes,
        origin=_origin(origin_type, terms, deal_symbol, LEASE_ENDED),
    )


# ============================================================================
# TRANSACTION INTERFACE
# ============================================================================

def transact(
    view: LedgerView,
    symbol: str,
    event_type: str,
    event_date: datetime,
    **kwargs
) -> PendingTransaction:
    """
    Unified entry point for deal lifecycle events.

    Event types:
        MONTHLY_CHARGE      optional 'config'
        EARLY_PAYMENT       requires 'amount'
        PAYOFF              requires 'amount', optional 'config'
        SET_MULTIPLIER      requires 'multiplier'
        LEASE_BUYOUT
        LEASE_RETURN        optional 'damage_penalty'
        REPOSSESSION

    Raises:
        ValueError: Unknown event type or missing parameter
    """
    config = kwargs.get('config', DEFAULT_CONFIG)

    if event_type == 'MONTHLY_CHARGE':
        return compute_monthly_charge(view, symbol, config)

    elif event_type == 'EARLY_PAYMENT':
        amount = kwargs.get('amount')
        if amount is None:
            raise ValueError(f"Missing 'amount' parameter for EARLY_PAYMENT on {symbol}")
        return compute_early_payment(view, symbol, amount, config)

    elif event_type == 'PAYOFF':
        amount = kwargs.get('amount')
        if amount is None:
            raise ValueError(f"Missing 'amount' parameter for PAYOFF on {symbol}")
        return compute_payoff(view, symbol, amount, config)

    elif event_type == 'SET_MULTIPLIER':
        multiplier = kwargs.get('multiplier')
        if multiplier is None:
            raise ValueError(f"Missing 'multiplier' parameter for SET_MULTIPLIER on {symbol}")
        return compute_set_multiplier(view, symbol, multiplier)

    elif event_type == 'LEASE_BUYOUT':
        return compute_lease_buyout(view, symbol)

    elif event_type == 'LEASE_RETURN':
        return compute_lease_return(view, symbol, kwargs.get('damage_penalty', _ZERO))

    elif event_type == 'REPOSSESSION':
        return compute_repossession(view, symbol)

    else:
        raise ValueError(f"Unknown event type '{event_type}' for deal {symbol}")


# ============================================================================
# SMART CONTRACT
# ============================================================================

class DealContract:
    """
    SmartContract polled by the LifecycleEngine for every deal unit.

    Charges a deal once its next due date has arrived. A matured lease not
    bought out by its next due date is returned automatically.
    """

    def __init__(self, config: FinanceConfig = DEFAULT_CONFIG):
        self.config = config

    def check_lifecycle(self, view: LedgerView, symbol: str, timestamp: datetime) -> PendingTransaction:
        terms, state = load_deal(view, symbol)
        if not state.is_active:
            return empty_pending_transaction(view)
        if state.next_due_date is None or state.next_due_date > timestamp:
            return empty_pending_transaction(view)

        if is_matured(terms, state):
            return compute_lease_return(view, symbol, origin_type=OriginType.LIFECYCLE)
        return compute_monthly_charge(view, symbol, self.config)


deal_contract = DealContract()
