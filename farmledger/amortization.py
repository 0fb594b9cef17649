"""
amortization.py - Loan and Lease Pricing Math

Pure functions, no ledger access and no state. Every monetary input is
converted with to_decimal() and every monetary output is rounded to cents.

Key Formulas:
    payment  = P * r / (1 - (1 + r) ** -n),  r = annual_rate / 12
    payment  = P / n                         when r == 0
    lease    = (cap - residual) / n + (cap + residual) / 2 * r / 12
    residual = price * (1 - depreciation(term)), depreciation capped at 75%

Rates are fractions (Decimal("0.08") for 8%). Credit adjustments coming from
credit.get_interest_adjustment() are percentage points and are converted here.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Tuple

from .core import PAYOFF_EPSILON, ValidationError, round_money, to_decimal
from .credit import get_interest_adjustment, get_rating
from .units.deal import DealKind


ZERO = Decimal("0")
MONTHS_PER_YEAR = Decimal("12")
HUNDRED = Decimal("100")

# (last month of the band, monthly depreciation); None = open-ended floor rate
DEPRECIATION_SCHEDULE: Tuple[Tuple[Optional[int], Decimal], ...] = (
    (12, Decimal("0.015")),
    (24, Decimal("0.010")),
    (36, Decimal("0.008")),
    (None, Decimal("0.006")),
)
MAX_DEPRECIATION = Decimal("0.75")

# Security deposit in months of lease payment, by credit tier
SECURITY_DEPOSIT_MONTHS = {1: 0, 2: 1, 3: 2, 4: 3, 5: 6}

# Land purchase price multiplier, by credit tier
LAND_PRICE_MODIFIERS = {
    1: Decimal("0.95"),
    2: Decimal("0.98"),
    3: Decimal("1.00"),
    4: Decimal("1.05"),
    5: Decimal("1.10"),
}

MINIMUM_AMOUNTS = {
    DealKind.FINANCE: Decimal("2500"),
    DealKind.VEHICLE_LEASE: Decimal("5000"),
    DealKind.LAND_LEASE: Decimal("5000"),
    DealKind.CASH_LOAN: Decimal("1000"),
}
LAND_FINANCE_MINIMUM = Decimal("10000")

CASH_LOAN_TERM_YEARS = (1, 2, 3, 5, 7, 10, 15)
REPAIR_TERM_MONTHS = (3, 6, 12, 18, 24)

LEASE_TERMINATION_FEE_RATE = Decimal("0.50")
VEHICLE_MISSED_PAYMENT_DEDUCTION = Decimal("100")
LAND_MISSED_PAYMENT_DEDUCTION = Decimal("200")


@dataclass(frozen=True, slots=True)
class MultiplierSavings:
    """Outcome of paying base_payment * multiplier instead of base_payment."""
    projected_months: int
    normal_interest: Decimal
    multiplied_interest: Decimal
    interest_saved: Decimal


@dataclass(frozen=True, slots=True)
class LeaseQuote:
    """
    Priced lease offer.

    forfeited_trade_in is the part of the trade-in/cap reduction that would
    have pushed the capitalized cost below the residual value; it is not
    credited anywhere.
    """
    price: Decimal
    term_months: int
    annual_rate: Decimal
    residual_value: Decimal
    capitalized_cost: Decimal
    monthly_payment: Decimal
    security_deposit: Decimal
    deposit_months: int
    deposit_tier: str
    forfeited_trade_in: Decimal
    total_cost: Decimal


# ============================================================================
# AMORTIZATION
# ============================================================================

def monthly_payment(principal, annual_rate, months: int) -> Tuple[Decimal, Decimal]:
    """
    Fixed monthly payment and total interest for an amortizing loan.

    Args:
        principal: Amount financed (>= 0)
        annual_rate: Annual rate as a fraction (>= 0)
        months: Term in months; <= 0 means "no loan"

    Returns:
        (payment, total_interest), both rounded to cents

    Raises:
        ValidationError: If principal or annual_rate is negative

    Example:
        monthly_payment(Decimal("100000"), Decimal("0.08"), 60)
        # -> (Decimal("2027.64"), Decimal("21658.40"))
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    if principal < ZERO:
        raise ValidationError(f"principal cannot be negative, got {principal}")
    if annual_rate < ZERO:
        raise ValidationError(f"annual_rate cannot be negative, got {annual_rate}")
    if months <= 0 or principal == ZERO:
        return ZERO, ZERO

    r = annual_rate / MONTHS_PER_YEAR
    if r == ZERO:
        payment = principal / months
    else:
        payment = principal * r / (1 - (1 + r) ** -months)

    payment = round_money(payment)
    total_interest = max(ZERO, round_money(payment * months - principal))
    return payment, total_interest


def remaining_payment_schedule(balance, annual_rate, payment, max_months: int) -> Tuple[int, Decimal]:
    """
    Simulate paying `payment` each month against `balance`.

    Returns (months_to_payoff, total_interest). The simulation stops after
    max_months even if a balance remains, and stops early if the payment
    does not cover the month's interest.
    """
    balance = to_decimal(balance)
    payment = to_decimal(payment)
    r = to_decimal(annual_rate) / MONTHS_PER_YEAR
    months = 0
    total_interest = ZERO

    while balance > PAYOFF_EPSILON and months < max_months:
        interest = balance * r
        principal_part = payment - interest
        if principal_part <= ZERO:
            break
        if principal_part > balance:
            principal_part = balance
        total_interest += interest
        balance -= principal_part
        months += 1

    return months, round_money(total_interest)


def multiplier_savings(
    balance,
    annual_rate,
    base_payment,
    multiplier,
    remaining_months: int,
) -> MultiplierSavings:
    """
    Compare the normal schedule against base_payment * multiplier.

    Both simulations are capped at remaining_months iterations. A settled
    balance or a multiplier of 1.0 or less returns
    (remaining_months, 0, 0, 0).
    """
    balance = to_decimal(balance)
    multiplier = to_decimal(multiplier)
    if balance <= ZERO or multiplier <= 1:
        return MultiplierSavings(remaining_months, ZERO, ZERO, ZERO)

    base_payment = to_decimal(base_payment)
    _, normal_interest = remaining_payment_schedule(
        balance, annual_rate, base_payment, remaining_months
    )
    months, multiplied_interest = remaining_payment_schedule(
        balance, annual_rate, base_payment * multiplier, remaining_months
    )
    return MultiplierSavings(
        projected_months=months,
        normal_interest=normal_interest,
        multiplied_interest=multiplied_interest,
        interest_saved=max(ZERO, normal_interest - multiplied_interest),
    )


# ============================================================================
# LEASES
# ============================================================================

def residual_value(price, term_years) -> Decimal:
    """
    End-of-lease value from a declining monthly depreciation curve.

    Months 1-12 lose 1.5% each, 13-24 1.0%, 25-36 0.8%, later months 0.6%.
    A fractional final month uses the rate of the band the term ends in.
    Total depreciation is capped at 75%, so the result is monotonically
    non-increasing in term and never above price.
    """
    price = to_decimal(price)
    if price <= ZERO:
        return ZERO
    term_months = to_decimal(term_years) * MONTHS_PER_YEAR
    if term_months <= ZERO:
        return round_money(price)

    whole_months = int(term_months.to_integral_value(rounding=ROUND_FLOOR))
    depreciation = ZERO
    for month in range(1, whole_months + 1):
        depreciation += _depreciation_rate(month)
    partial = term_months - whole_months
    if partial > ZERO:
        depreciation += _depreciation_rate(whole_months + 1) * partial

    depreciation = min(depreciation, MAX_DEPRECIATION)
    return round_money(price * (1 - depreciation))


def _depreciation_rate(month: int) -> Decimal:
    for last_month, rate in DEPRECIATION_SCHEDULE:
        if last_month is None or month <= last_month:
            return rate
    return DEPRECIATION_SCHEDULE[-1][1]


def lease_payment(capitalized_cost, residual, annual_rate, term_months: int) -> Decimal:
    """
    Monthly lease payment: depreciation share plus finance charge.

    capitalized_cost is clamped up to residual first, so the depreciation
    share can never go negative.
    """
    capitalized_cost = to_decimal(capitalized_cost)
    residual = to_decimal(residual)
    annual_rate = to_decimal(annual_rate)
    if term_months <= 0 or capitalized_cost <= ZERO:
        return ZERO
    if residual < ZERO:
        residual = ZERO
    capitalized_cost = max(capitalized_cost, residual)

    depreciation = (capitalized_cost - residual) / term_months
    finance_charge = (capitalized_cost + residual) / 2 * (annual_rate / MONTHS_PER_YEAR)
    return max(ZERO, round_money(depreciation + finance_charge))


def security_deposit(monthly_payment_amount, credit_score: int) -> Tuple[Decimal, int, str]:
    """
    Lease security deposit by credit tier: 0/1/2/3/6 months of payment.

    Returns:
        (amount, months, tier_name)
    """
    rating = get_rating(credit_score)
    months = SECURITY_DEPOSIT_MONTHS[rating.tier]
    amount = round_money(to_decimal(monthly_payment_amount) * months)
    return amount, months, rating.label


def quote_lease(
    price,
    term_months: int,
    annual_rate,
    credit_score: int,
    down_payment=ZERO,
    trade_in=ZERO,
) -> LeaseQuote:
    """Price a lease: residual, clamped capitalized cost, payment and deposit."""
    price = to_decimal(price)
    down_payment = to_decimal(down_payment)
    trade_in = to_decimal(trade_in)
    annual_rate = to_decimal(annual_rate)

    residual = residual_value(price, Decimal(term_months) / MONTHS_PER_YEAR)
    raw_cap = price - down_payment - trade_in
    capitalized_cost = max(raw_cap, residual)
    forfeited = max(ZERO, residual - raw_cap)
    # Only the trade-in/cap reduction can be forfeited, never more than was offered
    forfeited = min(forfeited, down_payment + trade_in)

    payment = lease_payment(capitalized_cost, residual, annual_rate, term_months)
    deposit, deposit_months, tier_name = security_deposit(payment, credit_score)

    return LeaseQuote(
        price=round_money(price),
        term_months=term_months,
        annual_rate=annual_rate,
        residual_value=residual,
        capitalized_cost=round_money(capitalized_cost),
        monthly_payment=payment,
        security_deposit=deposit,
        deposit_months=deposit_months,
        deposit_tier=tier_name,
        forfeited_trade_in=round_money(forfeited),
        total_cost=round_money(payment * term_months + down_payment + deposit),
    )


def lease_termination_fee(monthly_payment_amount, months_paid: int, term_months: int, residual) -> Decimal:
    """Early termination fee: 50% of (remaining payments + residual value)."""
    remaining = max(0, term_months - months_paid)
    obligations = to_decimal(monthly_payment_amount) * remaining + to_decimal(residual)
    return round_money(obligations * LEASE_TERMINATION_FEE_RATE)


def lease_equity(months_paid: int, total_depreciation, term_months: int) -> Decimal:
    """Equity built so far: depreciation paid pro rata, floored to whole currency."""
    if term_months <= 0:
        return ZERO
    progress = Decimal(min(months_paid, term_months)) / Decimal(term_months)
    equity = to_decimal(total_depreciation) * progress
    return max(ZERO, equity.to_integral_value(rounding=ROUND_FLOOR))


def lease_buyout_price(residual, equity) -> Decimal:
    """Buyout = residual - equity, never negative."""
    return max(ZERO, round_money(to_decimal(residual) - to_decimal(equity)))


def security_deposit_refund(
    deposit,
    missed_payments: int,
    is_land: bool,
    damage_penalty=ZERO,
) -> Tuple[Decimal, Tuple[Tuple[str, Decimal], ...]]:
    """
    Refund at lease end after deductions.

    Vehicles lose the damage penalty and $100 per missed payment; land has no
    damage concept and loses $200 per missed payment. Never negative.

    Returns:
        (refund, ((reason, amount), ...))
    """
    deposit = to_decimal(deposit)
    damage_penalty = to_decimal(damage_penalty)
    deductions = []
    if damage_penalty > ZERO and not is_land:
        deductions.append(("damage", round_money(damage_penalty)))
    if missed_payments > 0:
        per_miss = LAND_MISSED_PAYMENT_DEDUCTION if is_land else VEHICLE_MISSED_PAYMENT_DEDUCTION
        deductions.append(("missed_payments", per_miss * missed_payments))
    total = sum((amount for _, amount in deductions), ZERO)
    return max(ZERO, round_money(deposit - total)), tuple(deductions)


# ============================================================================
# PAYOFF
# ============================================================================

def prepayment_penalty(
    balance,
    months_paid: int,
    term_months: int,
    rate=Decimal("0.02"),
    late_term_rate=Decimal("0.01"),
) -> Decimal:
    """Penalty on early payoff: `rate` of balance, `late_term_rate` in the final 12 months."""
    remaining = term_months - months_paid
    applied = to_decimal(late_term_rate) if remaining <= 12 else to_decimal(rate)
    return round_money(max(ZERO, to_decimal(balance)) * applied)


def payoff_amount(
    balance,
    accrued_interest,
    months_paid: int,
    term_months: int,
    rate=Decimal("0.02"),
    late_term_rate=Decimal("0.01"),
) -> Tuple[Decimal, Decimal]:
    """
    Amount needed to close a deal today.

    Returns:
        (total, penalty) where total = balance + accrued_interest + penalty
    """
    penalty = prepayment_penalty(balance, months_paid, term_months, rate, late_term_rate)
    total = round_money(to_decimal(balance) + to_decimal(accrued_interest) + penalty)
    return total, penalty


# ============================================================================
# RATE PRICING
# ============================================================================

def _clamp_rate(rate_pp: Decimal, low: str, high: str) -> Decimal:
    bounded = max(Decimal(low), min(Decimal(high), rate_pp))
    return (bounded / HUNDRED).quantize(Decimal("0.0001"))


def vehicle_interest_rate(credit_score: int, term_months: int, down_payment_percent, base_rate) -> Decimal:
    """
    Vehicle/equipment finance and cash loan rate.

    base + continuous credit adjustment + term surcharge + down payment
    adjustment, clamped to [2%, 15%]. down_payment_percent is a fraction.
    """
    down = to_decimal(down_payment_percent)
    rate = to_decimal(base_rate) * HUNDRED + get_interest_adjustment(credit_score)

    if term_months > 180:
        rate += Decimal("1.5")
    elif term_months > 120:
        rate += Decimal("1.0")
    elif term_months > 60:
        rate += Decimal("0.5")

    if down >= Decimal("0.40"):
        rate -= Decimal("1.0")
    elif down >= Decimal("0.25"):
        rate -= Decimal("0.5")
    elif down < Decimal("0.10"):
        rate += Decimal("1.0")

    return _clamp_rate(rate, "2.0", "15.0")


def land_interest_rate(credit_score: int, term_years: int, down_payment_percent, base_rate) -> Decimal:
    """Land finance rate: one point under base, tiered credit step, clamped to [2.5%, 8%]."""
    down = to_decimal(down_payment_percent)
    rate = to_decimal(base_rate) * HUNDRED - Decimal("1.0")

    tier = get_rating(credit_score).tier
    rate += {1: Decimal("-1.0"), 2: Decimal("0"), 3: Decimal("0.5")}.get(tier, Decimal("1.5"))

    if term_years > 20:
        rate += Decimal("1.0")
    elif term_years > 15:
        rate += Decimal("0.5")

    if down >= Decimal("0.30"):
        rate -= Decimal("0.5")
    elif down < Decimal("0.10"):
        rate += Decimal("1.0")

    return _clamp_rate(rate, "2.5", "8.0")


def lease_interest_rate(credit_score: int, down_payment_percent, base_rate, markup_percent) -> Decimal:
    """Lease rate: marked-up base, continuous credit adjustment, clamped to [3%, 12%]."""
    down = to_decimal(down_payment_percent)
    base_pp = to_decimal(base_rate) * HUNDRED * (1 + to_decimal(markup_percent) / HUNDRED)
    rate = base_pp + get_interest_adjustment(credit_score)
    rate += Decimal("-0.5") if down >= Decimal("0.15") else Decimal("1.0")
    return _clamp_rate(rate, "3.0", "12.0")


def cash_loan_interest_rate(credit_score: int, base_rate) -> Decimal:
    """Collateralized cash loan rate: base plus credit adjustment, clamped to [5%, 18%]."""
    rate = to_decimal(base_rate) * HUNDRED + get_interest_adjustment(credit_score)
    return _clamp_rate(rate, "5.0", "18.0")


def repair_interest_rate(credit_score: int, base_rate) -> Decimal:
    """Repair financing rate: base plus credit adjustment, never below zero."""
    rate = to_decimal(base_rate) * HUNDRED + get_interest_adjustment(credit_score)
    return (max(ZERO, rate) / HUNDRED).quantize(Decimal("0.0001"))


def repair_cost(base_cost, repair_cost_multiplier) -> Decimal:
    """Repair cost after the configured multiplier, floored to whole currency."""
    cost = to_decimal(base_cost) * to_decimal(repair_cost_multiplier)
    return max(ZERO, cost.to_integral_value(rounding=ROUND_FLOOR))


def land_price_modifier(credit_score: int) -> Tuple[Decimal, str]:
    """Land price multiplier by tier (0.95 .. 1.10) and the tier label."""
    rating = get_rating(credit_score)
    return LAND_PRICE_MODIFIERS[rating.tier], rating.label


def adjusted_land_price(base_price, credit_score: int) -> Tuple[Decimal, Decimal]:
    """Credit-adjusted land price, floored to whole currency, and the adjustment."""
    base_price = to_decimal(base_price)
    multiplier, _ = land_price_modifier(credit_score)
    adjusted = (base_price * multiplier).to_integral_value(rounding=ROUND_FLOOR)
    return adjusted, adjusted - base_price


# ============================================================================
# VALIDATION
# ============================================================================

def meets_minimum_amount(amount, kind: DealKind, is_land: bool = False) -> Tuple[bool, Decimal]:
    """Return (ok, minimum) for the smallest amount worth a deal of this kind."""
    if is_land and kind is DealKind.FINANCE:
        minimum = LAND_FINANCE_MINIMUM
    else:
        minimum = MINIMUM_AMOUNTS[kind]
    return to_decimal(amount) >= minimum, minimum


def validate_finance_params(
    price,
    down_payment,
    term_years: int,
    is_land: bool = False,
    min_down_payment_percent=ZERO,
) -> None:
    """
    Raise ValidationError unless the finance request is well formed.

    Down payment is capped at 50% of price (40% for land); term is 1-20 years
    (1-30 for land).
    """
    price = to_decimal(price)
    down_payment = to_decimal(down_payment)
    if price <= ZERO:
        raise ValidationError(f"price must be positive, got {price}")
    if down_payment < ZERO:
        raise ValidationError(f"down_payment cannot be negative, got {down_payment}")

    max_down = Decimal("0.40") if is_land else Decimal("0.50")
    if down_payment > price * max_down:
        raise ValidationError(f"down_payment exceeds {max_down * HUNDRED:.0f}% of price")
    min_down = price * to_decimal(min_down_payment_percent) / HUNDRED
    if down_payment < min_down:
        raise ValidationError(f"down_payment below required minimum {round_money(min_down)}")

    max_term = 30 if is_land else 20
    if term_years < 1 or term_years > max_term:
        raise ValidationError(f"term must be 1-{max_term} years, got {term_years}")


def validate_lease_params(price, down_payment, term_years: int) -> None:
    """Leases: down payment at most 20% of price, term 1-5 years."""
    price = to_decimal(price)
    down_payment = to_decimal(down_payment)
    if price <= ZERO:
        raise ValidationError(f"price must be positive, got {price}")
    if down_payment < ZERO:
        raise ValidationError(f"down_payment cannot be negative, got {down_payment}")
    if down_payment > price * Decimal("0.20"):
        raise ValidationError("lease down_payment exceeds 20% of price")
    if term_years < 1 or term_years > 5:
        raise ValidationError(f"lease term must be 1-5 years, got {term_years}")
