"""
credit.py - Credit Score Engine

Pure functions of a FarmSnapshot: no ledger access, no hidden state.

Score model (fixed module constants, not configurable per call):

    raw = 300 + 550 * (0.35 * history + 0.30 * utilization
                       + 0.15 * depth + 0.20 * diversity)

Each factor is a fraction in [0, 1]:

    history      0.8 * (on_time + 0.5 * late) / total + 0.2 * min(streak, 24) / 24
                 (0.5 with no payment history yet)
    utilization  1 - debt / assets, floored at 0 (cash counts as an asset)
    depth        0.7 * min(total_payments, 48) / 48 + 0.3 * min(accounts, 5) / 5
    diversity    0.4 * min(deal_kinds, 3) / 3 + 0.6 * recency
                 recency = 1 if never missed, else min(payments_since_miss, 12) / 12

Then, in order: add the CreditHistory adjustment (+/-200), add the clean-slate
bonus for asset-rich farms with no history and no debt, apply the
qualification caps (749 without excellent history, 699 without 12 on-time
payments), clamp to [300, 850] and floor to an integer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import FrozenSet, Optional

from .config import FinanceConfig, DEFAULT_CONFIG
from .core import ValidationError, to_decimal
from .history import PaymentHistoryRecord
from .units.deal import DealKind


MIN_SCORE = 300
MAX_SCORE = 850
BASELINE_SCORE = 650
SCORE_RANGE = Decimal(MAX_SCORE - MIN_SCORE)

WEIGHT_HISTORY = Decimal("0.35")
WEIGHT_UTILIZATION = Decimal("0.30")
WEIGHT_DEPTH = Decimal("0.15")
WEIGHT_DIVERSITY = Decimal("0.20")

STREAK_SATURATION = 24
PAYMENT_DEPTH_SATURATION = 48
ACCOUNT_SATURATION = 5
KIND_SATURATION = 3
RECENCY_SATURATION = 12

CAP_WITHOUT_EXCELLENT_HISTORY = 749
CAP_WITHOUT_MINIMUM_HISTORY = 699

# (assets strictly above, bonus) for farms with assets, no debt and no history
CLEAN_SLATE_BONUSES = (
    (Decimal("500000"), 40),
    (Decimal("200000"), 35),
    (Decimal("100000"), 30),
    (Decimal("50000"), 20),
)

# Interest adjustment: 0pp at baseline, -3pp at 850, +6pp at 300
MAX_DISCOUNT_PP = Decimal("-3")
MAX_SURCHARGE_PP = Decimal("6")

REPAIR_MIN_SCORE = 500
PURPOSE_REPAIR = "REPAIR"

_HALF = Decimal("0.5")
_ONE = Decimal("1")
_ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class CreditRating:
    label: str
    tier: int


@dataclass(frozen=True, slots=True)
class LoanLimits:
    """Tier policy: collateral multiplier is applied before the absolute cap."""
    collateral_multiplier: Decimal
    absolute_cap: Decimal


@dataclass(frozen=True, slots=True)
class FinanceEligibility:
    allowed: bool
    min_score_required: int
    current_score: int


@dataclass(frozen=True, slots=True)
class FarmSnapshot:
    """
    Everything the score depends on, captured at one instant.

    total_assets includes cash. total_debt is outstanding balance plus
    accrued interest across the farm's ACTIVE deals. history_adjustment is
    CreditHistory.score_adjustment() for the farm.
    """
    farm_id: str
    total_assets: Decimal
    total_debt: Decimal
    cash: Decimal = Decimal("0")
    history: PaymentHistoryRecord = field(default_factory=PaymentHistoryRecord)
    account_count: int = 0
    deal_kinds: FrozenSet[DealKind] = frozenset()
    history_adjustment: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'total_assets', to_decimal(self.total_assets))
        object.__setattr__(self, 'total_debt', to_decimal(self.total_debt))
        object.__setattr__(self, 'cash', to_decimal(self.cash))
        if self.total_debt < 0:
            raise ValidationError(f"total_debt cannot be negative, got {self.total_debt}")
        if self.account_count < 0:
            raise ValidationError("account_count cannot be negative")


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    """Factor detail behind a score, for credit report screens."""
    history_factor: Decimal
    utilization_factor: Decimal
    depth_factor: Decimal
    diversity_factor: Decimal
    weighted_score: Decimal
    history_adjustment: int
    clean_slate_bonus: int
    cap: Optional[int]
    score: int
    rating: CreditRating


# Tier -> limits, strictly non-increasing as tier worsens
LOAN_LIMITS = {
    1: LoanLimits(Decimal("1.00"), Decimal("5000000")),
    2: LoanLimits(Decimal("0.80"), Decimal("2000000")),
    3: LoanLimits(Decimal("0.60"), Decimal("500000")),
    4: LoanLimits(Decimal("0.40"), Decimal("250000")),
    5: LoanLimits(Decimal("0.20"), Decimal("100000")),
}


# ============================================================================
# RATING AND PRICING
# ============================================================================

def get_rating(score: int) -> CreditRating:
    """Closed-above tier boundaries, highest tier first."""
    if score >= 750:
        return CreditRating("Excellent", 1)
    if score >= 700:
        return CreditRating("Good", 2)
    if score >= 650:
        return CreditRating("Fair", 3)
    if score >= 600:
        return CreditRating("Poor", 4)
    return CreditRating("Very Poor", 5)


def get_interest_adjustment(score: int) -> Decimal:
    """
    Rate adjustment in percentage points, continuous in score.

    Linear from 0 at the 650 baseline to -3pp at 850 and +6pp at 300,
    clamped to that range and quantized to 0.01pp.
    """
    delta = Decimal(score - BASELINE_SCORE)
    if delta >= 0:
        adjustment = delta / Decimal(MAX_SCORE - BASELINE_SCORE) * MAX_DISCOUNT_PP
    else:
        adjustment = -delta / Decimal(BASELINE_SCORE - MIN_SCORE) * MAX_SURCHARGE_PP
    adjustment = max(MAX_DISCOUNT_PP, min(MAX_SURCHARGE_PP, adjustment))
    return adjustment.quantize(Decimal("0.01"))


def loan_limits(tier: int) -> LoanLimits:
    try:
        return LOAN_LIMITS[tier]
    except KeyError:
        raise ValidationError(f"credit tier must be 1-5, got {tier}") from None


def minimum_score(
    kind: DealKind,
    config: FinanceConfig = DEFAULT_CONFIG,
    *,
    is_land: bool = False,
    purpose: Optional[str] = None,
) -> int:
    """
    Minimum score for a product.

    Leases use lease_min_score, which config guarantees is strictly above
    finance_min_score. Land purchases are held to the lease bar; repair
    financing has the lowest bar.
    """
    if not isinstance(kind, DealKind):
        raise ValidationError(f"unknown deal kind: {kind!r}")
    if purpose == PURPOSE_REPAIR:
        return REPAIR_MIN_SCORE
    if kind in (DealKind.VEHICLE_LEASE, DealKind.LAND_LEASE):
        return config.lease_min_score
    if kind is DealKind.CASH_LOAN:
        return config.cash_loan_min_score
    if is_land:
        return config.lease_min_score
    return config.finance_min_score


def can_finance(
    score: int,
    kind: DealKind,
    config: FinanceConfig = DEFAULT_CONFIG,
    *,
    is_land: bool = False,
    purpose: Optional[str] = None,
) -> FinanceEligibility:
    required = minimum_score(kind, config, is_land=is_land, purpose=purpose)
    return FinanceEligibility(
        allowed=score >= required,
        min_score_required=required,
        current_score=score,
    )


# ============================================================================
# SCORE FACTORS
# ============================================================================

def _saturate(value: int, ceiling: int) -> Decimal:
    return Decimal(min(max(value, 0), ceiling)) / Decimal(ceiling)


def history_factor(history: PaymentHistoryRecord) -> Decimal:
    if history.total_payments == 0:
        return _HALF
    weighted_paid = Decimal(history.on_time_payments) + _HALF * history.late_payments
    ratio = weighted_paid / Decimal(history.total_payments)
    return Decimal("0.8") * ratio + Decimal("0.2") * _saturate(history.current_streak, STREAK_SATURATION)


def utilization_factor(total_assets: Decimal, total_debt: Decimal) -> Decimal:
    if total_assets <= 0:
        return _ZERO if total_debt > 0 else _HALF
    return max(_ZERO, min(_ONE, _ONE - total_debt / total_assets))


def depth_factor(history: PaymentHistoryRecord, account_count: int) -> Decimal:
    return (
        Decimal("0.7") * _saturate(history.total_payments, PAYMENT_DEPTH_SATURATION)
        + Decimal("0.3") * _saturate(account_count, ACCOUNT_SATURATION)
    )


def diversity_factor(history: PaymentHistoryRecord, kinds_used: int) -> Decimal:
    since_miss = history.payments_since_last_miss
    recency = _ONE if since_miss is None else _saturate(since_miss, RECENCY_SATURATION)
    return Decimal("0.4") * _saturate(kinds_used, KIND_SATURATION) + Decimal("0.6") * recency


def clean_slate_bonus(snapshot: FarmSnapshot) -> int:
    """Bonus for farms with assets, no debt and no payment history yet."""
    if snapshot.history.total_payments or snapshot.total_debt > 0:
        return 0
    for threshold, bonus in CLEAN_SLATE_BONUSES:
        if snapshot.total_assets > threshold:
            return bonus
    return 0


def _score_cap(history: PaymentHistoryRecord) -> Optional[int]:
    if not history.has_minimum_history():
        return CAP_WITHOUT_MINIMUM_HISTORY
    if not history.qualifies_for_excellent():
        return CAP_WITHOUT_EXCELLENT_HISTORY
    return None


def score_breakdown(snapshot: FarmSnapshot) -> ScoreBreakdown:
    """Compute every factor and the resulting score."""
    history = snapshot.history
    h = history_factor(history)
    u = utilization_factor(snapshot.total_assets, snapshot.total_debt)
    a = depth_factor(history, snapshot.account_count)
    d = diversity_factor(history, len(snapshot.deal_kinds))

    weighted = Decimal(MIN_SCORE) + SCORE_RANGE * (
        WEIGHT_HISTORY * h + WEIGHT_UTILIZATION * u + WEIGHT_DEPTH * a + WEIGHT_DIVERSITY * d
    )
    bonus = clean_slate_bonus(snapshot)
    raw = weighted + snapshot.history_adjustment + bonus

    cap = _score_cap(history)
    if cap is not None:
        raw = min(raw, Decimal(cap))
    raw = max(Decimal(MIN_SCORE), min(Decimal(MAX_SCORE), raw))
    score = int(raw.to_integral_value(rounding=ROUND_FLOOR))

    return ScoreBreakdown(
        history_factor=h,
        utilization_factor=u,
        depth_factor=a,
        diversity_factor=d,
        weighted_score=weighted,
        history_adjustment=snapshot.history_adjustment,
        clean_slate_bonus=bonus,
        cap=cap,
        score=score,
        rating=get_rating(score),
    )


def calculate_credit_score(snapshot: FarmSnapshot, config: FinanceConfig = DEFAULT_CONFIG) -> int:
    """
    Score in [300, 850] for a farm snapshot.

    With the credit system disabled every farm sits at starting_credit_score.
    """
    if not config.enable_credit_system:
        return config.starting_credit_score
    return score_breakdown(snapshot).score
