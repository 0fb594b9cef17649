"""
history.py - Payment History Tracking and Scored Credit Events

Two per-farm records feed the credit score:

1. PaymentHistoryRecord: frozen counters (total, on-time, late, missed,
   streaks) plus a bounded tail of recent PaymentEntry rows. The tracker
   mutates a farm's record exactly once per call to record_payment(); it does
   not deduplicate, the caller records at most once per billing cycle per deal.

2. CreditHistory: explicit scored events (loan taken, payment made/missed,
   deal paid off, repossession...). Each event type carries a fixed score
   change; the running adjustment per farm is clamped to +/-200.

Both live outside the ledger. They are derived from ledger transactions by the
service after every tick or intent and persisted through persistence.py.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .core import ValidationError, to_decimal
from .logging import get_logger


logger = get_logger(__name__)

MAX_PAYMENT_ENTRIES = 100
PERSISTED_PAYMENT_ENTRIES = 24
MAX_CREDIT_EVENTS = 100
MAX_HISTORY_ADJUSTMENT = 200

MINIMUM_HISTORY_ON_TIME = 12
EXCELLENT_ON_TIME = 36
EXCELLENT_STREAK = 18
EXCELLENT_CLEAN_RUN = 18


class PaymentStatus(Enum):
    ON_TIME = "on_time"
    LATE = "late"
    MISSED = "missed"


@dataclass(frozen=True, slots=True)
class PaymentEntry:
    """One billing-cycle outcome for one deal."""
    index: int
    status: PaymentStatus
    deal_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    timestamp: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class PaymentHistoryRecord:
    """
    Rolling payment counters for one farm.

    last_missed_index is the 1-based total_payments count at the most recent
    miss (None if the farm never missed).
    """
    total_payments: int = 0
    on_time_payments: int = 0
    late_payments: int = 0
    missed_payments: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_missed_index: Optional[int] = None
    recent: Tuple[PaymentEntry, ...] = ()

    def with_payment(
        self,
        status: PaymentStatus,
        deal_id: Optional[str] = None,
        amount: Decimal = Decimal("0"),
        timestamp: Optional[datetime] = None,
    ) -> PaymentHistoryRecord:
        """Return a new record with one more payment outcome applied."""
        total = self.total_payments + 1
        on_time = self.on_time_payments
        late = self.late_payments
        missed = self.missed_payments
        streak = self.current_streak
        last_missed = self.last_missed_index

        if status is PaymentStatus.ON_TIME:
            on_time += 1
            streak += 1
        elif status is PaymentStatus.LATE:
            late += 1
            streak = 0
        else:
            missed += 1
            streak = 0
            last_missed = total

        entry = PaymentEntry(total, status, deal_id, to_decimal(amount), timestamp)
        recent = (self.recent + (entry,))[-MAX_PAYMENT_ENTRIES:]

        return PaymentHistoryRecord(
            total_payments=total,
            on_time_payments=on_time,
            late_payments=late,
            missed_payments=missed,
            current_streak=streak,
            longest_streak=max(self.longest_streak, streak),
            last_missed_index=last_missed,
            recent=recent,
        )

    @property
    def on_time_rate(self) -> Decimal:
        """Fraction of recorded payments made on time (0 with no history)."""
        if self.total_payments == 0:
            return Decimal("0")
        return Decimal(self.on_time_payments) / Decimal(self.total_payments)

    @property
    def payments_since_last_miss(self) -> Optional[int]:
        """Payments recorded after the latest miss, or None if never missed."""
        if self.last_missed_index is None:
            return None
        return self.total_payments - self.last_missed_index

    def has_minimum_history(self) -> bool:
        return self.on_time_payments >= MINIMUM_HISTORY_ON_TIME

    def qualifies_for_excellent(self) -> bool:
        """36+ on-time payments, an 18 streak, and no miss in the last 18 payments."""
        since_miss = self.payments_since_last_miss
        return (
            self.on_time_payments >= EXCELLENT_ON_TIME
            and self.current_streak >= EXCELLENT_STREAK
            and (since_miss is None or since_miss >= EXCELLENT_CLEAN_RUN)
        )


class PaymentHistoryTracker:
    """
    Per-farm PaymentHistoryRecord store.

    Records are immutable values; the tracker swaps in a new record on every
    payment so that readers holding an older record never see it change.
    """

    def __init__(self):
        self._records: Dict[str, PaymentHistoryRecord] = {}

    def record_payment(
        self,
        farm_id: str,
        on_time: bool,
        *,
        late: bool = False,
        deal_id: Optional[str] = None,
        amount: Decimal = Decimal("0"),
        timestamp: Optional[datetime] = None,
    ) -> PaymentHistoryRecord:
        """
        Record one billing-cycle outcome.

        on_time=True counts as on time; on_time=False with late=True is a
        late (but made) payment; otherwise the payment was missed.
        """
        if not farm_id:
            raise ValidationError("farm_id cannot be empty")
        if on_time:
            status = PaymentStatus.ON_TIME
        elif late:
            status = PaymentStatus.LATE
        else:
            status = PaymentStatus.MISSED

        record = self.stats(farm_id).with_payment(status, deal_id, amount, timestamp)
        self._records[farm_id] = record
        logger.debug(
            "farm %s recorded %s payment (streak %d, total %d)",
            farm_id, status.value, record.current_streak, record.total_payments,
        )
        return record

    def stats(self, farm_id: str) -> PaymentHistoryRecord:
        return self._records.get(farm_id, PaymentHistoryRecord())

    def on_time_rate(self, farm_id: str) -> Decimal:
        return self.stats(farm_id).on_time_rate

    def has_minimum_history(self, farm_id: str) -> bool:
        return self.stats(farm_id).has_minimum_history()

    def qualifies_for_excellent(self, farm_id: str) -> bool:
        return self.stats(farm_id).qualifies_for_excellent()

    def farms(self) -> List[str]:
        return sorted(self._records)

    def restore(self, farm_id: str, record: PaymentHistoryRecord) -> None:
        """Install a record loaded from persistence."""
        self._records[farm_id] = record

    def clear(self) -> None:
        self._records.clear()


# ============================================================================
# CREDIT HISTORY (scored events)
# ============================================================================

class CreditEventType(Enum):
    PAYMENT_ON_TIME = "PAYMENT_ON_TIME"
    PAYMENT_LATE = "PAYMENT_LATE"
    PAYMENT_MISSED = "PAYMENT_MISSED"
    PAYMENT_EXTRA = "PAYMENT_EXTRA"
    DEAL_PAID_OFF = "DEAL_PAID_OFF"
    NEW_DEBT_TAKEN = "NEW_DEBT_TAKEN"
    LOAN_TAKEN = "LOAN_TAKEN"
    REPAIR_FINANCED = "REPAIR_FINANCED"
    LEASE_BUYOUT = "LEASE_BUYOUT"
    LEASE_TERMINATED_EARLY = "LEASE_TERMINATED_EARLY"
    REPOSSESSION = "REPOSSESSION"


# PAYMENT_LATE is configurable (FinanceConfig.late_payment_penalty) and
# resolved per CreditHistory instance.
EVENT_SCORE_CHANGES: Dict[CreditEventType, int] = {
    CreditEventType.PAYMENT_ON_TIME: 2,
    CreditEventType.PAYMENT_MISSED: -50,
    CreditEventType.PAYMENT_EXTRA: 3,
    CreditEventType.DEAL_PAID_OFF: 15,
    CreditEventType.NEW_DEBT_TAKEN: -5,
    CreditEventType.LOAN_TAKEN: -3,
    CreditEventType.REPAIR_FINANCED: -2,
    CreditEventType.LEASE_BUYOUT: 10,
    CreditEventType.LEASE_TERMINATED_EARLY: -40,
    CreditEventType.REPOSSESSION: -150,
}


@dataclass(frozen=True, slots=True)
class CreditEvent:
    event_type: CreditEventType
    change: int
    details: str = ""
    deal_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class CreditHistorySummary:
    total_events: int
    positive_events: int
    negative_events: int
    net_change: int
    payments_on_time: int
    payments_missed: int
    deals_completed: int


@dataclass
class _FarmCreditHistory:
    adjustment: int = 0
    events: List[CreditEvent] = field(default_factory=list)


class CreditHistory:
    """Scored credit events per farm with a clamped running adjustment."""

    def __init__(self, late_payment_penalty: int = 15):
        if late_payment_penalty < 0:
            raise ValidationError("late_payment_penalty cannot be negative")
        self.late_payment_penalty = late_payment_penalty
        self._farms: Dict[str, _FarmCreditHistory] = {}

    def score_change(self, event_type: CreditEventType) -> int:
        if event_type is CreditEventType.PAYMENT_LATE:
            return -self.late_payment_penalty
        return EVENT_SCORE_CHANGES[event_type]

    def record_event(
        self,
        farm_id: str,
        event_type: CreditEventType,
        details: str = "",
        deal_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> CreditEvent:
        """Append an event, apply its score change, and return it."""
        if not isinstance(event_type, CreditEventType):
            raise ValidationError(f"unknown credit event type: {event_type!r}")
        farm = self._farms.setdefault(farm_id, _FarmCreditHistory())
        event = CreditEvent(event_type, self.score_change(event_type), details, deal_id, timestamp)

        farm.events.append(event)
        del farm.events[:-MAX_CREDIT_EVENTS]
        farm.adjustment = _clamp_adjustment(farm.adjustment + event.change)

        logger.debug("farm %s credit event %s (%+d)", farm_id, event_type.value, event.change)
        return event

    def score_adjustment(self, farm_id: str) -> int:
        farm = self._farms.get(farm_id)
        return farm.adjustment if farm else 0

    def events(self, farm_id: str, limit: Optional[int] = None) -> List[CreditEvent]:
        """Events newest first, optionally limited."""
        farm = self._farms.get(farm_id)
        if farm is None:
            return []
        newest_first = list(reversed(farm.events))
        return newest_first[:limit] if limit else newest_first

    def summary(self, farm_id: str) -> CreditHistorySummary:
        events = self.events(farm_id)
        return CreditHistorySummary(
            total_events=len(events),
            positive_events=sum(1 for e in events if e.change > 0),
            negative_events=sum(1 for e in events if e.change < 0),
            net_change=sum(e.change for e in events),
            payments_on_time=sum(1 for e in events if e.event_type is CreditEventType.PAYMENT_ON_TIME),
            payments_missed=sum(1 for e in events if e.event_type is CreditEventType.PAYMENT_MISSED),
            deals_completed=sum(1 for e in events if e.event_type is CreditEventType.DEAL_PAID_OFF),
        )

    def farms(self) -> List[str]:
        return sorted(self._farms)

    def restore(self, farm_id: str, adjustment: int, events: List[CreditEvent]) -> None:
        """Install a farm's history loaded from persistence (events oldest first)."""
        self._farms[farm_id] = _FarmCreditHistory(
            adjustment=_clamp_adjustment(adjustment),
            events=list(events)[-MAX_CREDIT_EVENTS:],
        )


def _clamp_adjustment(value: int) -> int:
    return max(-MAX_HISTORY_ADJUSTMENT, min(MAX_HISTORY_ADJUSTMENT, value))

