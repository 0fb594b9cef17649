"""
test_history.py - Unit tests for payment history and scored credit events

Tests:
- Counters, streaks and last-miss tracking per payment outcome
- Bounded tail of recent entries
- Minimum and excellent history qualification
- Credit event score changes, configurable late penalty
- Running adjustment clamped to +/-200
- Events newest first, summary counts, restore
"""

import pytest
from decimal import Decimal

from farmledger import (
    ValidationError,
    PaymentStatus, PaymentHistoryRecord, PaymentHistoryTracker,
    CreditEventType, CreditHistory,
)
from farmledger.history import MAX_PAYMENT_ENTRIES


# ============================================================================
# PAYMENT HISTORY
# ============================================================================

class TestPaymentHistory:
    """Tests for PaymentHistoryTracker."""

    def test_empty_record(self):
        record = PaymentHistoryTracker().stats("farm_1")
        assert record == PaymentHistoryRecord()
        assert record.on_time_rate == Decimal("0")
        assert record.payments_since_last_miss is None

    def test_outcomes_update_counters(self):
        tracker = PaymentHistoryTracker()
        for _ in range(3):
            tracker.record_payment("farm_1", True)
        tracker.record_payment("farm_1", False, late=True)
        record = tracker.record_payment("farm_1", False)

        assert record.total_payments == 5
        assert record.on_time_payments == 3
        assert record.late_payments == 1
        assert record.missed_payments == 1
        assert record.current_streak == 0
        assert record.longest_streak == 3
        assert record.last_missed_index == 5
        assert record.payments_since_last_miss == 0
        assert [e.status for e in record.recent] == [
            PaymentStatus.ON_TIME, PaymentStatus.ON_TIME, PaymentStatus.ON_TIME,
            PaymentStatus.LATE, PaymentStatus.MISSED,
        ]

    def test_payments_after_miss(self):
        tracker = PaymentHistoryTracker()
        tracker.record_payment("farm_1", False)
        tracker.record_payment("farm_1", True)
        record = tracker.record_payment("farm_1", True)
        assert record.payments_since_last_miss == 2
        assert record.current_streak == 2

    def test_farms_are_independent(self):
        tracker = PaymentHistoryTracker()
        tracker.record_payment("farm_1", True)
        assert tracker.stats("farm_2").total_payments == 0
        assert tracker.farms() == ["farm_1"]

    def test_recent_entries_bounded(self):
        tracker = PaymentHistoryTracker()
        for _ in range(MAX_PAYMENT_ENTRIES + 5):
            tracker.record_payment("farm_1", True, amount=Decimal("10"))
        record = tracker.stats("farm_1")
        assert record.total_payments == MAX_PAYMENT_ENTRIES + 5
        assert len(record.recent) == MAX_PAYMENT_ENTRIES
        assert record.recent[-1].index == MAX_PAYMENT_ENTRIES + 5

    def test_records_are_immutable_snapshots(self):
        """A record read earlier does not change when more payments arrive."""
        tracker = PaymentHistoryTracker()
        before = tracker.record_payment("farm_1", True)
        tracker.record_payment("farm_1", True)
        assert before.total_payments == 1

    def test_minimum_history(self):
        tracker = PaymentHistoryTracker()
        for _ in range(11):
            tracker.record_payment("farm_1", True)
        assert not tracker.has_minimum_history("farm_1")
        tracker.record_payment("farm_1", True)
        assert tracker.has_minimum_history("farm_1")

    def test_excellent_history(self):
        tracker = PaymentHistoryTracker()
        for _ in range(36):
            tracker.record_payment("farm_1", True)
        assert tracker.qualifies_for_excellent("farm_1")

    def test_recent_miss_blocks_excellent(self):
        tracker = PaymentHistoryTracker()
        for _ in range(40):
            tracker.record_payment("farm_1", True)
        tracker.record_payment("farm_1", False)
        for _ in range(10):
            tracker.record_payment("farm_1", True)
        assert not tracker.qualifies_for_excellent("farm_1")

    def test_empty_farm_id_rejected(self):
        with pytest.raises(ValidationError):
            PaymentHistoryTracker().record_payment("", True)


# ============================================================================
# CREDIT HISTORY
# ============================================================================

class TestCreditHistory:
    """Tests for CreditHistory scored events."""

    def test_event_changes_accumulate(self):
        history = CreditHistory()
        history.record_event("farm_1", CreditEventType.LOAN_TAKEN)
        history.record_event("farm_1", CreditEventType.PAYMENT_ON_TIME)
        history.record_event("farm_1", CreditEventType.DEAL_PAID_OFF)
        assert history.score_adjustment("farm_1") == -3 + 2 + 15

    def test_late_penalty_is_configurable(self):
        history = CreditHistory(late_payment_penalty=25)
        event = history.record_event("farm_1", CreditEventType.PAYMENT_LATE)
        assert event.change == -25

    def test_adjustment_clamped(self):
        history = CreditHistory()
        history.record_event("farm_1", CreditEventType.REPOSSESSION)
        history.record_event("farm_1", CreditEventType.REPOSSESSION)
        assert history.score_adjustment("farm_1") == -200
        history.record_event("farm_1", CreditEventType.DEAL_PAID_OFF)
        assert history.score_adjustment("farm_1") == -185

    def test_events_newest_first(self):
        history = CreditHistory()
        history.record_event("farm_1", CreditEventType.LOAN_TAKEN, deal_id="DEAL-000001")
        history.record_event("farm_1", CreditEventType.PAYMENT_MISSED, deal_id="DEAL-000001")
        events = history.events("farm_1")
        assert [e.event_type for e in events] == [CreditEventType.PAYMENT_MISSED, CreditEventType.LOAN_TAKEN]
        assert history.events("farm_1", 1)[0].event_type is CreditEventType.PAYMENT_MISSED

    def test_summary(self):
        history = CreditHistory()
        history.record_event("farm_1", CreditEventType.PAYMENT_ON_TIME)
        history.record_event("farm_1", CreditEventType.PAYMENT_ON_TIME)
        history.record_event("farm_1", CreditEventType.PAYMENT_MISSED)
        history.record_event("farm_1", CreditEventType.DEAL_PAID_OFF)
        summary = history.summary("farm_1")
        assert summary.total_events == 4
        assert summary.positive_events == 3
        assert summary.negative_events == 1
        assert summary.net_change == 2 + 2 - 50 + 15
        assert summary.payments_on_time == 2
        assert summary.payments_missed == 1
        assert summary.deals_completed == 1

    def test_unknown_farm(self):
        history = CreditHistory()
        assert history.score_adjustment("nobody") == 0
        assert history.events("nobody") == []

    def test_restore(self):
        source = CreditHistory()
        source.record_event("farm_1", CreditEventType.LOAN_TAKEN)
        events = list(reversed(source.events("farm_1")))
        target = CreditHistory()
        target.restore("farm_1", source.score_adjustment("farm_1"), events)
        assert target.score_adjustment("farm_1") == -3
        assert target.events("farm_1") == source.events("farm_1")

    def test_invalid_event_type_rejected(self):
        with pytest.raises(ValidationError):
            CreditHistory().record_event("farm_1", "BONUS")

    def test_negative_penalty_rejected(self):
        with pytest.raises(ValidationError):
            CreditHistory(late_payment_penalty=-1)
