"""
test_persistence.py - Unit tests for save/load

Tests:
- Decimal and datetime tagging in the JSON codec
- Session dump/restore: cash, assets, deals, encumbrance, history, counters
- File save/load
- Restored session keeps running
- Bounded payment history on save
- Malformed records and unsupported versions
"""

import pytest
from decimal import Decimal

from farmledger import (
    ValidationError, IntentType, PaymentHistoryTracker,
    encumbrances, dump_session, restore_session, save_session, load_session,
    deal_to_record, deal_from_record, history_to_record, history_from_record,
)
from farmledger.history import PERSISTED_PAYMENT_ENTRIES
from farmledger.persistence import dumps, loads
from tests.helpers import START, month


@pytest.fixture
def running(service, tractor):
    """A session one month into a 40,000 cash loan secured by the tractor."""
    offer = service.quote_cash_loan("farm_1", Decimal("40000"), 5, collateral=[tractor]).value
    deal = service.execute("farm_1", IntentType.ACCEPT_OFFER, offer_id=offer.offer_id).value
    service.monthly_tick(month(1))
    return service, deal


class TestCodec:
    """Tests for the tagged JSON codec."""

    def test_decimal_and_datetime(self):
        data = {'amount': Decimal("2027.64"), 'when': START, 'plain': [1, "x"]}
        assert loads(dumps(data)) == data


class TestSession:
    """Tests for dump_session / restore_session."""

    def test_round_trip(self, running):
        service, deal = running
        restored = restore_session(loads(dumps(dump_session(service))))

        assert restored.now == service.now
        assert restored.farms == service.farms
        for farm in service.farms:
            assert restored.get_money(farm) == service.get_money(farm)
            assert restored.credit_score(farm).value == service.credit_score(farm).value
        assert restored.deal(deal).value == service.deal(deal).value
        assert encumbrances(restored.ledger) == encumbrances(service.ledger)
        assert restored.payment_history.stats("farm_1") == service.payment_history.stats("farm_1")
        assert restored.credit_history.events("farm_1") == service.credit_history.events("farm_1")
        assert restored.ledger.get_balance("bank", "USD") == service.ledger.get_balance("bank", "USD")
        assert restored.ledger.verify_double_entry()['valid']

    def test_counters_continue(self, running):
        service, _ = running
        restored = restore_session(dump_session(service))
        offer = restored.quote_cash_loan("farm_2", Decimal("5000"), 1).value
        assert offer.offer_id == "OFFER-000002"
        deal = restored.execute("farm_2", IntentType.ACCEPT_OFFER, offer_id=offer.offer_id).value
        assert deal == "DEAL-000002"

    def test_counters_round_trip(self, running):
        service, _ = running
        data = dump_session(service)
        assert data['counters'] == service.counters()
        assert data['counters']['deal'] == 1
        assert data['counters']['savings_paid']['farm_1'] == "2025-02"
        assert restore_session(loads(dumps(data))).counters() == service.counters()

    def test_offers_are_not_saved(self, running):
        service, _ = running
        service.quote_cash_loan("farm_1", Decimal("5000"), 1)
        assert restore_session(dump_session(service)).offers == {}

    def test_lifecycle_continues(self, running):
        service, deal = running
        restored = restore_session(dump_session(service))
        restored.monthly_tick(month(2))
        service.monthly_tick(month(2))
        assert restored.deal(deal).value == service.deal(deal).value
        assert restored.deal(deal).value[1].months_paid == 2

    def test_savings_month_not_paid_twice(self, running):
        service, _ = running
        restored = restore_session(dump_session(service))
        before = restored.get_money("farm_2")
        restored.monthly_tick(month(1))
        assert restored.get_money("farm_2") == before

    def test_file_round_trip(self, running, tmp_path):
        service, deal = running
        path = save_session(service, tmp_path / "save.json")
        restored = load_session(path)
        assert restored.deal(deal).value == service.deal(deal).value

    def test_unsupported_version(self, running):
        service, _ = running
        data = dump_session(service)
        data['version'] = 99
        with pytest.raises(ValidationError):
            restore_session(data)


class TestRecords:
    """Tests for individual record shapes."""

    def test_deal_record(self, running):
        service, deal = running
        unit = deal_from_record(deal_to_record(service.ledger, deal))
        assert unit.symbol == deal
        assert unit.state == service.ledger.get_unit_state(deal)

    def test_malformed_deal_record(self):
        with pytest.raises(ValidationError):
            deal_from_record({'symbol': "DEAL-000001", 'name': "Broken", 'state': {}})

    def test_history_keeps_recent_entries(self):
        tracker = PaymentHistoryTracker()
        for _ in range(PERSISTED_PAYMENT_ENTRIES + 10):
            tracker.record_payment("farm_1", True)
        restored = history_from_record(history_to_record(tracker.stats("farm_1")))
        assert restored.total_payments == PERSISTED_PAYMENT_ENTRIES + 10
        assert len(restored.recent) == PERSISTED_PAYMENT_ENTRIES
        assert restored.recent[-1].index == PERSISTED_PAYMENT_ENTRIES + 10
