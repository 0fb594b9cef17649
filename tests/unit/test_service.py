"""
test_service.py - Unit tests for FarmFinanceService

Tests:
- Farm registration, money and asset registry
- Credit score and report through the service
- Quotes: cash loan limits, credit denial, finance, lease, repair
- Offers: accept, decline, expiry, re-validation at execution
- Intent queue ordering and typed failures
- Reads, submit and the monthly tick as typed failures (unknown farm or deal, time going back)
- Deal intents: early payment, payoff, multiplier, ownership checks
- Monthly tick: payment history, credit events, savings interest
"""

from datetime import timedelta
from decimal import Decimal

from farmledger import (
    ErrorKind, FarmFinanceService, FinanceConfig, IntentType, AssetKind, AssetSpec,
    DealKind, DealStatus, PaymentStatus, CreditEventType, FinanceEventType,
    SYSTEM_WALLET, BANK_WALLET, encumbrances, interest_to_date,
)
from tests.helpers import START, month


TRACTOR = "VEHICLE-000001"


def accept(service, farm, offer):
    return service.execute(farm, IntentType.ACCEPT_OFFER, offer_id=offer.offer_id)


def open_cash_loan(service, amount="40000", collateral=(TRACTOR,)):
    quote = service.quote_cash_loan("farm_1", Decimal(amount), 5, collateral=list(collateral))
    assert quote.ok, quote.message
    result = accept(service, "farm_1", quote.value)
    assert result.ok, result.message
    return result.value


# ============================================================================
# FARMS, MONEY, ASSETS
# ============================================================================

class TestFarmLedger:
    """Tests for farm registration, money and the asset registry."""

    def test_starting_cash(self, service):
        assert service.get_money("farm_1") == Decimal("100000")
        assert service.farms == ["farm_1", "farm_2"]
        assert service.ledger.verify_double_entry()['valid']

    def test_duplicate_farm(self, service):
        result = service.register_farm("farm_1")
        assert not result.ok
        assert result.error is ErrorKind.VALIDATION

    def test_reserved_wallet(self, service):
        assert service.register_farm(BANK_WALLET).error is ErrorKind.VALIDATION

    def test_add_and_remove_money(self, service):
        assert service.add_money("farm_1", Decimal("500"), "harvest").value == Decimal("100500")
        assert service.add_money("farm_1", Decimal("-100500")).value == Decimal("0")

    def test_overdraw(self, service):
        result = service.add_money("farm_2", Decimal("-20000.01"))
        assert result.error is ErrorKind.INSUFFICIENT_FUNDS
        assert service.get_money("farm_2") == Decimal("20000")

    def test_unknown_farm(self, service):
        assert service.add_money("farm_9", Decimal("1")).error is ErrorKind.UNKNOWN_FARM
        assert service.get_money("farm_9") == Decimal("0")
        assert service.assets("farm_9") == []

    def test_asset_serials_are_unique(self, service, tractor):
        field = service.register_asset("farm_1", AssetKind.LAND, "North field", Decimal("80000")).value
        assert tractor == TRACTOR
        assert field == "LAND-000002"
        assert [a.symbol for a in service.assets("farm_1")] == [field, tractor]

    def test_remove_asset(self, service, tractor):
        assert service.remove_asset(tractor).ok
        assert service.assets("farm_1") == []
        assert service.ledger.get_balance(SYSTEM_WALLET, tractor) == Decimal("0")

    def test_pledged_asset_cannot_be_removed(self, service, tractor):
        open_cash_loan(service)
        result = service.remove_asset(tractor)
        assert result.error is ErrorKind.COLLATERAL_CONFLICT
        assert result.asset_ids == (tractor,)

    def test_revalue(self, service, tractor):
        assert service.revalue_asset(tractor, Decimal("20000")).value == Decimal("20000.00")
        assert service.revalue_asset("VEHICLE-000099", 1).error is ErrorKind.VALIDATION


# ============================================================================
# CREDIT
# ============================================================================

class TestCredit:
    """Tests for credit reads through the service."""

    def test_scores(self, service, tractor):
        assert service.credit_score("farm_1").value == 657
        assert service.credit_score("farm_2").value == 627

    def test_report(self, service, tractor):
        report = service.credit_report("farm_1").value
        assert report.score == 657
        assert report.breakdown.rating.label == "Fair"
        assert report.total_assets == Decimal("125000")
        assert report.total_debt == Decimal("0")
        assert report.recent_events == ()

    def test_loan_recorded_in_history(self, service, tractor):
        deal = open_cash_loan(service)
        events = service.credit_history.events("farm_1")
        assert events[0].event_type is CreditEventType.LOAN_TAKEN
        assert events[0].deal_id == deal
        assert service.credit_report("farm_1").value.total_debt == Decimal("40000")

    def test_can_finance(self, service):
        assert service.can_finance("farm_2", DealKind.VEHICLE_LEASE).value.allowed
        service.register_farm("farm_3")
        result = service.can_finance("farm_3", DealKind.CASH_LOAN).value
        assert not result.allowed
        assert result.current_score == 544


class TestReadBoundary:
    """Reads answer with a typed failure instead of raising."""

    def test_unknown_farm(self, service):
        for result in (
            service.credit_score("farm_9"),
            service.credit_snapshot("farm_9"),
            service.credit_report("farm_9"),
            service.can_finance("farm_9", DealKind.CASH_LOAN),
            service.eligible_collateral("farm_9"),
            service.collateral_selection("farm_9"),
        ):
            assert not result.ok
            assert result.error is ErrorKind.UNKNOWN_FARM

    def test_unknown_deal(self, service):
        for result in (
            service.deal("DEAL-000042"),
            service.payoff_quote("DEAL-000042"),
            service.lease_buyout_quote("DEAL-000042"),
            service.multiplier_savings("DEAL-000042"),
            service.repossession_record("DEAL-000042"),
        ):
            assert result.error is ErrorKind.UNKNOWN_DEAL

    def test_asset_is_not_a_deal(self, service, tractor):
        assert service.deal(tractor).error is ErrorKind.UNKNOWN_DEAL


# ============================================================================
# QUOTES AND OFFERS
# ============================================================================

class TestCashLoanQuotes:
    """Tests for quote_cash_loan and the collateral selection model."""

    def test_limit_with_and_without_collateral(self, service, tractor):
        selection = service.collateral_selection("farm_1").value
        assert selection.max_amount == Decimal("60000")
        selection.toggle(tractor)
        assert selection.max_amount == Decimal("67500")

        assert service.quote_cash_loan("farm_1", Decimal("67500"), 5, collateral=[tractor]).ok
        over = service.quote_cash_loan("farm_1", Decimal("67501"), 5, collateral=[tractor])
        assert over.error is ErrorKind.VALIDATION
        assert service.quote_cash_loan("farm_1", Decimal("61000"), 5).error is ErrorKind.VALIDATION

    def test_offer_terms(self, service, tractor):
        offer = service.quote_cash_loan("farm_1", Decimal("40000"), 5, collateral=[tractor]).value
        assert offer.offer_id == "OFFER-000001"
        assert offer.kind is DealKind.CASH_LOAN
        assert offer.term_months == 60
        assert offer.credit_score == 657
        assert offer.annual_rate == Decimal("0.0790")
        assert offer.expires_at == START + timedelta(days=7)
        assert offer.payee == "farm_1"

    def test_invalid_term(self, service):
        assert service.quote_cash_loan("farm_1", Decimal("10000"), 4).error is ErrorKind.VALIDATION

    def test_credit_denied(self, service):
        service.register_farm("farm_3")
        result = service.quote_cash_loan("farm_3", Decimal("10000"), 1)
        assert result.error is ErrorKind.CREDIT_DENIED

    def test_unknown_collateral(self, service):
        result = service.quote_cash_loan("farm_1", Decimal("10000"), 1, collateral=["LAND-000042"])
        assert result.error is ErrorKind.VALIDATION


class TestOffers:
    """Tests for accepting, declining and expiring offers."""

    def test_accept_cash_loan(self, service, tractor):
        deal = open_cash_loan(service)
        assert deal == "DEAL-000001"
        assert service.get_money("farm_1") == Decimal("140000")
        assert encumbrances(service.ledger) == {tractor: deal}
        assert service.offers == {}
        assert service.events.published[-1].event_type is FinanceEventType.LOAN_TAKEN
        assert service.ledger.verify_double_entry()['valid']

    def test_collateral_race(self, service, tractor):
        """Two offers pledging the same tractor: one success, one conflict."""
        first = service.quote_cash_loan("farm_1", Decimal("20000"), 5, collateral=[tractor]).value
        second = service.quote_cash_loan("farm_1", Decimal("30000"), 5, collateral=[tractor]).value
        service.submit("farm_1", IntentType.ACCEPT_OFFER, offer_id=first.offer_id)
        service.submit("farm_1", IntentType.ACCEPT_OFFER, offer_id=second.offer_id)

        results = [result for _, result in service.process_pending()]
        assert results[0].ok
        assert results[1].error is ErrorKind.COLLATERAL_CONFLICT
        assert results[1].asset_ids == (tractor,)
        assert len(service.deals("farm_1")) == 1

    def test_expired_offer(self, service, tractor):
        offer = service.quote_cash_loan("farm_1", Decimal("20000"), 5).value
        service.ledger.advance_time(START + timedelta(days=8))
        result = accept(service, "farm_1", offer)
        assert result.error is ErrorKind.STATE_CONFLICT
        assert offer.offer_id not in service.offers

    def test_tick_expires_offers(self, service):
        offer = service.quote_cash_loan("farm_1", Decimal("20000"), 5).value
        service.monthly_tick(START + timedelta(days=8))
        assert offer.offer_id not in service.offers
        assert service.events.published[-1].event_type is FinanceEventType.OFFER_EXPIRED
        assert accept(service, "farm_1", offer).error is ErrorKind.VALIDATION

    def test_offer_of_another_farm(self, service):
        offer = service.quote_cash_loan("farm_1", Decimal("20000"), 5).value
        assert accept(service, "farm_2", offer).error is ErrorKind.VALIDATION

    def test_decline(self, service):
        offer = service.quote_cash_loan("farm_1", Decimal("20000"), 5).value
        assert service.execute("farm_1", IntentType.DECLINE_OFFER, offer_id=offer.offer_id).ok
        assert service.offers == {}

    def test_limit_rechecked_at_execution(self, service, tractor):
        offer = service.quote_cash_loan("farm_1", Decimal("60000"), 5).value
        service.add_money("farm_1", Decimal("-50000"))
        result = accept(service, "farm_1", offer)
        assert result.error is ErrorKind.VALIDATION
        assert service.deals("farm_1") == []


class TestPurchaseQuotes:
    """Tests for finance, lease and repair quotes."""

    def test_vehicle_finance(self, service):
        combine = AssetSpec(AssetKind.VEHICLE, "Combine", Decimal("60000"), "combine.xml")
        offer = service.quote_finance("farm_1", combine, Decimal("60000"), Decimal("12000"), 5).value
        assert offer.amount_financed == Decimal("48000.00")
        assert offer.payee == SYSTEM_WALLET

        deal = accept(service, "farm_1", offer).value
        terms, state = service.deal(deal).value
        assert terms.primary_asset == "VEHICLE-000001"
        assert service.get_money("farm_1") == Decimal("88000")
        assert service.ledger.get_unit_state(terms.primary_asset)['config_file'] == "combine.xml"
        assert encumbrances(service.ledger) == {terms.primary_asset: deal}

    def test_finance_with_trade_in(self, service, tractor):
        combine = AssetSpec(AssetKind.VEHICLE, "Combine", Decimal("60000"))
        offer = service.quote_finance("farm_1", combine, Decimal("60000"), Decimal("6000"), 5,
                                      trade_in=tractor).value
        assert offer.trade_in_value == Decimal("25000")
        assert offer.amount_financed == Decimal("29000.00")
        deal = accept(service, "farm_1", offer).value
        assert service.deal(deal).value[0].primary_asset == "VEHICLE-000002"
        assert service.ledger.get_balance("farm_1", tractor) == Decimal("0")

    def test_excess_down_payment(self, service):
        combine = AssetSpec(AssetKind.VEHICLE, "Combine", Decimal("60000"))
        result = service.quote_finance("farm_1", combine, Decimal("60000"), Decimal("30001"), 5)
        assert result.error is ErrorKind.VALIDATION

    def test_vehicle_lease(self, service, tractor):
        combine = AssetSpec(AssetKind.VEHICLE, "Combine", Decimal("60000"))
        offer = service.quote_lease("farm_1", combine, Decimal("60000"), Decimal("6000"), 3).value
        assert offer.kind is DealKind.VEHICLE_LEASE
        assert offer.annual_rate == Decimal("0.1010")
        assert offer.monthly_payment == Decimal("873.09")
        assert offer.lease.capitalized_cost == Decimal("54000")
        assert offer.lease.residual_value == Decimal("36240.00")
        assert offer.lease.security_deposit == Decimal("1746.18")

        deal = accept(service, "farm_1", offer).value
        assert service.get_money("farm_1") == Decimal("92253.82")
        assert service.deal(deal).value[1].current_balance == Decimal("31431.24")

    def test_lease_denied_for_poor_credit(self, service):
        service.register_farm("farm_3")
        combine = AssetSpec(AssetKind.VEHICLE, "Combine", Decimal("60000"))
        result = service.quote_lease("farm_3", combine, Decimal("60000"), Decimal("0"), 3)
        assert result.error is ErrorKind.CREDIT_DENIED

    def test_repair_finance_pays_the_shop(self, service, tractor):
        offer = service.quote_repair_finance("farm_1", tractor, Decimal("8000"), 12).value
        assert offer.payee == SYSTEM_WALLET
        deal = accept(service, "farm_1", offer).value
        terms, _ = service.deal(deal).value
        assert terms.purpose == "REPAIR"
        assert service.get_money("farm_1") == Decimal("100000")
        assert service.credit_history.events("farm_1")[0].event_type is CreditEventType.REPAIR_FINANCED

    def test_repair_requires_held_vehicle(self, service, tractor):
        result = service.quote_repair_finance("farm_2", tractor, Decimal("8000"), 12)
        assert result.error is ErrorKind.VALIDATION


# ============================================================================
# DEAL INTENTS
# ============================================================================

class TestDealIntents:
    """Tests for intents against an open deal."""

    def test_early_payment(self, service, tractor):
        deal = open_cash_loan(service)
        result = service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("1000"))
        assert result.value == Decimal("39000")

    def test_payoff(self, service, tractor):
        deal = open_cash_loan(service)
        assert service.payoff_quote(deal).value == (Decimal("40800.00"), Decimal("800.00"))
        result = service.execute("farm_1", IntentType.PAYOFF, deal_id=deal)
        assert result.value == Decimal("40800.00")
        assert service.deal(deal).value[1].status is DealStatus.PAID_OFF
        assert service.get_money("farm_1") == Decimal("99200")
        assert service.eligible_collateral("farm_1").value[0].symbol == tractor
        assert service.credit_history.events("farm_1")[0].event_type is CreditEventType.DEAL_PAID_OFF

    def test_set_multiplier(self, service, tractor):
        deal = open_cash_loan(service)
        result = service.execute("farm_1", IntentType.SET_MULTIPLIER, deal_id=deal, multiplier=Decimal("2.0"))
        assert result.value == Decimal("2.0")
        invalid = service.execute("farm_1", IntentType.SET_MULTIPLIER, deal_id=deal, multiplier=Decimal("4"))
        assert invalid.error is ErrorKind.VALIDATION

    def test_deal_of_another_farm(self, service, tractor):
        deal = open_cash_loan(service)
        result = service.execute("farm_2", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("10"))
        assert result.error is ErrorKind.VALIDATION

    def test_missing_parameter(self, service, tractor):
        deal = open_cash_loan(service)
        assert service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal).error is ErrorKind.VALIDATION

    def test_payment_beyond_cash(self, service, tractor):
        deal = open_cash_loan(service)
        service.add_money("farm_1", Decimal("-139500"))
        result = service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("1000"))
        assert result.error is ErrorKind.INSUFFICIENT_FUNDS

    def test_closed_deal(self, service, tractor):
        deal = open_cash_loan(service)
        service.execute("farm_1", IntentType.PAYOFF, deal_id=deal)
        result = service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("10"))
        assert result.error is ErrorKind.STATE_CONFLICT

    def test_settling_early_charges_the_penalty(self, service, tractor):
        """An early payment that settles the loan costs exactly the payoff quote."""
        deal = open_cash_loan(service)
        service.monthly_tick(month(1))
        service.monthly_tick(month(1) + timedelta(days=10))
        terms, state = service.deal(deal).value
        settle = state.current_balance + interest_to_date(terms, state, service.now)

        short = service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=settle)
        assert short.error is ErrorKind.VALIDATION
        assert "prepayment penalty" in short.message

        required, penalty = service.payoff_quote(deal).value
        assert penalty > 0
        assert required == settle + penalty
        before = service.get_money("farm_1")
        result = service.execute("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=required)
        assert result.ok, result.message
        assert service.deal(deal).value[1].status is DealStatus.PAID_OFF
        assert service.get_money("farm_1") == before - required
        assert encumbrances(service.ledger) == {}

    def test_unknown_deal_intent(self, service):
        result = service.execute("farm_1", IntentType.PAYOFF, deal_id="DEAL-000042")
        assert result.error is ErrorKind.UNKNOWN_DEAL


class TestIntentQueue:
    """Tests for submit / pending / process_pending."""

    def test_submission_order(self, service, tractor):
        deal = open_cash_loan(service)
        first = service.submit("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("1000")).value
        second = service.submit("farm_1", IntentType.EARLY_PAYMENT, deal_id=deal, amount=Decimal("2000")).value
        assert [i.ticket for i in service.pending("farm_1")] == [first, second]

        results = service.process_pending("farm_1")
        assert [r.value for _, r in results] == [Decimal("39000"), Decimal("37000")]
        assert service.pending("farm_1") == []

    def test_execute_unknown_farm(self, service):
        result = service.execute("farm_9", IntentType.DECLINE_OFFER, offer_id="OFFER-000001")
        assert result.error is ErrorKind.UNKNOWN_FARM

    def test_submit_unknown_farm(self, service):
        result = service.submit("farm_9", IntentType.DECLINE_OFFER, offer_id="OFFER-000001")
        assert result.error is ErrorKind.UNKNOWN_FARM
        assert service.pending("farm_9") == []


# ============================================================================
# MONTHLY TICK
# ============================================================================

class TestMonthlyTick:
    """Tests for monthly_tick bookkeeping."""

    def test_payment_recorded(self, service, tractor):
        deal = open_cash_loan(service)
        service.monthly_tick(month(1))

        record = service.payment_history.stats("farm_1")
        assert record.on_time_payments == 1
        assert record.recent[-1].deal_id == deal
        assert service.credit_history.events("farm_1")[0].event_type is CreditEventType.PAYMENT_ON_TIME
        assert service.deal(deal).value[1].months_paid == 1

    def test_missed_payment_recorded(self, service, tractor):
        deal = open_cash_loan(service)
        service.add_money("farm_1", Decimal("-140000"))
        service.monthly_tick(month(1))

        assert service.payment_history.stats("farm_1").recent[-1].status is PaymentStatus.MISSED
        assert service.deal(deal).value[1].missed_payments == 1
        kinds = [e.event_type for e in service.events.published]
        assert FinanceEventType.PAYMENT_MISSED in kinds

    def test_savings_interest_once_per_month(self, service):
        service.add_money("farm_1", Decimal("20000"))
        service.monthly_tick(month(1))
        assert service.get_money("farm_1") == Decimal("120100")
        assert service.get_money("farm_2") == Decimal("20016")

        service.monthly_tick(month(1) + timedelta(days=10))
        assert service.get_money("farm_1") == Decimal("120100")
        assert service.ledger.get_balance(BANK_WALLET, "USD") == Decimal("1000000000") - Decimal("116")

    def test_savings_interest_disabled(self):
        service = FarmFinanceService(FinanceConfig(enable_bank_interest=False), start_time=START)
        service.register_farm("farm_1", Decimal("120000"))
        service.monthly_tick(month(1))
        assert service.get_money("farm_1") == Decimal("120000")

    def test_tick_returns_transactions(self, service, tractor):
        deal = open_cash_loan(service)
        result = service.monthly_tick(month(1))
        assert result.ok
        assert deal in [tx.origin.unit_symbol for tx in result.value]

    def test_backwards_tick(self, service):
        service.monthly_tick(month(2))
        result = service.monthly_tick(month(1))
        assert result.error is ErrorKind.INVALID_TIME
        assert service.now == month(2)
