"""
Conservation Law Conformance Tests

INVARIANT: For all units u, at all times t:
    Σ_{w ∈ wallets} balance(w, u, t) = 0

Cash enters through SYSTEM (starting money, host income) and leaves the
same way, so every unit's supply across all wallets, SYSTEM included, is
zero. Loans, payments, savings interest and repossession only move value.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st
from decimal import Decimal

from farmledger import (
    Ledger, Move, ExecuteResult, cash, build_transaction,
    FarmFinanceService, IntentType, AssetKind,
    SYSTEM_WALLET, BANK_WALLET,
)
from tests.helpers import START, month


FARMS = ["farm_1", "farm_2", "farm_3"]


# =============================================================================
# STRATEGIES
# =============================================================================

@st.composite
def cash_move(draw):
    source = draw(st.sampled_from(FARMS + [BANK_WALLET, SYSTEM_WALLET]))
    dest = draw(st.sampled_from([w for w in FARMS + [BANK_WALLET] if w != source]))
    quantity = draw(st.decimals(
        min_value=Decimal("0.01"), max_value=Decimal("50000"),
        places=2, allow_nan=False, allow_infinity=False,
    ))
    return source, dest, quantity


@st.composite
def session_script(draw):
    """A month-by-month script of host cash changes and loan requests."""
    steps = []
    for _ in range(draw(st.integers(min_value=1, max_value=8))):
        steps.append((
            draw(st.sampled_from(["income", "expense", "loan", "early", "idle"])),
            draw(st.sampled_from(["farm_1", "farm_2"])),
            draw(st.integers(min_value=1, max_value=60)) * Decimal("1000"),
        ))
    return steps


def funded_ledger():
    ledger = Ledger("conservation", START)
    ledger.register_unit(cash("USD", "US Dollar"))
    for wallet in FARMS + [BANK_WALLET]:
        ledger.register_wallet(wallet)
    ledger.execute(build_transaction(ledger, [
        Move(Decimal("100000"), "USD", SYSTEM_WALLET, wallet, f"seed_{wallet}")
        for wallet in FARMS + [BANK_WALLET]
    ]))
    return ledger


# =============================================================================
# PROPERTIES
# =============================================================================

class TestLedgerConservation:
    """Arbitrary cash moves never change total supply."""

    @given(st.lists(cash_move(), min_size=1, max_size=30))
    @settings(max_examples=100)
    def test_supply_stays_zero(self, moves):
        ledger = funded_ledger()
        applied = 0
        for i, (source, dest, quantity) in enumerate(moves):
            tx = build_transaction(ledger, [Move(quantity, "USD", source, dest, f"m{i}")])
            if ledger.execute(tx) == ExecuteResult.APPLIED:
                applied += 1
            assert ledger.total_supply("USD") == Decimal("0")
        note(f"applied {applied} of {len(moves)}")

        for wallet in FARMS + [BANK_WALLET]:
            assert ledger.get_balance(wallet, "USD") >= 0


class TestSessionConservation:
    """Whole sessions of loans, payments and defaults conserve every unit."""

    @given(session_script())
    @settings(max_examples=25, deadline=None)
    def test_session(self, script):
        service = FarmFinanceService(start_time=START)
        service.register_farm("farm_1", Decimal("30000"))
        service.register_farm("farm_2", Decimal("5000"))
        service.register_asset("farm_1", AssetKind.LAND, "North field", Decimal("80000"))
        service.register_asset("farm_2", AssetKind.VEHICLE, "Tractor", Decimal("25000"))

        for n, (action, farm, amount) in enumerate(script, start=1):
            if action == "income":
                service.add_money(farm, amount)
            elif action == "expense":
                service.add_money(farm, -min(amount, service.get_money(farm)))
            elif action == "loan":
                collateral = [a.symbol for a in service.eligible_collateral(farm).value]
                offer = service.quote_cash_loan(farm, amount, 5, collateral=collateral)
                if offer.ok:
                    service.execute(farm, IntentType.ACCEPT_OFFER, offer_id=offer.value.offer_id)
            elif action == "early":
                for deal_id, _, _ in service.deals(farm, active_only=True):
                    service.execute(farm, IntentType.EARLY_PAYMENT, deal_id=deal_id,
                                    amount=Decimal("500"))
            service.monthly_tick(month(n))

            report = service.ledger.verify_double_entry()
            for unit, supply in report['supplies'].items():
                assert supply == 0, unit
            for farm_id in service.farms:
                assert service.get_money(farm_id) >= 0
