"""
Units module - ledger units for the farm finance engine.

- Deal units (loans and leases) carrying term sheet and progress
- Savings interest on positive farm cash balances
"""

from .deal import (
    DealKind,
    DealStatus,
    DealTerms,
    DealState,
    LeaseTerms,
    PledgedCollateral,
    MULTIPLIER_OPTIONS,
    LEASE_KINDS,
    TERMINAL_STATUSES,
    add_months,
    following_due_date,
    create_deal_unit,
    encumbered_assets,
    load_deal,
    remaining_months,
    to_state_dict,
)

from .savings import (
    SAVINGS_EVENT,
    SavingsEstimate,
    calculate_savings_interest,
    compute_savings_interest,
    estimate_savings,
)
