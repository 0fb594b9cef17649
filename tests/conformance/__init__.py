"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the farm finance engine.

The tests are organized by invariant:
1. conservation.py - Cash and assets are never created or destroyed
2. atomicity.py - All-or-nothing transactions and exclusive collateral
3. idempotency.py - Duplicate execution handling
4. canonicalization.py - Content-addressable intent identity
5. determinism.py - Same inputs, same session
6. temporal.py - Billing cycles and the default threshold
7. amortization_properties.py - Payment schedules and lease pricing bounds
8. credit_properties.py - Score bounds, monotonicity and tier policy

These tests use hypothesis for property-based testing.
"""
