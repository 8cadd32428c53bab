"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the IOU ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Cash is neither created nor destroyed
2. signer_completeness.py - Every participant signs
3. debt_monotonicity.py - Debts only shrink; zero only via PAY
4. idempotency.py - Duplicate notarization and recording
5. atomicity.py - All-or-nothing vault updates
6. canonicalization.py - Content-addressed transaction identity

These tests use hypothesis for property-based testing.
"""
