"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the bank ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. balances.py  - Non-negative balances, overdraft loans, single loan credit
2. transfers.py - Conservation across the transaction state machine
3. codec.py     - Snapshot round-trip and reference identity

These tests use hypothesis for property-based testing.
"""
