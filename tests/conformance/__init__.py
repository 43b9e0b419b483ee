"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the rental escrow.

The tests are organized by invariant:
1. test_conservation.py - Funds and the book are never created or lost
2. test_atomicity.py - Transitions are all-or-nothing
3. test_idempotency.py - Duplicate execution handling
4. test_determinism.py - Reproducible behavior
5. test_temporal.py - Time lock and clock ordering

These tests use hypothesis for property-based testing.
"""
