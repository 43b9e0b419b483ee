"""
Idempotency Conformance Tests

INVARIANT: An intent is applied at most once.

    execute(T) == APPLIED  ⟹  execute(T) == ALREADY_APPLIED thereafter

A repeated or raced transition never pays out twice.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import timedelta
from decimal import Decimal

from openbooks import (
    RentalEscrow, ExecuteResult,
    compute_rental_acceptance, compute_rental_return, rental_symbol,
)
from tests.conftest import START, make_escrow_ledger, open_escrow


SYMBOL = rental_symbol("001")


class TestIdempotencyProperties:

    @given(repeats=st.integers(min_value=2, max_value=6))
    @settings(max_examples=20, deadline=None)
    def test_repeated_accept_debits_once(self, repeats):
        ledger = make_escrow_ledger(Decimal("100"))
        escrow = RentalEscrow(ledger)
        open_escrow(escrow)
        escrow.request("001", "bob", 3)

        pending = compute_rental_acceptance(ledger, SYMBOL)
        results = [ledger.execute(pending) for _ in range(repeats)]

        assert results[0] == ExecuteResult.APPLIED
        assert all(r == ExecuteResult.ALREADY_APPLIED for r in results[1:])
        assert ledger.get_balance("bob", "USD") == Decimal("65")

    @given(repeats=st.integers(min_value=2, max_value=6))
    @settings(max_examples=20, deadline=None)
    def test_repeated_return_pays_once(self, repeats):
        ledger = make_escrow_ledger()
        escrow = RentalEscrow(ledger)
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        escrow.accept("001")
        ledger.advance_time(START + timedelta(days=3))

        pending = compute_rental_return(ledger, SYMBOL)
        for _ in range(repeats):
            ledger.execute(pending)

        assert ledger.get_balance("alice_payout", "USD") == Decimal("15")
        assert ledger.get_balance("bob", "USD") == Decimal("20")
        assert len([tx for tx in ledger.transaction_log if tx.origin.event_type == "RETURN"]) == 1
