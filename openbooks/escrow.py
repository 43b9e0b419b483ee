"""
escrow.py - Rental Escrow Facade

RentalEscrow drives the pure builders in units.rental against a live Ledger:
each call builds the transition from the ledger's current state and executes
it strictly, so any failure surfaces as its LedgerError subclass and leaves
the ledger untouched.

    escrow = RentalEscrow(ledger)
    escrow.initialize("001", "alice", "BOOK_moby_dick", "alice", "alice",
                      price_per_period=5, deposit_amount=20, currency="USD")
    escrow.request("001", "bob", rental_periods=3)
    escrow.accept("001")
    ledger.advance_time(ledger.current_time + timedelta(days=3))
    escrow.return_rental("001")
"""

from __future__ import annotations
from decimal import Decimal
from typing import List, Optional
import threading

from .core import PendingTransaction
from .custodian import Custodian, ESCROW_PROGRAM_ID
from .ledger import Ledger
from .units.rental import (
    EscrowRecord, CustodyPolicy,
    PERIOD_SECONDS, DEFAULT_CUSTODY_POLICY,
    rental_symbol, load_escrow_record, total_due, get_active_escrows,
    compute_escrow_initialize, compute_rental_request,
    compute_rental_acceptance, compute_rental_return,
)


class RentalEscrow:
    """
    Stateful entry point for rental escrows hosted on one Ledger.

    Calls are serialized with a lock, so at most one transition is built and
    executed at a time. Transitions built elsewhere against the same ledger
    are still guarded by the ledger's state freshness check.
    """

    def __init__(self, ledger: Ledger, program_id: str = ESCROW_PROGRAM_ID):
        self.ledger = ledger
        self.program_id = program_id
        self.verbose = ledger.verbose
        self._lock = threading.RLock()

    def _apply(self, pending: PendingTransaction, escrow_id: str) -> EscrowRecord:
        self.ledger.execute(pending, strict=True)
        record = load_escrow_record(self.ledger, rental_symbol(escrow_id))
        if self.verbose:
            print(f"[ESCROW] {record.symbol}: {pending.origin.event_type} -> {record.status.value}")
        return record

    def initialize(
        self,
        escrow_id: str,
        initializer: str,
        asset_symbol: str,
        asset_account: str,
        payout_account: str,
        price_per_period: Decimal,
        deposit_amount: Decimal,
        currency: str,
        period_seconds: int = PERIOD_SECONDS,
        custody_policy: CustodyPolicy = DEFAULT_CUSTODY_POLICY,
    ) -> EscrowRecord:
        """
        Open an escrow and take the book into custody.

        Registers the escrow's custodian wallet with the ledger first.
        Registration is idempotent and holds no value, so it is left in
        place if the transition itself is rejected.
        """
        with self._lock:
            pending = compute_escrow_initialize(
                self.ledger, escrow_id, initializer, asset_symbol,
                asset_account, payout_account,
                price_per_period, deposit_amount, currency,
                period_seconds=period_seconds,
                custody_policy=custody_policy,
                program_id=self.program_id,
            )
            self.ledger.register_custodian(Custodian.for_escrow(escrow_id, self.program_id))
            return self._apply(pending, escrow_id)

    def request(self, escrow_id: str, taker: str, rental_periods: int) -> EscrowRecord:
        with self._lock:
            pending = compute_rental_request(self.ledger, rental_symbol(escrow_id), taker, rental_periods)
            return self._apply(pending, escrow_id)

    def accept(self, escrow_id: str) -> EscrowRecord:
        """Collect total_due from the taker; raises InsufficientFunds if short."""
        with self._lock:
            pending = compute_rental_acceptance(self.ledger, rental_symbol(escrow_id))
            return self._apply(pending, escrow_id)

    def return_rental(self, escrow_id: str) -> EscrowRecord:
        """Settle and close; raises RentalPeriodNotOver before the unlock time."""
        with self._lock:
            pending = compute_rental_return(self.ledger, rental_symbol(escrow_id))
            return self._apply(pending, escrow_id)

    def record(self, escrow_id: str) -> EscrowRecord:
        return load_escrow_record(self.ledger, rental_symbol(escrow_id))

    def total_due(self, escrow_id: str) -> Decimal:
        return total_due(self.record(escrow_id))

    def active_escrows(self, wallet: Optional[str] = None) -> List[str]:
        return get_active_escrows(self.ledger, wallet)
