"""
lifecycle_engine.py - Lifecycle Engine

Polls registered contracts so time-driven transitions happen without anyone
calling them, e.g. settling every rental whose time lock has expired.

Execution order each step():
1. Advance ledger time
2. Poll the contract registered for each unit's type
3. Repeat until a pass executes nothing (cascading effects)

The transaction log is the audit trail; there is no separate event status.
"""

from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional

from .core import (
    PendingTransaction, Transaction,
    ExecuteResult, LedgerError,
    SmartContract,
)
from .ledger import Ledger


class LifecycleEngine:
    """
    Smart contract polling over a Ledger.

    Example:
        engine = LifecycleEngine(ledger)
        engine.register(UNIT_TYPE_RENTAL_ESCROW, rental_escrow_contract)
        engine.run([datetime(2025, 1, 2), datetime(2025, 1, 4)])
    """

    def __init__(
        self,
        ledger: Ledger,
        contracts: Optional[Dict[str, SmartContract]] = None,
    ):
        """
        Args:
            ledger: The ledger to operate on
            contracts: unit_type -> contract
        """
        self.ledger = ledger
        self.contracts: Dict[str, SmartContract] = contracts or {}

        self.max_passes = 10  # Safety limit for cascading events
        self.verbose = ledger.verbose

    def register(self, unit_type: str, contract: SmartContract) -> None:
        """
        Register a contract for a unit type.

        Args:
            unit_type: Type of unit (e.g., UNIT_TYPE_RENTAL_ESCROW)
            contract: Callable or object with check_lifecycle
        """
        self.contracts[unit_type] = contract

    def step(self, timestamp: datetime) -> List[Transaction]:
        """
        Advance time and execute everything the contracts say is due.

        Returns:
            Transactions executed during this step

        Raises:
            LedgerError: If a contract returns something other than a
                PendingTransaction, or the ledger rejects what it returned
        """
        self.ledger.advance_time(timestamp)
        executed: List[Transaction] = []

        for _ in range(self.max_passes):
            pass_executed = self._process_smart_contracts(timestamp)
            executed.extend(pass_executed)
            if not pass_executed:
                break

        return executed

    def _process_smart_contracts(self, timestamp: datetime) -> List[Transaction]:
        executed: List[Transaction] = []

        # Sorted for deterministic iteration order
        for symbol in self.ledger.list_units():
            unit = self.ledger.get_unit(symbol)
            contract = self.contracts.get(unit.unit_type)
            if not contract:
                continue

            if hasattr(contract, 'check_lifecycle'):
                pending = contract.check_lifecycle(self.ledger, symbol, timestamp)
            else:
                pending = contract(self.ledger, symbol, timestamp)

            if not isinstance(pending, PendingTransaction):
                raise LedgerError(
                    f"Contract for {symbol} must return PendingTransaction, got {type(pending)}"
                )
            if pending.is_empty():
                continue

            if self.verbose:
                print(f"[LIFECYCLE] {symbol} at {timestamp}: {pending.origin}")

            exec_result = self.ledger.execute(pending)
            if exec_result == ExecuteResult.REJECTED:
                raise LedgerError(f"Lifecycle event failed for {symbol}: contract execution rejected")
            if exec_result == ExecuteResult.APPLIED:
                executed.append(self.ledger.transaction_log[-1])

        return executed

    def run(self, timestamps: List[datetime]) -> List[Transaction]:
        """Step through timestamps in order; returns every executed transaction."""
        all_transactions: List[Transaction] = []
        for timestamp in timestamps:
            all_transactions.extend(self.step(timestamp))
        return all_transactions
