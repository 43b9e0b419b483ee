"""
ledger.py - Stateful Double-Entry Ledger

The Ledger is the escrow's hosting runtime and the only object that mutates
state. Escrow transitions are pure builders; this module applies what they
build.

Key responsibilities:
    - Implements LedgerView for read-only access by pure functions
    - Executes transactions atomically (every move and state change, or none)
    - Keeps wallet balances, unit definitions and program-owned custodian wallets
    - Refuses debits from a custodian wallet unless the move carries the
      custodian's signer seeds and the unit owning that custodian approves
      the whole transaction (its custody_rule)
    - Tracks logical time (the escrow clock) and the audit trail
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Set, Optional, Tuple, Any
import copy

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, InsufficientFunds, BalanceConstraintViolation,
    TransferRuleViolation, UnitNotRegistered, WalletNotRegistered, StaleState,
    # Helper functions
    _freeze_state,
)
from .custodian import Custodian, derive_custodian_address


class Ledger:
    """
    Double-entry ledger with full validation and an audit trail.

    Design Principles:
        - Always validates: registration, timestamps, transfer rules,
          custodian signatures, balance limits and state freshness are
          checked before anything is applied.
        - Always logs: every applied transaction lands in transaction_log.

    Thread Safety:
        Not thread-safe. RentalEscrow serializes its own calls; other callers
        sharing a Ledger must do the same.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(cash("USD", "US Dollar"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USD", "alice", "bob", "payment_001")
        ])
        result = ledger.execute(tx)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print registrations, applied and rejected transactions
            test_mode: Allow set_balance() for fixtures
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        # custodian wallet id -> signer seeds it was derived from
        self.custodian_wallets: Dict[str, Tuple[str, ...]] = {}
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Balance of a unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Deep copy of a unit's state; safe for the caller to mutate.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        state = self.units[unit_symbol].state
        return copy.deepcopy(state) if state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """All non-zero positions for a unit, from the inverted index."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """All registered wallet ids."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """All registered unit symbols, sorted."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """All balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def is_custodian(self, wallet_id: str) -> bool:
        """True for program-owned wallets registered with register_custodian()."""
        return wallet_id in self.custodian_wallets

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit's balances across all wallets (sorted for determinism).

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Check that every unit's total supply is what it should be.

        Escrow transitions only move value between wallets, so supplies stay
        fixed across initialize/request/accept/return.

        Returns:
            {'valid': bool, 'supplies': {unit: total}, 'discrepancies': [...]}

        Example:
            before = ledger.verify_double_entry()['supplies']
            escrow.accept("RENTAL_001")
            assert ledger.verify_double_entry(before)['valid']
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': Decimal("0"),
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_custodian(self, custodian: Custodian) -> str:
        """
        Register a custodian's program-owned wallet.

        Idempotent for the same custodian. Once registered, the wallet can
        only be debited by moves signed with the custodian's seeds, inside
        a transaction approved by the custody_rule of the unit whose state
        names the wallet as its custodian.

        Raises:
            ValueError: If the wallet id is already taken by an ordinary wallet
        """
        wallet_id = custodian.wallet_id
        if wallet_id in self.custodian_wallets:
            return wallet_id
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered as an ordinary wallet")
        self.register_wallet(wallet_id)
        self.custodian_wallets[wallet_id] = custodian.signer_seeds
        if self.verbose:
            print(f"Registered custodian: {wallet_id} seeds={custodian.signer_seeds}")
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly. Test mode only.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int((self._current_time - datetime(1970, 1, 1)).total_seconds() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction, strict: bool = False) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Every move and state change is validated before any of them is
        applied. A pending transaction whose intent_id was already applied is
        not applied again.

        Args:
            pending: PendingTransaction to execute
            strict: Raise the validation error instead of returning REJECTED

        Returns:
            ExecuteResult.APPLIED, ALREADY_APPLIED or REJECTED

        Raises:
            LedgerError: Only when strict=True and validation fails; the
                concrete subclass names the failure (InsufficientFunds,
                StaleState, TransferRuleViolation, ...)
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        # Units created by this transaction are registered for validation and
        # removed again if validation fails.
        error: Optional[LedgerError] = None
        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol in self.units:
                error = LedgerError(f"unit already registered: {unit.symbol}")
                break
            self.units[unit.symbol] = unit
            newly_registered_units.append(unit.symbol)

        if error is None:
            error = self._validate_pending(pending)
        if error is not None:
            for sym in newly_registered_units:
                del self.units[sym]
            if self.verbose:
                print(f"✗ REJECTED: {error}")
            if strict:
                raise error
            return ExecuteResult.REJECTED

        if self.verbose:
            for sym in newly_registered_units:
                unit = self.units[sym]
                print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(repr(tx))
            print("✓ APPLIED")
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """
        Validate a pending transaction against all constraints.

        Checks, in order:
        1. Timestamp (must not be from the future)
        2. Unit and wallet registration
        3. Custodian signatures on moves debiting custodian wallets or
           signed by one
        4. Transfer rules
        5. State freshness (old_state must equal the live state)
        6. Custody rules: every custodian that signed must be named by a
           unit whose state changes here and whose custody_rule accepts
           the transaction
        7. Balance limits on the net effect of all moves

        Returns:
            None when valid, otherwise the LedgerError describing the failure
        """
        if pending.timestamp > self._current_time:
            return LedgerError(
                f"future timestamp: {pending.timestamp} > {self._current_time}"
            )

        signers: Set[str] = set()
        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return UnitNotRegistered(f"unit not registered: {move.unit_symbol}")
            if not self.is_registered(move.source):
                return WalletNotRegistered(f"wallet not registered: {move.source}")
            if not self.is_registered(move.dest):
                return WalletNotRegistered(f"wallet not registered: {move.dest}")

            if move.source in self.custodian_wallets:
                seeds = (move.metadata or {}).get('signer_seeds')
                if not seeds or derive_custodian_address(*seeds) != move.source:
                    return TransferRuleViolation(
                        f"{move.unit_symbol}: debit from custodian {move.source} not signed by its seeds"
                    )
            if move.authority is not None:
                seeds = move.metadata.get('signer_seeds')
                if not seeds or derive_custodian_address(*seeds) != move.authority:
                    return TransferRuleViolation(
                        f"{move.unit_symbol}: signature of {move.authority} does not match its seeds"
                    )
                signers.add(move.authority)
            elif move.source in self.custodian_wallets:
                signers.add(move.source)

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return e

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return UnitNotRegistered(f"unit not registered: {sc.unit}")
            if sc.old_state is None:
                continue
            current_state = self.units[sc.unit].state
            old_state = sc.old_state if isinstance(sc.old_state, dict) else {}
            for key in set(old_state.keys()) | set(current_state.keys()):
                if old_state.get(key) != current_state.get(key):
                    return StaleState(
                        f"{sc.unit}.{key}: expected {old_state.get(key)!r}, found {current_state.get(key)!r}"
                    )

        if signers:
            error = self._check_custody(pending, signers)
            if error is not None:
                return error

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it issues and extinguishes units.
        for (wallet, unit_sym), delta in sorted(net.items()):
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return InsufficientFunds(
                    f"{wallet} {unit_sym}: balance {current} cannot cover {-delta} (min {unit.min_balance})"
                )
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(
                    f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"
                )

        return None

    def _check_custody(self, pending: PendingTransaction, signers: Set[str]) -> Optional[LedgerError]:
        """
        Bind custodian-signed moves to a transition of the unit owning the custodian.

        Valid seeds only show which custodian is meant; anyone can derive
        them. Spending is allowed only when the same transaction changes the
        state of a unit naming that custodian and the unit's custody_rule
        accepts the transaction as a whole.
        """
        approved: Set[str] = set()
        for sc in pending.state_changes:
            unit = self.units[sc.unit]
            if unit.custody_rule is None:
                continue
            owned = unit.state.get('custodian')
            if owned not in signers:
                continue
            try:
                unit.custody_rule(self, pending, sc)
            except LedgerError as e:
                return e
            approved.add(owned)

        unbound = sorted(signers - approved)
        if unbound:
            return TransferRuleViolation(
                f"custodian {unbound[0]} signed outside a transition of the unit that owns it"
            )
        return None

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> wallet index in step; zero balances are dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to balances with unit rounding and index updates."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)

            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Fully independent deep copy of this ledger.

        Includes units and their state, wallets, custodian registrations,
        balances, the transaction log and the clock.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode

        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.custodian_wallets = dict(self.custodian_wallets)
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

    def clone_at(self, target_time: datetime) -> Ledger:
        """
        Reconstruct the ledger as it stood at a past time.

        Clones the current state, then walks the log backwards undoing every
        transaction executed after target_time: moves are reversed, unit
        state is restored from old_state, and units created by those
        transactions are removed.

        Raises:
            ValueError: If target_time is in the future
        """
        if target_time > self._current_time:
            raise ValueError(f"Target time {target_time} is in the future")

        cloned = self.clone()
        cloned._current_time = target_time
        cloned.transaction_log = [
            tx for tx in self.transaction_log
            if tx.execution_time <= target_time
        ]
        cloned.seen_intent_ids = {tx.intent_id for tx in cloned.transaction_log}
        cloned._next_sequence = len(cloned.transaction_log)

        for tx in reversed(self.transaction_log):
            if tx.execution_time <= target_time:
                break

            for move in tx.moves:
                unit = cloned.units.get(move.unit_symbol)
                if unit is None:
                    raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found in cloned ledger")
                new_src = unit.round(cloned.balances[move.source][move.unit_symbol] + move.quantity)
                new_dst = unit.round(cloned.balances[move.dest][move.unit_symbol] - move.quantity)
                cloned.balances[move.source][move.unit_symbol] = new_src
                cloned.balances[move.dest][move.unit_symbol] = new_dst
                cloned._update_position_index(move.source, move.unit_symbol, new_src)
                cloned._update_position_index(move.dest, move.unit_symbol, new_dst)

            for sc in tx.state_changes:
                if sc.unit in cloned.units:
                    restored = copy.deepcopy(sc.old_state if isinstance(sc.old_state, dict) else {})
                    cloned.units[sc.unit] = replace(
                        cloned.units[sc.unit], _frozen_state=_freeze_state(restored)
                    )

            for unit in tx.units_to_create:
                cloned.units.pop(unit.symbol, None)
                for wallet in cloned.registered_wallets:
                    cloned.balances[wallet].pop(unit.symbol, None)
                cloned._positions_by_unit.pop(unit.symbol, None)

        return cloned
