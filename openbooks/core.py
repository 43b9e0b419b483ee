"""
Core types and pure functions for the rental escrow ledger.

This module holds the building blocks everything else is written against:
1. Protocols: LedgerView (read-only access) and SmartContract (polling)
2. Immutable records: Move, PendingTransaction, Transaction, Unit, UnitStateChange
3. Exceptions: LedgerError and the escrow-specific failures
4. Type aliases: Positions, BalanceMap, UnitState
5. Unit factories: cash()

Nothing in this module mutates ledger state. Contracts read a LedgerView and
describe what should happen as a PendingTransaction; only Ledger.execute()
applies it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Amounts are exact integers carried as Decimal. The context is set once at
# import time; nothing else in the package touches the global context.
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and extinguishment. Exempt from balance limits.
SYSTEM_WALLET = "system"

# Unit type constants (plain strings, matched by LifecycleEngine registrations).
UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_BOOK = "BOOK"
UNIT_TYPE_RENTAL_ESCROW = "RENTAL_ESCROW"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_DOWN,
    UNIT_TYPE_BOOK: ROUND_DOWN,
    UNIT_TYPE_RENTAL_ESCROW: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet id -> quantity of one unit
Positions = Dict[str, Decimal]

# unit symbol -> quantity in one wallet
BalanceMap = Dict[str, Decimal]

# Unit-specific state (term sheet, lifecycle fields, locks)
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Contracts, transfer rules and escrow builders only ever receive a
    LedgerView. The Ledger class implements it (and adds mutators); tests use
    FakeView, which has no mutators at all.
    """

    @property
    def current_time(self) -> datetime:
        """Current logical time. This is the escrow's clock."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Balance of a unit in a wallet (Decimal("0") when nothing is held)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """A copy of the unit's state dictionary."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """All non-zero holdings of a unit, keyed by wallet."""
        ...

    def list_wallets(self) -> Set[str]:
        """All registered wallet ids."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """The Unit definition for a symbol."""
        ...


class SmartContract(Protocol):
    """
    Polling contract used by LifecycleEngine.

    Called once per unit of the registered type on every engine pass; returns
    a PendingTransaction (possibly empty) describing what is due.
    """

    def check_lifecycle(
        self,
        view: LedgerView,
        symbol: str,
        timestamp: datetime,
    ) -> 'PendingTransaction':
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of Ledger.execute().

    APPLIED: validated and applied.
    ALREADY_APPLIED: the same intent_id was applied before; nothing changed.
    REJECTED: validation failed; nothing changed.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Where a transaction came from, for the audit trail."""
    USER_ACTION = "user_action"     # Manual, outside any contract
    CONTRACT = "contract"           # Escrow transition or other contract call
    LIFECYCLE = "lifecycle"         # Produced by LifecycleEngine polling
    SYSTEM = "system"               # Issuance and setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger and escrow errors."""
    pass


class InsufficientFunds(LedgerError):
    """A move would take a wallet below the unit's minimum balance."""
    pass


class BalanceConstraintViolation(LedgerError):
    """A move would take a wallet above the unit's maximum balance."""
    pass


class TransferRuleViolation(LedgerError):
    """A move breaks the unit's transfer rule or lacks custodian authority."""
    pass


class UnitNotRegistered(LedgerError):
    """The unit symbol is unknown to the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """The wallet id is unknown to the ledger."""
    pass


class StaleState(LedgerError):
    """A state change was built against a unit state that has since changed."""
    pass


class InvalidStateTransition(LedgerError):
    """An escrow transition was attempted from the wrong state."""
    pass


class RentalPeriodNotOver(LedgerError):
    """Return attempted before the rental time lock expired."""
    pass


class AssetNotSingleton(LedgerError):
    """The asset account does not hold exactly one unit of the asset."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Provenance of a transaction.

    Attributes:
        origin_type: Broad category (CONTRACT, LIFECYCLE, ...)
        source_id: Program or user that produced it
        unit_symbol: Unit the transaction is about, if any
        event_type: Transition name (e.g. "INITIALIZE", "RETURN")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Before/after snapshot of one unit's state.

    old_state is checked against the live state at execution time, so a
    change built from an outdated view is rejected instead of overwriting
    a newer state.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Map of field -> (old, new) for fields that differ."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of a unit between two wallets.

    Attributes:
        quantity: Amount moved; finite, non-zero Decimal.
        unit_symbol: Unit being moved ("USD", "BOOK_moby_dick", ...).
        source: Wallet debited.
        dest: Wallet credited.
        contract_id: Identifier of the step that produced the move.
        metadata: Extra data. Custodian moves carry 'authority' and
            'signer_seeds' here; the ledger verifies them.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    @property
    def authority(self) -> Optional[str]:
        """Custodian wallet that signed this move, if any."""
        if not self.metadata:
            return None
        return self.metadata.get('authority')

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("35.00") and Decimal("35") agree."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Deterministic serialization used for intent hashing.

    Independent of dict insertion order and Decimal exponent.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "<" + ",".join(_canonicalize(item) for item in sorted(value, key=str)) + ">"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = ()
) -> str:
    """
    Content hash of a transaction's intent.

    Built only from moves, state changes, origin and created units, never
    from timestamps, so the same intent always hashes the same. The ledger
    uses it to refuse applying one intent twice.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    )

    parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}|{_canonicalize(unit.state)}")

    for m in sorted_moves:
        parts.append(
            f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}"
        )

    for sc in sorted(state_changes, key=lambda s: s.unit):
        parts.append(
            f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}"
        )

    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution: what a contract wants to happen.

    Escrow transitions build one of these from a LedgerView and hand it to
    Ledger.execute(), which either applies all of it or none of it.

    Attributes:
        moves: Transfers between wallets
        state_changes: Unit state snapshots (old and new)
        origin: Who produced it and why
        timestamp: Ledger time when it was built
        units_to_create: Units registered as part of the same transaction
        intent_id: Content hash (computed when not given)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """True when there is nothing to move, change or create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied so later edits to the caller's dicts
    cannot leak into the transaction.

    Example:
        old = view.get_unit_state("RENTAL_001")
        new = {**old, "status": "requested", "taker": "bob"}
        tx = build_transaction(view, [], [UnitStateChange("RENTAL_001", old, new)])
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.CONTRACT,
            source_id="contract",
        )

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """A PendingTransaction with nothing in it, for contracts with nothing due."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.CONTRACT, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed transaction: what actually happened.

    Created only by Ledger.execute(). Carries everything from the pending
    transaction plus execution identifiers for ordering and audit.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime           # When the PendingTransaction was built
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime      # When the ledger applied it
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.units_to_create:
            lines.append(f"├{bar}┤")
            for unit in self.units_to_create:
                lines.append(f"│{pad('   + ' + unit.symbol + ' (' + unit.name + ')')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}')}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.unit + ']')}│")
                for name, (old_val, new_val) in sorted(sc.changed_fields().items()):
                    lines.append(f"│{pad(f'      {name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# Transfer rules raise TransferRuleViolation for moves they refuse.
TransferRule = Callable[[LedgerView, Move], None]

# Custody rules vet a whole transaction that spends from a custodian the unit
# owns. They receive the unit's own state change and raise LedgerError to refuse.
CustodyRule = Callable[[LedgerView, PendingTransaction, UnitStateChange], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Sorted (key, value) tuple form of a state dict, for storage on a frozen Unit."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Inverse of _freeze_state."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit the ledger can hold.

    Attributes:
        symbol: Identifier ("USD", "BOOK_moby_dick", "RENTAL_001").
        name: Human-readable name.
        unit_type: One of the UNIT_TYPE_* constants.
        min_balance: Lowest balance any wallet may hold.
        max_balance: Highest balance any wallet may hold.
        decimal_places: Rounding precision (None = no rounding).
        transfer_rule: Optional validator run on every move of this unit.
        custody_rule: Optional validator for transactions spending from the
            custodian named in this unit's state.
        _frozen_state: Unit state in frozen form; read it through .state.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    custody_rule: Optional[CustodyRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """The unit state as a fresh dict."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Quantize to decimal_places using the unit type's rounding mode."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)


def to_amount(value: Any, name: str = "amount") -> Decimal:
    """
    Coerce an int or Decimal to a non-negative integral Decimal.

    Escrow amounts are whole base units; fractional or negative values are
    rejected rather than rounded.
    """
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
        raise ValueError(f"{name} must be an int or Decimal, got {type(value).__name__}")
    amount = Decimal(value)
    if not amount.is_finite():
        raise ValueError(f"{name} must be finite, got {value}")
    if amount != amount.to_integral_value():
        raise ValueError(f"{name} must be a whole number of base units, got {value}")
    if amount < 0:
        raise ValueError(f"{name} cannot be negative, got {value}")
    return amount


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def cash(symbol: str, name: str, decimal_places: int = 0) -> Unit:
    """
    Create a currency unit for rent and deposits.

    Balances cannot go below zero, so a transfer larger than the payer's
    balance is rejected with InsufficientFunds.

    Args:
        symbol: Currency code (e.g., "USD", "SOL").
        name: Full name (e.g., "US Dollar").
        decimal_places: Precision of stored balances (default 0: base units).
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET})
    )
