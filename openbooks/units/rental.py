"""
rental.py - Rental Escrow Records and Transitions

A rental escrow lets a book owner (the initializer) rent a book token to a
taker for a fee, with a program-derived custodian holding the book and the
money in between.

=== STATE MACHINE ===

    CREATED --request--> REQUESTED --accept--> ACCEPTED --return--> CLOSED

Transitions only move forward. Each one is built here as a PendingTransaction
from a read-only view and applied atomically by Ledger.execute().

=== CUSTODY ===

    initialize: book      asset_account -> custodian      (book locked)
    request:    (no value moves)
    accept:     funds     taker -> custodian              total_due
                book      custodian -> taker              (DELIVER policy only)
    return:     book      custodian|taker -> asset_account
                rent      custodian -> payout_account     price * periods
                deposit   custodian -> taker              deposit
                (book unlocked, record closed)

Custodian-signed moves are only valid inside the record's own accept or
return transaction; record_custody_rule rebuilds the transition from the
live record and refuses anything else.

=== ARITHMETIC ===

    rent      = price_per_period * rental_periods
    total_due = rent + deposit_amount
    unlock    = rental_start_time + rental_periods * period_seconds

All amounts are whole base units; nothing is rounded. The time lock is
inclusive: return is allowed from the unlock instant onwards.

=== ARCHITECTURE ===

1. EscrowRecord: frozen snapshot of one agreement
2. load_escrow_record / to_state_dict: the only bridge to unit state
3. calculate_*: pure arithmetic, no view
4. compute_*: transition builders (view in, PendingTransaction out)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    InvalidStateTransition, RentalPeriodNotOver, TransferRuleViolation,
    UnitNotRegistered, WalletNotRegistered,
    SYSTEM_WALLET, UNIT_TYPE_CASH, UNIT_TYPE_BOOK, UNIT_TYPE_RENTAL_ESCROW,
    build_transaction, empty_pending_transaction, to_amount, _freeze_state,
)
from ..custodian import (
    Custodian, ESCROW_PROGRAM_ID, CUSTODIAN_PREFIX,
    transfer_asset_custody, transfer_funds,
)


# =============================================================================
# CONSTANTS
# =============================================================================

# Length of one rental period. One day unless an escrow says otherwise.
PERIOD_SECONDS = 86_400

RENTAL_PREFIX = "RENTAL_"


# =============================================================================
# ENUMS
# =============================================================================

class EscrowStatus(str, Enum):
    """Lifecycle status of a rental escrow."""
    CREATED = "created"       # Book in custody, no taker yet
    REQUESTED = "requested"   # Taker and rental length bound
    ACCEPTED = "accepted"     # Funds collected, rental running
    CLOSED = "closed"         # Everything paid out, record inactive


class CustodyPolicy(str, Enum):
    """Where the book sits while the rental runs."""
    HOLD = "hold"         # Stays with the custodian throughout
    DELIVER = "deliver"   # Goes to the taker at accept, under custodian lock


DEFAULT_CUSTODY_POLICY = CustodyPolicy.HOLD

# status -> the only status it may move to
NEXT_STATUS: Dict[EscrowStatus, Optional[EscrowStatus]] = {
    EscrowStatus.CREATED: EscrowStatus.REQUESTED,
    EscrowStatus.REQUESTED: EscrowStatus.ACCEPTED,
    EscrowStatus.ACCEPTED: EscrowStatus.CLOSED,
    EscrowStatus.CLOSED: None,
}


# =============================================================================
# ESCROW RECORD
# =============================================================================

@dataclass(frozen=True, slots=True)
class EscrowRecord:
    """
    Immutable snapshot of one rental agreement.

    Terms (price, deposit, currency, period length, custody policy) are fixed
    at initialize. taker and rental_periods are bound by request;
    rental_start_time and accepted by accept.
    """
    escrow_id: str
    asset_symbol: str
    initializer: str
    initializer_asset_account: str
    initializer_payout_account: str
    custodian: str
    program_id: str
    price_per_period: Decimal
    deposit_amount: Decimal
    currency: str
    period_seconds: int
    custody_policy: CustodyPolicy
    status: EscrowStatus
    created_time: datetime
    taker: Optional[str] = None
    rental_periods: int = 0
    rental_start_time: Optional[datetime] = None
    accepted: bool = False
    closed_time: Optional[datetime] = None

    @property
    def symbol(self) -> str:
        return rental_symbol(self.escrow_id)

    def custodian_authority(self) -> Custodian:
        return Custodian.for_escrow(self.escrow_id, self.program_id)


def rental_symbol(escrow_id: str) -> str:
    """Unit symbol of the record for escrow_id."""
    return f"{RENTAL_PREFIX}{escrow_id}"


def to_state_dict(record: EscrowRecord) -> Dict[str, Any]:
    """Unit state for a record (enums stored by value)."""
    return {
        'escrow_id': record.escrow_id,
        'asset_symbol': record.asset_symbol,
        'initializer': record.initializer,
        'initializer_asset_account': record.initializer_asset_account,
        'initializer_payout_account': record.initializer_payout_account,
        'custodian': record.custodian,
        'program_id': record.program_id,
        'price_per_period': record.price_per_period,
        'deposit_amount': record.deposit_amount,
        'currency': record.currency,
        'period_seconds': record.period_seconds,
        'custody_policy': record.custody_policy.value,
        'status': record.status.value,
        'created_time': record.created_time,
        'taker': record.taker,
        'rental_periods': record.rental_periods,
        'rental_start_time': record.rental_start_time,
        'accepted': record.accepted,
        'closed_time': record.closed_time,
    }


def load_escrow_record(view: LedgerView, symbol: str) -> EscrowRecord:
    """
    Read a rental record from the view.

    Raises:
        UnitNotRegistered: If no unit has this symbol (Ledger views)
        ValueError: If the unit is not a rental escrow record
    """
    raw = view.get_unit_state(symbol)
    if not raw.get('escrow_id'):
        raise ValueError(f"{symbol} is not a rental escrow record")

    return EscrowRecord(
        escrow_id=raw['escrow_id'],
        asset_symbol=raw['asset_symbol'],
        initializer=raw['initializer'],
        initializer_asset_account=raw['initializer_asset_account'],
        initializer_payout_account=raw['initializer_payout_account'],
        custodian=raw['custodian'],
        program_id=raw.get('program_id', ESCROW_PROGRAM_ID),
        price_per_period=Decimal(raw['price_per_period']),
        deposit_amount=Decimal(raw['deposit_amount']),
        currency=raw['currency'],
        period_seconds=int(raw.get('period_seconds', PERIOD_SECONDS)),
        custody_policy=CustodyPolicy(raw.get('custody_policy', DEFAULT_CUSTODY_POLICY.value)),
        status=EscrowStatus(raw['status']),
        created_time=raw['created_time'],
        taker=raw.get('taker'),
        rental_periods=int(raw.get('rental_periods', 0)),
        rental_start_time=raw.get('rental_start_time'),
        accepted=bool(raw.get('accepted', False)),
        closed_time=raw.get('closed_time'),
    )


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def calculate_rent(price_per_period: Decimal, rental_periods: int) -> Decimal:
    """rent = price_per_period * rental_periods, exact."""
    return to_amount(price_per_period, "price_per_period") * rental_periods


def calculate_total_due(
    price_per_period: Decimal,
    rental_periods: int,
    deposit_amount: Decimal,
) -> Decimal:
    """
    Amount the taker pays into custody at accept.

    Example:
        calculate_total_due(Decimal("5"), 3, Decimal("20"))  # Decimal("35")
    """
    return calculate_rent(price_per_period, rental_periods) + to_amount(deposit_amount, "deposit_amount")


def calculate_unlock_time(
    rental_start_time: datetime,
    rental_periods: int,
    period_seconds: int = PERIOD_SECONDS,
) -> datetime:
    """
    Earliest time the rental can be returned.

    A rental running past the last representable datetime never unlocks:
    datetime.max (in the start time's timezone) is returned for it.
    """
    try:
        return rental_start_time + timedelta(seconds=rental_periods * period_seconds)
    except OverflowError:
        return _never(rental_start_time)


def _never(moment: datetime) -> datetime:
    return datetime.max.replace(tzinfo=moment.tzinfo)


def is_rental_period_over(
    rental_start_time: datetime,
    rental_periods: int,
    now: datetime,
    period_seconds: int = PERIOD_SECONDS,
) -> bool:
    """True once now has reached the unlock time (boundary included)."""
    return now >= calculate_unlock_time(rental_start_time, rental_periods, period_seconds)


def total_due(record: EscrowRecord) -> Decimal:
    """
    total_due for a record.

    Raises:
        InvalidStateTransition: If the rental length has not been requested yet
    """
    if record.status == EscrowStatus.CREATED:
        raise InvalidStateTransition(
            f"Escrow {record.escrow_id} has no rental terms yet; total due is undefined"
        )
    return calculate_total_due(record.price_per_period, record.rental_periods, record.deposit_amount)


# =============================================================================
# HELPERS
# =============================================================================

def _require_status(record: EscrowRecord, expected: EscrowStatus, action: str) -> None:
    if record.status != expected:
        raise InvalidStateTransition(
            f"Cannot {action} escrow {record.escrow_id}: status is "
            f"{record.status.value}, expected {expected.value}"
        )


def _advance(record: EscrowRecord, **changes: Any) -> EscrowRecord:
    """Copy of record moved to its next status with changes applied."""
    next_status = NEXT_STATUS[record.status]
    if next_status is None:
        raise InvalidStateTransition(f"Escrow {record.escrow_id} is closed")
    return replace(record, status=next_status, **changes)


def _require_wallet(view: LedgerView, wallet: str, role: str) -> None:
    if not wallet or wallet not in view.list_wallets():
        raise WalletNotRegistered(f"{role} wallet {wallet!r} not registered")


def _unit_exists(view: LedgerView, symbol: str) -> bool:
    try:
        view.get_unit(symbol)
    except UnitNotRegistered:
        return False
    return True


def _origin(record: EscrowRecord, event_type: str, origin_type: OriginType = OriginType.CONTRACT) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=origin_type,
        source_id=record.program_id,
        unit_symbol=record.symbol,
        event_type=event_type,
    )


def record_transfer_rule(view: LedgerView, move: Move) -> None:
    """Record tokens are only ever issued from or extinguished to the system wallet."""
    if SYSTEM_WALLET not in (move.source, move.dest):
        raise TransferRuleViolation(
            f"Rental record {move.unit_symbol} cannot move between {move.source} and {move.dest}"
        )


def record_custody_rule(view: LedgerView, pending: PendingTransaction, change: UnitStateChange) -> None:
    """
    Let the custodian spend only inside this record's own accept or return.

    The transaction must be exactly what compute_rental_acceptance or
    compute_rental_return builds from the live record: the same moves and
    the same state changes, with the record's start or close time stamped
    at the transaction's timestamp.

    Raises:
        TransferRuleViolation: For any other use of the custodian
        RentalPeriodNotOver: If a return is attempted before the unlock time
    """
    symbol = change.unit
    record = load_escrow_record(view, symbol)
    if record.status == EscrowStatus.REQUESTED:
        expected, stamp = compute_rental_acceptance(view, symbol), 'rental_start_time'
    elif record.status == EscrowStatus.ACCEPTED:
        expected, stamp = compute_rental_return(view, symbol), 'closed_time'
    else:
        raise TransferRuleViolation(
            f"Custodian of escrow {record.escrow_id} cannot spend while {record.status.value}"
        )

    if pending.moves != expected.moves:
        raise TransferRuleViolation(
            f"Custodian of escrow {record.escrow_id} signed moves outside its "
            f"{NEXT_STATUS[record.status].value} transition"
        )

    wanted = {sc.unit: sc.new_state for sc in expected.state_changes}
    wanted[symbol] = {**wanted[symbol], stamp: pending.timestamp}
    given = {sc.unit: sc.new_state for sc in pending.state_changes}
    if len(pending.state_changes) != len(expected.state_changes) or given != wanted:
        raise TransferRuleViolation(
            f"Escrow {record.escrow_id}: state changes do not match its "
            f"{NEXT_STATUS[record.status].value} transition"
        )


def create_rental_record_unit(record: EscrowRecord) -> Unit:
    """Unit holding the record's state; its single token sits with the initializer."""
    return Unit(
        symbol=record.symbol,
        name=f"Rental escrow: {record.asset_symbol} ({record.initializer})",
        unit_type=UNIT_TYPE_RENTAL_ESCROW,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=record_transfer_rule,
        custody_rule=record_custody_rule,
        _frozen_state=_freeze_state(to_state_dict(record)),
    )


# =============================================================================
# TRANSITIONS
# =============================================================================

def compute_escrow_initialize(
    view: LedgerView,
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
    program_id: str = ESCROW_PROGRAM_ID,
) -> PendingTransaction:
    """
    Open a rental escrow and move the book into custody.

    The custodian wallet (Custodian.for_escrow(escrow_id).wallet_id) must be
    registered with the ledger before the result is executed; RentalEscrow
    does this.

    Args:
        view: Read-only ledger access
        escrow_id: Caller-chosen identifier, unique per ledger
        initializer: Book owner opening the escrow; receives the record token
        asset_symbol: Book token being rented
        asset_account: Wallet holding the book now
        payout_account: Wallet receiving the rent
        price_per_period: Rent per period, whole base units
        deposit_amount: Refundable deposit, whole base units
        currency: Cash unit for rent and deposit
        period_seconds: Length of one rental period
        custody_policy: HOLD or DELIVER
        program_id: Escrow program owning the custodian

    Returns:
        PendingTransaction creating the record, locking the book and moving
        it to the custodian. No funds move.

    Raises:
        AssetNotSingleton: If asset_account does not hold exactly one unit
        TransferRuleViolation: If the book is already locked in an escrow
        InvalidStateTransition: If an escrow with this id already exists
        WalletNotRegistered: If a party wallet is unknown
        ValueError: For malformed terms
    """
    if not escrow_id or not escrow_id.strip():
        raise ValueError("escrow_id cannot be empty")
    price = to_amount(price_per_period, "price_per_period")
    deposit = to_amount(deposit_amount, "deposit_amount")
    if isinstance(period_seconds, bool) or not isinstance(period_seconds, int) or period_seconds <= 0:
        raise ValueError(f"period_seconds must be a positive int, got {period_seconds!r}")
    custody_policy = CustodyPolicy(custody_policy)

    symbol = rental_symbol(escrow_id)
    if _unit_exists(view, symbol):
        raise InvalidStateTransition(f"Escrow {escrow_id} already exists")

    _require_wallet(view, initializer, "initializer")
    _require_wallet(view, asset_account, "asset account")
    _require_wallet(view, payout_account, "payout account")

    if view.get_unit(currency).unit_type != UNIT_TYPE_CASH:
        raise ValueError(f"{currency} is not a cash unit")
    book = view.get_unit(asset_symbol)
    if book.unit_type != UNIT_TYPE_BOOK:
        raise ValueError(f"{asset_symbol} is not a book token")

    book_state = view.get_unit_state(asset_symbol)
    if book_state.get('custodian'):
        raise TransferRuleViolation(
            f"Book {asset_symbol} is already held in escrow {book_state.get('escrow')}"
        )

    custodian = Custodian.for_escrow(escrow_id, program_id)
    record = EscrowRecord(
        escrow_id=escrow_id,
        asset_symbol=asset_symbol,
        initializer=initializer,
        initializer_asset_account=asset_account,
        initializer_payout_account=payout_account,
        custodian=custodian.wallet_id,
        program_id=program_id,
        price_per_period=price,
        deposit_amount=deposit,
        currency=currency,
        period_seconds=period_seconds,
        custody_policy=custody_policy,
        status=EscrowStatus.CREATED,
        created_time=view.current_time,
    )
    record_unit = create_rental_record_unit(record)

    moves = [
        transfer_asset_custody(
            view, asset_symbol, asset_account, custodian.wallet_id,
            contract_id=f"initialize_{symbol}_asset",
        ),
        Move(
            quantity=Decimal("1"),
            unit_symbol=symbol,
            source=SYSTEM_WALLET,
            dest=initializer,
            contract_id=f"initialize_{symbol}_record",
        ),
    ]

    locked_state = {**book_state, 'custodian': custodian.wallet_id, 'escrow': symbol}
    state_changes = [UnitStateChange(unit=asset_symbol, old_state=book_state, new_state=locked_state)]

    return build_transaction(
        view, moves, state_changes,
        origin=_origin(record, "INITIALIZE"),
        units_to_create=(record_unit,),
    )


def compute_rental_request(
    view: LedgerView,
    symbol: str,
    taker: str,
    rental_periods: int,
) -> PendingTransaction:
    """
    Bind a taker and rental length to a CREATED escrow.

    The taker's balance is not looked at here; accept checks it.

    Raises:
        InvalidStateTransition: If the escrow is not CREATED
        WalletNotRegistered: If the taker wallet is unknown
        ValueError: If rental_periods is not a positive int or runs past the
            last representable time, or the taker is the initializer, the
            system wallet, a custodian, or (DELIVER) the asset account
    """
    record = load_escrow_record(view, symbol)
    _require_status(record, EscrowStatus.CREATED, "request")

    if isinstance(rental_periods, bool) or not isinstance(rental_periods, int):
        raise ValueError(f"rental_periods must be an int, got {type(rental_periods).__name__}")
    if rental_periods <= 0:
        raise ValueError(f"rental_periods must be positive, got {rental_periods}")
    now = view.current_time
    if calculate_unlock_time(now, rental_periods, record.period_seconds) == _never(now):
        raise ValueError(
            f"rental_periods {rental_periods} of {record.period_seconds}s runs past the last representable time"
        )

    _require_wallet(view, taker, "taker")
    if taker == record.initializer:
        raise ValueError("taker and initializer must be different")
    if taker == SYSTEM_WALLET or taker.startswith(CUSTODIAN_PREFIX):
        raise ValueError(f"{taker} cannot rent: it is not a party wallet")
    if record.custody_policy == CustodyPolicy.DELIVER and taker == record.initializer_asset_account:
        raise ValueError("taker cannot be the asset account when the book is delivered")

    requested = _advance(record, taker=taker, rental_periods=rental_periods)
    state_changes = [UnitStateChange(unit=symbol, old_state=to_state_dict(record), new_state=to_state_dict(requested))]
    return build_transaction(view, [], state_changes, origin=_origin(record, "REQUEST"))


def compute_rental_acceptance(view: LedgerView, symbol: str) -> PendingTransaction:
    """
    Collect total_due from the taker and start the rental clock.

    The funds move and the balance check are one ledger operation: if the
    taker cannot cover total_due the whole transaction is rejected with
    InsufficientFunds and the record stays REQUESTED.

    Under the DELIVER policy the book also goes to the taker, still locked
    to the custodian.

    Raises:
        InvalidStateTransition: If the escrow is not REQUESTED
    """
    record = load_escrow_record(view, symbol)
    _require_status(record, EscrowStatus.REQUESTED, "accept")

    custodian = record.custodian_authority()
    due = total_due(record)

    moves: List[Move] = []
    if due > 0:
        moves.append(transfer_funds(
            record.taker, custodian.wallet_id, due, record.currency,
            contract_id=f"accept_{symbol}_funds",
        ))
    if record.custody_policy == CustodyPolicy.DELIVER:
        moves.append(custodian.transfer_asset_custody(
            view, record.asset_symbol, custodian.wallet_id, record.taker,
            contract_id=f"accept_{symbol}_deliver",
        ))

    accepted = _advance(record, accepted=True, rental_start_time=view.current_time)
    state_changes = [UnitStateChange(unit=symbol, old_state=to_state_dict(record), new_state=to_state_dict(accepted))]
    return build_transaction(view, moves, state_changes, origin=_origin(record, "ACCEPT"))


def compute_rental_return(
    view: LedgerView,
    symbol: str,
    origin_type: OriginType = OriginType.CONTRACT,
) -> PendingTransaction:
    """
    Settle a rental whose time lock has expired.

    One transaction carries every step, so either all of them happen or
    none do:
        (a) book back to the initializer's asset account
        (b) rent to the payout account
        (c) deposit back to the taker
        (d) custody lock on the book released
        (e) record CLOSED and its token extinguished

    Raises:
        InvalidStateTransition: If the escrow is not ACCEPTED (including an
            already closed escrow)
        RentalPeriodNotOver: If the unlock time has not been reached
    """
    record = load_escrow_record(view, symbol)
    _require_status(record, EscrowStatus.ACCEPTED, "return")

    now = view.current_time
    unlock = calculate_unlock_time(record.rental_start_time, record.rental_periods, record.period_seconds)
    if now < unlock:
        raise RentalPeriodNotOver(
            f"Escrow {record.escrow_id} unlocks at {unlock}, current time is {now}"
        )

    custodian = record.custodian_authority()
    holder = record.taker if record.custody_policy == CustodyPolicy.DELIVER else custodian.wallet_id
    rent = calculate_rent(record.price_per_period, record.rental_periods)

    moves: List[Move] = [
        custodian.transfer_asset_custody(
            view, record.asset_symbol, holder, record.initializer_asset_account,
            contract_id=f"return_{symbol}_asset",
        ),
    ]
    if rent > 0:
        moves.append(custodian.transfer_funds(
            rent, record.currency, record.initializer_payout_account,
            contract_id=f"return_{symbol}_rent",
        ))
    if record.deposit_amount > 0:
        moves.append(custodian.transfer_funds(
            record.deposit_amount, record.currency, record.taker,
            contract_id=f"return_{symbol}_deposit",
        ))
    moves.append(Move(
        quantity=Decimal("1"),
        unit_symbol=symbol,
        source=record.initializer,
        dest=SYSTEM_WALLET,
        contract_id=f"return_{symbol}_record",
    ))

    book_state = view.get_unit_state(record.asset_symbol)
    released_state = {**book_state, 'custodian': None, 'escrow': None}
    closed = _advance(record, closed_time=now)

    state_changes = [
        UnitStateChange(unit=record.asset_symbol, old_state=book_state, new_state=released_state),
        UnitStateChange(unit=symbol, old_state=to_state_dict(record), new_state=to_state_dict(closed)),
    ]
    return build_transaction(view, moves, state_changes, origin=_origin(record, "RETURN", origin_type))


# =============================================================================
# LIFECYCLE CONTRACT
# =============================================================================

def rental_escrow_contract(
    view: LedgerView,
    symbol: str,
    timestamp: datetime,
) -> PendingTransaction:
    """
    Polling contract for LifecycleEngine.

    Produces the return transaction for an ACCEPTED rental once its time
    lock has expired; anything else gets an empty transaction.

    Example:
        engine = LifecycleEngine(ledger)
        engine.register(UNIT_TYPE_RENTAL_ESCROW, rental_escrow_contract)
        engine.step(datetime(2025, 1, 4))
    """
    record = load_escrow_record(view, symbol)
    if record.status != EscrowStatus.ACCEPTED:
        return empty_pending_transaction(view)
    if not is_rental_period_over(record.rental_start_time, record.rental_periods, timestamp, record.period_seconds):
        return empty_pending_transaction(view)
    return compute_rental_return(view, symbol, origin_type=OriginType.LIFECYCLE)


# =============================================================================
# QUERIES
# =============================================================================

def get_escrow_status(view: LedgerView, symbol: str) -> EscrowStatus:
    return load_escrow_record(view, symbol).status


def get_total_due(view: LedgerView, symbol: str) -> Decimal:
    """total_due for the escrow at symbol (see total_due)."""
    return total_due(load_escrow_record(view, symbol))


def get_active_escrows(view: LedgerView, wallet: Optional[str] = None) -> List[str]:
    """
    Symbols of escrows that are not CLOSED, sorted.

    Args:
        view: Read-only ledger access (needs list_units, as Ledger has)
        wallet: Only escrows where this wallet is initializer or taker

    Raises:
        TypeError: If the view cannot list its units
    """
    if not hasattr(view, 'list_units'):
        raise TypeError(f"{type(view).__name__} cannot list units; pass a Ledger")

    active = []
    for symbol in view.list_units():
        if not symbol.startswith(RENTAL_PREFIX):
            continue
        if view.get_unit(symbol).unit_type != UNIT_TYPE_RENTAL_ESCROW:
            continue
        record = load_escrow_record(view, symbol)
        if record.status == EscrowStatus.CLOSED:
            continue
        if wallet is not None and wallet not in (record.initializer, record.taker):
            continue
        active.append(symbol)

    return sorted(active)
