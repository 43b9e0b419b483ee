"""
book.py - Non-Fungible Book Token Unit

A book token is a unit with a supply of exactly one. It is minted from the
system wallet to its owner and can never be split: every move carries the
whole unit.

While a book sits in a rental escrow its state carries a custody lock:

    state['custodian'] = <custodian wallet id>
    state['escrow']    = <rental record symbol>

With the lock in place book_transfer_rule refuses any move that is not signed
by that custodian, wherever the book currently is. That is what lets the
custodian take a delivered book back from the taker at the end of a rental.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional

from ..core import (
    LedgerView, Move, PendingTransaction, Unit,
    TransactionOrigin, OriginType, TransferRuleViolation,
    SYSTEM_WALLET, UNIT_TYPE_BOOK,
    build_transaction, _freeze_state,
)
from ..custodian import derive_custodian_address


def book_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Enforce whole-unit moves and the escrow custody lock.

    Raises:
        TransferRuleViolation: If the move is not exactly one unit, or the
            book is locked and the move is not signed by the lock's custodian
    """
    if move.quantity != Decimal("1"):
        raise TransferRuleViolation(
            f"Book {move.unit_symbol} moves as a single unit, got {move.quantity}"
        )

    state = view.get_unit_state(move.unit_symbol)
    lock = state.get('custodian')
    if not lock:
        return

    seeds = (move.metadata or {}).get('signer_seeds')
    if move.authority != lock or not seeds or derive_custodian_address(*seeds) != lock:
        raise TransferRuleViolation(
            f"Book {move.unit_symbol} is held in escrow {state.get('escrow')}; "
            f"only custodian {lock} can move it"
        )


def create_book_token(
    symbol: str,
    title: str,
    author: Optional[str] = None,
    isbn: Optional[str] = None,
) -> Unit:
    """
    Create a book token unit.

    Args:
        symbol: Unique unit symbol (e.g., "BOOK_moby_dick")
        title: Book title
        author: Optional author
        isbn: Optional ISBN

    Returns:
        Unit with max_balance 1, zero decimals and book_transfer_rule.

    Example:
        book = create_book_token("BOOK_moby_dick", "Moby-Dick", "Herman Melville")
        ledger.execute(mint_book_token(ledger, book, "alice"))
    """
    if not symbol or not symbol.strip():
        raise ValueError("symbol cannot be empty")
    if not title or not title.strip():
        raise ValueError("title cannot be empty")

    return Unit(
        symbol=symbol,
        name=f"Book: {title}",
        unit_type=UNIT_TYPE_BOOK,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=book_transfer_rule,
        _frozen_state=_freeze_state({
            'title': title,
            'author': author,
            'isbn': isbn,
            'custodian': None,
            'escrow': None,
        }),
    )


def mint_book_token(view: LedgerView, book: Unit, owner: str) -> PendingTransaction:
    """
    Register a book token and issue its single unit to owner.

    Raises:
        ValueError: If the unit is not a book token or owner is empty
    """
    if book.unit_type != UNIT_TYPE_BOOK:
        raise ValueError(f"{book.symbol} is not a book token ({book.unit_type})")
    if not owner or not owner.strip():
        raise ValueError("owner cannot be empty")

    move = Move(
        quantity=Decimal("1"),
        unit_symbol=book.symbol,
        source=SYSTEM_WALLET,
        dest=owner,
        contract_id=f"mint_{book.symbol}",
    )
    origin = TransactionOrigin(OriginType.SYSTEM, "mint", unit_symbol=book.symbol, event_type="MINT")
    return build_transaction(view, [move], origin=origin, units_to_create=(book,))


def get_book_holder(view: LedgerView, symbol: str) -> Optional[str]:
    """Wallet currently holding the book, or None if it has not been minted."""
    for wallet, qty in view.get_positions(symbol).items():
        if wallet != SYSTEM_WALLET and qty > 0:
            return wallet
    return None


def is_locked(view: LedgerView, symbol: str) -> bool:
    """True while the book is held under an escrow custody lock."""
    return bool(view.get_unit_state(symbol).get('custodian'))
