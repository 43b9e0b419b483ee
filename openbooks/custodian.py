"""
custodian.py - Program-Derived Custodian Authority

A custodian is the neutral holder of an escrowed book and the rental funds.
Its wallet id is derived deterministically from a fixed domain tag, the
escrow program id and the escrow id, so no private key exists for it. A move
spending from a custodian carries the seeds that re-derive its wallet id.
The seeds are public, so the ledger also requires the transaction to be the
exact accept or return transition of the escrow record naming that
custodian (see units.rental.record_custody_rule).

    wallet_id = "custodian:" + sha256(tag | program_id | escrow_id)[:32]

Move builders:
    transfer_funds(...)          -> Move of currency between wallets
    transfer_asset_custody(...)  -> Move of a single book unit between authorities
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import hashlib

from .core import (
    LedgerView, Move,
    AssetNotSingleton,
    to_amount,
)


# Fixed domain-separation tag for custodian derivation.
CUSTODIAN_DOMAIN_TAG = "escrow"

# Program id of the rental escrow; part of every custodian derivation.
ESCROW_PROGRAM_ID = "openbooks.rental_escrow"

CUSTODIAN_PREFIX = "custodian:"


def derive_custodian_address(program_id: str, *seeds: str) -> str:
    """
    Derive a custodian wallet id from a program id and seeds.

    Each part is length-prefixed before hashing so ("ab", "c") and
    ("a", "bc") cannot collide.

    Example:
        derive_custodian_address("openbooks.rental_escrow", "001")
        # 'custodian:3f1c...'
    """
    if not program_id:
        raise ValueError("program_id cannot be empty")
    h = hashlib.sha256()
    for part in (CUSTODIAN_DOMAIN_TAG, program_id) + tuple(seeds):
        encoded = str(part).encode()
        h.update(len(encoded).to_bytes(4, "big"))
        h.update(encoded)
    return f"{CUSTODIAN_PREFIX}{h.hexdigest()[:32]}"


@dataclass(frozen=True, slots=True)
class Custodian:
    """
    Value object for one escrow's custodian authority.

    Holds no secret. Its signature names the custodian a move spends from;
    whether the spend is allowed is decided by the escrow record that owns
    the custodian, when the ledger validates the whole transaction.

    Attributes:
        escrow_id: Identifier of the rental agreement
        program_id: Escrow program that owns the derived wallet
    """
    escrow_id: str
    program_id: str = ESCROW_PROGRAM_ID

    def __post_init__(self):
        if not self.escrow_id or not self.escrow_id.strip():
            raise ValueError("escrow_id cannot be empty")

    @classmethod
    def for_escrow(cls, escrow_id: str, program_id: str = ESCROW_PROGRAM_ID) -> Custodian:
        return cls(escrow_id=escrow_id, program_id=program_id)

    @property
    def signer_seeds(self) -> Tuple[str, ...]:
        return (self.program_id, self.escrow_id)

    @property
    def wallet_id(self) -> str:
        return derive_custodian_address(*self.signer_seeds)

    def signature(self) -> Dict[str, Any]:
        """Move metadata proving the custodian authorized the move."""
        return {'authority': self.wallet_id, 'signer_seeds': self.signer_seeds}

    def verify_signature(self, move: Move) -> bool:
        """True when the move carries this custodian's seeds."""
        seeds = (move.metadata or {}).get('signer_seeds')
        return bool(seeds) and tuple(seeds) == self.signer_seeds

    def transfer_funds(
        self,
        amount: Decimal,
        currency: str,
        dest: str,
        contract_id: str,
    ) -> Move:
        """Pay escrowed funds out of the custodian wallet."""
        return transfer_funds(
            self.wallet_id, dest, amount, currency, contract_id, authority=self,
        )

    def transfer_asset_custody(
        self,
        view: LedgerView,
        asset_symbol: str,
        from_authority: str,
        to_authority: str,
        contract_id: str,
    ) -> Move:
        """
        Move the book under custodian authority.

        from_authority is normally the custodian wallet itself; with the
        DELIVER policy it is the taker, whose copy stays under the
        custodian's lock for the length of the rental.
        """
        return transfer_asset_custody(
            view, asset_symbol, from_authority, to_authority, contract_id, authority=self,
        )


def transfer_funds(
    source: str,
    dest: str,
    amount: Decimal,
    currency: str,
    contract_id: str,
    authority: Optional[Custodian] = None,
) -> Move:
    """
    Build a currency Move.

    The balance check happens inside Ledger.execute() together with every
    other move of the transaction, so there is no gap between checking and
    debiting. A short payer makes the whole transaction fail with
    InsufficientFunds.

    Raises:
        ValueError: If amount is not a positive whole number
    """
    quantity = to_amount(amount)
    if quantity == 0:
        raise ValueError("amount must be positive")
    return Move(
        quantity=quantity,
        unit_symbol=currency,
        source=source,
        dest=dest,
        contract_id=contract_id,
        metadata=authority.signature() if authority else None,
    )


def transfer_asset_custody(
    view: LedgerView,
    asset_symbol: str,
    from_authority: str,
    to_authority: str,
    contract_id: str,
    authority: Optional[Custodian] = None,
) -> Move:
    """
    Build the Move handing a single book unit from one authority to another.

    Raises:
        AssetNotSingleton: If the asset is not a singleton unit or
            from_authority does not hold exactly one unit of it
    """
    unit = view.get_unit(asset_symbol)
    if unit.max_balance != Decimal("1"):
        raise AssetNotSingleton(f"{asset_symbol} is not a singleton unit")

    held = view.get_balance(from_authority, asset_symbol)
    if held != Decimal("1"):
        raise AssetNotSingleton(
            f"{from_authority} holds {held} of {asset_symbol}, expected exactly 1"
        )

    return Move(
        quantity=Decimal("1"),
        unit_symbol=asset_symbol,
        source=from_authority,
        dest=to_authority,
        contract_id=contract_id,
        metadata=authority.signature() if authority else None,
    )
