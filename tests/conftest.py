"""
conftest.py - Shared pytest fixtures for rental escrow tests

Provides common fixtures used across unit, conformance and functional tests:
- A quiet ledger with USD, a minted book and funded parties
- The RentalEscrow facade over that ledger
- Helpers to walk an escrow through its states
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from openbooks import (
    Ledger, RentalEscrow, CustodyPolicy, EscrowRecord,
    cash, create_book_token, mint_book_token,
)


START = datetime(2025, 1, 1, 12, 0, 0)
BOOK = "BOOK_moby_dick"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_escrow_ledger(taker_balance: Decimal = Decimal("35"), name: str = "test") -> Ledger:
    """
    Ledger with USD, wallets alice/alice_payout/bob/carol and BOOK held by alice.

    bob is funded with taker_balance USD via SYSTEM issuance.
    """
    ledger = Ledger(name, START, verbose=False, test_mode=True)
    ledger.register_unit(cash("USD", "US Dollar"))
    for wallet in ("alice", "alice_payout", "bob", "carol"):
        ledger.register_wallet(wallet)

    book = create_book_token(BOOK, "Moby-Dick", author="Herman Melville")
    ledger.execute(mint_book_token(ledger, book, "alice"), strict=True)
    if taker_balance:
        ledger.set_balance("bob", "USD", Decimal(taker_balance))
    return ledger


def open_escrow(
    escrow: RentalEscrow,
    escrow_id: str = "001",
    price: int = 5,
    deposit: int = 20,
    policy: CustodyPolicy = CustodyPolicy.HOLD,
) -> EscrowRecord:
    return escrow.initialize(
        escrow_id, "alice", BOOK, "alice", "alice_payout",
        price_per_period=price, deposit_amount=deposit, currency="USD",
        custody_policy=policy,
    )


def accepted_escrow(
    escrow: RentalEscrow,
    periods: int = 3,
    policy: CustodyPolicy = CustodyPolicy.HOLD,
) -> EscrowRecord:
    """Walk escrow "001" to ACCEPTED with bob as taker."""
    open_escrow(escrow, policy=policy)
    escrow.request("001", "bob", periods)
    return escrow.accept("001")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def start_time():
    return START


@pytest.fixture
def ledger():
    """Ledger where bob holds exactly total_due (35 USD) for the default terms."""
    return make_escrow_ledger()


@pytest.fixture
def short_ledger():
    """Ledger where bob is one unit short of total_due."""
    return make_escrow_ledger(Decimal("34"))


@pytest.fixture
def escrow(ledger):
    return RentalEscrow(ledger)


@pytest.fixture
def accepted(escrow):
    """Escrow "001" accepted at START for 3 periods (HOLD policy)."""
    return accepted_escrow(escrow)


@pytest.fixture
def one_day():
    return timedelta(days=1)
