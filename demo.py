#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Renting a Book Through Escrow

A step-by-step walk through one rental. Press Enter to advance.

WHAT YOU'LL SEE:
  1: Setup      - Ledger, currency, wallets, a minted book
  2: Initialize - The book moves to a derived custodian and gets locked
  3: Request    - A taker and a rental length are bound
  4: Accept     - total_due is collected in one atomic step (and a short taker fails)
  5: Return     - Too early is refused; on time everything settles at once
  6: Audit      - Conservation check and historical reconstruction

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from openbooks import (
    Ledger, RentalEscrow, Move, CustodyPolicy,
    build_transaction, cash, create_book_token, mint_book_token,
    get_book_holder, load_escrow_record, rental_symbol,
    InsufficientFunds, RentalPeriodNotOver,
    SYSTEM_WALLET,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    price_per_period: int = 5
    deposit_amount: int = 20
    rental_periods: int = 3
    taker_funds: int = 35
    custody_policy: CustodyPolicy = CustodyPolicy.HOLD


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

BOOK = "BOOK_moby_dick"
ESCROW_ID = "001"


def wait_for_enter():
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_balances(ledger: Ledger, escrow: RentalEscrow):
    custodian = escrow.record(ESCROW_ID).custodian if rental_symbol(ESCROW_ID) in ledger.units else None
    wallets = ["alice", "alice_payout", "bob"] + ([custodian] if custodian else [])
    for wallet in wallets:
        print(f"  {wallet:<45} USD={ledger.get_balance(wallet, 'USD')}")
    print(f"  book holder: {get_book_holder(ledger, BOOK)}")


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    step_header(1, "Setup", "A ledger with USD, three wallets and one book owned by alice.")

    ledger = Ledger("library", CONFIG.start_time, verbose=True)
    ledger.register_unit(cash("USD", "US Dollar"))
    for wallet in ("alice", "alice_payout", "bob"):
        ledger.register_wallet(wallet)

    book = create_book_token(BOOK, "Moby-Dick", author="Herman Melville")
    ledger.execute(mint_book_token(ledger, book, "alice"), strict=True)
    ledger.execute(build_transaction(ledger, [
        Move(Decimal(CONFIG.taker_funds), "USD", SYSTEM_WALLET, "bob", "fund_bob"),
    ]), strict=True)

    escrow = RentalEscrow(ledger)
    show_balances(ledger, escrow)
    return ledger, escrow


def step_02_initialize(ledger: Ledger, escrow: RentalEscrow):
    step_header(2, "Initialize", "alice opens an escrow; the book moves into custody.")
    wait_for_enter()

    record = escrow.initialize(
        ESCROW_ID, "alice", BOOK, "alice", "alice_payout",
        price_per_period=CONFIG.price_per_period,
        deposit_amount=CONFIG.deposit_amount,
        currency="USD",
        custody_policy=CONFIG.custody_policy,
    )
    print(f"\nCustodian wallet: {record.custodian}")
    print(f"Book lock:        {ledger.get_unit_state(BOOK)['custodian']}")
    show_balances(ledger, escrow)


def step_03_request(ledger: Ledger, escrow: RentalEscrow):
    step_header(3, "Request", "bob asks for the book; no money moves yet.")
    wait_for_enter()

    escrow.request(ESCROW_ID, "bob", CONFIG.rental_periods)
    print(f"\ntotal_due = {CONFIG.price_per_period} * {CONFIG.rental_periods} "
          f"+ {CONFIG.deposit_amount} = {escrow.total_due(ESCROW_ID)}")


def step_04_accept(ledger: Ledger, escrow: RentalEscrow):
    step_header(4, "Accept", "bob pays total_due; check and debit are one ledger operation.")
    wait_for_enter()

    short = ledger.clone()
    short.verbose = False
    short.execute(build_transaction(short, [Move(Decimal("1"), "USD", "bob", SYSTEM_WALLET, "burn_one")]))
    try:
        RentalEscrow(short).accept(ESCROW_ID)
    except InsufficientFunds as e:
        print(f"\nOn a copy where bob is one short: InsufficientFunds ({e})")
        print(f"Record there is still: {load_escrow_record(short, rental_symbol(ESCROW_ID)).status.value}")

    record = escrow.accept(ESCROW_ID)
    print(f"\nRental started at {record.rental_start_time}")
    show_balances(ledger, escrow)


def step_05_return(ledger: Ledger, escrow: RentalEscrow):
    step_header(5, "Return", "Refused before the unlock time, settled atomically at it.")
    wait_for_enter()

    ledger.advance_time(CONFIG.start_time + timedelta(days=CONFIG.rental_periods - 1))
    try:
        escrow.return_rental(ESCROW_ID)
    except RentalPeriodNotOver as e:
        print(f"\nToo early: {e}")

    ledger.advance_time(CONFIG.start_time + timedelta(days=CONFIG.rental_periods))
    record = escrow.return_rental(ESCROW_ID)
    print(f"\nStatus: {record.status.value}; active escrows: {escrow.active_escrows()}")
    show_balances(ledger, escrow)


def step_06_audit(ledger: Ledger, escrow: RentalEscrow):
    step_header(6, "Audit", "Nothing was created or lost, and the past can be rebuilt.")
    wait_for_enter()

    check = ledger.verify_double_entry()
    print(f"\nSupplies: {check['supplies']}")

    past = ledger.clone_at(CONFIG.start_time + timedelta(days=1))
    past_record = load_escrow_record(past, rental_symbol(ESCROW_ID))
    print(f"One day in, the record was {past_record.status.value} and the book was with "
          f"{get_book_holder(past, BOOK)}")


def main():
    print("=" * 70)
    print("       OPENBOOKS - RENTAL ESCROW TUTORIAL")
    print("=" * 70)

    ledger, escrow = step_01_setup()
    step_02_initialize(ledger, escrow)
    step_03_request(ledger, escrow)
    step_04_accept(ledger, escrow)
    step_05_return(ledger, escrow)
    step_06_audit(ledger, escrow)

    print("\nDone.")


if __name__ == "__main__":
    main()
