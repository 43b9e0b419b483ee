"""
Example: A small lending library settled by the LifecycleEngine.

Three owners put books into rental escrows with different terms. Renters
accept, and the engine is then stepped one day at a time: each rental is
returned automatically on the day its time lock expires, paying rent to the
owner and refunding the deposit to the renter.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from openbooks import (
    Ledger, LifecycleEngine, RentalEscrow, Move, CustodyPolicy,
    build_transaction, cash, create_book_token, mint_book_token,
    rental_escrow_contract, get_book_holder,
    SYSTEM_WALLET, UNIT_TYPE_RENTAL_ESCROW,
)


START = datetime(2025, 1, 1, 9, 0, 0)

# escrow_id, owner, book symbol, title, price, deposit, renter, periods, policy
RENTALS = [
    ("a", "alice", "BOOK_moby_dick", "Moby-Dick", 5, 20, "bob", 3, CustodyPolicy.HOLD),
    ("b", "carol", "BOOK_ulysses", "Ulysses", 2, 10, "dave", 1, CustodyPolicy.DELIVER),
    ("c", "erin", "BOOK_middlemarch", "Middlemarch", 0, 15, "bob", 5, CustodyPolicy.HOLD),
]


def main():
    print("=" * 80)
    print("LENDING LIBRARY - Automatic Settlement Example")
    print("=" * 80)
    print()

    ledger = Ledger("library", initial_time=START, verbose=False)
    ledger.register_unit(cash("USD", "US Dollar"))
    for wallet in ("alice", "carol", "erin", "bob", "dave"):
        ledger.register_wallet(wallet)

    for _, owner, symbol, title, *_ in RENTALS:
        ledger.execute(mint_book_token(ledger, create_book_token(symbol, title), owner), strict=True)
    ledger.execute(build_transaction(ledger, [
        Move(Decimal("200"), "USD", SYSTEM_WALLET, "bob", "fund_bob"),
        Move(Decimal("50"), "USD", SYSTEM_WALLET, "dave", "fund_dave"),
    ]), strict=True)

    escrow = RentalEscrow(ledger)
    for escrow_id, owner, symbol, _, price, deposit, renter, periods, policy in RENTALS:
        escrow.initialize(escrow_id, owner, symbol, owner, owner,
                          price_per_period=price, deposit_amount=deposit,
                          currency="USD", custody_policy=policy)
        escrow.request(escrow_id, renter, periods)
        escrow.accept(escrow_id)
        print(f"{escrow_id}: {symbol} rented by {renter} for {periods} day(s), "
              f"holder now {get_book_holder(ledger, symbol)}")

    engine = LifecycleEngine(ledger)
    engine.register(UNIT_TYPE_RENTAL_ESCROW, rental_escrow_contract)

    print()
    for day in range(1, 6):
        now = START + timedelta(days=day)
        settled = engine.step(now)
        names = [tx.origin.unit_symbol for tx in settled]
        print(f"Day {day}: settled {names or 'nothing'}; still active {escrow.active_escrows()}")

    print()
    for wallet in ("alice", "carol", "erin", "bob", "dave"):
        print(f"{wallet:<6} USD {ledger.get_balance(wallet, 'USD')}")

    check = ledger.verify_double_entry()
    print(f"\nUSD supply (system issuance included): {check['supplies']['USD']}")


if __name__ == "__main__":
    main()
