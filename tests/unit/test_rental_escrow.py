"""
test_rental_escrow.py - Tests for the RentalEscrow state machine on a Ledger

Tests:
- initialize: custody, lock, record token, preconditions
- request / accept / return: transitions, failures leave state unchanged
- Custody policies, custom period length, active set
- Racing transitions and audit reconstruction
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from openbooks import (
    Custodian, CustodyPolicy, EscrowStatus, ExecuteResult, RentalEscrow,
    Move, PendingTransaction, UnitStateChange, build_transaction,
    compute_rental_request, compute_rental_return, rental_escrow_contract,
    get_book_holder, is_locked, rental_symbol, load_escrow_record,
    create_book_token, mint_book_token,
    InsufficientFunds, InvalidStateTransition, RentalPeriodNotOver,
    AssetNotSingleton, TransferRuleViolation, StaleState,
    UnitNotRegistered, WalletNotRegistered,
    SYSTEM_WALLET,
)
from tests.conftest import BOOK, open_escrow, accepted_escrow, make_escrow_ledger


SYMBOL = rental_symbol("001")
CUSTODIAN = Custodian.for_escrow("001").wallet_id


class TestInitialize:

    def test_book_moves_into_custody(self, escrow, ledger, start_time):
        record = open_escrow(escrow)
        assert record.status == EscrowStatus.CREATED
        assert record.custodian == CUSTODIAN
        assert record.created_time == start_time
        assert record.taker is None
        assert record.accepted is False
        assert get_book_holder(ledger, BOOK) == CUSTODIAN
        assert ledger.get_balance("alice", BOOK) == Decimal("0")
        assert ledger.is_custodian(CUSTODIAN)

    def test_no_funds_move(self, escrow, ledger):
        open_escrow(escrow)
        assert ledger.get_balance("bob", "USD") == Decimal("35")
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("0")

    def test_book_locked_to_escrow(self, escrow, ledger):
        open_escrow(escrow)
        state = ledger.get_unit_state(BOOK)
        assert state['custodian'] == CUSTODIAN
        assert state['escrow'] == SYMBOL

    def test_record_token_held_by_initializer(self, escrow, ledger):
        open_escrow(escrow)
        assert ledger.get_balance("alice", SYMBOL) == Decimal("1")
        assert escrow.active_escrows() == [SYMBOL]

    def test_asset_account_must_hold_the_book(self, escrow, ledger):
        with pytest.raises(AssetNotSingleton):
            escrow.initialize("001", "carol", BOOK, "carol", "carol",
                              price_per_period=5, deposit_amount=20, currency="USD")
        assert SYMBOL not in ledger.units
        assert get_book_holder(ledger, BOOK) == "alice"

    def test_duplicate_escrow_id(self, escrow):
        open_escrow(escrow)
        with pytest.raises(InvalidStateTransition, match="already exists"):
            open_escrow(escrow)

    def test_book_already_in_escrow(self, escrow):
        open_escrow(escrow)
        with pytest.raises(TransferRuleViolation, match="already held"):
            open_escrow(escrow, escrow_id="002")

    def test_unknown_currency(self, escrow):
        with pytest.raises(UnitNotRegistered):
            escrow.initialize("001", "alice", BOOK, "alice", "alice",
                              price_per_period=5, deposit_amount=20, currency="EUR")

    def test_unknown_payout_account(self, escrow):
        with pytest.raises(WalletNotRegistered):
            escrow.initialize("001", "alice", BOOK, "alice", "nobody",
                              price_per_period=5, deposit_amount=20, currency="USD")

    @pytest.mark.parametrize("price,deposit", [(-1, 20), (Decimal("2.5"), 20), (5, Decimal("0.1"))])
    def test_malformed_terms(self, escrow, price, deposit):
        with pytest.raises(ValueError):
            open_escrow(escrow, price=price, deposit=deposit)

    def test_zero_period_length_rejected(self, escrow):
        with pytest.raises(ValueError, match="period_seconds"):
            escrow.initialize("001", "alice", BOOK, "alice", "alice",
                              price_per_period=5, deposit_amount=20, currency="USD", period_seconds=0)


class TestRequest:

    def test_binds_taker(self, escrow):
        open_escrow(escrow)
        record = escrow.request("001", "bob", 3)
        assert record.status == EscrowStatus.REQUESTED
        assert record.taker == "bob"
        assert record.rental_periods == 3
        assert escrow.total_due("001") == Decimal("35")

    def test_no_balance_check(self, escrow, ledger):
        open_escrow(escrow)
        record = escrow.request("001", "carol", 100)
        assert record.status == EscrowStatus.REQUESTED
        assert ledger.get_balance("carol", "USD") == Decimal("0")

    def test_zero_periods_keeps_created(self, escrow):
        open_escrow(escrow)
        with pytest.raises(ValueError):
            escrow.request("001", "bob", 0)
        assert escrow.record("001").status == EscrowStatus.CREATED

    def test_total_due_undefined_before_request(self, escrow):
        open_escrow(escrow)
        with pytest.raises(InvalidStateTransition):
            escrow.total_due("001")

    def test_cannot_request_twice(self, escrow):
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        with pytest.raises(InvalidStateTransition):
            escrow.request("001", "carol", 1)
        assert escrow.record("001").taker == "bob"

    def test_unknown_escrow(self, escrow):
        with pytest.raises(UnitNotRegistered):
            escrow.request("404", "bob", 3)

    def test_length_past_end_of_time_keeps_created(self, escrow):
        open_escrow(escrow, price=0, deposit=1)
        with pytest.raises(ValueError, match="representable"):
            escrow.request("001", "bob", 10_000_000)
        assert escrow.record("001").status == EscrowStatus.CREATED

    def test_custodian_cannot_rent(self, escrow):
        open_escrow(escrow)
        with pytest.raises(ValueError, match="party wallet"):
            escrow.request("001", CUSTODIAN, 1)
        assert escrow.record("001").taker is None


class TestAccept:

    def test_collects_total_due(self, escrow, ledger, start_time):
        record = accepted_escrow(escrow)
        assert record.status == EscrowStatus.ACCEPTED
        assert record.accepted is True
        assert record.rental_start_time == start_time
        assert ledger.get_balance("bob", "USD") == Decimal("0")
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")

    def test_start_time_is_accept_time(self, escrow, ledger, start_time):
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        ledger.advance_time(start_time + timedelta(hours=5))
        record = escrow.accept("001")
        assert record.rental_start_time == start_time + timedelta(hours=5)

    def test_insufficient_funds_leaves_everything(self, short_ledger):
        escrow = RentalEscrow(short_ledger)
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        with pytest.raises(InsufficientFunds):
            escrow.accept("001")
        record = escrow.record("001")
        assert record.status == EscrowStatus.REQUESTED
        assert record.accepted is False
        assert record.rental_start_time is None
        assert short_ledger.get_balance("bob", "USD") == Decimal("34")
        assert short_ledger.get_balance(CUSTODIAN, "USD") == Decimal("0")

    def test_accept_before_request(self, escrow):
        open_escrow(escrow)
        with pytest.raises(InvalidStateTransition):
            escrow.accept("001")

    def test_cannot_accept_twice(self, escrow, ledger):
        accepted_escrow(escrow)
        ledger.set_balance("bob", "USD", Decimal("35"))
        with pytest.raises(InvalidStateTransition):
            escrow.accept("001")
        assert ledger.get_balance("bob", "USD") == Decimal("35")

    def test_deliver_policy(self, escrow, ledger):
        accepted_escrow(escrow, policy=CustodyPolicy.DELIVER)
        assert get_book_holder(ledger, BOOK) == "bob"
        assert is_locked(ledger, BOOK)
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")


class TestReturn:

    def test_before_unlock_rejected(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3) - timedelta(seconds=1))
        with pytest.raises(RentalPeriodNotOver):
            escrow.return_rental("001")
        assert escrow.record("001").status == EscrowStatus.ACCEPTED
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")

    def test_settles_at_unlock(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        record = escrow.return_rental("001")

        assert record.status == EscrowStatus.CLOSED
        assert record.closed_time == start_time + timedelta(days=3)
        assert ledger.get_balance("alice_payout", "USD") == Decimal("15")
        assert ledger.get_balance("bob", "USD") == Decimal("20")
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("0")
        assert get_book_holder(ledger, BOOK) == "alice"
        assert not is_locked(ledger, BOOK)

    def test_closed_record_leaves_active_set(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        escrow.return_rental("001")
        assert escrow.active_escrows() == []
        assert ledger.get_balance("alice", SYMBOL) == Decimal("0")
        assert ledger.get_balance(SYSTEM_WALLET, SYMBOL) == Decimal("0")

    def test_return_is_one_transaction(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        before = len(ledger.transaction_log)
        escrow.return_rental("001")
        assert len(ledger.transaction_log) == before + 1
        assert ledger.transaction_log[-1].origin.event_type == "RETURN"

    def test_second_return_never_double_pays(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=4))
        escrow.return_rental("001")
        with pytest.raises(InvalidStateTransition):
            escrow.return_rental("001")
        assert ledger.get_balance("alice_payout", "USD") == Decimal("15")
        assert ledger.get_balance("bob", "USD") == Decimal("20")

    def test_return_before_accept(self, escrow, ledger, start_time):
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        ledger.advance_time(start_time + timedelta(days=30))
        with pytest.raises(InvalidStateTransition):
            escrow.return_rental("001")

    def test_deliver_policy_takes_book_back(self, escrow, ledger, start_time):
        accepted_escrow(escrow, policy=CustodyPolicy.DELIVER)
        ledger.advance_time(start_time + timedelta(days=3))
        escrow.return_rental("001")
        assert get_book_holder(ledger, BOOK) == "alice"
        assert not is_locked(ledger, BOOK)
        assert ledger.get_balance("bob", "USD") == Decimal("20")

    def test_custom_period_length(self, escrow, ledger, start_time):
        escrow.initialize("001", "alice", BOOK, "alice", "alice_payout",
                          price_per_period=5, deposit_amount=20, currency="USD", period_seconds=3600)
        escrow.request("001", "bob", 3)
        escrow.accept("001")
        ledger.advance_time(start_time + timedelta(hours=2))
        with pytest.raises(RentalPeriodNotOver):
            escrow.return_rental("001")
        ledger.advance_time(start_time + timedelta(hours=3))
        assert escrow.return_rental("001").status == EscrowStatus.CLOSED

    def test_free_rental(self, ledger, start_time):
        escrow = RentalEscrow(ledger)
        open_escrow(escrow, price=0, deposit=0)
        escrow.request("001", "carol", 1)
        escrow.accept("001")
        ledger.advance_time(start_time + timedelta(days=1))
        escrow.return_rental("001")
        assert ledger.get_balance("carol", "USD") == Decimal("0")
        assert get_book_holder(ledger, BOOK) == "alice"

    def test_book_can_be_rented_again(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        escrow.return_rental("001")
        record = open_escrow(escrow, escrow_id="002")
        assert record.status == EscrowStatus.CREATED
        assert get_book_holder(ledger, BOOK) == Custodian.for_escrow("002").wallet_id


class TestCustodianAuthority:

    def test_forged_payout_rejected(self, accepted, escrow, ledger, start_time):
        steal = build_transaction(ledger, [
            Custodian.for_escrow("001").transfer_funds(Decimal("35"), "USD", "carol", contract_id="steal"),
        ])
        with pytest.raises(TransferRuleViolation, match="outside a transition"):
            ledger.execute(steal, strict=True)
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")
        assert ledger.get_balance("carol", "USD") == Decimal("0")

        ledger.advance_time(start_time + timedelta(days=3))
        assert escrow.return_rental("001").status == EscrowStatus.CLOSED
        assert ledger.get_balance("alice_payout", "USD") == Decimal("15")
        assert ledger.get_balance("bob", "USD") == Decimal("20")

    def test_redirected_rent_rejected(self, accepted, ledger, start_time):
        ledger.advance_time(start_time + timedelta(days=3))
        pending = compute_rental_return(ledger, SYMBOL)
        redirected = PendingTransaction(
            moves=tuple(replace(m, dest="carol") if m.contract_id.endswith("_rent") else m for m in pending.moves),
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
        )
        with pytest.raises(TransferRuleViolation, match="moves outside"):
            ledger.execute(redirected, strict=True)
        assert load_escrow_record(ledger, SYMBOL).status == EscrowStatus.ACCEPTED
        assert ledger.get_balance("carol", "USD") == Decimal("0")

    def test_payout_leaving_record_open_rejected(self, accepted, ledger, start_time):
        ledger.advance_time(start_time + timedelta(days=3))
        pending = compute_rental_return(ledger, SYMBOL)
        record_change = next(sc for sc in pending.state_changes if sc.unit == SYMBOL)
        kept_open = UnitStateChange(SYMBOL, record_change.old_state, record_change.old_state)
        partial = PendingTransaction(
            moves=pending.moves,
            state_changes=tuple(kept_open if sc.unit == SYMBOL else sc for sc in pending.state_changes),
            origin=pending.origin,
            timestamp=pending.timestamp,
        )
        with pytest.raises(TransferRuleViolation, match="state changes"):
            ledger.execute(partial, strict=True)
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")

    def test_forged_return_before_unlock_rejected(self, accepted, ledger, start_time):
        ledger.advance_time(start_time + timedelta(days=1))
        early = build_transaction(ledger, [
            Custodian.for_escrow("001").transfer_funds(Decimal("20"), "USD", "bob", contract_id="refund"),
        ], [UnitStateChange(SYMBOL, ledger.get_unit_state(SYMBOL),
                            {**ledger.get_unit_state(SYMBOL), 'status': "closed"})])
        with pytest.raises(RentalPeriodNotOver):
            ledger.execute(early, strict=True)
        assert ledger.get_balance(CUSTODIAN, "USD") == Decimal("35")

    def test_delivered_book_cannot_be_recalled_by_forgery(self, escrow, ledger):
        accepted_escrow(escrow, policy=CustodyPolicy.DELIVER)
        grab = Move(Decimal("1"), BOOK, "bob", "carol", "grab",
                    metadata=Custodian.for_escrow("001").signature())
        with pytest.raises(TransferRuleViolation, match="outside a transition"):
            ledger.execute(build_transaction(ledger, [grab]), strict=True)
        assert get_book_holder(ledger, BOOK) == "bob"

    def test_return_executed_after_it_was_built(self, accepted, ledger, start_time):
        unlock = start_time + timedelta(days=3)
        ledger.advance_time(unlock)
        pending = compute_rental_return(ledger, SYMBOL)
        ledger.advance_time(unlock + timedelta(hours=1))
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert load_escrow_record(ledger, SYMBOL).closed_time == unlock


class TestActiveEscrows:

    def test_filter_by_wallet(self, escrow, ledger):
        ledger.execute(mint_book_token(ledger, create_book_token("BOOK_2", "Ulysses"), "carol"), strict=True)
        open_escrow(escrow)
        escrow.initialize("002", "carol", "BOOK_2", "carol", "carol",
                          price_per_period=1, deposit_amount=0, currency="USD")
        escrow.request("001", "bob", 3)
        assert escrow.active_escrows() == [rental_symbol("001"), rental_symbol("002")]
        assert escrow.active_escrows("bob") == [rental_symbol("001")]
        assert escrow.active_escrows("carol") == [rental_symbol("002")]


class TestConcurrency:

    def test_racing_requests(self, escrow, ledger):
        open_escrow(escrow)
        first = compute_rental_request(ledger, SYMBOL, "bob", 3)
        second = compute_rental_request(ledger, SYMBOL, "carol", 2)
        assert ledger.execute(first) == ExecuteResult.APPLIED
        with pytest.raises(StaleState):
            ledger.execute(second, strict=True)
        assert escrow.record("001").taker == "bob"

    def test_identical_intent_applied_once(self, escrow, ledger):
        open_escrow(escrow)
        pending = compute_rental_request(ledger, SYMBOL, "bob", 3)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert ledger.execute(pending) == ExecuteResult.ALREADY_APPLIED

    def test_manual_and_lifecycle_return_race(self, escrow, ledger, start_time):
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        manual = compute_rental_return(ledger, SYMBOL)
        polled = rental_escrow_contract(ledger, SYMBOL, ledger.current_time)
        assert manual.intent_id != polled.intent_id
        assert ledger.execute(polled) == ExecuteResult.APPLIED
        assert ledger.execute(manual) == ExecuteResult.REJECTED
        assert ledger.get_balance("alice_payout", "USD") == Decimal("15")


class TestAudit:

    def test_clone_at_before_accept(self, escrow, ledger, start_time):
        open_escrow(escrow)
        escrow.request("001", "bob", 3)
        ledger.advance_time(start_time + timedelta(hours=1))
        escrow.accept("001")

        past = ledger.clone_at(start_time)
        assert load_escrow_record(past, SYMBOL).status == EscrowStatus.REQUESTED
        assert past.get_balance("bob", "USD") == Decimal("35")
        assert ledger.get_balance("bob", "USD") == Decimal("0")

    def test_supplies_conserved_through_lifecycle(self, escrow, ledger, start_time):
        before = ledger.verify_double_entry()['supplies']
        accepted_escrow(escrow)
        ledger.advance_time(start_time + timedelta(days=3))
        escrow.return_rental("001")
        check = ledger.verify_double_entry(before)
        assert check['valid'], check['discrepancies']

    def test_transitions_from_separate_ledgers_match(self):
        one, two = make_escrow_ledger(name="a"), make_escrow_ledger(name="b")
        for ledger in (one, two):
            accepted_escrow(RentalEscrow(ledger))
        assert [tx.intent_id for tx in one.transaction_log] == [tx.intent_id for tx in two.transaction_log]
