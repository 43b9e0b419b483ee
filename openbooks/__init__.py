"""
openbooks - Rental Escrow for Book Tokens

A two-party rental of a unique book token for a fee, with a program-derived
custodian holding the book and the funds, hosted on a double-entry ledger.

Usage:
    from openbooks import Ledger, RentalEscrow, cash, create_book_token, mint_book_token

    ledger = Ledger("main")
    ledger.register_unit(cash("USD", "US Dollar"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.execute(mint_book_token(ledger, create_book_token("BOOK_1", "Moby-Dick"), "alice"))

    escrow = RentalEscrow(ledger)
    escrow.initialize("001", "alice", "BOOK_1", "alice", "alice",
                      price_per_period=5, deposit_amount=20, currency="USD")
    escrow.request("001", "bob", rental_periods=3)
    escrow.accept("001")
"""

# Core types
from .core import (
    LedgerView,
    SmartContract,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    StaleState,
    InvalidStateTransition,
    RentalPeriodNotOver,
    AssetNotSingleton,
    to_amount,
    cash,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_BOOK,
    UNIT_TYPE_RENTAL_ESCROW,
)

# Ledger
from .ledger import Ledger

# Custodian
from .custodian import (
    Custodian,
    derive_custodian_address,
    transfer_funds,
    transfer_asset_custody,
    CUSTODIAN_DOMAIN_TAG,
    ESCROW_PROGRAM_ID,
)

# Units
from .units import (
    book_transfer_rule,
    create_book_token,
    mint_book_token,
    get_book_holder,
    is_locked,
    EscrowStatus,
    CustodyPolicy,
    EscrowRecord,
    PERIOD_SECONDS,
    DEFAULT_CUSTODY_POLICY,
    rental_symbol,
    load_escrow_record,
    to_state_dict,
    calculate_rent,
    calculate_total_due,
    calculate_unlock_time,
    is_rental_period_over,
    total_due,
    create_rental_record_unit,
    compute_escrow_initialize,
    compute_rental_request,
    compute_rental_acceptance,
    compute_rental_return,
    rental_escrow_contract,
    get_escrow_status,
    get_total_due,
    get_active_escrows,
)

# Lifecycle
from .lifecycle_engine import LifecycleEngine

# Facade
from .escrow import RentalEscrow


__all__ = [
    # Core
    'LedgerView', 'SmartContract', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult', 'to_amount', 'cash',
    'SYSTEM_WALLET', 'UNIT_TYPE_CASH', 'UNIT_TYPE_BOOK', 'UNIT_TYPE_RENTAL_ESCROW',
    # Errors
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'StaleState', 'InvalidStateTransition', 'RentalPeriodNotOver', 'AssetNotSingleton',
    # Ledger
    'Ledger',
    # Custodian
    'Custodian', 'derive_custodian_address', 'transfer_funds', 'transfer_asset_custody',
    'CUSTODIAN_DOMAIN_TAG', 'ESCROW_PROGRAM_ID',
    # Books
    'book_transfer_rule', 'create_book_token', 'mint_book_token', 'get_book_holder', 'is_locked',
    # Rental escrow
    'EscrowStatus', 'CustodyPolicy', 'EscrowRecord', 'PERIOD_SECONDS', 'DEFAULT_CUSTODY_POLICY',
    'rental_symbol', 'load_escrow_record', 'to_state_dict',
    'calculate_rent', 'calculate_total_due', 'calculate_unlock_time', 'is_rental_period_over',
    'total_due', 'create_rental_record_unit',
    'compute_escrow_initialize', 'compute_rental_request',
    'compute_rental_acceptance', 'compute_rental_return',
    'rental_escrow_contract', 'get_escrow_status', 'get_total_due', 'get_active_escrows',
    'RentalEscrow',
    # Lifecycle
    'LifecycleEngine',
]

__version__ = '0.1.0'
