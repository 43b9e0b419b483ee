"""
Units module - Factory functions and transitions for rental escrow units.

- Book tokens: non-fungible, single-unit assets with a custody lock
- Rental records: one unit per escrow agreement, carrying its state

All unit factories and related functions are re-exported here for convenience.
"""

# Book tokens
from .book import (
    book_transfer_rule,
    create_book_token,
    mint_book_token,
    get_book_holder,
    is_locked,
)

# Rental escrow records
from .rental import (
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
