"""
Chip Ledger

Authoritative balances for a chip economy:
- Atomic transfers with per-account locking, never a negative balance
- Append-only transaction journal with audit fields
- Transfer lifecycle: manual (approved) → reversed, request: pending → approved / rejected
- Recovery of banned balances into verified accounts
- Daily mint limited to one credit per account per 24 hours
- Idempotent mutations keyed by a caller-supplied key
"""

from .models import (
    Account,
    AccountStatus,
    Identity,
    Role,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .service import LedgerService

__all__ = [
    "Account",
    "AccountStatus",
    "Identity",
    "Role",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "LedgerService",
]
