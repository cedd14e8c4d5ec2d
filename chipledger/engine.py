"""
Ledger Engine

The only code that changes an account balance. A transfer debits the sender
and credits the recipient while both account locks are held, so no reader
ever sees one half of it. Locks are always taken in ascending id order,
which keeps two opposite transfers between the same pair from deadlocking.
"""

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional
from uuid import UUID

from .errors import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAmountError,
    SameAccountError,
    ValidationError,
)
from .models import Account
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

MUTABLE_ACCOUNT_FIELDS = {"status", "verified", "ban_reason", "banned_at", "verified_at"}


@dataclass(frozen=True)
class TransferResult:
    from_account_id: Optional[UUID]
    to_account_id: Optional[UUID]
    amount: int
    from_balance: Optional[int] = None
    to_balance: Optional[int] = None


def validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be a whole number of chips, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}", amount=amount)
    return amount


class LedgerEngine:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @contextmanager
    def locked(self, *account_ids: Optional[UUID]) -> Iterator[None]:
        ordered = sorted({a for a in account_ids if a is not None}, key=str)
        with ExitStack() as stack:
            for account_id in ordered:
                stack.enter_context(self.storage.account_lock(account_id))
            yield

    def apply_transfer(
        self,
        from_account_id: Optional[UUID],
        to_account_id: Optional[UUID],
        amount: int,
    ) -> TransferResult:
        """Move ``amount`` chips as one unit.

        ``from_account_id=None`` mints the credit, ``to_account_id=None``
        burns the debit. Raises before touching any balance when the
        transfer cannot be applied in full.
        """
        validate_amount(amount)
        if from_account_id is None and to_account_id is None:
            raise ValidationError("A transfer needs a sender or a recipient")
        if from_account_id is not None and from_account_id == to_account_id:
            raise SameAccountError("Sender and recipient must differ", account_id=str(from_account_id))
        for account_id in (from_account_id, to_account_id):
            if account_id is not None and not self.storage.has_account(account_id):
                raise AccountNotFoundError(f"Account {account_id} not found", account_id=str(account_id))

        with self.locked(from_account_id, to_account_id):
            sender = self.storage.accounts[from_account_id] if from_account_id else None
            recipient = self.storage.accounts[to_account_id] if to_account_id else None

            if sender is not None and sender["balance"] < amount:
                logger.warning(
                    "Rejected transfer of %d from %s: balance %d",
                    amount, from_account_id, sender["balance"],
                )
                raise InsufficientFundsError(
                    f"Account {from_account_id} has {sender['balance']} chips, {amount} required",
                    account_id=str(from_account_id),
                    balance=sender["balance"],
                    requested=amount,
                )

            if sender is not None:
                sender["balance"] -= amount
            if recipient is not None:
                recipient["balance"] += amount

            result = TransferResult(
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                amount=amount,
                from_balance=sender["balance"] if sender is not None else None,
                to_balance=recipient["balance"] if recipient is not None else None,
            )

        logger.info("Applied transfer of %d chips %s -> %s", amount, from_account_id or "mint", to_account_id or "burn")
        return result

    def update_account(self, account_id: UUID, **changes) -> Account:
        unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update account fields: {sorted(unknown)}")
        with self.locked(account_id):
            data = self.storage.accounts[account_id]
            data.update(changes)
            return Account(**data)

    def total_balance(self) -> int:
        with self.storage.registry_lock:
            account_ids = list(self.storage.accounts)
        with self.locked(*account_ids):
            return sum(self.storage.accounts[a]["balance"] for a in account_ids)
