"""
Transaction Journal

Append-only history of every ledger-affecting event. Rows are never
deleted; once a transaction reaches a terminal status only audit fields
may change.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import InvalidStateError, TransactionNotFoundError
from .models import (
    Direction,
    Transaction,
    TransactionFilters,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    TransactionView,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[tuple[TransactionType, TransactionStatus], set[TransactionStatus]] = {
    (TransactionType.REQUEST, TransactionStatus.PENDING): {TransactionStatus.APPROVED, TransactionStatus.REJECTED},
    (TransactionType.MANUAL, TransactionStatus.APPROVED): {TransactionStatus.REVERSED},
}

AUDIT_FIELDS = {"decided_by", "decided_at", "decision_reason", "reversed_by_transaction_id"}


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class TransactionJournal:
    def __init__(self, storage: InMemoryStorage, clock: Callable[[], datetime]):
        self.storage = storage
        self.clock = clock

    def append(
        self,
        type: TransactionType,
        status: TransactionStatus,
        amount: int,
        from_account_id: Optional[UUID] = None,
        to_account_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        created_by: Optional[UUID] = None,
        related_transaction_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        now = self.clock()
        data = {
            "id": uuid4(),
            "from_account_id": from_account_id,
            "to_account_id": to_account_id,
            "amount": amount,
            "type": type,
            "status": status,
            "reason": reason,
            "created_at": now,
            "created_by": created_by,
            "decided_by": created_by if status == TransactionStatus.APPROVED else None,
            "decided_at": now if status == TransactionStatus.APPROVED else None,
            "decision_reason": None,
            "related_transaction_id": related_transaction_id,
            "reversed_by_transaction_id": None,
            "idempotency_key": idempotency_key,
        }
        transaction = Transaction(**data)
        with self.storage.registry_lock:
            self.storage.transactions[transaction.id] = data
            self.storage.transaction_order.append(transaction.id)
        logger.info(
            "Journaled %s transaction %s (%s, %d chips)",
            type.value, transaction.id, status.value, amount,
        )
        return transaction

    def get(self, transaction_id: UUID) -> Transaction:
        with self.storage.registry_lock:
            data = self.storage.transactions.get(transaction_id)
        if not data:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found", transaction_id=str(transaction_id)
            )
        return Transaction(**data)

    def locked(self, transaction_id: UUID) -> threading.RLock:
        """Lock held across a status change. Created on first mutation only."""
        self.get(transaction_id)
        return self.storage.transaction_lock(transaction_id)

    def transition(self, transaction_id: UUID, new_status: TransactionStatus, **annotations) -> Transaction:
        unknown = set(annotations) - AUDIT_FIELDS
        if unknown:
            raise ValueError(f"Cannot annotate transaction fields: {sorted(unknown)}")
        with self.locked(transaction_id):
            with self.storage.registry_lock:
                data = self.storage.transactions[transaction_id]
            allowed = ALLOWED_TRANSITIONS.get((data["type"], data["status"]), set())
            if new_status not in allowed:
                raise InvalidStateError(
                    f"Cannot move {data['type'].value} transaction from {data['status'].value} to {new_status.value}",
                    transaction_id=str(transaction_id),
                    status=data["status"].value,
                )
            updated = {**data, "status": new_status, **annotations}
            with self.storage.registry_lock:
                self.storage.transactions[transaction_id] = updated
            transaction = Transaction(**updated)
        logger.info("Transaction %s is now %s", transaction_id, new_status.value)
        return transaction

    def find_reversal(self, transaction_id: UUID) -> Optional[Transaction]:
        for data in self._snapshot():
            if data["type"] == TransactionType.REVERSAL and data["related_transaction_id"] == transaction_id:
                return Transaction(**data)
        return None

    def query(
        self,
        filters: Optional[TransactionFilters] = None,
        viewer_account_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        names = self._display_names()
        views = []
        for data in reversed(self._snapshot()):
            view = self._to_view(data, names, viewer_account_id)
            if self._matches(view, filters, names):
                views.append(view)
        return TransactionPage(
            transactions=views[offset:offset + limit],
            total_count=len(views),
            limit=limit,
            offset=offset,
        )

    def view(self, transaction_id: UUID, viewer_account_id: Optional[UUID] = None) -> TransactionView:
        transaction = self.get(transaction_id)
        return self._to_view(transaction.model_dump(), self._display_names(), viewer_account_id)

    def _snapshot(self) -> list[dict]:
        with self.storage.registry_lock:
            return [dict(self.storage.transactions[t]) for t in self.storage.transaction_order]

    def _display_names(self) -> dict[UUID, tuple[str, str]]:
        with self.storage.registry_lock:
            return {
                account_id: (data["display_name"], data.get("email") or "")
                for account_id, data in self.storage.accounts.items()
            }

    @staticmethod
    def _to_view(data: dict, names: dict, viewer_account_id: Optional[UUID]) -> TransactionView:
        from_id, to_id = data["from_account_id"], data["to_account_id"]
        if viewer_account_id is not None and from_id == viewer_account_id:
            direction = Direction.SENT
        elif viewer_account_id is not None and to_id == viewer_account_id:
            direction = Direction.RECEIVED
        elif from_id is None:
            direction = Direction.SYSTEM
        else:
            direction = None
        return TransactionView(
            **data,
            from_display_name=names[from_id][0] if from_id in names else None,
            to_display_name=names[to_id][0] if to_id in names else None,
            direction=direction,
        )

    @staticmethod
    def _matches(view: TransactionView, filters: TransactionFilters, names: dict) -> bool:
        if filters.type is not None and view.type != filters.type:
            return False
        if filters.status is not None and view.status != filters.status:
            return False
        if filters.account_id is not None and filters.account_id not in (view.from_account_id, view.to_account_id):
            return False
        if filters.from_date is not None and view.created_at < _utc(filters.from_date):
            return False
        if filters.to_date is not None and view.created_at > _utc(filters.to_date):
            return False
        if filters.search:
            needle = filters.search.lower()
            haystack = [view.reason or "", view.decision_reason or ""]
            for account_id in (view.from_account_id, view.to_account_id):
                haystack.extend(names.get(account_id, ()))
            if not any(needle in text.lower() for text in haystack):
                return False
        return True
