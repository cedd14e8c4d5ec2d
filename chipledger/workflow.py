import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from .auth import require_admin
from .engine import LedgerEngine, validate_amount
from .errors import (
    InvalidStateError,
    LedgerServiceError,
    SameAccountError,
    ValidationError,
)
from .journal import TransactionJournal
from .models import (
    BulkTransferFailure,
    BulkTransferReport,
    Identity,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransferRequest,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class TransferWorkflow:
    """Manual transfers, player transfer requests and reversals.

    ``manual`` transactions are applied immediately and journaled as
    ``approved``. ``request`` transactions start ``pending`` and move no
    chips until an admin approves them. Only an approved manual transfer can
    be reversed, and only once.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        engine: LedgerEngine,
        journal: TransactionJournal,
        clock: Callable[[], datetime],
    ):
        self.storage = storage
        self.engine = engine
        self.journal = journal
        self.clock = clock

    def create_manual_transfer(
        self,
        actor: Identity,
        to_account_id: UUID,
        amount: int,
        from_account_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        require_admin(actor, "create manual transfers")
        validate_amount(amount)
        if from_account_id is not None and from_account_id == to_account_id:
            raise SameAccountError("Sender and recipient must differ", account_id=str(to_account_id))

        with self.engine.locked(from_account_id, to_account_id):
            self.engine.apply_transfer(from_account_id, to_account_id, amount)
            transaction = self.journal.append(
                type=TransactionType.MANUAL,
                status=TransactionStatus.APPROVED,
                amount=amount,
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                reason=reason,
                created_by=actor.user_id,
                idempotency_key=idempotency_key,
            )
        return transaction

    def create_transfer_request(
        self,
        actor: Identity,
        to_account_id: UUID,
        amount: int,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        validate_amount(amount)
        requester = self.storage.get_account(actor.user_id)
        if requester.is_banned:
            raise InvalidStateError("Banned accounts cannot request transfers", account_id=str(requester.id))
        if to_account_id == requester.id:
            raise SameAccountError("Cannot request a transfer to your own account", account_id=str(requester.id))
        self.storage.get_account(to_account_id)

        return self.journal.append(
            type=TransactionType.REQUEST,
            status=TransactionStatus.PENDING,
            amount=amount,
            from_account_id=requester.id,
            to_account_id=to_account_id,
            reason=note,
            created_by=actor.user_id,
            idempotency_key=idempotency_key,
        )

    def approve_request(self, actor: Identity, transaction_id: UUID) -> Transaction:
        require_admin(actor, "approve transfer requests")
        with self.journal.locked(transaction_id):
            request = self.journal.get(transaction_id)
            if not request.can_approve():
                raise InvalidStateError(
                    f"Only pending requests can be approved, this one is {request.type.value}/{request.status.value}",
                    transaction_id=str(transaction_id),
                    status=request.status.value,
                )
            with self.engine.locked(request.from_account_id, request.to_account_id):
                if self.storage.get_account(request.from_account_id).is_banned:
                    raise InvalidStateError(
                        "Requester has been banned since filing the request",
                        transaction_id=str(transaction_id),
                    )
                # Balance may have changed since filing; apply_transfer re-checks it under the lock.
                self.engine.apply_transfer(request.from_account_id, request.to_account_id, request.amount)
                return self.journal.transition(
                    transaction_id,
                    TransactionStatus.APPROVED,
                    decided_by=actor.user_id,
                    decided_at=self.clock(),
                )

    def reject_request(self, actor: Identity, transaction_id: UUID, reason: Optional[str] = None) -> Transaction:
        require_admin(actor, "reject transfer requests")
        with self.journal.locked(transaction_id):
            request = self.journal.get(transaction_id)
            if not request.can_reject():
                raise InvalidStateError(
                    f"Only pending requests can be rejected, this one is {request.type.value}/{request.status.value}",
                    transaction_id=str(transaction_id),
                    status=request.status.value,
                )
            return self.journal.transition(
                transaction_id,
                TransactionStatus.REJECTED,
                decided_by=actor.user_id,
                decided_at=self.clock(),
                decision_reason=reason,
            )

    def reverse_transaction(
        self,
        actor: Identity,
        transaction_id: UUID,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        require_admin(actor, "reverse transactions")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reverse a transaction")

        with self.journal.locked(transaction_id):
            original = self.journal.get(transaction_id)
            if not original.can_reverse() or self.journal.find_reversal(transaction_id) is not None:
                raise InvalidStateError(
                    "Only approved manual transfers that have not been reversed can be reversed",
                    transaction_id=str(transaction_id),
                    type=original.type.value,
                    status=original.status.value,
                )
            # Chips go back from the original recipient; a system credit is burned.
            with self.engine.locked(original.to_account_id, original.from_account_id):
                self.engine.apply_transfer(original.to_account_id, original.from_account_id, original.amount)
                reversal = self.journal.append(
                    type=TransactionType.REVERSAL,
                    status=TransactionStatus.APPROVED,
                    amount=original.amount,
                    from_account_id=original.to_account_id,
                    to_account_id=original.from_account_id,
                    reason=reason.strip(),
                    created_by=actor.user_id,
                    related_transaction_id=original.id,
                    idempotency_key=idempotency_key,
                )
                self.journal.transition(
                    transaction_id,
                    TransactionStatus.REVERSED,
                    reversed_by_transaction_id=reversal.id,
                )
        logger.info("Reversed transaction %s with %s", transaction_id, reversal.id)
        return reversal

    def bulk_transfer(
        self,
        actor: Identity,
        items: list[TransferRequest],
        idempotency_key: Optional[str] = None,
    ) -> BulkTransferReport:
        require_admin(actor, "run bulk transfers")
        report = BulkTransferReport()
        for index, item in enumerate(items):
            try:
                if item.type not in (None, TransactionType.MANUAL):
                    raise ValidationError(
                        f"Bulk rows are manual transfers, got {item.type.value}", type=item.type.value
                    )
                transaction = self.create_manual_transfer(
                    actor,
                    to_account_id=item.to_account_id,
                    amount=item.amount,
                    from_account_id=item.from_account_id,
                    reason=item.reason,
                    idempotency_key=f"{idempotency_key}:{index}" if idempotency_key else None,
                )
            except LedgerServiceError as e:
                logger.warning("Bulk transfer row %d failed: %s", index, e.message)
                report.failed.append(BulkTransferFailure(index=index, code=e.code, message=e.message))
                continue
            report.succeeded.append(transaction)
            report.total_amount += transaction.amount
        return report
