import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from .auth import require_admin, require_self_or_admin
from .config import Settings
from .daily_mint import DailyMintService
from .engine import LedgerEngine
from .errors import TransactionNotFoundError, UnauthorizedError, ValidationError
from .idempotency import IdempotencyCache
from .journal import TransactionJournal
from .models import (
    Account,
    BulkTransferReport,
    DailyMintStatus,
    Identity,
    MintReport,
    RecoveryResponse,
    TransactionFilters,
    TransactionPage,
    TransactionType,
    TransactionView,
    TransferRequest,
    TransferResponse,
)
from .recovery import RecoveryService
from .storage import InMemoryStorage
from .workflow import TransferWorkflow

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """Entry point for every ledger operation.

    Mutating calls pass through the idempotency cache first, keyed per
    caller, then run in the matching workflow. Reads go straight to the
    account store and the journal.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or Settings()
        self.storage = storage if storage is not None else InMemoryStorage(seed=self.settings.seed_demo_data)
        self.clock = clock
        self.engine = LedgerEngine(self.storage)
        self.journal = TransactionJournal(self.storage, clock)
        self.idempotency = IdempotencyCache(
            clock,
            ttl=timedelta(hours=self.settings.idempotency_ttl_hours),
            wait_timeout=self.settings.idempotency_wait_seconds,
        )
        self.transfers = TransferWorkflow(self.storage, self.engine, self.journal, clock)
        self.recovery = RecoveryService(self.storage, self.engine, self.journal, clock)
        self.daily_mint = DailyMintService(
            self.storage,
            self.engine,
            self.journal,
            clock,
            claim_amount=self.settings.daily_mint_amount,
            window=timedelta(hours=self.settings.daily_mint_window_hours),
        )

    # Transfers

    def submit_transfer(
        self,
        actor: Identity,
        request: TransferRequest,
        idempotency_key: Optional[str] = None,
    ) -> TransferResponse:
        transfer_type = request.type or (TransactionType.MANUAL if actor.is_admin else TransactionType.REQUEST)
        if transfer_type == TransactionType.MANUAL:
            require_admin(actor, "create manual transfers")

            def operation():
                transaction = self.transfers.create_manual_transfer(
                    actor,
                    to_account_id=request.to_account_id,
                    amount=request.amount,
                    from_account_id=request.from_account_id,
                    reason=request.reason,
                    idempotency_key=idempotency_key,
                )
                return TransferResponse(transaction=transaction, message="Transfer completed")

        elif transfer_type == TransactionType.REQUEST:
            if request.from_account_id not in (None, actor.user_id):
                raise UnauthorizedError("Transfer requests can only be filed from your own account")

            def operation():
                transaction = self.transfers.create_transfer_request(
                    actor,
                    to_account_id=request.to_account_id,
                    amount=request.amount,
                    note=request.reason,
                    idempotency_key=idempotency_key,
                )
                return TransferResponse(transaction=transaction, message="Transfer request is pending approval")

        else:
            raise ValidationError(f"Cannot submit a {transfer_type.value} transfer directly")

        payload = request.model_dump(mode="json")
        payload["type"] = transfer_type.value
        return self._idempotent(actor, idempotency_key, "transfer", payload, operation)

    def bulk_transfer(
        self,
        actor: Identity,
        items: list[TransferRequest],
        idempotency_key: Optional[str] = None,
    ) -> BulkTransferReport:
        require_admin(actor, "run bulk transfers")
        payload = [item.model_dump(mode="json") for item in items]
        return self._idempotent(
            actor, idempotency_key, "bulk_transfer", payload,
            lambda: self.transfers.bulk_transfer(actor, items, idempotency_key=idempotency_key),
        )

    def approve_request(
        self,
        actor: Identity,
        transaction_id: UUID,
        idempotency_key: Optional[str] = None,
    ) -> TransferResponse:
        require_admin(actor, "approve transfer requests")

        def operation():
            transaction = self.transfers.approve_request(actor, transaction_id)
            return TransferResponse(transaction=transaction, message="Transfer request approved")

        return self._idempotent(actor, idempotency_key, "approve", {"id": str(transaction_id)}, operation)

    def reject_request(
        self,
        actor: Identity,
        transaction_id: UUID,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResponse:
        require_admin(actor, "reject transfer requests")

        def operation():
            transaction = self.transfers.reject_request(actor, transaction_id, reason)
            return TransferResponse(transaction=transaction, message="Transfer request rejected")

        payload = {"id": str(transaction_id), "reason": reason}
        return self._idempotent(actor, idempotency_key, "reject", payload, operation)

    def reverse_transaction(
        self,
        actor: Identity,
        transaction_id: UUID,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> TransferResponse:
        require_admin(actor, "reverse transactions")

        def operation():
            transaction = self.transfers.reverse_transaction(
                actor, transaction_id, reason, idempotency_key=idempotency_key
            )
            return TransferResponse(transaction=transaction, message="Transaction reversed")

        payload = {"id": str(transaction_id), "reason": reason}
        return self._idempotent(actor, idempotency_key, "reverse", payload, operation)

    # Recovery

    def recover_chips(
        self,
        actor: Identity,
        banned_account_id: UUID,
        verified_account_id: UUID,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RecoveryResponse:
        require_admin(actor, "recover chips")
        payload = {"banned": str(banned_account_id), "verified": str(verified_account_id), "reason": reason}
        return self._idempotent(
            actor, idempotency_key, "recover", payload,
            lambda: self.recovery.recover_chips(
                actor, banned_account_id, verified_account_id, reason, idempotency_key=idempotency_key
            ),
        )

    def ban_account(
        self,
        actor: Identity,
        account_id: UUID,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> Account:
        require_admin(actor, "ban accounts")
        payload = {"id": str(account_id), "reason": reason}
        return self._idempotent(
            actor, idempotency_key, "ban", payload,
            lambda: self.recovery.ban_account(actor, account_id, reason),
        )

    def unban_account(self, actor: Identity, account_id: UUID, idempotency_key: Optional[str] = None) -> Account:
        require_admin(actor, "unban accounts")
        return self._idempotent(
            actor, idempotency_key, "unban", {"id": str(account_id)},
            lambda: self.recovery.unban_account(actor, account_id),
        )

    def verify_account(self, actor: Identity, account_id: UUID, idempotency_key: Optional[str] = None) -> Account:
        require_admin(actor, "verify accounts")
        return self._idempotent(
            actor, idempotency_key, "verify", {"id": str(account_id)},
            lambda: self.recovery.verify_account(actor, account_id),
        )

    def list_banned_with_balance(self, actor: Identity, search: Optional[str] = None) -> list[Account]:
        return self.recovery.list_banned_with_balance(actor, search)

    def list_verified(self, actor: Identity, search: Optional[str] = None) -> list[Account]:
        return self.recovery.list_verified(actor, search)

    # Daily mint

    def claim_daily_mint(self, actor: Identity, idempotency_key: Optional[str] = None) -> TransferResponse:
        def operation():
            transaction = self.daily_mint.claim_daily_mint(actor, actor.user_id, idempotency_key=idempotency_key)
            return TransferResponse(transaction=transaction, message=f"Claimed {transaction.amount} chips")

        return self._idempotent(actor, idempotency_key, "daily_claim", {"id": str(actor.user_id)}, operation)

    def daily_mint_status(self, actor: Identity, account_id: Optional[UUID] = None) -> DailyMintStatus:
        return self.daily_mint.status(actor, account_id or actor.user_id)

    def mint_for_all_eligible(
        self,
        actor: Identity,
        amount_per_user: int,
        idempotency_key: Optional[str] = None,
    ) -> MintReport:
        require_admin(actor, "run the daily mint")
        return self._idempotent(
            actor, idempotency_key, "daily_mint", {"amount": amount_per_user},
            lambda: self.daily_mint.mint_for_all_eligible(actor, amount_per_user, idempotency_key=idempotency_key),
        )

    # Reads

    def get_balance(self, actor: Identity, account_id: Optional[UUID] = None) -> Account:
        account_id = account_id or actor.user_id
        require_self_or_admin(actor, account_id)
        return self.storage.get_account(account_id)

    def list_balances(self, actor: Identity, search: Optional[str] = None) -> list[Account]:
        require_admin(actor, "list all balances")
        return self.storage.list_accounts(search=search)

    def list_transactions(
        self,
        actor: Identity,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        if not actor.is_admin:
            filters = filters.model_copy(update={"account_id": actor.user_id})
        return self.journal.query(filters, viewer_account_id=filters.account_id, limit=limit, offset=offset)

    def get_transaction(self, actor: Identity, transaction_id: UUID) -> TransactionView:
        view = self.journal.view(transaction_id, viewer_account_id=None if actor.is_admin else actor.user_id)
        if not actor.is_admin and actor.user_id not in (view.from_account_id, view.to_account_id):
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found", transaction_id=str(transaction_id)
            )
        return view

    def total_supply(self) -> int:
        return self.engine.total_balance()

    def _idempotent(
        self,
        actor: Identity,
        idempotency_key: Optional[str],
        operation_name: str,
        payload: Any,
        operation: Callable[[], Any],
    ) -> Any:
        if idempotency_key is None:
            return operation()
        scoped_key = f"{actor.user_id}:{idempotency_key}"
        fingerprint = f"{operation_name}:{json.dumps(payload, sort_keys=True, default=str)}"
        return self.idempotency.run(scoped_key, fingerprint, operation)
