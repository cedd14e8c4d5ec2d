import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from .auth import require_admin
from .engine import LedgerEngine
from .errors import InvalidStateError, ValidationError
from .journal import TransactionJournal
from .models import (
    Account,
    AccountStatus,
    Identity,
    RecoveryResponse,
    TransactionStatus,
    TransactionType,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class RecoveryService:
    """Account bans, verification, and sweeping a banned balance to a verified account."""

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

    def recover_chips(
        self,
        actor: Identity,
        banned_account_id: UUID,
        verified_account_id: UUID,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RecoveryResponse:
        require_admin(actor, "recover chips")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to recover chips")
        if banned_account_id == verified_account_id:
            raise InvalidStateError("Cannot recover chips into the same account", account_id=str(banned_account_id))

        with self.engine.locked(banned_account_id, verified_account_id):
            banned = self.storage.get_account(banned_account_id)
            target = self.storage.get_account(verified_account_id)
            if not banned.is_banned:
                raise InvalidStateError(f"Account {banned.id} is not banned", account_id=str(banned.id))
            if not target.verified:
                raise InvalidStateError(f"Account {target.id} is not verified", account_id=str(target.id))
            if target.is_banned:
                raise InvalidStateError(f"Account {target.id} is banned", account_id=str(target.id))
            if banned.balance <= 0:
                raise InvalidStateError(f"Account {banned.id} has no chips to recover", account_id=str(banned.id))

            # Full sweep: the amount is whatever the banned account holds right now.
            amount = banned.balance
            self.engine.apply_transfer(banned.id, target.id, amount)
            transaction = self.journal.append(
                type=TransactionType.RECOVERY,
                status=TransactionStatus.APPROVED,
                amount=amount,
                from_account_id=banned.id,
                to_account_id=target.id,
                reason=reason.strip(),
                created_by=actor.user_id,
                idempotency_key=idempotency_key,
            )

        logger.info("Recovered %d chips from banned %s to %s", amount, banned.id, target.id)
        return RecoveryResponse(
            transaction=transaction,
            recovered_amount=amount,
            message=f"Recovered {amount} chips",
        )

    def ban_account(self, actor: Identity, account_id: UUID, reason: str) -> Account:
        require_admin(actor, "ban accounts")
        if not reason or not reason.strip():
            raise ValidationError("A ban reason is required")
        with self.engine.locked(account_id):
            account = self.storage.get_account(account_id)
            if account.is_banned:
                raise InvalidStateError(f"Account {account_id} is already banned", account_id=str(account_id))
            account = self.engine.update_account(
                account_id,
                status=AccountStatus.BANNED,
                ban_reason=reason.strip(),
                banned_at=self.clock(),
            )
        logger.warning("Banned account %s: %s", account_id, account.ban_reason)
        return account

    def unban_account(self, actor: Identity, account_id: UUID) -> Account:
        require_admin(actor, "unban accounts")
        with self.engine.locked(account_id):
            account = self.storage.get_account(account_id)
            if not account.is_banned:
                raise InvalidStateError(f"Account {account_id} is not banned", account_id=str(account_id))
            account = self.engine.update_account(
                account_id, status=AccountStatus.ACTIVE, ban_reason=None, banned_at=None
            )
        logger.info("Unbanned account %s", account_id)
        return account

    def verify_account(self, actor: Identity, account_id: UUID) -> Account:
        require_admin(actor, "verify accounts")
        with self.engine.locked(account_id):
            account = self.storage.get_account(account_id)
            if account.verified:
                return account
            account = self.engine.update_account(account_id, verified=True, verified_at=self.clock())
        logger.info("Verified account %s", account_id)
        return account

    def list_banned_with_balance(self, actor: Identity, search: Optional[str] = None) -> list[Account]:
        require_admin(actor, "list banned accounts")
        banned = self.storage.list_accounts(status=AccountStatus.BANNED, search=search)
        return [a for a in banned if a.balance > 0]

    def list_verified(self, actor: Identity, search: Optional[str] = None) -> list[Account]:
        require_admin(actor, "list verified accounts")
        return self.storage.list_accounts(status=AccountStatus.ACTIVE, verified=True, search=search)
