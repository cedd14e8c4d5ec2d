import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from .auth import require_admin, require_self_or_admin
from .engine import LedgerEngine, validate_amount
from .errors import AlreadyClaimedError, InvalidStateError, LedgerServiceError
from .journal import TransactionJournal
from .models import (
    DailyMintStatus,
    DailyMintWindow,
    Identity,
    MintCredit,
    MintReport,
    MintSkip,
    Role,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class DailyMintService:
    """System credits limited to one per account per rolling window.

    The window is read from ``last_claimed_at`` held here, never from
    anything the client reports. The credit and the window update happen
    under the same account lock.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        engine: LedgerEngine,
        journal: TransactionJournal,
        clock: Callable[[], datetime],
        claim_amount: int = 10_000,
        window: timedelta = timedelta(hours=24),
    ):
        self.storage = storage
        self.engine = engine
        self.journal = journal
        self.clock = clock
        self.claim_amount = claim_amount
        self.window = window

    def get_window(self, account_id: UUID) -> DailyMintWindow:
        return DailyMintWindow(account_id=account_id, last_claimed_at=self.storage.mint_windows.get(account_id))

    def remaining(self, account_id: UUID, now: datetime) -> timedelta:
        last_claimed_at = self.storage.mint_windows.get(account_id)
        if last_claimed_at is None:
            return timedelta(0)
        return max(last_claimed_at + self.window - now, timedelta(0))

    def status(self, actor: Identity, account_id: UUID) -> DailyMintStatus:
        require_self_or_admin(actor, account_id)
        self.storage.get_account(account_id)
        window = self.get_window(account_id)
        remaining = self.remaining(account_id, self.clock())
        return DailyMintStatus(
            account_id=account_id,
            amount=self.claim_amount,
            can_claim=remaining == timedelta(0),
            remaining_seconds=int(remaining.total_seconds()),
            last_claimed_at=window.last_claimed_at,
            next_claim_at=window.last_claimed_at + self.window if window.last_claimed_at else None,
        )

    def claim_daily_mint(
        self,
        actor: Identity,
        account_id: UUID,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        require_self_or_admin(actor, account_id)
        return self._credit(account_id, self.claim_amount, actor.user_id, idempotency_key)

    def mint_for_all_eligible(
        self,
        actor: Identity,
        amount_per_user: int,
        idempotency_key: Optional[str] = None,
    ) -> MintReport:
        require_admin(actor, "run the daily mint")
        validate_amount(amount_per_user)
        report = MintReport(amount_per_user=amount_per_user)
        for account in self.storage.list_accounts(role=Role.PLAYER):
            try:
                transaction = self._credit(
                    account.id,
                    amount_per_user,
                    actor.user_id,
                    f"{idempotency_key}:{account.id}" if idempotency_key else None,
                )
            except LedgerServiceError as e:
                report.skipped.append(MintSkip(
                    account_id=account.id, display_name=account.display_name, code=e.code, message=e.message,
                ))
                continue
            report.credited.append(MintCredit(
                account_id=account.id,
                display_name=account.display_name,
                transaction_id=transaction.id,
                amount=amount_per_user,
            ))
            report.total_minted += amount_per_user
        logger.info(
            "Batch mint: %d credited, %d skipped, %d chips minted",
            len(report.credited), len(report.skipped), report.total_minted,
        )
        return report

    def _credit(
        self,
        account_id: UUID,
        amount: int,
        created_by: UUID,
        idempotency_key: Optional[str],
    ) -> Transaction:
        with self.engine.locked(account_id):
            account = self.storage.get_account(account_id)
            if account.role != Role.PLAYER:
                raise InvalidStateError(
                    "Daily chips are only minted to player accounts",
                    account_id=str(account_id),
                    role=account.role.value,
                )
            if account.is_banned:
                raise InvalidStateError(f"Account {account_id} is banned", account_id=str(account_id))
            now = self.clock()
            remaining = self.remaining(account_id, now)
            if remaining > timedelta(0):
                raise AlreadyClaimedError(
                    f"Daily chips already claimed, next claim in {_format_wait(remaining)}",
                    remaining=remaining,
                )
            self.engine.apply_transfer(None, account_id, amount)
            self.storage.mint_windows[account_id] = now
            transaction = self.journal.append(
                type=TransactionType.DAILY_MINT,
                status=TransactionStatus.APPROVED,
                amount=amount,
                to_account_id=account_id,
                reason="Daily chips",
                created_by=created_by,
                idempotency_key=idempotency_key,
            )
        return transaction


def _format_wait(remaining: timedelta) -> str:
    total = int(remaining.total_seconds())
    return f"{total // 3600}h {(total % 3600) // 60}m"
