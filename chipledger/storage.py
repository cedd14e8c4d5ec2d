import logging
import threading
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import AccountNotFoundError
from .models import Account, AccountStatus, Role

logger = logging.getLogger(__name__)

DEMO_ADMIN_ID = UUID("00000000-0000-4000-8000-000000000001")
DEMO_PLAYER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_OTHER_PLAYER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


class InMemoryStorage:
    """Account records, the transaction journal rows and daily-mint windows.

    Every account owns a re-entrant lock. Balance and flag mutations must
    happen while holding it; ``LedgerEngine.locked`` is the only place that
    acquires more than one.
    """

    def __init__(self, seed: bool = False):
        self.accounts: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.transaction_order: list[UUID] = []
        self.mint_windows: dict[UUID, datetime] = {}
        self.account_locks: dict[UUID, threading.RLock] = {}
        self.transaction_locks: dict[UUID, threading.RLock] = {}
        # Guards the dicts themselves, never held while waiting on an account lock.
        self.registry_lock = threading.RLock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.create_account("Pit Boss", Role.ADMIN, email="admin@example.com",
                            account_id=DEMO_ADMIN_ID, verified=True)
        self.create_account("John Player", Role.PLAYER, email="john@example.com",
                            account_id=DEMO_PLAYER_ID, balance=5_000, verified=True)
        self.create_account("Jane Player", Role.PLAYER, email="jane@example.com",
                            account_id=DEMO_OTHER_PLAYER_ID, balance=2_500)

    def create_account(
        self,
        display_name: str,
        role: Role = Role.PLAYER,
        email: Optional[str] = None,
        balance: int = 0,
        verified: bool = False,
        account_id: Optional[UUID] = None,
    ) -> Account:
        now = datetime.now(timezone.utc)
        data = {
            "id": account_id or uuid4(),
            "display_name": display_name,
            "email": email,
            "role": role,
            "balance": balance,
            "status": AccountStatus.ACTIVE,
            "verified": verified,
            "ban_reason": None,
            "banned_at": None,
            "verified_at": now if verified else None,
            "created_at": now,
        }
        account = Account(**data)
        with self.registry_lock:
            if account.id in self.accounts:
                raise ValueError(f"Account {account.id} already exists")
            self.accounts[account.id] = data
            self.account_locks[account.id] = threading.RLock()
        logger.info("Provisioned %s account %s (%s)", role.value, account.id, display_name)
        return account

    def has_account(self, account_id: UUID) -> bool:
        return account_id in self.accounts

    def account_lock(self, account_id: UUID) -> threading.RLock:
        lock = self.account_locks.get(account_id)
        if lock is None:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=str(account_id))
        return lock

    def transaction_lock(self, transaction_id: UUID) -> threading.RLock:
        with self.registry_lock:
            return self.transaction_locks.setdefault(transaction_id, threading.RLock())

    def get_account(self, account_id: UUID) -> Account:
        with self.account_lock(account_id):
            return Account(**self.accounts[account_id])

    def list_accounts(
        self,
        role: Optional[Role] = None,
        status: Optional[AccountStatus] = None,
        verified: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[Account]:
        with self.registry_lock:
            account_ids = list(self.accounts)
        accounts = [self.get_account(account_id) for account_id in account_ids]
        if role is not None:
            accounts = [a for a in accounts if a.role == role]
        if status is not None:
            accounts = [a for a in accounts if a.status == status]
        if verified is not None:
            accounts = [a for a in accounts if a.verified == verified]
        if search:
            needle = search.lower()
            accounts = [
                a for a in accounts
                if needle in a.display_name.lower() or needle in (a.email or "").lower()
            ]
        accounts.sort(key=lambda a: a.display_name.lower())
        return accounts
