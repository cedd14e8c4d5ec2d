from datetime import datetime, timedelta, timezone

import pytest

from chipledger.config import Settings
from chipledger.models import Identity, Role
from chipledger.service import LedgerService
from chipledger.storage import InMemoryStorage


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(seed_demo_data=False, idempotency_wait_seconds=2.0)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings, clock):
    return LedgerService(storage=storage, settings=settings, clock=clock)


@pytest.fixture
def admin(storage):
    account = storage.create_account("Pit Boss", Role.ADMIN, email="boss@casino.test", verified=True)
    return Identity(user_id=account.id, role=Role.ADMIN)


@pytest.fixture
def player(storage):
    account = storage.create_account("Alice", Role.PLAYER, email="alice@casino.test", balance=500)
    return Identity(user_id=account.id, role=Role.PLAYER)


@pytest.fixture
def other_player(storage):
    account = storage.create_account("Bob", Role.PLAYER, email="bob@casino.test", balance=100, verified=True)
    return Identity(user_id=account.id, role=Role.PLAYER)
