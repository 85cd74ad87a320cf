"""
Shared builders for tests that need the whole wired system
"""

from decimal import Decimal

from banking_core.config import BankingConfig
from banking_core.messaging import InMemoryEventBus
from banking_core.patterns import InMemoryPatternValidator
from banking_core.storage import InMemoryStorage
from banking_core.system import BankingSystem
from banking_core.users import InMemoryUserDirectory


OWNERS = {"owner-1", "owner-2", "owner-3"}
EXECUTOR = "teller-7"


def build_system(**overrides) -> BankingSystem:
    """
    In-memory system with no minimum interval between authorization attempts.
    Events are kept on an InMemoryEventBus so tests can inspect them.
    """
    settings = {
        "database_url": "memory://",
        "auth_min_interval_seconds": 0,
        "collaborator_timeout_seconds": 2.0,
    }
    settings.update(overrides)
    return BankingSystem(
        config=BankingConfig(**settings),
        storage=InMemoryStorage(),
        users=InMemoryUserDirectory(OWNERS),
        patterns=InMemoryPatternValidator(),
        event_bus=InMemoryEventBus()
    )


def open_funded_account(system: BankingSystem, owner_id: str, balance: str = "0"):
    account = system.account_store.create_account(owner_id)
    if balance != "0":
        system.account_store.adjust_balance(account.id, balance)
    return system.account_store.find_by_id(account.id)


def balance_of(system: BankingSystem, account) -> Decimal:
    return system.account_store.find_by_id(account.id).balance
