"""
Owner lookups

Users live in their own service. The account store only needs to know
whether an owner exists, so it talks to a small directory interface that is
either answered in-process or over the command bus.
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional, Set

from .commands import FindUser, UserLookup
from .messaging import CommandBus, Topics


class UserDirectory(ABC):
    """Resolves owner references"""

    @abstractmethod
    def exists(self, user_id: str) -> bool:
        pass


class InMemoryUserDirectory(UserDirectory):
    """User registry for tests and single-process deployments"""

    def __init__(self, user_ids: Optional[Set[str]] = None):
        self._users: Set[str] = set(user_ids or ())
        self._lock = threading.Lock()

    def register(self, user_id: str) -> None:
        with self._lock:
            self._users.add(user_id)

    def exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def serve(self, bus: CommandBus) -> None:
        """Answer ``users.find_one`` on the bus from this registry"""
        bus.register(
            Topics.USERS_FIND_ONE.value,
            FindUser,
            lambda request: UserLookup(exists=self.exists(request.user_id))
        )


class BusUserDirectory(UserDirectory):
    """Asks the users service over the command bus"""

    def __init__(self, bus: CommandBus, timeout: Optional[float] = None):
        self.bus = bus
        self.timeout = timeout

    def exists(self, user_id: str) -> bool:
        reply = self.bus.request(Topics.USERS_FIND_ONE.value, FindUser(user_id=user_id), self.timeout)
        return UserLookup.model_validate(reply).exists
