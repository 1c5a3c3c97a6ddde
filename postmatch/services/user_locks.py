"""Per-user serialization of bulk import work.

WHAT:
    Registry of asyncio locks keyed by user id.

WHY:
    The order store and the association ledger check for existing rows before
    writing. Two imports for the same user running at once (e.g. a manual
    trigger overlapping a redelivered webhook) could both pass the check.
    Holding the user's lock for the whole import keeps them sequential inside
    this process.

NOTE:
    A lock lives only while someone holds or waits for it; the registry stays
    as large as the number of users with work in flight.

USAGE:
    async with user_locks.hold(user_id):
        ...
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Hands out one asyncio.Lock per user id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            if lock.locked():
                logger.info("[USER_LOCKS] Waiting for running import of user %s", user_id)
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]
