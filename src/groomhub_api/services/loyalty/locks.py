"""In-process per-customer locks for databases without row-level locking."""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager, nullcontext
from typing import AsyncContextManager, AsyncIterator, Hashable, Iterable
from weakref import WeakValueDictionary

from sqlalchemy.ext.asyncio import AsyncSession


class AccountLockRegistry:
    """Keyed asyncio locks acquired in ascending key order.

    SQLite ignores ``SELECT ... FOR UPDATE``; holding one of these locks across
    the read-compute-write-commit window gives the same per-customer
    serialization the row lock gives on Postgres.
    """

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[Hashable, asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        ordered = sorted(set(keys), key=str)
        async with AsyncExitStack() as stack:
            for key in ordered:
                lock = self._lock_for(key)
                await stack.enter_async_context(lock)
            yield


_REGISTRY = AccountLockRegistry()


def get_account_lock_registry() -> AccountLockRegistry:
    return _REGISTRY


def account_guard(
    db_session: AsyncSession,
    customer_ids: Iterable[Hashable],
    registry: AccountLockRegistry | None = None,
) -> AsyncContextManager[None]:
    """Serialize work on the given customers when the database has no row locks."""

    if db_session.get_bind().dialect.name == "sqlite":
        return (registry or _REGISTRY).hold(customer_ids)
    return nullcontext()


__all__ = ["AccountLockRegistry", "account_guard", "get_account_lock_registry"]
