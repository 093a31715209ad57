"""
Per-record mutual exclusion for state transitions.

Two layers guard every transition:
1. An in-process asyncio.Lock keyed by record id, so two coroutines can never
   interleave transitions of the same payment or bridge transaction.
2. A row lock (SELECT ... FOR UPDATE) inside the database transaction, so
   separate processes sharing one database are serialised as well.
Locks are per id: unrelated records never wait on each other.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional, Type, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from utils.exception_handler import NotFoundError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class KeyedLockRegistry:
    """asyncio locks created on demand per key and dropped when idle"""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout_seconds: Optional[float] = None) -> AsyncGenerator[None, None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1

        start_time = time.monotonic()
        try:
            if timeout_seconds is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=timeout_seconds)
        except BaseException:
            self._release_waiter(key)
            raise

        waited = time.monotonic() - start_time
        if waited > 1:
            logger.warning(f"{self.name} lock for {key} acquired after {waited:.2f}s")
        try:
            yield
        finally:
            lock.release()
            self._release_waiter(key)

    def _release_waiter(self, key: str):
        remaining = self._waiters.get(key, 1) - 1
        if remaining <= 0:
            self._waiters.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._waiters[key] = remaining

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


def locked_row(
    session: Session,
    model: Type[ModelT],
    key_column,
    key: str,
    max_retries: int = 3,
) -> ModelT:
    """
    Load one row with a row-level lock, retrying on deadlock.

    Retries are immediate; the caller is a coroutine and must not block.

    Raises NotFoundError when no row matches.
    """
    retry_count = 0
    while True:
        try:
            row = (
                session.query(model)
                .filter(key_column == key)
                .with_for_update(nowait=False)
                .first()
            )
            break
        except OperationalError as e:
            message = str(e).lower()
            if ("deadlock detected" in message or "lock_timeout" in message) and retry_count < max_retries - 1:
                retry_count += 1
                logger.warning(
                    f"Deadlock locking {model.__name__} {key}, retrying ({retry_count}/{max_retries})"
                )
                session.rollback()
                continue
            logger.error(f"Database error locking {model.__name__} {key}: {e}")
            raise

    if row is None:
        raise NotFoundError(f"{model.__name__} {key} not found", {"id": key})
    return row
