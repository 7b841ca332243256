"""Per-key mutual exclusion with bounded waits."""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from typing import Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

logger = structlog.get_logger(__name__)


class LockTimeout(Exception):
    """A key's lock was not acquired within the allowed wait."""

    def __init__(self, key: str, timeout: float):
        """Initialize with the contended key and the wait that elapsed."""
        self.key = key
        self.timeout = timeout
        super().__init__(f"Lock on {key} not acquired within {timeout}s")


class LockManager(Protocol):
    """Acquires a set of resource keys for the duration of a block."""

    def acquire(
        self, keys: Sequence[str], timeout: float
    ) -> AbstractAsyncContextManager[None]:
        """Hold every key, acquired in the given order, while the block runs."""
        ...

    def is_locked(self, key: str) -> bool:
        """Whether the key is currently held by this manager."""
        ...


class KeyLockManager:
    """
    In-process locks, one asyncio.Lock per key.

    Locks for different keys are independent, so work on different doctors
    never waits on each other. Keys are acquired in the order given; callers
    must pass a consistent order (doctor before room).
    """

    def __init__(self) -> None:
        """Initialize with no locks; they are created on first use."""
        self._locks: dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each key; a key's lock is dropped at zero
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if not self._users[key]:
            del self._users[key]
            del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Whether the key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, keys: Sequence[str], timeout: float) -> AsyncIterator[None]:
        """
        Hold every key while the block runs.

        Args:
            keys: Resource keys in acquisition order
            timeout: Maximum wait in seconds for each key

        Raises:
            LockTimeout: If a key stays held by someone else past the timeout
        """
        entered: list[str] = []
        held: list[asyncio.Lock] = []
        try:
            for key in keys:
                lock = self._checkout(key)
                entered.append(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout)
                except TimeoutError:
                    raise LockTimeout(key, timeout) from None
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for key in reversed(entered):
                self._checkin(key)


class RedisLockManager:
    """
    Locks shared between processes through Redis.

    Each key maps to a redis-py lock (SET NX with a lease). The lease bounds
    how long a crashed holder can block a doctor or room.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        lease_seconds: float = 10.0,
        prefix: str = "lock:",
    ):
        """Initialize with an asyncio Redis client and the lock lease."""
        self.redis = redis_client
        self.lease_seconds = lease_seconds
        self.prefix = prefix
        self._held: set[str] = set()

    def is_locked(self, key: str) -> bool:
        """Whether this manager currently holds the key."""
        return key in self._held

    @asynccontextmanager
    async def acquire(self, keys: Sequence[str], timeout: float) -> AsyncIterator[None]:
        """
        Hold every key while the block runs.

        Raises:
            LockTimeout: If a key is not acquired within the timeout
        """
        async with AsyncExitStack() as stack:
            for key in keys:
                lock = self.redis.lock(
                    f"{self.prefix}{key}",
                    timeout=self.lease_seconds,
                    blocking=True,
                    blocking_timeout=timeout,
                )
                if not await lock.acquire():
                    raise LockTimeout(key, timeout)
                self._held.add(key)
                stack.push_async_callback(self._release, key, lock)
            yield

    async def _release(self, key: str, lock) -> None:
        self._held.discard(key)
        try:
            await lock.release()
        except LockError:
            # Lease expired while the block ran; another holder may own it now
            logger.warning("redis_lock_lease_expired", key=key, lease_seconds=self.lease_seconds)
