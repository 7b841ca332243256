"""Serialization and bounded retry for bookings racing on the same slot."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import structlog

from clinic_scheduling.config import Settings
from clinic_scheduling.core.exceptions import SlotConflictException
from clinic_scheduling.scheduling.locks import LockManager, LockTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Acquisition rank per key kind; lower ranks are locked first
KEY_RANK = {"doctor": 0, "room": 1}


def order_keys(keys: Iterable[str]) -> list[str]:
    """Deduplicate keys and put doctor keys before room keys."""
    unique = {key for key in keys if key}
    return sorted(unique, key=lambda k: (KEY_RANK.get(k.split(":", 1)[0], len(KEY_RANK)), k))


class ConflictResolver:
    """
    Runs an operation while holding its resource keys.

    A key still held by another caller after the bounded wait is contention:
    the resolver backs off and retries, and after the last attempt reports it
    as a SlotConflictException. Conflicts raised by the operation itself
    (a detected overlap) are final and never retried.
    """

    def __init__(
        self,
        lock_manager: LockManager,
        lock_timeout: float = 2.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize resolver with lock backend and retry policy."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.lock_manager = lock_manager
        self.lock_timeout = lock_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, lock_manager: LockManager, config: Settings) -> "ConflictResolver":
        """Build a resolver with the configured timeout and retry policy."""
        return cls(
            lock_manager,
            lock_timeout=config.lock_timeout_seconds,
            max_attempts=config.booking_max_attempts,
            backoff_seconds=config.booking_retry_backoff_seconds,
        )

    def backoff_for(self, attempt: int) -> float:
        """Exponential backoff before the attempt following `attempt`."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    async def run(self, keys: Iterable[str], operation: Callable[[], Awaitable[T]]) -> T:
        """
        Acquire keys (doctor first, then room) and run the operation.

        Args:
            keys: Resource keys the operation touches
            operation: Coroutine factory executed while every key is held

        Returns:
            The operation's result

        Raises:
            SlotConflictException: If the keys stay contended on every attempt
        """
        ordered = order_keys(keys)
        last_timeout: LockTimeout | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.lock_manager.acquire(ordered, self.lock_timeout):
                    return await operation()
            except LockTimeout as exc:
                last_timeout = exc
                logger.info(
                    "lock_contention_retry",
                    key=exc.key,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_for(attempt))

        assert last_timeout is not None
        logger.warning(
            "slot_conflict_detected",
            resource_key=last_timeout.key,
            reason=SlotConflictException.LOCK_TIMEOUT,
            attempts=self.max_attempts,
        )
        raise SlotConflictException(
            last_timeout.key, reason=SlotConflictException.LOCK_TIMEOUT
        ) from last_timeout
