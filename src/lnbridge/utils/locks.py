"""Concurrency control for swap lifecycle transitions.

Provides per-swap locking so at most one transition is in flight for a given
swap, while transitions of unrelated swaps proceed independently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: swap_id -> asyncio.Lock
_swap_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()

# Callers holding or waiting for each lock; an entry is only dropped at zero
_lock_users: dict[str, int] = {}


async def get_swap_lock(swap_id: str) -> asyncio.Lock:
    """Get or create the lock for a specific swap.

    Args:
        swap_id: Swap identifier

    Returns:
        asyncio.Lock for the swap
    """
    async with _registry_lock:
        if swap_id not in _swap_locks:
            _swap_locks[swap_id] = asyncio.Lock()
        return _swap_locks[swap_id]


def _check_out(swap_id: str) -> asyncio.Lock:
    lock = _swap_locks.get(swap_id)
    if lock is None:
        lock = _swap_locks[swap_id] = asyncio.Lock()
    _lock_users[swap_id] = _lock_users.get(swap_id, 0) + 1
    return lock


def _check_in(swap_id: str) -> None:
    remaining = _lock_users.get(swap_id, 0) - 1
    if remaining > 0:
        _lock_users[swap_id] = remaining
    else:
        _lock_users.pop(swap_id, None)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


@asynccontextmanager
async def swap_lock(
    swap_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "transition",
):
    """Hold exclusive access to a swap record for a read-modify-write.

    Args:
        swap_id: Swap identifier
        timeout: Maximum time to wait for lock (None = wait forever)
        operation: Description for logging

    Example:
        async with swap_lock(swap_id, operation="confirm_payment"):
            record = await store.get(swap_id)
            await store.put(record.copy(status=SwapStatus.PAYMENT_RECEIVED))
    """
    lock = _check_out(swap_id)
    try:
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for swap {swap_id} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire lock for swap {swap_id} within {timeout}s"
            )

        logger.debug(f"Lock acquired for swap {swap_id}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for swap {swap_id}: {operation}")
    finally:
        _check_in(swap_id)


def release_swap_lock(swap_id: str) -> None:
    """Drop the registry entry of a swap that reached a terminal state.

    The entry is kept while any caller still holds or waits for the lock,
    so a waiter woken by the last release and a new caller always share
    one lock object.
    """
    if swap_id in _swap_locks and not _lock_users.get(swap_id):
        del _swap_locks[swap_id]


def clear_swap_locks() -> None:
    """Clear all swap locks (useful for testing)."""
    _swap_locks.clear()
    _lock_users.clear()
