"""Swap record storage interface and in-memory implementation.

The store is the single source of truth for swap records. Records are
written whole and handed out as copies, so a reader never observes a
partially applied update. Read-modify-write sequences are serialized per
swap by the lifecycle driver (see ``lnbridge.utils.locks``).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from lnbridge.swap.errors import NotFoundError
from lnbridge.swap.models import SwapTransaction

logger = logging.getLogger(__name__)


class SwapStore(ABC):
    """Abstract base class for swap record stores."""

    @abstractmethod
    async def put(self, record: SwapTransaction) -> None:
        """Insert or replace a swap record."""
        pass

    @abstractmethod
    async def get(self, swap_id: str) -> SwapTransaction:
        """Get a swap record.

        Raises:
            NotFoundError: If no swap exists with this id
        """
        pass

    @abstractmethod
    async def list_all(self) -> list[SwapTransaction]:
        """All swap records, newest first."""
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[SwapTransaction]:
        """Swap records created by ``owner_id``, newest first."""
        pass

    @abstractmethod
    async def find_by_idempotency_key(
        self, owner_id: str, idempotency_key: str
    ) -> Optional[SwapTransaction]:
        """Find the swap an owner created with a given idempotency key."""
        pass

    @abstractmethod
    async def find_by_source_tx(self, tx_hash: str) -> Optional[SwapTransaction]:
        """Find the swap funded by a settlement-network debit transaction."""
        pass

    @abstractmethod
    async def list_active(self) -> list[SwapTransaction]:
        """Swap records not yet in a terminal state."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class InMemorySwapStore(SwapStore):
    """Process-local store backed by a dict. Records do not survive restarts."""

    def __init__(self):
        self._records: dict[str, SwapTransaction] = {}
        self._lock = asyncio.Lock()

    async def put(self, record: SwapTransaction) -> None:
        async with self._lock:
            self._records[record.id] = record.copy()

    async def get(self, swap_id: str) -> SwapTransaction:
        async with self._lock:
            record = self._records.get(swap_id)
            if record is None:
                raise NotFoundError(f"Swap not found: {swap_id}")
            return record.copy()

    async def list_all(self) -> list[SwapTransaction]:
        async with self._lock:
            records = [r.copy() for r in self._records.values()]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def list_by_owner(self, owner_id: str) -> list[SwapTransaction]:
        return [r for r in await self.list_all() if r.owner_id == owner_id]

    async def find_by_idempotency_key(
        self, owner_id: str, idempotency_key: str
    ) -> Optional[SwapTransaction]:
        async with self._lock:
            for record in self._records.values():
                if record.owner_id == owner_id and record.idempotency_key == idempotency_key:
                    return record.copy()
        return None

    async def find_by_source_tx(self, tx_hash: str) -> Optional[SwapTransaction]:
        async with self._lock:
            for record in self._records.values():
                if record.source_tx_id == tx_hash:
                    return record.copy()
        return None

    async def list_active(self) -> list[SwapTransaction]:
        return [r for r in await self.list_all() if not r.is_terminal]
