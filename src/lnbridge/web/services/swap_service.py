"""Swap service: query/status surface and orchestration facade.

The HTTP layer talks to this service only. It owns the creation idempotency
guard and the background watcher tasks that poll collaborators until each
swap reaches a terminal state; state transitions themselves live in
``SwapLifecycleDriver``.
"""

import asyncio
import logging
from typing import Optional

from lnbridge.config import Settings
from lnbridge.providers.base import LightningBackend
from lnbridge.swap.driver import SwapLifecycleDriver
from lnbridge.swap.errors import NotFoundError, UnknownInvoiceError
from lnbridge.swap.models import SwapQuote, SwapRequest, SwapTransaction
from lnbridge.swap.quotes import calculate_quote
from lnbridge.swap.validation import validate_swap_request
from lnbridge.utils.locks import release_swap_lock, swap_lock

logger = logging.getLogger(__name__)


class SwapService:
    """Entry point for quoting, creating and querying swaps."""

    def __init__(
        self,
        driver: SwapLifecycleDriver,
        lightning: LightningBackend,
        settings: Settings,
    ):
        self.driver = driver
        self.store = driver.store
        self.lightning = lightning
        self.settings = settings
        self._watchers: dict[str, asyncio.Task] = {}

    # ======================
    # Quotes and creation
    # ======================

    def get_quote(self, request: SwapRequest) -> SwapQuote:
        """Validate a request and price it. Nothing is recorded."""
        request = validate_swap_request(request, self.settings, require_payout_invoice=False)
        return calculate_quote(request.amount, request.direction, self.settings)

    async def create_swap(
        self,
        request: SwapRequest,
        owner_id: str,
        idempotency_key: Optional[str] = None,
    ) -> SwapTransaction:
        """Create a swap for ``owner_id``.

        A repeated call with the same idempotency key returns the swap the
        first call created instead of creating another one.
        """
        if not idempotency_key:
            return self._after_create(await self.driver.create(request, owner_id))

        guard = f"idempotency:{owner_id}:{idempotency_key}"
        async with swap_lock(guard, timeout=None, operation="create_swap"):
            existing = await self.store.find_by_idempotency_key(owner_id, idempotency_key)
            if existing is not None:
                logger.info(f"Idempotent replay of swap {existing.id} (owner {owner_id})")
                record = existing
            else:
                record = self._after_create(
                    await self.driver.create(request, owner_id, idempotency_key)
                )
        release_swap_lock(guard)
        return record

    def _after_create(self, record: SwapTransaction) -> SwapTransaction:
        if self.settings.auto_watch and not record.is_terminal:
            self._spawn_watch(record.id)
        return record

    # ======================
    # Queries
    # ======================

    async def get_swap(self, swap_id: str) -> SwapTransaction:
        """Get a swap by id.

        Raises:
            NotFoundError: If the swap does not exist
        """
        return await self.store.get(swap_id)

    async def list_swaps_for_user(self, owner_id: str) -> list[SwapTransaction]:
        """Swaps created by ``owner_id``, newest first."""
        return await self.store.list_by_owner(owner_id)

    async def verify_payment(self, payment_hash: str):
        """Ask the Lightning backend whether an invoice has been paid.

        Raises:
            NotFoundError: If the node has no invoice with this payment hash
        """
        try:
            status = await self.lightning.lookup_invoice(payment_hash)
        except UnknownInvoiceError as e:
            raise NotFoundError(f"Invoice not found: {payment_hash}") from e
        logger.debug(f"Invoice {payment_hash[:16]}... paid={status.is_paid}")
        return status

    # ======================
    # Starknet -> Lightning funding
    # ======================

    async def submit_debit(self, swap_id: str, owner_id: str, tx_hash: str) -> SwapTransaction:
        """Attach the owner's Starknet debit transaction to a swap.

        Swaps of other owners are reported as not found.
        """
        record = await self.store.get(swap_id)
        if record.owner_id != owner_id:
            raise NotFoundError(f"Swap not found: {swap_id}")

        record = await self.driver.submit_debit(swap_id, tx_hash)
        if self.settings.auto_watch and not record.is_terminal:
            self._spawn_watch(swap_id)
        return record

    # ======================
    # Watchers
    # ======================

    async def resume_active(self) -> int:
        """Start watchers for every non-terminal swap in the store."""
        active = await self.store.list_active()
        for record in active:
            self._spawn_watch(record.id)
        if active:
            logger.info(f"Resumed watching {len(active)} active swaps")
        return len(active)

    def _spawn_watch(self, swap_id: str) -> None:
        task = self._watchers.get(swap_id)
        if task is not None and not task.done():
            return
        self._watchers[swap_id] = asyncio.create_task(
            self._watch(swap_id), name=f"watch-{swap_id}"
        )

    async def _watch(self, swap_id: str) -> None:
        try:
            record = await self.driver.watch(swap_id)
            logger.info(f"Swap {swap_id} finished watching in {record.status.value}")
        except asyncio.CancelledError:
            logger.debug(f"Watcher for {swap_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Watcher for swap {swap_id} crashed: {e}")
        finally:
            self._watchers.pop(swap_id, None)

    @property
    def active_watchers(self) -> int:
        return sum(1 for task in self._watchers.values() if not task.done())

    async def shutdown(self) -> None:
        """Cancel watchers and close collaborator clients."""
        tasks = list(self._watchers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()

        await self.lightning.close()
        await self.driver.settlement.close()
        await self.store.close()
        logger.info("Swap service stopped")
