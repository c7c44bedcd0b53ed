"""Swap lifecycle driver.

Advances swap records through their state machine in response to
collaborator signals:

    LN_TO_STARKNET:  PENDING -> INVOICE_GENERATED -> PAYMENT_RECEIVED
                     -> BRIDGING -> COMPLETED
    STARKNET_TO_LN:  PENDING -> PAYMENT_RECEIVED -> BRIDGING -> COMPLETED

FAILED and EXPIRED are reachable from every non-terminal state. Each step
runs under the swap's lock, so at most one step is in flight per swap.
Integration errors never leave the driver: transient ones are retried with
exponential backoff, and whatever remains is recorded on the swap.
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from lnbridge.config import Settings
from lnbridge.providers.base import (
    DecodedInvoice,
    LightningBackend,
    PaymentResult,
    PaymentState,
    SettlementBackend,
    SettlementReceipt,
    SettlementState,
)
from lnbridge.swap.errors import (
    DebitAlreadyUsed,
    ExpiryError,
    IntegrationError,
    InvalidPayoutInvoice,
    InvalidTransitionError,
    PaymentMismatch,
    PermanentIntegrationError,
    TransientIntegrationError,
    ValidationError,
)
from lnbridge.swap.models import (
    SwapDirection,
    SwapRequest,
    SwapStatus,
    SwapTransaction,
    can_transition,
    utcnow,
)
from lnbridge.swap.quotes import calculate_quote
from lnbridge.swap.store import SwapStore
from lnbridge.swap.validation import normalize_felt, validate_swap_request
from lnbridge.utils.locks import release_swap_lock, swap_lock

logger = logging.getLogger(__name__)

INVOICE_EXPIRED = "Lightning invoice has expired"
DEBIT_EXPIRED = "Settlement debit not received before deadline"
WATCH_DEADLINE = "Watch deadline elapsed before swap completed"

Step = Callable[[SwapTransaction], Awaitable[SwapTransaction]]


def new_swap_id() -> str:
    """Generate an unguessable swap identifier."""
    return f"swap_{secrets.token_urlsafe(18)}"


class SwapLifecycleDriver:
    """Drives swap records from creation to a terminal state."""

    def __init__(
        self,
        store: SwapStore,
        lightning: LightningBackend,
        settlement: SettlementBackend,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.lightning = lightning
        self.settlement = settlement
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        request: SwapRequest,
        owner_id: str,
        idempotency_key: Optional[str] = None,
    ) -> SwapTransaction:
        """Validate, quote and record a new swap.

        Validation errors propagate before anything is stored. For swaps into
        Starknet an invoice is generated right away; if that fails the swap
        is returned in FAILED state rather than raising. For swaps out of
        Starknet the payout invoice must pay exactly the quoted output and
        outlive the debit window.

        Raises:
            ValidationError: If the request or payout invoice is unusable
        """
        request = validate_swap_request(request, self.settings)
        now = self._clock()
        quote = calculate_quote(request.amount, request.direction, self.settings, now=now)

        payout = None
        if not request.direction.into_settlement:
            debit_deadline = now + timedelta(seconds=self.settings.invoice_expiry_seconds)
            payout = await self._decode_payout(request.payout_invoice)
            self._check_payout(payout, int(quote.output_amount), debit_deadline)

        record = SwapTransaction(
            id=new_swap_id(),
            status=SwapStatus.PENDING,
            direction=request.direction,
            input_amount=request.amount,
            output_amount=quote.output_amount,
            owner_id=owner_id,
            service_fee=quote.service_fee,
            network_fee=quote.network_fee,
            gas_reserve_amount=quote.gas_reserve_amount,
            target_token=request.target_token,
            recipient_address=request.recipient_address,
            speed=request.speed,
            payout_invoice=request.payout_invoice,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        if payout is not None:
            # Window for the user to submit the Starknet debit
            record.expires_at = debit_deadline
            record.payout_payment_hash = payout.payment_hash

        await self.store.put(record)
        logger.info(
            f"Swap {record.id} created: {record.direction.value} {record.input_amount} sats "
            f"-> {record.output_amount} (owner {owner_id})"
        )

        if request.direction.into_settlement:
            return await self.generate_invoice(record.id)
        return record

    async def _decode_payout(self, payment_request: str) -> DecodedInvoice:
        try:
            return await self._with_retry(
                "decode payout invoice",
                lambda: self.lightning.decode_invoice(payment_request),
            )
        except PermanentIntegrationError as e:
            raise InvalidPayoutInvoice(f"Payout invoice cannot be decoded: {e.message}") from e

    @staticmethod
    def _check_payout(
        payout: DecodedInvoice, output_amount: int, debit_deadline: datetime
    ) -> None:
        if payout.amount is None:
            raise InvalidPayoutInvoice("Payout invoice must specify an amount")
        if payout.amount != output_amount:
            raise InvalidPayoutInvoice(
                f"Payout invoice is for {payout.amount} sats, swap pays out {output_amount} sats"
            )
        if payout.expires_at <= debit_deadline:
            raise InvalidPayoutInvoice("Payout invoice expires before the debit window closes")

    # ------------------------------------------------------------------
    # Lightning -> Starknet
    # ------------------------------------------------------------------

    async def generate_invoice(self, swap_id: str) -> SwapTransaction:
        """PENDING -> INVOICE_GENERATED."""
        return await self._locked(swap_id, "generate_invoice", self._generate_invoice)

    async def _generate_invoice(self, record: SwapTransaction) -> SwapTransaction:
        self._require(record, SwapStatus.PENDING, SwapDirection.LN_TO_STARKNET)
        try:
            invoice = await self._with_retry(
                f"create invoice for {record.id}",
                lambda: self.lightning.create_invoice(
                    record.input_amount,
                    f"Swap {record.id} to Starknet",
                    self.settings.invoice_expiry_seconds,
                ),
            )
        except (IntegrationError, ExpiryError) as e:
            return await self._record_error(record, e)

        return await self._save(
            record,
            SwapStatus.INVOICE_GENERATED,
            lightning_invoice=invoice,
            expires_at=invoice.expires_at,
        )

    async def confirm_payment(
        self,
        swap_id: str,
        payment_hash: str,
        amount_paid: int,
        paid_at: Optional[datetime] = None,
    ) -> SwapTransaction:
        """INVOICE_GENERATED -> PAYMENT_RECEIVED on a settled invoice.

        A payment arriving after the invoice expired moves the swap to
        EXPIRED instead.

        Raises:
            PaymentMismatch: If hash or amount do not match the invoice
            InvalidTransitionError: If the swap is not awaiting payment
        """
        return await self._locked(
            swap_id,
            "confirm_payment",
            lambda record: self._apply_payment(record, payment_hash, amount_paid, paid_at),
        )

    async def _apply_payment(
        self,
        record: SwapTransaction,
        payment_hash: str,
        amount_paid: int,
        paid_at: Optional[datetime],
    ) -> SwapTransaction:
        self._require(record, SwapStatus.INVOICE_GENERATED, SwapDirection.LN_TO_STARKNET)
        invoice = record.lightning_invoice

        if payment_hash != invoice.payment_hash:
            logger.warning(f"Swap {record.id}: payment hash mismatch ({payment_hash})")
            raise PaymentMismatch(f"Payment hash does not match swap {record.id}")
        if amount_paid < invoice.amount:
            logger.warning(
                f"Swap {record.id}: underpaid invoice ({amount_paid} < {invoice.amount})"
            )
            raise PaymentMismatch(
                f"Paid {amount_paid} sats, invoice requires {invoice.amount} sats"
            )

        paid_at = paid_at or self._clock()
        if invoice.is_expired(paid_at):
            return await self._save(record, SwapStatus.EXPIRED, error=INVOICE_EXPIRED)

        return await self._save(record, SwapStatus.PAYMENT_RECEIVED, paid_at=paid_at)

    async def check_invoice(self, swap_id: str) -> SwapTransaction:
        """Poll the Lightning backend for payment of the swap invoice."""
        return await self._locked(swap_id, "check_invoice", self._check_invoice)

    async def _check_invoice(self, record: SwapTransaction) -> SwapTransaction:
        if record.status is not SwapStatus.INVOICE_GENERATED:
            return record

        invoice = record.lightning_invoice
        try:
            status = await self._with_retry(
                f"lookup invoice for {record.id}",
                lambda: self.lightning.lookup_invoice(invoice.payment_hash),
            )
        except IntegrationError as e:
            if invoice.is_expired(self._clock()):
                return await self._save(record, SwapStatus.EXPIRED, error=INVOICE_EXPIRED)
            return await self._record_error(record, e)

        if status.is_paid:
            try:
                return await self._apply_payment(
                    record, status.payment_hash, status.amount_paid, status.paid_at
                )
            except PaymentMismatch as e:
                return await self._save(record, SwapStatus.FAILED, error=e.message)
        if status.is_cancelled:
            return await self._save(
                record, SwapStatus.FAILED, error="Lightning invoice was cancelled"
            )
        if invoice.is_expired(self._clock()):
            return await self._save(record, SwapStatus.EXPIRED, error=INVOICE_EXPIRED)
        return record

    async def start_bridging(self, swap_id: str) -> SwapTransaction:
        """PAYMENT_RECEIVED -> BRIDGING: submit the Starknet transfer."""
        return await self._locked(swap_id, "start_bridging", self._start_bridging)

    async def _start_bridging(self, record: SwapTransaction) -> SwapTransaction:
        self._require(record, SwapStatus.PAYMENT_RECEIVED, SwapDirection.LN_TO_STARKNET)
        try:
            tx_hash = await self._with_retry(
                f"submit transfer for {record.id}",
                lambda: self.settlement.submit_transfer(
                    record.recipient_address,
                    record.target_token.value,
                    int(record.output_amount),
                    reference=record.id,
                ),
            )
        except (IntegrationError, ExpiryError) as e:
            return await self._record_error(record, e)

        return await self._save(record, SwapStatus.BRIDGING, transaction_hash=tx_hash)

    async def check_settlement(self, swap_id: str) -> SwapTransaction:
        """Poll finality of the Starknet transfer of a bridging swap."""
        return await self._locked(swap_id, "check_settlement", self._check_settlement)

    async def _check_settlement(self, record: SwapTransaction) -> SwapTransaction:
        if (
            record.status is not SwapStatus.BRIDGING
            or record.direction is not SwapDirection.LN_TO_STARKNET
        ):
            return record

        try:
            receipt = await self._with_retry(
                f"settlement receipt for {record.id}",
                lambda: self.settlement.get_receipt(record.transaction_hash),
            )
        except IntegrationError as e:
            return await self._record_error(record, e)

        if receipt.state is SettlementState.FINALIZED:
            return await self._save(record, SwapStatus.COMPLETED)
        if receipt.state is SettlementState.REVERTED:
            return await self._save(
                record,
                SwapStatus.FAILED,
                error=f"Settlement transaction reverted: {receipt.reason}",
            )
        return record

    async def confirm_settlement(self, swap_id: str, tx_hash: str) -> SwapTransaction:
        """BRIDGING -> COMPLETED when the settlement transaction is final."""

        async def complete(record: SwapTransaction) -> SwapTransaction:
            self._require(record, SwapStatus.BRIDGING, SwapDirection.LN_TO_STARKNET)
            if tx_hash != record.transaction_hash:
                raise ValidationError(f"Transaction {tx_hash} does not belong to swap {swap_id}")
            return await self._save(record, SwapStatus.COMPLETED)

        return await self._locked(swap_id, "confirm_settlement", complete)

    # ------------------------------------------------------------------
    # Starknet -> Lightning
    # ------------------------------------------------------------------

    async def submit_debit(self, swap_id: str, tx_hash: str) -> SwapTransaction:
        """Attach the user's Starknet debit transaction and check its finality.

        Raises:
            DebitAlreadyUsed: If the transaction already funds another swap
            InvalidTransitionError: If the swap is not awaiting a debit
        """
        try:
            tx_hash = normalize_felt(tx_hash)
        except ValueError as e:
            raise ValidationError(f"Invalid transaction hash: {tx_hash}") from e

        async def attach(record: SwapTransaction) -> SwapTransaction:
            self._require(record, SwapStatus.PENDING, SwapDirection.STARKNET_TO_LN)
            if record.source_tx_id and record.source_tx_id != tx_hash:
                raise InvalidTransitionError(
                    f"Swap {swap_id} already has debit transaction {record.source_tx_id}"
                )
            funded = await self.store.find_by_source_tx(tx_hash)
            if funded is not None and funded.id != record.id:
                logger.warning(f"Swap {swap_id}: debit {tx_hash} already funds swap {funded.id}")
                raise DebitAlreadyUsed(f"Transaction {tx_hash} already funds another swap")

            updated = record.copy(source_tx_id=tx_hash, updated_at=self._clock())
            await self.store.put(updated)
            logger.info(f"Swap {swap_id}: debit transaction {tx_hash} submitted")
            return await self._check_debit(updated)

        # Serializes claims on one transaction across swaps
        guard = f"debit:{tx_hash}"
        try:
            async with swap_lock(guard, timeout=None, operation="submit_debit"):
                return await self._locked(swap_id, "submit_debit", attach)
        finally:
            release_swap_lock(guard)

    async def check_debit(self, swap_id: str) -> SwapTransaction:
        """PENDING -> PAYMENT_RECEIVED once the user's debit is final."""
        return await self._locked(swap_id, "check_debit", self._check_debit)

    async def _check_debit(self, record: SwapTransaction) -> SwapTransaction:
        if (
            record.status is not SwapStatus.PENDING
            or record.direction is not SwapDirection.STARKNET_TO_LN
        ):
            return record

        expired = record.expires_at is not None and self._clock() >= record.expires_at
        if not record.source_tx_id:
            if expired:
                return await self._save(record, SwapStatus.EXPIRED, error=DEBIT_EXPIRED)
            return record

        try:
            receipt = await self._with_retry(
                f"debit receipt for {record.id}",
                lambda: self.settlement.get_receipt(record.source_tx_id),
            )
        except IntegrationError as e:
            return await self._record_error(record, e)

        if receipt.state is SettlementState.FINALIZED:
            shortfall = self._debit_shortfall(record, receipt)
            if shortfall:
                logger.warning(f"Swap {record.id}: {shortfall}")
                return await self._save(record, SwapStatus.FAILED, error=shortfall)
            return await self._save(record, SwapStatus.PAYMENT_RECEIVED, paid_at=self._clock())
        if receipt.state is SettlementState.REVERTED:
            return await self._save(
                record, SwapStatus.FAILED, error=f"Debit transaction reverted: {receipt.reason}"
            )
        if expired:
            return await self._save(record, SwapStatus.EXPIRED, error=DEBIT_EXPIRED)
        return record

    def _debit_shortfall(
        self, record: SwapTransaction, receipt: SettlementReceipt
    ) -> Optional[str]:
        """Why a final debit does not fund the swap, or None when it does."""
        deposit = self.settings.settlement_deposit_address
        if not deposit:
            return "Settlement deposit address is not configured"

        token = (
            record.target_token.value if record.target_token else self.settings.default_target_token
        )
        received = sum(
            transfer.amount
            for transfer in receipt.transfers
            if transfer.token.upper() == token
            and normalize_felt(transfer.recipient) == normalize_felt(deposit)
        )
        if received < record.input_amount:
            return (
                f"Debit {receipt.tx_hash} moved {received} {token} to the deposit address, "
                f"swap requires {record.input_amount}"
            )
        return None

    async def start_payout(self, swap_id: str) -> SwapTransaction:
        """PAYMENT_RECEIVED -> BRIDGING -> COMPLETED: pay the payout invoice.

        A swap already in BRIDGING is resumed: the node is asked about the
        payout first, and the invoice is only paid when no earlier attempt
        succeeded or is still in flight.
        """
        return await self._locked(swap_id, "start_payout", self._start_payout)

    async def _start_payout(self, record: SwapTransaction) -> SwapTransaction:
        if record.status is SwapStatus.PAYMENT_RECEIVED:
            self._require(record, SwapStatus.PAYMENT_RECEIVED, SwapDirection.STARKNET_TO_LN)
            record = await self._save(record, SwapStatus.BRIDGING)
        else:
            self._require(record, SwapStatus.BRIDGING, SwapDirection.STARKNET_TO_LN)

        try:
            result = await self._with_retry(
                f"pay invoice for {record.id}", lambda: self._pay_once(record)
            )
        except (IntegrationError, ExpiryError) as e:
            return await self._record_error(record, e)

        if result.state is PaymentState.IN_FLIGHT:
            logger.info(f"Swap {record.id}: payout still in flight")
            return record

        logger.info(
            f"Swap {record.id}: payout settled ({result.payment_hash[:16]}..., "
            f"fee {result.fee_paid} sats)"
        )
        return await self._save(record, SwapStatus.COMPLETED)

    async def _pay_once(self, record: SwapTransaction) -> PaymentResult:
        """Pay the payout invoice unless an earlier attempt already did."""
        if record.payout_payment_hash:
            previous = await self.lightning.lookup_payment(record.payout_payment_hash)
            if previous.state in (PaymentState.SUCCEEDED, PaymentState.IN_FLIGHT):
                return previous
        return await self.lightning.pay_invoice(record.payout_invoice)

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def fail(self, swap_id: str, reason: str) -> SwapTransaction:
        """Move a swap to FAILED unless it already reached a terminal state."""
        return await self._locked(
            swap_id, "fail", lambda record: self._terminate(record, SwapStatus.FAILED, reason)
        )

    async def expire(self, swap_id: str, reason: str = WATCH_DEADLINE) -> SwapTransaction:
        """Move a swap to EXPIRED unless it already reached a terminal state."""
        return await self._locked(
            swap_id, "expire", lambda record: self._terminate(record, SwapStatus.EXPIRED, reason)
        )

    async def _terminate(
        self, record: SwapTransaction, status: SwapStatus, reason: str
    ) -> SwapTransaction:
        if record.is_terminal:
            return record
        return await self._save(record, status, error=reason)

    async def poll_once(self, swap_id: str) -> SwapTransaction:
        """Query collaborators and apply every transition their answers justify."""
        record = await self.store.get(swap_id)
        previous = None

        while not record.is_terminal and record.status is not previous:
            previous = record.status
            try:
                record = await self._advance(record)
            except InvalidTransitionError:
                # Another caller moved the swap between our read and the step
                record = await self.store.get(swap_id)

        return record

    async def _advance(self, record: SwapTransaction) -> SwapTransaction:
        into = record.direction.into_settlement
        status = record.status

        if status is SwapStatus.PENDING:
            return await (self.generate_invoice if into else self.check_debit)(record.id)
        if status is SwapStatus.INVOICE_GENERATED:
            return await self.check_invoice(record.id)
        if status is SwapStatus.PAYMENT_RECEIVED:
            return await (self.start_bridging if into else self.start_payout)(record.id)
        if status is SwapStatus.BRIDGING:
            return await (self.check_settlement if into else self.start_payout)(record.id)
        return record

    async def watch(
        self,
        swap_id: str,
        poll_interval: Optional[float] = None,
        max_duration: Optional[float] = None,
    ) -> SwapTransaction:
        """Poll a swap until it is terminal or the hard deadline elapses.

        On deadline the swap is expired, so a finished watch never leaves a
        record in a non-terminal state.
        """
        interval = poll_interval
        if interval is None:
            interval = self.settings.watch_poll_interval_seconds
        duration = max_duration
        if duration is None:
            duration = self.settings.watch_max_duration_seconds
        deadline = time.monotonic() + duration
        logger.debug(f"Watching swap {swap_id} (interval {interval}s, deadline {duration}s)")

        while True:
            record = await self.poll_once(swap_id)
            if record.is_terminal:
                return record

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Swap {swap_id}: watch deadline elapsed in {record.status.value}")
                return await self.expire(swap_id, WATCH_DEADLINE)

            await self._sleep(min(interval, remaining))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _locked(self, swap_id: str, operation: str, step: Step) -> SwapTransaction:
        """Load a swap and run ``step`` on it while holding the swap lock."""
        async with swap_lock(swap_id, timeout=None, operation=operation):
            record = await self.store.get(swap_id)
            record = await step(record)
        if record.is_terminal:
            release_swap_lock(swap_id)
        return record

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[Any]]):
        """Run a collaborator call, retrying transient failures with backoff."""
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientIntegrationError as e:
                if attempt >= self.settings.max_retries:
                    logger.error(f"Giving up on {description} after {attempt + 1} attempts: {e}")
                    raise
                delay = self.settings.retry_delay_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Transient failure in {description} (attempt {attempt}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

    @staticmethod
    def _require(record: SwapTransaction, status: SwapStatus, direction: SwapDirection) -> None:
        if record.direction is not direction:
            raise InvalidTransitionError(
                f"Swap {record.id} is {record.direction.value}, expected {direction.value}"
            )
        if record.status is not status:
            raise InvalidTransitionError(
                f"Swap {record.id} is {record.status.value}, expected {status.value}"
            )

    async def _record_error(self, record: SwapTransaction, error: Exception) -> SwapTransaction:
        status = SwapStatus.EXPIRED if isinstance(error, ExpiryError) else SwapStatus.FAILED
        logger.error(f"Swap {record.id} {status.value.lower()}: {error}")
        return await self._save(record, status, error=str(error))

    async def _save(
        self, record: SwapTransaction, status: SwapStatus, **changes
    ) -> SwapTransaction:
        """Persist a status transition. Caller must hold the swap lock."""
        if not can_transition(record.status, status):
            raise InvalidTransitionError(
                f"Swap {record.id} cannot move from {record.status.value} to {status.value}"
            )
        updated = record.copy(status=status, updated_at=self._clock(), **changes)
        await self.store.put(updated)
        logger.info(f"Swap {record.id}: {record.status.value} -> {status.value}")
        return updated
