"""Tests for the swap lifecycle driver."""

import asyncio
import base64
import hashlib

import httpx
import pytest

from conftest import DEPOSIT_ADDRESS, PAYOUT_INVOICE, RECIPIENT, fund_debit, make_settings
from lnbridge.providers.base import PaymentState
from lnbridge.providers.dryrun import DryRunLightningBackend, DryRunSettlementBackend
from lnbridge.providers.lnd import LndRestBackend
from lnbridge.swap.driver import (
    DEBIT_EXPIRED,
    INVOICE_EXPIRED,
    WATCH_DEADLINE,
    SwapLifecycleDriver,
    new_swap_id,
)
from lnbridge.swap.errors import (
    AmountTooLow,
    DebitAlreadyUsed,
    InvalidPayoutInvoice,
    InvalidTransitionError,
    PaymentMismatch,
    PermanentIntegrationError,
    TransientIntegrationError,
    ValidationError,
)
from lnbridge.swap.models import (
    STATUS_ORDER,
    StarknetToken,
    SwapDirection,
    SwapRequest,
    SwapStatus,
)
from lnbridge.swap.store import InMemorySwapStore


class FlakyLightning(DryRunLightningBackend):
    """Lightning backend failing the first ``failures`` invoice creations."""

    def __init__(self, failures: int, error=TransientIntegrationError):
        super().__init__()
        self.failures = failures
        self.error = error
        self.attempts = 0

    async def create_invoice(self, amount_sats, description, expiry_seconds):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error("node timeout")
        return await super().create_invoice(amount_sats, description, expiry_seconds)


class RejectingSettlement(DryRunSettlementBackend):
    async def submit_transfer(self, recipient, token, amount, reference):
        raise PermanentIntegrationError("relayer rejected transfer")


class LostReplyLightning(DryRunLightningBackend):
    """Lightning backend whose first payment goes out but whose reply is lost."""

    def __init__(self):
        super().__init__()
        self.payments = 0

    async def pay_invoice(self, payment_request):
        result = await super().pay_invoice(payment_request)
        self.payments += 1
        if self.payments == 1:
            raise TransientIntegrationError("connection reset")
        return result


def ln_request(amount: int = 10000) -> SwapRequest:
    return SwapRequest(
        direction=SwapDirection.LN_TO_STARKNET,
        amount=amount,
        recipient_address=RECIPIENT,
    )


def out_request(amount: int = 100000) -> SwapRequest:
    return SwapRequest(
        direction=SwapDirection.STARKNET_TO_LN,
        amount=amount,
        payout_invoice=PAYOUT_INVOICE,
    )


class TestCreate:
    """Tests for swap creation."""

    @pytest.mark.asyncio
    async def test_lightning_to_starknet_generates_invoice(self, driver, store):
        """Test creation yields INVOICE_GENERATED with the quoted amounts."""
        record = await driver.create(ln_request(), owner_id="alice")

        assert record.status == SwapStatus.INVOICE_GENERATED
        assert record.owner_id == "alice"
        assert record.output_amount == "9604"
        assert record.gas_reserve_amount == "196"
        assert record.target_token == StarknetToken.WBTC
        assert record.lightning_invoice.amount == 10000
        assert record.lightning_invoice.description == f"Swap {record.id} to Starknet"
        assert record.lightning_invoice.payment_request.startswith("lntb")
        assert record.expires_at == record.lightning_invoice.expires_at
        assert await store.get(record.id) == record

    @pytest.mark.asyncio
    async def test_starknet_to_lightning_stays_pending(self, driver, clock):
        """Test creation yields PENDING with a debit deadline."""
        record = await driver.create(out_request(), owner_id="alice")

        assert record.status == SwapStatus.PENDING
        assert record.lightning_invoice is None
        assert record.payout_invoice == PAYOUT_INVOICE
        assert record.output_amount == "94000"
        assert (record.expires_at - clock()).total_seconds() == 3600

    @pytest.mark.asyncio
    async def test_validation_failure_creates_nothing(self, driver, store):
        """Test an invalid request leaves the store untouched."""
        with pytest.raises(AmountTooLow):
            await driver.create(ln_request(amount=5000), owner_id="alice")

        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_payout_payment_hash_recorded(self, driver):
        """Test the payout invoice is decoded and its hash kept for tracking."""
        record = await driver.create(out_request(), owner_id="alice")

        assert record.payout_payment_hash == hashlib.sha256(PAYOUT_INVOICE.encode()).hexdigest()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payout_invoice,amount,message",
        [
            ("lntb1000000u1pbiginvoice", 100000, "is for 100000000 sats"),
            (PAYOUT_INVOICE, 50000, "swap pays out 44500 sats"),
            ("lntb1pnoamountinvoice", 100000, "must specify an amount"),
            ("not-an-invoice", 100000, "cannot be decoded"),
        ],
    )
    async def test_payout_invoice_must_match_output(
        self, driver, store, payout_invoice, amount, message
    ):
        """Test a payout invoice not paying exactly the quoted output is rejected."""
        request = SwapRequest(
            direction=SwapDirection.STARKNET_TO_LN,
            amount=amount,
            payout_invoice=payout_invoice,
        )

        with pytest.raises(InvalidPayoutInvoice) as exc_info:
            await driver.create(request, owner_id="alice")

        assert message in exc_info.value.message
        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_payout_invoice_expiring_in_debit_window(
        self, store, settlement, settings, clock, sleeper
    ):
        """Test a payout invoice expiring before the debit deadline is rejected."""
        lightning = DryRunLightningBackend(foreign_invoice_expiry=600)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)

        with pytest.raises(InvalidPayoutInvoice) as exc_info:
            await driver.create(out_request(), owner_id="alice")

        assert "expires before" in exc_info.value.message
        assert await store.list_all() == []

    def test_swap_ids_unguessable(self):
        """Test ids are prefixed, random and unique."""
        ids = {new_swap_id() for _ in range(100)}

        assert len(ids) == 100
        assert all(i.startswith("swap_") and len(i) == 29 for i in ids)


class TestLightningToStarknetFlow:
    """PENDING -> INVOICE_GENERATED -> PAYMENT_RECEIVED -> BRIDGING -> COMPLETED."""

    @pytest.mark.asyncio
    async def test_full_flow_with_explicit_events(self, store, lightning, settings, clock, sleeper):
        """Test each external event moves the swap one step forward."""
        settlement = DryRunSettlementBackend(auto_finalize=False)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(ln_request(), owner_id="alice")
        invoice = record.lightning_invoice

        record = await driver.confirm_payment(record.id, invoice.payment_hash, 10000)
        assert record.status == SwapStatus.PAYMENT_RECEIVED
        assert record.paid_at == clock()

        record = await driver.start_bridging(record.id)
        assert record.status == SwapStatus.BRIDGING
        assert settlement.transfers == [
            {
                "tx_hash": record.transaction_hash,
                "recipient": RECIPIENT,
                "token": "WBTC",
                "amount": 9604,
                "reference": record.id,
            }
        ]

        record = await driver.confirm_settlement(record.id, record.transaction_hash)
        assert record.status == SwapStatus.COMPLETED
        assert record.transaction_hash is not None

    @pytest.mark.asyncio
    async def test_poll_once_drives_to_completion(self, driver, lightning, settlement):
        """Test a single poll applies every justified transition."""
        record = await driver.create(ln_request(), owner_id="alice")

        record = await driver.poll_once(record.id)
        assert record.status == SwapStatus.INVOICE_GENERATED

        lightning.mark_paid(record.lightning_invoice.payment_hash)
        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert len(settlement.transfers) == 1

    @pytest.mark.asyncio
    async def test_payment_hash_mismatch(self, driver):
        """Test a payment for another invoice is rejected."""
        record = await driver.create(ln_request(), owner_id="alice")

        with pytest.raises(PaymentMismatch):
            await driver.confirm_payment(record.id, "00" * 32, 10000)

        assert (await driver.store.get(record.id)).status == SwapStatus.INVOICE_GENERATED

    @pytest.mark.asyncio
    async def test_underpayment(self, driver):
        """Test a payment below the invoice amount is rejected."""
        record = await driver.create(ln_request(), owner_id="alice")

        with pytest.raises(PaymentMismatch):
            await driver.confirm_payment(record.id, record.lightning_invoice.payment_hash, 9999)

    @pytest.mark.asyncio
    async def test_underpaid_invoice_on_poll_fails(self, driver, lightning):
        """Test polling a short-paid invoice fails the swap."""
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash, amount=5000)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert "Paid 5000 sats" in record.error

    @pytest.mark.asyncio
    async def test_cancelled_invoice_fails(self, driver, lightning):
        """Test a cancelled invoice fails the swap."""
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.cancel_invoice(record.lightning_invoice.payment_hash)

        record = await driver.check_invoice(record.id)

        assert record.status == SwapStatus.FAILED
        assert "cancelled" in record.error

    @pytest.mark.asyncio
    async def test_reverted_settlement_fails(self, store, lightning, settings, clock, sleeper):
        """Test a reverted Starknet transfer fails the swap."""
        settlement = DryRunSettlementBackend(auto_finalize=False)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)

        record = await driver.poll_once(record.id)
        assert record.status == SwapStatus.BRIDGING

        settlement.revert(record.transaction_hash, reason="insufficient balance")
        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert "insufficient balance" in record.error

    @pytest.mark.asyncio
    async def test_settlement_hash_mismatch(self, store, lightning, settings, clock, sleeper):
        """Test confirming an unrelated transaction is rejected."""
        settlement = DryRunSettlementBackend(auto_finalize=False)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)
        record = await driver.poll_once(record.id)

        with pytest.raises(ValidationError):
            await driver.confirm_settlement(record.id, "0xdeadbeef")

        assert (await store.get(record.id)).status == SwapStatus.BRIDGING


class TestExpiry:
    """Expiry is enforced rather than leaving swaps pending."""

    @pytest.mark.asyncio
    async def test_unpaid_invoice_expires_on_check(self, driver, clock):
        """Test an expired, unpaid invoice moves the swap to EXPIRED."""
        record = await driver.create(ln_request(), owner_id="alice")

        clock.advance(3601)
        record = await driver.check_invoice(record.id)

        assert record.status == SwapStatus.EXPIRED
        assert record.error == INVOICE_EXPIRED

    @pytest.mark.asyncio
    async def test_invoice_not_expired_before_deadline(self, driver, clock):
        """Test an unpaid invoice within its window stays INVOICE_GENERATED."""
        record = await driver.create(ln_request(), owner_id="alice")

        clock.advance(3000)
        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.INVOICE_GENERATED

    @pytest.mark.asyncio
    async def test_late_payment_expires(self, driver):
        """Test a payment arriving after invoice expiry does not proceed."""
        record = await driver.create(ln_request(), owner_id="alice")
        invoice = record.lightning_invoice

        record = await driver.confirm_payment(
            record.id, invoice.payment_hash, 10000, paid_at=invoice.expires_at
        )

        assert record.status == SwapStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_debit_window_expires(self, driver, clock):
        """Test a Starknet -> Lightning swap without a debit expires."""
        record = await driver.create(out_request(), owner_id="alice")

        clock.advance(3600)
        record = await driver.check_debit(record.id)

        assert record.status == SwapStatus.EXPIRED
        assert record.error == DEBIT_EXPIRED

    @pytest.mark.asyncio
    async def test_watch_deadline_expires(self, store, lightning, settlement, settings):
        """Test watch stops at its hard deadline and expires the swap."""
        driver = SwapLifecycleDriver(store, lightning, settlement, settings)
        record = await driver.create(ln_request(), owner_id="alice")

        record = await driver.watch(record.id, poll_interval=0.01, max_duration=0.05)

        assert record.status == SwapStatus.EXPIRED
        assert record.error == WATCH_DEADLINE

    @pytest.mark.asyncio
    async def test_watch_returns_on_completion(self, store, lightning, settlement, settings):
        """Test watch returns as soon as the swap is terminal."""
        driver = SwapLifecycleDriver(store, lightning, settlement, settings)
        record = await driver.create(ln_request(), owner_id="alice")

        async def pay_later():
            await asyncio.sleep(0.05)
            lightning.mark_paid(record.lightning_invoice.payment_hash)

        payer = asyncio.create_task(pay_later())
        record = await driver.watch(record.id, poll_interval=0.01, max_duration=5)
        await payer

        assert record.status == SwapStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_watch_zero_duration(self, driver, sleeper):
        """Test an explicit zero deadline expires after a single poll."""
        record = await driver.create(ln_request(), owner_id="alice")

        record = await driver.watch(record.id, poll_interval=0, max_duration=0)

        assert record.status == SwapStatus.EXPIRED
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_watch_zero_interval(self, store, lightning, settlement, clock, sleeper):
        """Test an explicit zero interval overrides the configured one."""
        settings = make_settings(watch_poll_interval_seconds=5.0)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(ln_request(), owner_id="alice")

        await driver.watch(record.id, poll_interval=0, max_duration=0.02)

        assert sleeper.delays
        assert set(sleeper.delays) == {0}


class TestStarknetToLightningFlow:
    """PENDING -> PAYMENT_RECEIVED -> BRIDGING -> COMPLETED."""

    @pytest.mark.asyncio
    async def test_debit_then_payout(self, driver, lightning, settlement):
        """Test a final debit triggers the Lightning payout."""
        record = await driver.create(out_request(), owner_id="alice")

        record = await driver.submit_debit(record.id, "0xabc123")
        assert record.status == SwapStatus.PENDING
        assert record.source_tx_id == "0xabc123"

        fund_debit(settlement, "0xabc123")
        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert record.paid_at is not None
        assert lightning.outgoing == [PAYOUT_INVOICE]

    @pytest.mark.asyncio
    async def test_reverted_debit_fails(self, driver, settlement, lightning):
        """Test a reverted debit fails the swap without paying out."""
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")

        settlement.revert("0xabc123")
        record = await driver.check_debit(record.id)

        assert record.status == SwapStatus.FAILED
        assert lightning.outgoing == []

    @pytest.mark.asyncio
    async def test_second_debit_rejected(self, driver):
        """Test a swap cannot be re-funded with a different transaction."""
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")

        with pytest.raises(InvalidTransitionError):
            await driver.submit_debit(record.id, "0xdef456")

    @pytest.mark.asyncio
    async def test_debit_on_wrong_direction(self, driver):
        """Test debits are only accepted for Starknet -> Lightning swaps."""
        record = await driver.create(ln_request(), owner_id="alice")

        with pytest.raises(InvalidTransitionError):
            await driver.submit_debit(record.id, "0xabc123")

    @pytest.mark.asyncio
    async def test_invalid_transaction_hash(self, driver):
        """Test a debit hash that is not a felt is rejected."""
        record = await driver.create(out_request(), owner_id="alice")

        with pytest.raises(ValidationError):
            await driver.submit_debit(record.id, "not-a-hash")

    @pytest.mark.asyncio
    async def test_resubmitting_same_debit(self, driver):
        """Test the same transaction can be submitted again for its own swap."""
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")

        record = await driver.submit_debit(record.id, "0x0ABC123")

        assert record.status == SwapStatus.PENDING
        assert record.source_tx_id == "0xabc123"


class TestDebitVerification:
    """A final debit only funds a swap when it pays the deposit address in full."""

    @pytest.mark.asyncio
    async def test_debit_reused_across_swaps(self, driver, settlement, lightning):
        """Test one transaction cannot fund a second swap."""
        first = await driver.create(out_request(), owner_id="alice")
        second = await driver.create(out_request(), owner_id="bob")
        await driver.submit_debit(first.id, "0xabc123")
        fund_debit(settlement, "0xabc123")
        assert (await driver.poll_once(first.id)).status == SwapStatus.COMPLETED

        with pytest.raises(DebitAlreadyUsed):
            await driver.submit_debit(second.id, "0xabc123")

        second = await driver.store.get(second.id)
        assert second.status == SwapStatus.PENDING
        assert second.source_tx_id is None
        assert lightning.outgoing == [PAYOUT_INVOICE]

    @pytest.mark.asyncio
    async def test_reuse_detected_across_hash_spellings(self, driver):
        """Test leading zeros and case do not make a used hash look new."""
        first = await driver.create(out_request(), owner_id="alice")
        second = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(first.id, "0xabc123")

        with pytest.raises(DebitAlreadyUsed):
            await driver.submit_debit(second.id, "0x000ABC123")

    @pytest.mark.asyncio
    async def test_concurrent_claims_fund_one_swap(self, driver):
        """Test racing submissions of one transaction attach it once."""
        records = [await driver.create(out_request(), owner_id="alice") for _ in range(3)]

        results = await asyncio.gather(
            *(driver.submit_debit(r.id, "0xabc123") for r in records), return_exceptions=True
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert all(isinstance(r, DebitAlreadyUsed) for r in results if isinstance(r, Exception))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "transfer,message",
        [
            ({"recipient": "0x0666"}, "moved 0 WBTC"),
            ({"amount": 99999}, "moved 99999 WBTC"),
            ({"token": "USDC"}, "moved 0 WBTC"),
        ],
    )
    async def test_debit_not_paying_deposit_fails(
        self, driver, settlement, lightning, transfer, message
    ):
        """Test a final debit moving too little to the deposit address fails the swap."""
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")
        fund_debit(settlement, "0xabc123", **transfer)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert message in record.error
        assert lightning.outgoing == []

    @pytest.mark.asyncio
    async def test_deposit_address_formatting_ignored(self, driver, settlement):
        """Test the deposit address matches regardless of zero padding and case."""
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")
        fund_debit(settlement, "0xabc123", recipient="0x00" + DEPOSIT_ADDRESS[2:].upper())

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_deposit_address_fails(self, store, lightning, settlement, clock, sleeper):
        """Test debits cannot be verified without a configured deposit address."""
        settings = make_settings(settlement_deposit_address="")
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")
        fund_debit(settlement, "0xabc123")

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert "deposit address is not configured" in record.error
        assert lightning.outgoing == []


class TestPayoutResume:
    """A swap found in BRIDGING never pays its payout invoice twice."""

    async def bridging_swap(self, driver):
        record = await driver.create(out_request(), owner_id="alice")
        record = record.copy(status=SwapStatus.BRIDGING, source_tx_id="0xabc123")
        await driver.store.put(record)
        return record

    @pytest.mark.asyncio
    async def test_settled_payout_not_repaid(self, driver, lightning):
        """Test a payout the node already settled completes without paying."""
        record = await self.bridging_swap(driver)
        await lightning.pay_invoice(PAYOUT_INVOICE)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert lightning.outgoing == [PAYOUT_INVOICE]

    @pytest.mark.asyncio
    async def test_unpaid_payout_paid_once(self, driver, lightning):
        """Test a payout the node never attempted is paid on resume."""
        record = await self.bridging_swap(driver)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert lightning.outgoing == [PAYOUT_INVOICE]

    @pytest.mark.asyncio
    async def test_failed_payout_retried(self, driver, lightning):
        """Test a payout whose earlier attempt failed is paid again."""
        record = await self.bridging_swap(driver)
        lightning.set_payment_state(record.payout_payment_hash, PaymentState.FAILED)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert lightning.outgoing == [PAYOUT_INVOICE]

    @pytest.mark.asyncio
    async def test_in_flight_payout_waits(self, driver, lightning):
        """Test an in-flight payout keeps the swap bridging until it settles."""
        record = await self.bridging_swap(driver)
        lightning.set_payment_state(record.payout_payment_hash, PaymentState.IN_FLIGHT)

        record = await driver.poll_once(record.id)
        assert record.status == SwapStatus.BRIDGING

        lightning.set_payment_state(record.payout_payment_hash, PaymentState.SUCCEEDED)
        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert lightning.outgoing == []

    @pytest.mark.asyncio
    async def test_lost_payment_reply_not_repaid(self, store, settlement, settings, clock, sleeper):
        """Test a retry after a lost payment reply finds the payment instead of paying."""
        lightning = LostReplyLightning()
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(out_request(), owner_id="alice")
        await driver.submit_debit(record.id, "0xabc123")
        fund_debit(settlement, "0xabc123")

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.COMPLETED
        assert lightning.payments == 1
        assert lightning.outgoing == [PAYOUT_INVOICE]


class TestRetries:
    """Transient failures are retried with backoff, permanent ones are not."""

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, store, settlement, clock, sleeper):
        """Test a flaky invoice creation succeeds within the retry budget."""
        settings = make_settings(retry_delay_seconds=5.0)
        lightning = FlakyLightning(failures=2)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)

        record = await driver.create(ln_request(), owner_id="alice")

        assert record.status == SwapStatus.INVOICE_GENERATED
        assert lightning.attempts == 3
        assert sleeper.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, settlement, clock, sleeper):
        """Test the swap fails after max_retries retries."""
        settings = make_settings(retry_delay_seconds=5.0)
        lightning = FlakyLightning(failures=10)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)

        record = await driver.create(ln_request(), owner_id="alice")

        assert record.status == SwapStatus.FAILED
        assert "node timeout" in record.error
        assert lightning.attempts == 4
        assert sleeper.delays == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, store, settlement, settings, clock, sleeper):
        """Test a rejected call fails the swap immediately."""
        lightning = FlakyLightning(failures=1, error=PermanentIntegrationError)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)

        record = await driver.create(ln_request(), owner_id="alice")

        assert record.status == SwapStatus.FAILED
        assert lightning.attempts == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_rejected_transfer_fails(self, store, lightning, settings, clock, sleeper):
        """Test a relayer rejection is recorded, not raised."""
        driver = SwapLifecycleDriver(
            store, lightning, RejectingSettlement(), settings, clock=clock, sleep=sleeper
        )
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert record.error == "relayer rejected transfer"


class TestStateMachine:
    """Transitions are monotonic and terminal states are final."""

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, driver, lightning):
        """Test no event moves a completed swap."""
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)
        record = await driver.poll_once(record.id)
        assert record.status == SwapStatus.COMPLETED

        assert (await driver.fail(record.id, "late failure")).status == SwapStatus.COMPLETED
        assert (await driver.expire(record.id)).status == SwapStatus.COMPLETED
        with pytest.raises(InvalidTransitionError):
            await driver.confirm_payment(record.id, record.lightning_invoice.payment_hash, 10000)
        with pytest.raises(InvalidTransitionError):
            await driver.start_bridging(record.id)

    @pytest.mark.asyncio
    async def test_fail_from_non_terminal(self, driver):
        """Test FAILED is reachable from a non-terminal state."""
        record = await driver.create(out_request(), owner_id="alice")

        record = await driver.fail(record.id, "operator cancelled")

        assert record.status == SwapStatus.FAILED
        assert record.error == "operator cancelled"

    @pytest.mark.asyncio
    async def test_observed_statuses_are_monotonic(self, lightning, settings, clock, sleeper):
        """Test every observed status is a forward step of the lifecycle."""
        observed = []

        class RecordingStore(InMemorySwapStore):
            async def put(self, record):
                observed.append(record.status)
                await super().put(record)

        recording = RecordingStore()
        settlement = DryRunSettlementBackend(auto_finalize=False)
        driver = SwapLifecycleDriver(recording, lightning, settlement, settings, clock=clock, sleep=sleeper)

        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)
        record = await driver.poll_once(record.id)
        settlement.finalize(record.transaction_hash)
        await driver.poll_once(record.id)

        assert observed == list(STATUS_ORDER)

    @pytest.mark.asyncio
    async def test_concurrent_polls_submit_once(self, driver, lightning, settlement):
        """Test concurrent polls of one swap never double-submit the transfer."""
        record = await driver.create(ln_request(), owner_id="alice")
        lightning.mark_paid(record.lightning_invoice.payment_hash)

        results = await asyncio.gather(*(driver.poll_once(record.id) for _ in range(5)))

        assert all(r.status == SwapStatus.COMPLETED for r in results)
        assert len(settlement.transfers) == 1

    @pytest.mark.asyncio
    async def test_unrelated_swaps_progress_concurrently(self, driver, lightning, settlement):
        """Test many swaps complete in parallel."""
        records = await asyncio.gather(
            *(driver.create(ln_request(10000 + i), owner_id="alice") for i in range(10))
        )
        for record in records:
            lightning.mark_paid(record.lightning_invoice.payment_hash)

        results = await asyncio.gather(*(driver.poll_once(r.id) for r in records))

        assert all(r.status == SwapStatus.COMPLETED for r in results)
        assert len({t["reference"] for t in settlement.transfers}) == 10


class TestMalformedCollaboratorReplies:
    """Unparseable collaborator replies are recorded on the swap, not raised."""

    @pytest.mark.asyncio
    async def test_html_invoice_lookup_fails_swap(self, store, settlement, clock, sleeper):
        """Test a proxy error page in place of LND JSON fails the swap."""
        r_hash = base64.b64encode(bytes(32)).decode()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                invoice = {"r_hash": r_hash, "payment_request": "lntb100u1pexample"}
                return httpx.Response(200, json=invoice)
            return httpx.Response(200, text="<html>Bad gateway</html>")

        lightning = LndRestBackend(
            rest_url="https://lnd.test:8080",
            macaroon_hex="0201",
            transport=httpx.MockTransport(handler),
        )
        settings = make_settings(max_retries=1)
        driver = SwapLifecycleDriver(store, lightning, settlement, settings, clock=clock, sleep=sleeper)
        record = await driver.create(ln_request(), owner_id="alice")

        record = await driver.poll_once(record.id)

        assert record.status == SwapStatus.FAILED
        assert "non-JSON" in record.error
        assert sleeper.delays == [0.0]
