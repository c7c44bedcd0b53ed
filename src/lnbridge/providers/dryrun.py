"""Dry-run collaborators for development and testing.

Nothing leaves the process. Invoices are only paid and transactions only
finalized when told so explicitly, so every answer is deterministic.
"""

import hashlib
import logging
import re
import secrets
from datetime import timedelta
from typing import Optional

from lnbridge.providers.base import (
    DecodedInvoice,
    InvoiceStatus,
    LightningBackend,
    PaymentResult,
    PaymentState,
    SettlementBackend,
    SettlementReceipt,
    SettlementState,
    TokenTransfer,
)
from lnbridge.swap.errors import PermanentIntegrationError, UnknownInvoiceError
from lnbridge.swap.models import LightningInvoice, utcnow

logger = logging.getLogger(__name__)

# Human-readable part of a BOLT11 payment request: ln + network + amount
HRP_PATTERN = re.compile(r"^ln(?:bcrt|bc|tbs|tb)(?P<amount>\d+)?(?P<multiplier>[munp])?$")

# Millisatoshis per unit of each BOLT11 amount multiplier
MSAT_PER_UNIT = {"": 100_000_000_000, "m": 100_000_000, "u": 100_000, "n": 100}


def parse_bolt11_amount(payment_request: str) -> Optional[int]:
    """Amount in sats encoded in a payment request, None for "any amount".

    Raises:
        PermanentIntegrationError: If the request is not a BOLT11 string
    """
    request = payment_request.lower()
    match = HRP_PATTERN.match(request[: request.rfind("1")])
    if match is None:
        raise PermanentIntegrationError(f"Invalid payment request: {payment_request[:24]}...")

    digits = match.group("amount")
    if digits is None:
        return None
    multiplier = match.group("multiplier") or ""
    if multiplier == "p":
        return int(digits) // 10 // 1000
    return int(digits) * MSAT_PER_UNIT[multiplier] // 1000


class DryRunLightningBackend(LightningBackend):
    """Simulated Lightning node keeping invoices and payments in memory.

    Payment requests this node did not create are decoded from their
    human-readable part and treated as expiring ``foreign_invoice_expiry``
    seconds from now.
    """

    def __init__(self, network: str = "testnet", foreign_invoice_expiry: int = 86400):
        self.prefix = "lnbc" if network == "mainnet" else "lntb"
        self.foreign_invoice_expiry = foreign_invoice_expiry
        self._invoices: dict[str, LightningInvoice] = {}
        self._payments: dict[str, InvoiceStatus] = {}
        self._outgoing: dict[str, PaymentResult] = {}
        self.outgoing: list[str] = []

    @property
    def name(self) -> str:
        return "dryrun"

    async def create_invoice(
        self, amount_sats: int, description: str, expiry_seconds: int
    ) -> LightningInvoice:
        preimage = secrets.token_bytes(32)
        payment_hash = hashlib.sha256(preimage).hexdigest()
        # "1" separates the human-readable part and never appears after it
        data = payment_hash[:52].replace("1", "l")
        invoice = LightningInvoice(
            payment_request=f"{self.prefix}{amount_sats * 10}n1p{data}",
            payment_hash=payment_hash,
            amount=amount_sats,
            expires_at=utcnow() + timedelta(seconds=expiry_seconds),
            description=description,
        )
        self._invoices[payment_hash] = invoice
        logger.debug(f"Dry-run invoice created: {amount_sats} sats ({payment_hash[:16]}...)")
        return invoice

    async def lookup_invoice(self, payment_hash: str) -> InvoiceStatus:
        status = self._payments.get(payment_hash)
        if status is not None:
            return status
        if payment_hash not in self._invoices:
            raise UnknownInvoiceError(f"Unknown payment hash: {payment_hash}")
        return InvoiceStatus(payment_hash=payment_hash, is_paid=False)

    async def decode_invoice(self, payment_request: str) -> DecodedInvoice:
        for invoice in self._invoices.values():
            if invoice.payment_request == payment_request:
                return DecodedInvoice(
                    payment_request=payment_request,
                    payment_hash=invoice.payment_hash,
                    amount=invoice.amount,
                    expires_at=invoice.expires_at,
                    description=invoice.description,
                )

        return DecodedInvoice(
            payment_request=payment_request,
            payment_hash=hashlib.sha256(payment_request.encode()).hexdigest(),
            amount=parse_bolt11_amount(payment_request),
            expires_at=utcnow() + timedelta(seconds=self.foreign_invoice_expiry),
        )

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        decoded = await self.decode_invoice(payment_request)
        result = PaymentResult(payment_hash=decoded.payment_hash, preimage=secrets.token_hex(32))
        self._outgoing[decoded.payment_hash] = result
        self.outgoing.append(payment_request)
        logger.debug(f"Dry-run payment sent: {payment_request[:24]}...")
        return result

    async def lookup_payment(self, payment_hash: str) -> PaymentResult:
        return self._outgoing.get(
            payment_hash, PaymentResult(payment_hash=payment_hash, state=PaymentState.UNKNOWN)
        )

    def mark_paid(self, payment_hash: str, amount: Optional[int] = None) -> InvoiceStatus:
        """Simulate settlement of an invoice."""
        invoice = self._invoices[payment_hash]
        status = InvoiceStatus(
            payment_hash=payment_hash,
            is_paid=True,
            amount_paid=invoice.amount if amount is None else amount,
            paid_at=utcnow(),
        )
        self._payments[payment_hash] = status
        return status

    def cancel_invoice(self, payment_hash: str) -> InvoiceStatus:
        """Simulate the node cancelling an unpaid invoice."""
        status = InvoiceStatus(payment_hash=payment_hash, is_paid=False, is_cancelled=True)
        self._payments[payment_hash] = status
        return status

    def set_payment_state(self, payment_hash: str, state: PaymentState) -> None:
        """Simulate an outgoing payment the node already knows about."""
        self._outgoing[payment_hash] = PaymentResult(payment_hash=payment_hash, state=state)


class DryRunSettlementBackend(SettlementBackend):
    """Simulated Starknet relayer and RPC.

    Transfers submitted through this backend finalize immediately when
    ``auto_finalize`` is set; foreign transactions stay pending until
    ``finalize`` or ``revert`` is called.
    """

    def __init__(self, auto_finalize: bool = True):
        self.auto_finalize = auto_finalize
        self._receipts: dict[str, SettlementReceipt] = {}
        self.transfers: list[dict] = []

    @property
    def name(self) -> str:
        return "dryrun"

    async def submit_transfer(
        self, recipient: str, token: str, amount: int, reference: str
    ) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self.transfers.append(
            {
                "tx_hash": tx_hash,
                "recipient": recipient,
                "token": token,
                "amount": amount,
                "reference": reference,
            }
        )
        state = SettlementState.FINALIZED if self.auto_finalize else SettlementState.PENDING
        self._receipts[tx_hash] = SettlementReceipt(
            tx_hash=tx_hash,
            state=state,
            transfers=[TokenTransfer(recipient=recipient, token=token, amount=amount)],
        )
        logger.debug(f"Dry-run transfer: {amount} {token} to {recipient} ({tx_hash[:18]}...)")
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> SettlementReceipt:
        return self._receipts.get(
            tx_hash, SettlementReceipt(tx_hash=tx_hash, state=SettlementState.PENDING)
        )

    def finalize(
        self,
        tx_hash: str,
        recipient: Optional[str] = None,
        token: str = "WBTC",
        amount: int = 0,
    ) -> None:
        """Finalize a transaction, optionally carrying one token transfer."""
        previous = self._receipts.get(tx_hash)
        if recipient is not None:
            transfers = [TokenTransfer(recipient=recipient, token=token, amount=amount)]
        else:
            transfers = previous.transfers if previous else []
        self._receipts[tx_hash] = SettlementReceipt(
            tx_hash=tx_hash, state=SettlementState.FINALIZED, transfers=transfers
        )

    def revert(self, tx_hash: str, reason: str = "reverted") -> None:
        self._receipts[tx_hash] = SettlementReceipt(
            tx_hash=tx_hash, state=SettlementState.REVERTED, reason=reason
        )
