"""Collaborator interfaces consumed by the swap lifecycle.

Implementations translate their own failures into
``TransientIntegrationError`` (timeouts, connection errors, 5xx, unreadable
responses) or ``PermanentIntegrationError`` (the collaborator rejected the
operation).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from lnbridge.swap.models import LightningInvoice


@dataclass
class InvoiceStatus:
    """Payment state of a Lightning invoice."""

    payment_hash: str
    is_paid: bool
    amount_paid: int = 0
    paid_at: Optional[datetime] = None
    is_cancelled: bool = False


@dataclass
class DecodedInvoice:
    """Fields of a payment request as decoded by the Lightning node."""

    payment_request: str
    payment_hash: str
    amount: Optional[int]  # None for "any amount" invoices
    expires_at: datetime
    description: Optional[str] = None


class PaymentState(str, Enum):
    """State of an outgoing Lightning payment."""

    UNKNOWN = "unknown"  # never attempted
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PaymentResult:
    """Outcome of paying a Lightning invoice."""

    payment_hash: str
    preimage: str = ""
    fee_paid: int = 0
    state: PaymentState = PaymentState.SUCCEEDED


class SettlementState(str, Enum):
    """Finality of a settlement-network transaction."""

    PENDING = "pending"
    FINALIZED = "finalized"
    REVERTED = "reverted"


@dataclass
class TokenTransfer:
    """A token transfer carried by a settlement transaction."""

    recipient: str
    token: str  # symbol, e.g. WBTC
    amount: int  # token base units


@dataclass
class SettlementReceipt:
    """Status of a settlement-network transaction and the transfers it made."""

    tx_hash: str
    state: SettlementState
    reason: Optional[str] = None
    transfers: list[TokenTransfer] = field(default_factory=list)


class LightningBackend(ABC):
    """Abstract base class for Lightning payment backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name."""
        raise NotImplementedError()

    @abstractmethod
    async def create_invoice(
        self, amount_sats: int, description: str, expiry_seconds: int
    ) -> LightningInvoice:
        """Create an invoice for receiving ``amount_sats``."""
        raise NotImplementedError()

    @abstractmethod
    async def lookup_invoice(self, payment_hash: str) -> InvoiceStatus:
        """Get the payment state of an invoice by its payment hash.

        Raises:
            UnknownInvoiceError: If the node has no such invoice
        """
        raise NotImplementedError()

    @abstractmethod
    async def decode_invoice(self, payment_request: str) -> DecodedInvoice:
        """Decode a payment request without paying it."""
        raise NotImplementedError()

    @abstractmethod
    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        """Pay a Lightning invoice and wait for the result."""
        raise NotImplementedError()

    @abstractmethod
    async def lookup_payment(self, payment_hash: str) -> PaymentResult:
        """Get the state of an outgoing payment.

        Returns a result in ``PaymentState.UNKNOWN`` when the node never
        attempted to pay ``payment_hash``.
        """
        raise NotImplementedError()

    async def close(self) -> None:
        return None


class SettlementBackend(ABC):
    """Abstract base class for settlement-network (Starknet) backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name."""
        raise NotImplementedError()

    @abstractmethod
    async def submit_transfer(
        self, recipient: str, token: str, amount: int, reference: str
    ) -> str:
        """Submit a token transfer to ``recipient``.

        ``reference`` identifies the swap; relayers use it to deduplicate
        resubmissions.

        Returns:
            Transaction hash of the submitted transfer
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> SettlementReceipt:
        """Get the finality state of a transaction.

        Finalized receipts list the transfers of supported tokens the
        transaction made.
        """
        raise NotImplementedError()

    async def close(self) -> None:
        return None
