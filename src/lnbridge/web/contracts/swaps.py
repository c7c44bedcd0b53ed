"""Swap request and response contracts.

Field names are snake_case in Python and camelCase on the wire. Timestamps
are serialized as Unix epoch milliseconds.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lnbridge.swap.models import (
    LightningInvoice,
    StarknetToken,
    SwapDirection,
    SwapQuote,
    SwapRequest,
    SwapSpeed,
    SwapStatus,
    SwapTransaction,
)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to epoch milliseconds."""
    if value is None:
        return None
    return int(value.timestamp() * 1000)


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ======================
# Requests
# ======================


class QuoteRequest(CamelModel):
    """Request for a swap quote."""

    direction: SwapDirection = Field(..., description="Swap direction")
    amount: int = Field(..., gt=0, description="Amount in sats")
    target_token: Optional[StarknetToken] = Field(None, description="Starknet token to receive")
    recipient_address: Optional[str] = Field(
        None, max_length=128, description="Starknet recipient address"
    )

    def to_domain(self) -> SwapRequest:
        return SwapRequest(
            direction=self.direction,
            amount=self.amount,
            target_token=self.target_token,
            recipient_address=self.recipient_address,
        )


class SwapCreateRequest(QuoteRequest):
    """Request to initiate a swap."""

    speed: SwapSpeed = Field(default=SwapSpeed.INSTANT, description="instant or normal")
    payout_invoice: Optional[str] = Field(
        None, description="Lightning invoice to pay out (STARKNET_TO_LN)"
    )

    def to_domain(self) -> SwapRequest:
        return SwapRequest(
            direction=self.direction,
            amount=self.amount,
            target_token=self.target_token,
            recipient_address=self.recipient_address,
            payout_invoice=self.payout_invoice,
            speed=self.speed,
        )


class VerifyPaymentRequest(CamelModel):
    """Request to check whether an invoice was paid."""

    payment_hash: str = Field(..., min_length=1, max_length=128, description="Invoice payment hash")


class DebitSubmission(CamelModel):
    """Starknet debit transaction funding a STARKNET_TO_LN swap."""

    transaction_hash: str = Field(
        ..., pattern=r"^0x[0-9a-fA-F]{1,64}$", description="Starknet transaction hash"
    )


# ======================
# Responses
# ======================


class QuoteModel(CamelModel):
    """Swap quote as returned to clients."""

    input_amount: int
    output_amount: str
    exchange_rate: float
    estimated_fee: int
    network_fee: int
    service_fee: int
    minimum_amount: int
    maximum_amount: int
    expires_at: int
    direction: SwapDirection
    gas_reserve_amount: Optional[str] = None
    final_amount: Optional[str] = None

    @classmethod
    def from_domain(cls, quote: SwapQuote) -> "QuoteModel":
        return cls(
            input_amount=quote.input_amount,
            output_amount=quote.output_amount,
            exchange_rate=quote.exchange_rate,
            estimated_fee=quote.estimated_fee,
            network_fee=quote.network_fee,
            service_fee=quote.service_fee,
            minimum_amount=quote.minimum_amount,
            maximum_amount=quote.maximum_amount,
            expires_at=to_millis(quote.expires_at),
            direction=quote.direction,
            gas_reserve_amount=quote.gas_reserve_amount,
            final_amount=quote.final_amount,
        )


class QuoteResponse(CamelModel):
    quote: QuoteModel


class InvoiceModel(CamelModel):
    """Lightning invoice to be paid by the user."""

    payment_request: str
    payment_hash: str
    amount: int
    expires_at: int
    description: Optional[str] = None

    @classmethod
    def from_domain(cls, invoice: LightningInvoice) -> "InvoiceModel":
        return cls(
            payment_request=invoice.payment_request,
            payment_hash=invoice.payment_hash,
            amount=invoice.amount,
            expires_at=to_millis(invoice.expires_at),
            description=invoice.description,
        )


class TransactionModel(CamelModel):
    """Swap transaction as returned to clients."""

    id: str
    status: SwapStatus
    direction: SwapDirection
    input_amount: int
    output_amount: str
    service_fee: int
    network_fee: int
    gas_reserve_amount: Optional[str] = None
    target_token: Optional[StarknetToken] = None
    recipient_address: Optional[str] = None
    speed: SwapSpeed
    lightning_invoice: Optional[InvoiceModel] = None
    transaction_hash: Optional[str] = None
    source_tx_id: Optional[str] = None
    created_at: int
    updated_at: int
    expires_at: Optional[int] = None
    paid_at: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_domain(cls, record: SwapTransaction) -> "TransactionModel":
        invoice = record.lightning_invoice
        return cls(
            id=record.id,
            status=record.status,
            direction=record.direction,
            input_amount=record.input_amount,
            output_amount=record.output_amount,
            service_fee=record.service_fee,
            network_fee=record.network_fee,
            gas_reserve_amount=record.gas_reserve_amount,
            target_token=record.target_token,
            recipient_address=record.recipient_address,
            speed=record.speed,
            lightning_invoice=InvoiceModel.from_domain(invoice) if invoice else None,
            transaction_hash=record.transaction_hash,
            source_tx_id=record.source_tx_id,
            created_at=to_millis(record.created_at),
            updated_at=to_millis(record.updated_at),
            expires_at=to_millis(record.expires_at),
            paid_at=to_millis(record.paid_at),
            error=record.error,
        )


class TransactionResponse(CamelModel):
    transaction: TransactionModel


class SwapListResponse(CamelModel):
    swaps: list[TransactionModel] = Field(default_factory=list)


class PaymentVerificationResponse(CamelModel):
    payment_hash: str
    is_paid: bool
    paid_at: Optional[int] = None


class SwapConfigModel(CamelModel):
    network: str
    min_swap_amount: int
    max_swap_amount: int
    gas_reserve_percentage: int
    enable_auto_gas_reserve: bool
    supported_tokens: list[str]
    deposit_address: Optional[str] = None


class ConfigResponse(CamelModel):
    config: SwapConfigModel
