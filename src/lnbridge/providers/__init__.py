"""Lightning and settlement-network collaborator adapters."""

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
from lnbridge.providers.factory import get_lightning_backend, get_settlement_backend

__all__ = [
    "DecodedInvoice",
    "InvoiceStatus",
    "LightningBackend",
    "PaymentResult",
    "PaymentState",
    "SettlementBackend",
    "SettlementReceipt",
    "SettlementState",
    "TokenTransfer",
    "get_lightning_backend",
    "get_settlement_backend",
]
