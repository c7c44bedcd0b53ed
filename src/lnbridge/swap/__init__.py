"""Swap core: models, quoting, validation, storage and lifecycle."""

from lnbridge.swap.errors import (
    AuthenticationError,
    DebitAlreadyUsed,
    ExpiryError,
    IntegrationError,
    InvalidPayoutInvoice,
    InvalidTransitionError,
    NotFoundError,
    PermanentIntegrationError,
    SwapError,
    TransientIntegrationError,
    UnknownInvoiceError,
    ValidationError,
)
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
from lnbridge.swap.quotes import calculate_gas_reserve, calculate_quote
from lnbridge.swap.store import InMemorySwapStore, SwapStore
from lnbridge.swap.validation import validate_swap_request

__all__ = [
    # Models
    "LightningInvoice",
    "StarknetToken",
    "SwapDirection",
    "SwapQuote",
    "SwapRequest",
    "SwapSpeed",
    "SwapStatus",
    "SwapTransaction",
    # Errors
    "AuthenticationError",
    "DebitAlreadyUsed",
    "ExpiryError",
    "IntegrationError",
    "InvalidPayoutInvoice",
    "InvalidTransitionError",
    "NotFoundError",
    "PermanentIntegrationError",
    "SwapError",
    "TransientIntegrationError",
    "UnknownInvoiceError",
    "ValidationError",
    # Core
    "calculate_gas_reserve",
    "calculate_quote",
    "validate_swap_request",
    "InMemorySwapStore",
    "SwapStore",
]
