"""Request and response contracts for the web layer."""

from lnbridge.web.contracts.swaps import (
    ConfigResponse,
    DebitSubmission,
    PaymentVerificationResponse,
    QuoteRequest,
    QuoteResponse,
    SwapCreateRequest,
    SwapListResponse,
    TransactionModel,
    TransactionResponse,
    VerifyPaymentRequest,
)

__all__ = [
    # Requests
    "QuoteRequest",
    "SwapCreateRequest",
    "VerifyPaymentRequest",
    "DebitSubmission",
    # Responses
    "ConfigResponse",
    "PaymentVerificationResponse",
    "QuoteResponse",
    "SwapListResponse",
    "TransactionModel",
    "TransactionResponse",
]
