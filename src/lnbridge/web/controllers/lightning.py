"""Lightning swap API endpoints.

Quotes, configuration and swap lookup by id are public; the swap id is an
unguessable token. Creating swaps, listing them and funding Starknet ->
Lightning swaps require a bearer token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from lnbridge.auth import get_current_user
from lnbridge.web.contracts.swaps import (
    ConfigResponse,
    DebitSubmission,
    PaymentVerificationResponse,
    QuoteModel,
    QuoteRequest,
    QuoteResponse,
    SwapConfigModel,
    SwapCreateRequest,
    SwapListResponse,
    TransactionModel,
    TransactionResponse,
    VerifyPaymentRequest,
    to_millis,
)
from lnbridge.web.services.swap_service import SwapService

router = APIRouter(prefix="/lightning", tags=["lightning"])


def get_swap_service(request: Request) -> SwapService:
    return request.app.state.swap_service


@router.post("/quote", response_model=QuoteResponse, response_model_by_alias=True)
async def get_quote(
    body: QuoteRequest,
    service: SwapService = Depends(get_swap_service),
) -> QuoteResponse:
    """Price a swap without creating it.

    Amounts are in sats; fees are deducted from the input and, for swaps
    into Starknet, a gas reserve is withheld from the output.
    """
    quote = service.get_quote(body.to_domain())
    return QuoteResponse(quote=QuoteModel.from_domain(quote))


@router.post("/swap", response_model=TransactionResponse, response_model_by_alias=True)
async def create_swap(
    body: SwapCreateRequest,
    user_id: str = Depends(get_current_user),
    idempotency_key: Optional[str] = Header(None, max_length=128),
    service: SwapService = Depends(get_swap_service),
) -> TransactionResponse:
    """Create a swap owned by the caller.

    For Lightning -> Starknet the response carries the invoice to pay. For
    Starknet -> Lightning the swap waits in PENDING for the debit
    transaction (see ``POST /lightning/swap/{swap_id}/debit``).
    Sending the same ``Idempotency-Key`` again returns the first swap.
    """
    record = await service.create_swap(body.to_domain(), user_id, idempotency_key)
    return TransactionResponse(transaction=TransactionModel.from_domain(record))


@router.get("/swap/{swap_id}", response_model=TransactionResponse, response_model_by_alias=True)
async def get_swap(
    swap_id: str,
    service: SwapService = Depends(get_swap_service),
) -> TransactionResponse:
    """Get the current state of a swap."""
    record = await service.get_swap(swap_id)
    return TransactionResponse(transaction=TransactionModel.from_domain(record))


@router.get("/swaps", response_model=SwapListResponse, response_model_by_alias=True)
async def list_swaps(
    user_id: str = Depends(get_current_user),
    service: SwapService = Depends(get_swap_service),
) -> SwapListResponse:
    """List the caller's swaps, newest first."""
    records = await service.list_swaps_for_user(user_id)
    return SwapListResponse(swaps=[TransactionModel.from_domain(r) for r in records])


@router.post(
    "/swap/{swap_id}/debit",
    response_model=TransactionResponse,
    response_model_by_alias=True,
)
async def submit_debit(
    swap_id: str,
    body: DebitSubmission,
    user_id: str = Depends(get_current_user),
    service: SwapService = Depends(get_swap_service),
) -> TransactionResponse:
    """Report the Starknet transaction funding a Starknet -> Lightning swap."""
    record = await service.submit_debit(swap_id, user_id, body.transaction_hash)
    return TransactionResponse(transaction=TransactionModel.from_domain(record))


@router.post(
    "/verify-payment",
    response_model=PaymentVerificationResponse,
    response_model_by_alias=True,
)
async def verify_payment(
    body: VerifyPaymentRequest,
    service: SwapService = Depends(get_swap_service),
) -> PaymentVerificationResponse:
    """Check with the Lightning node whether an invoice has been paid."""
    status = await service.verify_payment(body.payment_hash)
    return PaymentVerificationResponse(
        payment_hash=body.payment_hash,
        is_paid=status.is_paid,
        paid_at=to_millis(status.paid_at),
    )


@router.get("/config", response_model=ConfigResponse, response_model_by_alias=True)
async def get_config(service: SwapService = Depends(get_swap_service)) -> ConfigResponse:
    """Public swap configuration: network, limits, gas reserve and tokens."""
    return ConfigResponse(config=SwapConfigModel(**service.settings.public_swap_config()))
