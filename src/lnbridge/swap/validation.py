"""Swap request validation."""

import dataclasses

from lnbridge.config import Settings
from lnbridge.swap.errors import (
    AmountTooHigh,
    AmountTooLow,
    MissingPayoutInvoice,
    MissingRecipient,
    UnsupportedToken,
    ValidationError,
)
from lnbridge.swap.models import StarknetToken, SwapDirection, SwapRequest


def validate_swap_request(
    request: SwapRequest,
    settings: Settings,
    require_payout_invoice: bool = True,
) -> SwapRequest:
    """Validate a swap request against the configured bounds.

    Quotes skip the payout invoice check (``require_payout_invoice=False``);
    execution of a Starknet -> Lightning swap cannot proceed without one.

    Has no side effects: the input is left untouched and a normalized copy
    is returned, with the target token defaulted for swaps into Starknet.

    Raises:
        AmountTooLow, AmountTooHigh, MissingRecipient, MissingPayoutInvoice,
        UnsupportedToken
    """
    if request.amount <= 0:
        raise ValidationError("Amount must be a positive integer")

    if request.amount < settings.min_swap_amount:
        raise AmountTooLow(
            f"Amount too low. Minimum is {settings.min_swap_amount:,} sats"
        )

    if request.amount > settings.max_swap_amount:
        raise AmountTooHigh(
            f"Amount too high. Maximum is {settings.max_swap_amount:,} sats"
        )

    if request.direction is SwapDirection.LN_TO_STARKNET:
        if not request.recipient_address:
            raise MissingRecipient(
                f"recipientAddress is required for {request.direction.value}"
            )

        target_token = request.target_token or StarknetToken(settings.default_target_token)
        if target_token.value not in settings.token_list:
            raise UnsupportedToken(f"Unsupported token: {target_token.value}")

        return dataclasses.replace(request, target_token=target_token)

    if require_payout_invoice and not request.payout_invoice:
        raise MissingPayoutInvoice(
            f"payoutInvoice is required for {request.direction.value}"
        )

    return request


def normalize_felt(value: str) -> str:
    """Canonical form of a Starknet felt (address or transaction hash).

    ``0x00ABC`` and ``0xabc`` name the same felt; both normalize to ``0xabc``.

    Raises:
        ValueError: If ``value`` is not a hex string
    """
    return hex(int(value, 16))
