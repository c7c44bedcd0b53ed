"""Fee and quote calculation.

All arithmetic is integer: fees in basis points, reserves in whole percent,
both rounded down.
"""

from datetime import datetime, timedelta
from typing import Optional

from lnbridge.config import Settings
from lnbridge.swap.errors import NegativeOutput
from lnbridge.swap.models import (
    GasReserveInfo,
    SwapDirection,
    SwapQuote,
    utcnow,
)

BPS_DENOMINATOR = 10_000

# Placeholder until a price oracle is wired in
EXCHANGE_RATE = 1.0


def service_fee_for(amount: int, service_fee_bps: int) -> int:
    """Service fee in sats, rounded down."""
    return amount * service_fee_bps // BPS_DENOMINATOR


def network_fee_for(direction: SwapDirection, settings: Settings) -> int:
    """Network fee for the source leg of a swap.

    Lightning-funded swaps pay the Lightning base fee; Starknet-funded swaps
    pay the on-chain fee estimate.
    """
    if direction is SwapDirection.LN_TO_STARKNET:
        return settings.lightning_network_fee_sats
    return settings.onchain_network_fee_sats


def calculate_gas_reserve(amount: int, percentage: int) -> GasReserveInfo:
    """Split ``amount`` into a gas reserve and the deliverable remainder."""
    reserve = amount * percentage // 100
    return GasReserveInfo(
        reserve_amount=str(reserve),
        percentage=percentage,
        final_amount=str(amount - reserve),
    )


def calculate_quote(
    amount: int,
    direction: SwapDirection,
    settings: Settings,
    now: Optional[datetime] = None,
) -> SwapQuote:
    """Compute the fee breakdown and output amount for a swap.

    Args:
        amount: Input amount in sats
        direction: Swap direction
        settings: Fee schedule, limits and gas reserve configuration
        now: Quote creation time (defaults to current time)

    Returns:
        SwapQuote valid for ``settings.quote_ttl_seconds``

    Raises:
        NegativeOutput: If fees and reserve exceed the amount
    """
    service_fee = service_fee_for(amount, settings.service_fee_bps)
    network_fee = network_fee_for(direction, settings)
    total_fee = service_fee + network_fee
    net_amount = amount - total_fee

    if net_amount < 0:
        raise NegativeOutput(
            f"Fees of {total_fee} sats exceed swap amount of {amount} sats"
        )

    gas_reserve_amount = None
    final_amount = None
    output_amount = net_amount

    if direction.into_settlement and settings.enable_auto_gas_reserve:
        reserve = calculate_gas_reserve(net_amount, settings.gas_reserve_percentage)
        gas_reserve_amount = reserve.reserve_amount
        final_amount = reserve.final_amount
        output_amount = int(reserve.final_amount)

    created = now or utcnow()

    return SwapQuote(
        input_amount=amount,
        output_amount=str(output_amount),
        exchange_rate=EXCHANGE_RATE,
        estimated_fee=total_fee,
        network_fee=network_fee,
        service_fee=service_fee,
        minimum_amount=settings.min_swap_amount,
        maximum_amount=settings.max_swap_amount,
        expires_at=created + timedelta(seconds=settings.quote_ttl_seconds),
        direction=direction,
        gas_reserve_amount=gas_reserve_amount,
        final_amount=final_amount,
    )
