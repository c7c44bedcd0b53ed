"""Domain models for Lightning <-> Starknet swaps."""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class SwapDirection(str, Enum):
    """Direction of value movement."""

    LN_TO_STARKNET = "LN_TO_STARKNET"
    STARKNET_TO_LN = "STARKNET_TO_LN"

    @property
    def into_settlement(self) -> bool:
        """True when value moves onto the settlement network."""
        return self is SwapDirection.LN_TO_STARKNET


class SwapStatus(str, Enum):
    """Lifecycle state of a swap."""

    PENDING = "PENDING"
    INVOICE_GENERATED = "INVOICE_GENERATED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    BRIDGING = "BRIDGING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class StarknetToken(str, Enum):
    """Tokens deliverable on Starknet."""

    WBTC = "WBTC"
    USDC = "USDC"
    USDT = "USDT"


class SwapSpeed(str, Enum):
    """Speed hint: instant settles over Lightning, normal on-chain."""

    INSTANT = "instant"
    NORMAL = "normal"


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.EXPIRED})

# Forward path; FAILED and EXPIRED may follow any non-terminal state
STATUS_ORDER = (
    SwapStatus.PENDING,
    SwapStatus.INVOICE_GENERATED,
    SwapStatus.PAYMENT_RECEIVED,
    SwapStatus.BRIDGING,
    SwapStatus.COMPLETED,
)


def can_transition(current: SwapStatus, new: SwapStatus) -> bool:
    """Check whether a swap may move from ``current`` to ``new``.

    Transitions only move forward along STATUS_ORDER, and terminal
    states are never left.
    """
    if current.is_terminal:
        return False
    if new in (SwapStatus.FAILED, SwapStatus.EXPIRED):
        return True
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


@dataclass
class SwapRequest:
    """A user's request to swap."""

    direction: SwapDirection
    amount: int  # smallest unit of the source asset (sats)
    target_token: Optional[StarknetToken] = None
    recipient_address: Optional[str] = None
    payout_invoice: Optional[str] = None  # STARKNET_TO_LN only
    speed: SwapSpeed = SwapSpeed.INSTANT


@dataclass(frozen=True)
class SwapQuote:
    """Fee breakdown and net output for a swap request."""

    input_amount: int
    output_amount: str
    exchange_rate: float
    estimated_fee: int
    network_fee: int
    service_fee: int
    minimum_amount: int
    maximum_amount: int
    expires_at: datetime
    direction: SwapDirection
    gas_reserve_amount: Optional[str] = None
    final_amount: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass(frozen=True)
class GasReserveInfo:
    """Split of an amount into gas reserve and deliverable asset."""

    reserve_amount: str
    percentage: int
    final_amount: str


@dataclass(frozen=True)
class LightningInvoice:
    """A Lightning payment request. Immutable once created."""

    payment_request: str
    payment_hash: str
    amount: int
    expires_at: datetime
    description: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class SwapTransaction:
    """A swap record as held by the store."""

    id: str
    status: SwapStatus
    direction: SwapDirection
    input_amount: int
    output_amount: str
    owner_id: str
    service_fee: int = 0
    network_fee: int = 0
    gas_reserve_amount: Optional[str] = None
    target_token: Optional[StarknetToken] = None
    recipient_address: Optional[str] = None
    speed: SwapSpeed = SwapSpeed.INSTANT
    lightning_invoice: Optional[LightningInvoice] = None
    payout_invoice: Optional[str] = None
    payout_payment_hash: Optional[str] = None
    transaction_hash: Optional[str] = None  # Starknet tx hash
    source_tx_id: Optional[str] = None  # debit tx on the source network
    idempotency_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self, **changes) -> "SwapTransaction":
        """Return a new record with ``changes`` applied."""
        return dataclasses.replace(self, **changes)
