"""SQLAlchemy models for the swap ledger."""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SwapRecord(Base):
    """Persisted swap transaction, with its Lightning invoice inlined."""

    __tablename__ = "swaps"
    __table_args__ = (
        Index("ix_swaps_owner_idempotency", "owner_id", "idempotency_key", unique=True),
        Index("ix_swaps_source_tx", "source_tx_id", unique=True),
        Index("ix_swaps_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(32), nullable=False)

    # Amounts (sats)
    input_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    output_amount: Mapped[str] = mapped_column(String(40), nullable=False)
    service_fee: Mapped[int] = mapped_column(BigInteger, default=0)
    network_fee: Mapped[int] = mapped_column(BigInteger, default=0)
    gas_reserve_amount: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    # Destination
    target_token: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    recipient_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    speed: Mapped[str] = mapped_column(String(16), default="instant")

    # Lightning invoice (LN_TO_STARKNET)
    invoice_payment_request: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    invoice_payment_hash: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    invoice_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    invoice_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    invoice_description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Payout invoice (STARKNET_TO_LN)
    payout_invoice: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_payment_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Network references
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    source_tx_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
