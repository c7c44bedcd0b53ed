"""Durable swap store backed by SQLAlchemy."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lnbridge.ledger.models import SwapRecord
from lnbridge.swap.errors import NotFoundError
from lnbridge.swap.models import (
    TERMINAL_STATUSES,
    LightningInvoice,
    StarknetToken,
    SwapDirection,
    SwapSpeed,
    SwapStatus,
    SwapTransaction,
)
from lnbridge.swap.store import SwapStore


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_row(record: SwapTransaction) -> SwapRecord:
    """Map a swap transaction onto a table row."""
    invoice = record.lightning_invoice
    return SwapRecord(
        id=record.id,
        owner_id=record.owner_id,
        status=record.status.value,
        direction=record.direction.value,
        input_amount=record.input_amount,
        output_amount=record.output_amount,
        service_fee=record.service_fee,
        network_fee=record.network_fee,
        gas_reserve_amount=record.gas_reserve_amount,
        target_token=record.target_token.value if record.target_token else None,
        recipient_address=record.recipient_address,
        speed=record.speed.value,
        invoice_payment_request=invoice.payment_request if invoice else None,
        invoice_payment_hash=invoice.payment_hash if invoice else None,
        invoice_amount=invoice.amount if invoice else None,
        invoice_expires_at=invoice.expires_at if invoice else None,
        invoice_description=invoice.description if invoice else None,
        payout_invoice=record.payout_invoice,
        payout_payment_hash=record.payout_payment_hash,
        transaction_hash=record.transaction_hash,
        source_tx_id=record.source_tx_id,
        idempotency_key=record.idempotency_key,
        created_at=record.created_at,
        updated_at=record.updated_at,
        expires_at=record.expires_at,
        paid_at=record.paid_at,
        error=record.error,
    )


def to_domain(row: SwapRecord) -> SwapTransaction:
    """Map a table row back onto a swap transaction."""
    invoice = None
    if row.invoice_payment_hash:
        invoice = LightningInvoice(
            payment_request=row.invoice_payment_request,
            payment_hash=row.invoice_payment_hash,
            amount=row.invoice_amount,
            expires_at=_aware(row.invoice_expires_at),
            description=row.invoice_description,
        )

    return SwapTransaction(
        id=row.id,
        status=SwapStatus(row.status),
        direction=SwapDirection(row.direction),
        input_amount=row.input_amount,
        output_amount=row.output_amount,
        owner_id=row.owner_id,
        service_fee=row.service_fee,
        network_fee=row.network_fee,
        gas_reserve_amount=row.gas_reserve_amount,
        target_token=StarknetToken(row.target_token) if row.target_token else None,
        recipient_address=row.recipient_address,
        speed=SwapSpeed(row.speed),
        lightning_invoice=invoice,
        payout_invoice=row.payout_invoice,
        payout_payment_hash=row.payout_payment_hash,
        transaction_hash=row.transaction_hash,
        source_tx_id=row.source_tx_id,
        idempotency_key=row.idempotency_key,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        expires_at=_aware(row.expires_at),
        paid_at=_aware(row.paid_at),
        error=row.error,
    )


class SqlSwapStore(SwapStore):
    """Swap store persisting records through SQLAlchemy.

    Every call runs in its own transaction, and a record is always written
    as a whole row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def put(self, record: SwapTransaction) -> None:
        async with self._session() as session:
            await session.merge(to_row(record))

    async def get(self, swap_id: str) -> SwapTransaction:
        async with self._session() as session:
            row = await session.get(SwapRecord, swap_id)
            if row is None:
                raise NotFoundError(f"Swap not found: {swap_id}")
            return to_domain(row)

    async def list_all(self) -> list[SwapTransaction]:
        stmt = select(SwapRecord).order_by(SwapRecord.created_at.desc())
        return await self._select(stmt)

    async def list_by_owner(self, owner_id: str) -> list[SwapTransaction]:
        stmt = (
            select(SwapRecord)
            .where(SwapRecord.owner_id == owner_id)
            .order_by(SwapRecord.created_at.desc())
        )
        return await self._select(stmt)

    async def find_by_idempotency_key(
        self, owner_id: str, idempotency_key: str
    ) -> Optional[SwapTransaction]:
        stmt = select(SwapRecord).where(
            SwapRecord.owner_id == owner_id,
            SwapRecord.idempotency_key == idempotency_key,
        )
        records = await self._select(stmt)
        return records[0] if records else None

    async def find_by_source_tx(self, tx_hash: str) -> Optional[SwapTransaction]:
        stmt = select(SwapRecord).where(SwapRecord.source_tx_id == tx_hash)
        records = await self._select(stmt)
        return records[0] if records else None

    async def list_active(self) -> list[SwapTransaction]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        stmt = (
            select(SwapRecord)
            .where(SwapRecord.status.not_in(terminal))
            .order_by(SwapRecord.created_at)
        )
        return await self._select(stmt)

    async def _select(self, stmt) -> list[SwapTransaction]:
        async with self._session() as session:
            result = await session.execute(stmt)
            return [to_domain(row) for row in result.scalars().all()]
