"""
Company-scoped focal record lookups.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.engine.errors import RecordNotFound
from app.models.tables import Receipt, Transaction


async def _get(session: AsyncSession, model, kind: str, record_id: uuid.UUID, company_id: uuid.UUID):
    result = await session.execute(
        select(model).where(model.id == record_id, model.company_id == company_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise RecordNotFound(kind, str(record_id))
    return row


async def get_transaction(session: AsyncSession, transaction_id: uuid.UUID, company_id: uuid.UUID) -> Transaction:
    return await _get(session, Transaction, "transaction", transaction_id, company_id)


async def get_receipt(session: AsyncSession, receipt_id: uuid.UUID, company_id: uuid.UUID) -> Receipt:
    return await _get(session, Receipt, "receipt", receipt_id, company_id)


async def get_receipts(session: AsyncSession, receipt_ids: list[uuid.UUID], company_id: uuid.UUID) -> list[Receipt]:
    """Requested receipts, in request order, each once. Any missing id raises RecordNotFound."""
    receipt_ids = list(dict.fromkeys(receipt_ids))
    result = await session.execute(
        select(Receipt).where(Receipt.id.in_(receipt_ids), Receipt.company_id == company_id)
    )
    by_id = {r.id: r for r in result.scalars().all()}
    missing = [rid for rid in receipt_ids if rid not in by_id]
    if missing:
        raise RecordNotFound("receipt", str(missing[0]))
    return [by_id[rid] for rid in receipt_ids]
