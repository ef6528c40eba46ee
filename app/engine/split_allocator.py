"""
Multi-receipt split allocation.

One transaction paid for several receipts. Each receipt gets a share of the
transaction proportional to its own extracted amount. Shares are truncated to
cents and the leftover cents go to the largest share, so the allocated amounts
always sum to exactly |transaction.amount|.

Confidence (max 1.0):
    0.4  amount-match ratio          1 - |sum - tx| / tx
    0.3  average date proximity      max(0, 1 - avg_days / 7)
    0.2  merchant consistency        one merchant -> full, mixed -> half
    0.1  receipt count               min(1, n / 5)
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import ZERO, quantize, to_decimal, truncate
from app.engine.dates import days_between
from app.models.tables import Receipt, Transaction, TransactionSplit
from app.observability.metrics import splits_created_total
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)

HUNDRED = Decimal("100")


class SplitProposal(BaseModel):
    receipt_id: str
    receipt_filename: Optional[str] = None
    receipt_amount: Decimal
    split_amount: Decimal
    split_percentage: Decimal
    description: str


class SplitAnalysis(BaseModel):
    transaction_id: str
    can_split: bool = False
    confidence: float = 0.0
    splits: list[SplitProposal] = []
    total_receipt_amount: Decimal = ZERO
    transaction_amount: Decimal = ZERO
    amount_difference: Decimal = ZERO
    reason: Optional[str] = None
    split_group_id: Optional[str] = None


def _receipt_amount(receipt: Receipt) -> Decimal:
    # Missing amounts count as zero towards the total
    return to_decimal(receipt.extracted_amount) or ZERO


def allocate(transaction_amount: Decimal, receipt_amounts: list[Decimal]) -> list[Decimal]:
    """
    Proportional allocation in cents. Sum of the result equals
    quantize(|transaction_amount|) exactly.
    """
    target = quantize(abs(transaction_amount))
    total = sum(receipt_amounts, ZERO)
    if total <= ZERO:
        return [ZERO for _ in receipt_amounts]

    shares = [truncate(amount / total * target) for amount in receipt_amounts]
    remainder = target - sum(shares, ZERO)
    if remainder and shares:
        largest = max(range(len(shares)), key=lambda i: receipt_amounts[i])
        shares[largest] += remainder
    return shares


def split_confidence(transaction: Transaction, receipts: list[Receipt]) -> float:
    transaction_amount = abs(to_decimal(transaction.amount) or ZERO)
    if transaction_amount == ZERO:
        return 0.0

    total = sum((_receipt_amount(r) for r in receipts), ZERO)
    amount_ratio = 1 - float(abs(total - transaction_amount) / transaction_amount)
    confidence = max(0.0, amount_ratio) * 0.4

    diffs = [
        d for d in (days_between(transaction.date, r.extracted_date) for r in receipts)
        if d is not None
    ]
    if diffs:
        average = sum(diffs) / len(diffs)
        confidence += max(0.0, 1 - average / 7) * 0.3

    merchants = {
        r.extracted_merchant.strip().lower()
        for r in receipts
        if r.extracted_merchant and r.extracted_merchant.strip()
    }
    if merchants:
        confidence += (1.0 if len(merchants) == 1 else 0.5) * 0.2

    confidence += min(1.0, len(receipts) / 5) * 0.1
    return round(min(1.0, confidence), 4)


def propose_splits(transaction: Transaction, receipts: list[Receipt]) -> list[SplitProposal]:
    amounts = [_receipt_amount(r) for r in receipts]
    total = sum(amounts, ZERO)
    shares = allocate(to_decimal(transaction.amount) or ZERO, amounts)

    proposals = []
    for receipt, amount, share in zip(receipts, amounts, shares):
        percentage = (amount / total * HUNDRED).quantize(Decimal("0.0001")) if total > ZERO else ZERO
        label = receipt.filename or str(receipt.id)
        proposals.append(SplitProposal(
            receipt_id=str(receipt.id),
            receipt_filename=receipt.filename,
            receipt_amount=amount,
            split_amount=share,
            split_percentage=percentage,
            description=f"Split for {label} ({percentage:.1f}%)",
        ))
    return proposals


class SplitAllocator:
    def __init__(self, config: Settings = settings):
        self.config = config

    def analyze(self, transaction: Transaction, receipts: list[Receipt]) -> SplitAnalysis:
        """Decide whether the receipts can split the transaction. Nothing is persisted."""
        receipts = list({r.id: r for r in receipts}.values())
        result = SplitAnalysis(transaction_id=str(transaction.id))
        if len(receipts) < 2:
            result.reason = "at_least_two_receipts_required"
            return result

        transaction_amount = abs(to_decimal(transaction.amount) or ZERO)
        total = sum((_receipt_amount(r) for r in receipts), ZERO)
        difference = abs(total - transaction_amount)
        result.total_receipt_amount = total
        result.transaction_amount = transaction_amount
        result.amount_difference = difference

        if transaction_amount == ZERO or total == ZERO:
            result.reason = "zero_amount"
            return result
        if difference > transaction_amount * self.config.SPLIT_TOLERANCE_PERCENT:
            result.reason = "amount_mismatch"
            return result

        result.splits = propose_splits(transaction, receipts)
        result.confidence = split_confidence(transaction, receipts)
        result.can_split = result.confidence > self.config.SPLIT_CONFIDENCE_THRESHOLD
        if not result.can_split:
            result.reason = "low_confidence"
        return result

    async def create_transaction_split(
        self,
        session: AsyncSession,
        transaction: Transaction,
        splits: list[SplitProposal],
        user_id: Optional[str] = None,
    ) -> uuid.UUID:
        """Write one TransactionSplit row per receipt under a new split group id, all or nothing."""
        split_group_id = uuid.uuid4()
        async with UnitOfWork(session, label="create_transaction_split") as uow:
            uow.add_all([
                TransactionSplit(
                    id=uuid.uuid4(),
                    transaction_id=transaction.id,
                    split_group_id=split_group_id,
                    receipt_id=uuid.UUID(split.receipt_id),
                    split_amount=split.split_amount,
                    split_percentage=split.split_percentage,
                    description=split.description,
                    created_by=user_id,
                )
                for split in splits
            ])

        splits_created_total.inc()
        logger.info(
            "transaction_split_created",
            transaction_id=str(transaction.id),
            split_group_id=str(split_group_id),
            receipts=len(splits),
        )
        return split_group_id

    async def split_transaction(
        self,
        session: AsyncSession,
        transaction: Transaction,
        receipts: list[Receipt],
        user_id: Optional[str] = None,
    ) -> SplitAnalysis:
        """Analyze and, when the split is accepted, persist it."""
        result = self.analyze(transaction, receipts)
        if result.can_split:
            group_id = await self.create_transaction_split(session, transaction, result.splits, user_id)
            result.split_group_id = str(group_id)
        else:
            logger.info(
                "transaction_split_rejected",
                transaction_id=str(transaction.id),
                reason=result.reason,
                confidence=result.confidence,
            )
        return result

    async def get_transaction_splits(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
    ) -> list[TransactionSplit]:
        result = await session.execute(
            select(TransactionSplit)
            .where(TransactionSplit.transaction_id == transaction_id)
            .order_by(TransactionSplit.split_amount.desc())
        )
        return list(result.scalars().all())
