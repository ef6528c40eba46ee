"""
Duplicate detector for transactions and receipts.

Transaction similarity (weights sum to 1.0):
    amount       0.40  within tolerance -> full, <=1 -> 0.8x, <=5 -> 0.5x
    description  0.30  x Levenshtein ratio
    date         0.20  0d -> full, <=1 -> 0.8x, <=3 -> 0.5x, <=7 -> 0.2x
    external id  0.10  exact match

Receipt similarity:
    amount 0.40, date 0.25, merchant 0.20, file size 0.10, OCR prefix 0.05

>= DUPLICATE_SIMILARITY_THRESHOLD flags a duplicate.
>= DUPLICATE_GROUP_THRESHOLD creates (or extends) a DuplicateGroup.
"""

import hashlib
import time
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import ZERO, quantize, to_decimal
from app.engine.dates import days_between, parse_receipt_date, window
from app.engine.errors import EngineError, InvalidCandidate
from app.engine.similarity import levenshtein_ratio
from app.models.enums import ReviewStatus
from app.models.tables import DuplicateGroup, DuplicateMember, Receipt, Transaction
from app.observability.metrics import (
    detector_duration_seconds,
    duplicate_groups_created_total,
    duplicates_flagged_total,
)
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)


class DuplicateCandidate(BaseModel):
    record_id: str
    similarity: float
    reasons: list[str] = []
    date_diff_days: Optional[int] = None
    amount_diff: Optional[Decimal] = None


class DuplicateResult(BaseModel):
    record_id: str
    record_type: str
    is_duplicate: bool = False
    confidence: float = 0.0
    duplicates: list[DuplicateCandidate] = []
    primary_duplicate: Optional[DuplicateCandidate] = None
    group_id: Optional[str] = None
    group_created: bool = False


class BatchDuplicateResult(BaseModel):
    processed: int = 0
    duplicates_found: int = 0
    groups_created: int = 0
    failed: int = 0


# ── Similarity ───────────────────────────────────────────────

def _amount_factor(diff: Decimal, tolerance: Decimal, include_five: bool = True) -> float:
    if diff <= tolerance:
        return 1.0
    if diff <= Decimal("1"):
        return 0.8
    if include_five and diff <= Decimal("5"):
        return 0.5
    return 0.0


def _transaction_date_factor(days: Optional[int]) -> float:
    if days is None:
        return 0.0
    if days == 0:
        return 1.0
    if days <= 1:
        return 0.8
    if days <= 3:
        return 0.5
    if days <= 7:
        return 0.2
    return 0.0


def _receipt_date_factor(days: Optional[int]) -> float:
    if days is None:
        return 0.0
    if days == 0:
        return 1.0
    if days <= 1:
        return 0.8
    if days <= 3:
        return 0.5
    return 0.0


def transaction_similarity(
    a: Transaction,
    b: Transaction,
    tolerance: Decimal = Decimal("0.05"),
) -> tuple[float, list[str]]:
    """Weighted similarity in [0, 1] plus human-readable reasons."""
    score = 0.0
    reasons = []

    amount_a = to_decimal(a.amount)
    amount_b = to_decimal(b.amount)
    if amount_a is not None and amount_b is not None:
        diff = abs(amount_a - amount_b)
        factor = _amount_factor(diff, tolerance)
        score += 0.4 * factor
        if diff <= tolerance:
            reasons.append("Identical amounts")
        elif diff <= Decimal("1"):
            reasons.append(f"Similar amounts (diff: ${diff:.2f})")

    desc_sim = levenshtein_ratio(a.description, b.description)
    score += 0.3 * desc_sim
    if desc_sim > 0.8:
        reasons.append("Very similar descriptions")
    elif desc_sim > 0.6:
        reasons.append("Similar descriptions")

    days = days_between(a.date, b.date)
    score += 0.2 * _transaction_date_factor(days)
    if days == 0:
        reasons.append("Same date")
    elif days is not None and days <= 1:
        reasons.append("Adjacent dates")
    elif days is not None and days <= 7:
        reasons.append(f"Within {days} days")

    if a.external_id and b.external_id and a.external_id == b.external_id:
        score += 0.1
        reasons.append("Same external transaction ID")

    return round(score, 4), reasons


def receipt_similarity(
    a: Receipt,
    b: Receipt,
    tolerance: Decimal = Decimal("0.05"),
) -> tuple[float, list[str]]:
    score = 0.0
    reasons = []

    diff = None
    amount_a = to_decimal(a.extracted_amount)
    amount_b = to_decimal(b.extracted_amount)
    if amount_a is not None and amount_b is not None:
        diff = abs(amount_a - amount_b)
        score += 0.4 * _amount_factor(diff, tolerance, include_five=False)
        if diff <= tolerance:
            reasons.append("Identical amounts")

    days = days_between(a.extracted_date, b.extracted_date)
    score += 0.25 * _receipt_date_factor(days)
    if days == 0:
        reasons.append("Same date")
    elif days is not None and days <= 1:
        reasons.append("Adjacent dates")

    merchant_sim = levenshtein_ratio(a.extracted_merchant, b.extracted_merchant)
    score += 0.2 * merchant_sim
    if merchant_sim > 0.8:
        reasons.append("Same merchant")
    elif merchant_sim > 0.6:
        reasons.append("Similar merchant")

    if a.file_size and b.file_size:
        size_diff = abs(a.file_size - b.file_size)
        avg_size = (a.file_size + b.file_size) / 2
        size_ratio = 1 - (size_diff / avg_size)
        if size_ratio > 0.9:
            score += 0.1
        elif size_ratio > 0.7:
            score += 0.05
        if size_diff < 1000:
            reasons.append("Similar file size")

    if a.ocr_text and b.ocr_text:
        score += 0.05 * levenshtein_ratio(a.ocr_text[:200], b.ocr_text[:200])

    return round(score, 4), reasons


def group_hash(members: list[Transaction]) -> str:
    """SHA-256 over the sorted amount_description_date member tuples."""
    parts = sorted(
        f"{quantize(to_decimal(t.amount) or ZERO)}_{t.description}_{t.date.isoformat()}"
        for t in members
    )
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _normalise_receipt(receipt: Receipt) -> tuple[Decimal, date]:
    amount = to_decimal(receipt.extracted_amount)
    if amount is None:
        raise InvalidCandidate("receipt has no usable amount", str(receipt.id))
    receipt_date = parse_receipt_date(receipt.extracted_date)
    if receipt_date is None:
        raise InvalidCandidate(
            f"unparseable extracted_date {receipt.extracted_date!r}", str(receipt.id)
        )
    return amount, receipt_date


# ── Detector ─────────────────────────────────────────────────

class DuplicateDetector:
    """Finds and groups near-identical transactions and receipts for one company."""

    def __init__(self, config: Settings = settings):
        self.config = config

    # ── Transactions ─────────────────────────────────────────

    async def find_similar_transactions(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> list[Transaction]:
        """
        Same-company rows inside the +/- window that share an approximate
        amount, a description prefix, or the external id.
        """
        start, end = window(transaction.date, self.config.DUPLICATE_WINDOW_DAYS)
        tolerance = self.config.DUPLICATE_AMOUNT_TOLERANCE
        amount = to_decimal(transaction.amount) or ZERO
        prefix = (transaction.description or "").lower()[:15]

        filters = [Transaction.amount.between(amount - tolerance, amount + tolerance)]
        if prefix:
            filters.append(func.lower(Transaction.description).contains(prefix, autoescape=True))
        if transaction.external_id:
            filters.append(Transaction.external_id == transaction.external_id)

        query = select(Transaction).where(
            Transaction.company_id == company_id,
            Transaction.date.between(start, end),
            or_(*filters),
        )
        if transaction.id is not None:
            query = query.where(Transaction.id != transaction.id)

        result = await session.execute(query)
        rows = list(result.scalars().all())
        rows.sort(key=lambda t: (
            abs((t.date - transaction.date).days),
            abs((to_decimal(t.amount) or ZERO) - amount),
        ))
        return rows[: self.config.DUPLICATE_CANDIDATE_LIMIT]

    async def detect_duplicate_transactions(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> DuplicateResult:
        started = time.time()
        result = DuplicateResult(record_id=str(transaction.id), record_type="transaction")

        candidates = await self.find_similar_transactions(session, transaction, company_id)
        if not candidates:
            return result

        scored = []
        for candidate in candidates:
            similarity, reasons = transaction_similarity(
                transaction, candidate, self.config.DUPLICATE_AMOUNT_TOLERANCE
            )
            scored.append((candidate, DuplicateCandidate(
                record_id=str(candidate.id),
                similarity=similarity,
                reasons=reasons,
                date_diff_days=days_between(transaction.date, candidate.date),
                amount_diff=abs((to_decimal(transaction.amount) or ZERO) - (to_decimal(candidate.amount) or ZERO)),
            )))
        scored.sort(key=lambda pair: pair[1].similarity, reverse=True)

        top_row, top = scored[0]
        result.duplicates = [c for _, c in scored]
        result.primary_duplicate = top
        result.confidence = top.similarity
        result.is_duplicate = top.similarity >= self.config.DUPLICATE_SIMILARITY_THRESHOLD

        if result.is_duplicate:
            duplicates_flagged_total.labels(record_type="transaction").inc()
            logger.info(
                "duplicate_transaction_flagged",
                transaction_id=str(transaction.id),
                duplicate_of=top.record_id,
                similarity=top.similarity,
            )

        if result.is_duplicate and top.similarity >= self.config.DUPLICATE_GROUP_THRESHOLD:
            group, created = await self.create_or_extend_group(
                session, transaction, top_row, company_id, top.similarity
            )
            result.group_id = str(group.id)
            result.group_created = created

        detector_duration_seconds.labels(detector="duplicate_transactions").observe(time.time() - started)
        return result

    async def create_or_extend_group(
        self,
        session: AsyncSession,
        transaction: Transaction,
        duplicate: Transaction,
        company_id: uuid.UUID,
        similarity: float,
    ) -> tuple[DuplicateGroup, bool]:
        """
        Idempotent grouping. Returns (group, created).

        - a group with the pair's hash already exists -> returned unchanged
        - the transaction already belongs to a group -> the duplicate joins it,
          unless the duplicate sits in a different group (both left as they are)
        - only the duplicate belongs to a group -> the transaction joins it
        - otherwise a new group is written with both members in one unit
        """
        pair_hash = group_hash([transaction, duplicate])

        existing = (await session.execute(
            select(DuplicateGroup).where(
                DuplicateGroup.company_id == company_id,
                DuplicateGroup.group_hash == pair_hash,
            )
        )).scalars().first()
        if existing is not None:
            logger.info("duplicate_group_exists", group_id=str(existing.id), group_hash=pair_hash)
            return existing, False

        memberships = (await session.execute(
            select(DuplicateMember.transaction_id, DuplicateGroup)
            .join(DuplicateGroup, DuplicateGroup.id == DuplicateMember.group_id)
            .where(
                DuplicateGroup.company_id == company_id,
                DuplicateMember.transaction_id.in_([transaction.id, duplicate.id]),
            )
            .order_by(DuplicateGroup.created_at)
        )).all()
        focal_groups = [g for member_id, g in memberships if member_id == transaction.id]
        duplicate_groups = [g for member_id, g in memberships if member_id == duplicate.id]

        if focal_groups:
            group = focal_groups[0]
            if duplicate_groups and all(g.id != group.id for g in duplicate_groups):
                # Both records are grouped elsewhere; neither joins a second group
                logger.warning(
                    "duplicate_groups_overlap",
                    group_id=str(group.id),
                    other_group_id=str(duplicate_groups[0].id),
                    transaction_id=str(transaction.id),
                    duplicate_id=str(duplicate.id),
                )
                return group, False
            return await self._extend_group(session, group, transaction, duplicate, similarity), False

        if duplicate_groups:
            return await self._extend_group(
                session, duplicate_groups[0], transaction, duplicate, similarity
            ), False

        async with UnitOfWork(session, label="create_duplicate_group") as uow:
            group = DuplicateGroup(
                id=uuid.uuid4(),
                company_id=company_id,
                group_hash=pair_hash,
                primary_transaction_id=duplicate.id,
                duplicate_count=2,
                confidence_score=similarity,
                status=ReviewStatus.PENDING.value,
            )
            uow.add(group)
            await uow.flush()
            uow.add_all([
                DuplicateMember(
                    id=uuid.uuid4(),
                    group_id=group.id,
                    transaction_id=duplicate.id,
                    is_primary=True,
                    similarity_score=similarity,
                ),
                DuplicateMember(
                    id=uuid.uuid4(),
                    group_id=group.id,
                    transaction_id=transaction.id,
                    is_primary=False,
                    similarity_score=similarity,
                ),
            ])

        duplicate_groups_created_total.labels(action="created").inc()
        logger.info(
            "duplicate_group_created",
            group_id=str(group.id),
            primary_transaction_id=str(duplicate.id),
            transaction_id=str(transaction.id),
            similarity=similarity,
        )
        return group, True

    async def _extend_group(
        self,
        session: AsyncSession,
        group: DuplicateGroup,
        transaction: Transaction,
        duplicate: Transaction,
        similarity: float,
    ) -> DuplicateGroup:
        member_rows = (await session.execute(
            select(DuplicateMember.transaction_id).where(DuplicateMember.group_id == group.id)
        )).scalars().all()
        present = set(member_rows)
        joining = [t for t in (duplicate, transaction) if t.id not in present]
        if not joining:
            return group

        async with UnitOfWork(session, label="extend_duplicate_group") as uow:
            for t in joining:
                uow.add(DuplicateMember(
                    id=uuid.uuid4(),
                    group_id=group.id,
                    transaction_id=t.id,
                    is_primary=False,
                    similarity_score=similarity,
                ))
            group.duplicate_count = len(present) + len(joining)
            group.confidence_score = max(group.confidence_score, similarity)

            all_ids = list(present) + [t.id for t in joining]
            members = (await session.execute(
                select(Transaction).where(Transaction.id.in_(all_ids))
            )).scalars().all()
            group.group_hash = group_hash(list(members))

        duplicate_groups_created_total.labels(action="extended").inc()
        logger.info(
            "duplicate_group_extended",
            group_id=str(group.id),
            added=[str(t.id) for t in joining],
            duplicate_count=group.duplicate_count,
        )
        return group

    async def batch_process_duplicates(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        limit: Optional[int] = None,
    ) -> BatchDuplicateResult:
        """
        Sequential pass over the most recent transactions not already grouped.
        A failure on one transaction is logged and the loop continues.
        """
        limit = limit or self.config.DUPLICATE_BATCH_LIMIT
        grouped = exists(
            select(DuplicateMember.id).where(DuplicateMember.transaction_id == Transaction.id)
        )
        ids = (await session.execute(
            select(Transaction.id)
            .where(Transaction.company_id == company_id, ~grouped)
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
        )).scalars().all()

        summary = BatchDuplicateResult()
        for transaction_id in ids:
            # Reload: a rolled-back unit expires everything in the session
            transaction = await session.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                continue
            try:
                outcome = await self.detect_duplicate_transactions(session, transaction, company_id)
            except EngineError as e:
                summary.failed += 1
                logger.error(
                    "duplicate_batch_item_failed",
                    transaction_id=str(transaction_id),
                    error_code=e.error_code,
                    error=e.message,
                )
                continue

            summary.processed += 1
            if outcome.is_duplicate:
                summary.duplicates_found += 1
            if outcome.group_created:
                summary.groups_created += 1

        logger.info(
            "duplicate_batch_completed",
            company_id=str(company_id),
            processed=summary.processed,
            duplicates_found=summary.duplicates_found,
            groups_created=summary.groups_created,
            failed=summary.failed,
        )
        return summary

    # ── Receipts ─────────────────────────────────────────────

    async def find_similar_receipts(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
    ) -> list[Receipt]:
        """
        Same-company receipts within the amount tolerance and day window.
        Requires the focal receipt to have both an amount and a parseable date.
        """
        try:
            amount, receipt_date = _normalise_receipt(receipt)
        except InvalidCandidate:
            return []

        tolerance = self.config.DUPLICATE_AMOUNT_TOLERANCE
        query = select(Receipt).where(
            Receipt.company_id == company_id,
            Receipt.extracted_amount.between(amount - tolerance, amount + tolerance),
        )
        if receipt.id is not None:
            query = query.where(Receipt.id != receipt.id)
        rows = (await session.execute(query)).scalars().all()

        start, end = window(receipt_date, self.config.DUPLICATE_WINDOW_DAYS)
        in_window = []
        for row in rows:
            try:
                row_amount, row_date = _normalise_receipt(row)
            except InvalidCandidate as e:
                logger.warning("candidate_skipped", candidate_id=e.candidate_id, reason=e.message)
                continue
            if start <= row_date <= end:
                in_window.append((abs((row_date - receipt_date).days), abs(row_amount - amount), row))

        in_window.sort(key=lambda item: (item[0], item[1]))
        return [row for _, _, row in in_window[: self.config.DUPLICATE_RECEIPT_CANDIDATE_LIMIT]]

    async def detect_duplicate_receipts(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
    ) -> DuplicateResult:
        """Receipt duplicates are flagged but never grouped."""
        result = DuplicateResult(record_id=str(receipt.id), record_type="receipt")

        candidates = await self.find_similar_receipts(session, receipt, company_id)
        if not candidates:
            return result

        scored = []
        for candidate in candidates:
            similarity, reasons = receipt_similarity(
                receipt, candidate, self.config.DUPLICATE_AMOUNT_TOLERANCE
            )
            scored.append(DuplicateCandidate(
                record_id=str(candidate.id),
                similarity=similarity,
                reasons=reasons,
                date_diff_days=days_between(receipt.extracted_date, candidate.extracted_date),
            ))
        scored.sort(key=lambda c: c.similarity, reverse=True)

        result.duplicates = scored
        result.primary_duplicate = scored[0]
        result.confidence = scored[0].similarity
        result.is_duplicate = scored[0].similarity >= self.config.DUPLICATE_SIMILARITY_THRESHOLD
        if result.is_duplicate:
            duplicates_flagged_total.labels(record_type="receipt").inc()
            logger.info(
                "duplicate_receipt_flagged",
                receipt_id=str(receipt.id),
                duplicate_of=scored[0].record_id,
                similarity=scored[0].similarity,
            )
        return result
