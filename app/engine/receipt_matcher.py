"""
Transaction-receipt matcher.

Scores a receipt against unmatched transactions using three additive signals:

    amount    0 diff -> 60, <=1 -> 40, <=5 -> 20, <=10 -> 10
    date      same day -> 25, <=1 day -> 15, <=3 days -> 5
    merchant  full merchant string inside description -> 25,
              else keyword overlap capped at 20

Candidates under MATCH_MIN_CONFIDENCE are dropped. The top candidate is
auto-matched when it reaches AUTO_MATCH_CONFIDENCE_THRESHOLD.
"""

import time
import uuid
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import to_decimal
from app.engine.dates import days_between
from app.engine.errors import ReceiptAlreadyConfirmed
from app.engine.lookups import get_receipt, get_transaction
from app.engine.similarity import MERCHANT_STOPWORDS, contains_ignore_case
from app.models.enums import MatchStatus, ProcessingStatus
from app.models.tables import Match, Receipt, Transaction
from app.observability.metrics import (
    detector_duration_seconds,
    match_candidates_scored_total,
    matches_created_total,
)
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)


class MatchCandidate(BaseModel):
    transaction_id: str
    description: str = ""
    confidence: float
    reasons: list[str] = []
    amount_diff: Optional[Decimal] = None


class AutoMatchResult(BaseModel):
    receipt_id: str
    matched: bool = False
    match_id: Optional[str] = None
    transaction_id: Optional[str] = None
    confidence: float = 0.0
    threshold: float
    reasons: list[str] = []
    candidates: list[MatchCandidate] = []
    skipped_reason: Optional[str] = None


class BulkMatchResult(BaseModel):
    matched: int = 0
    total_receipts: int = 0
    total_transactions: int = 0
    threshold: float
    details: list[AutoMatchResult] = []


# ── Scoring ──────────────────────────────────────────────────

AMOUNT_TIERS = [
    (Decimal("0"), 60, "Exact amount match"),
    (Decimal("1"), 40, "Very close amount match"),
    (Decimal("5"), 20, "Close amount match"),
    (Decimal("10"), 10, "Approximate amount match"),
]

DATE_TIERS = [
    (0, 25, "Same date"),
    (1, 15, "Within 1 day"),
    (3, 5, "Within 3 days"),
]


def score_amount(transaction_amount, receipt_amount) -> tuple[float, Optional[str], Optional[Decimal]]:
    """Amount points. Compares |transaction.amount| against the receipt total."""
    tx_amount = to_decimal(transaction_amount)
    rc_amount = to_decimal(receipt_amount)
    if tx_amount is None or rc_amount is None:
        return 0, None, None

    diff = abs(abs(tx_amount) - rc_amount)
    for limit, points, reason in AMOUNT_TIERS:
        if diff <= limit:
            return points, reason, diff
    return 0, None, diff


def score_date(transaction_date, receipt_date) -> tuple[float, Optional[str]]:
    days = days_between(transaction_date, receipt_date)
    if days is None:
        return 0, None
    for limit, points, reason in DATE_TIERS:
        if days <= limit:
            return points, reason
    return 0, None


def score_merchant(description: Optional[str], merchant: Optional[str]) -> tuple[float, Optional[str]]:
    """
    Exact substring bonus (25) or keyword overlap:
    min(20, matched/total * 15 + significant * 5)
    where significant words are 5+ characters.
    """
    if not description or not merchant:
        return 0, None

    if contains_ignore_case(description, merchant.strip()):
        return 25, "Exact merchant match"

    description_lower = description.lower()
    words = [
        w for w in merchant.lower().split()
        if len(w) > 2 and w not in MERCHANT_STOPWORDS
    ]
    if not words:
        return 0, None

    word_matches = 0
    significant_matches = 0
    for word in words:
        if word in description_lower:
            word_matches += 1
            if len(word) >= 5:
                significant_matches += 1

    if word_matches == 0:
        return 0, None

    points = min(20.0, (word_matches / len(words)) * 15 + significant_matches * 5)
    return points, f"Merchant keywords match ({word_matches} words, {significant_matches} significant)"


def score_candidate(receipt: Receipt, transaction: Transaction) -> MatchCandidate:
    reasons = []
    confidence = 0.0

    amount_points, amount_reason, diff = score_amount(transaction.amount, receipt.extracted_amount)
    confidence += amount_points
    if amount_reason:
        reasons.append(amount_reason)

    date_points, date_reason = score_date(transaction.date, receipt.extracted_date)
    confidence += date_points
    if date_reason:
        reasons.append(date_reason)

    merchant_points, merchant_reason = score_merchant(transaction.description, receipt.extracted_merchant)
    confidence += merchant_points
    if merchant_reason:
        reasons.append(merchant_reason)

    return MatchCandidate(
        transaction_id=str(transaction.id),
        description=transaction.description or "",
        confidence=round(confidence, 2),
        reasons=reasons,
        amount_diff=diff,
    )


def rank_candidates(
    receipt: Receipt,
    transactions: list[Transaction],
    min_confidence: float = 10.0,
) -> list[MatchCandidate]:
    """
    Score every transaction, keep those >= min_confidence, order by confidence.
    Ties keep their input order. No extracted amount means no candidates.
    """
    if to_decimal(receipt.extracted_amount) is None or not transactions:
        return []

    scored = [score_candidate(receipt, tx) for tx in transactions]
    match_candidates_scored_total.inc(len(scored))
    kept = [c for c in scored if c.confidence >= min_confidence]
    # sorted() is stable
    return sorted(kept, key=lambda c: c.confidence, reverse=True)


# ── Persistence-aware matcher ────────────────────────────────

def _is_confirmed():
    return or_(Match.status == MatchStatus.CONFIRMED.value, Match.user_confirmed.is_(True))


def _transaction_confirmed():
    return exists(select(Match.id).where(Match.transaction_id == Transaction.id, _is_confirmed()))


def _receipt_confirmed():
    return exists(select(Match.id).where(Match.receipt_id == Receipt.id, _is_confirmed()))


async def ensure_receipt_unconfirmed(
    session: AsyncSession,
    receipt_id: uuid.UUID,
    transaction_id: Optional[uuid.UUID] = None,
) -> None:
    """A receipt holds at most one confirmed match. Raises when another pair already has it."""
    query = select(Match.id).where(Match.receipt_id == receipt_id, _is_confirmed())
    if transaction_id is not None:
        query = query.where(Match.transaction_id != transaction_id)
    confirmed = (await session.execute(query.limit(1))).scalar_one_or_none()
    if confirmed is not None:
        raise ReceiptAlreadyConfirmed(str(receipt_id), str(confirmed))


class ReceiptMatcher:
    """Candidate retrieval, ranking and auto-match decisions for receipts."""

    def __init__(self, config: Settings = settings):
        self.config = config

    async def fetch_candidates(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Most recent company transactions with no confirmed match."""
        query = (
            select(Transaction)
            .where(
                Transaction.company_id == company_id,
                ~_transaction_confirmed(),
            )
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def receipt_has_confirmed_match(self, session: AsyncSession, receipt_id: uuid.UUID) -> bool:
        result = await session.execute(
            select(Match.id).where(
                Match.receipt_id == receipt_id,
                _is_confirmed(),
            ).limit(1)
        )
        return result.first() is not None

    async def find_receipt_matches(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
    ) -> list[MatchCandidate]:
        """Ranked candidates for a receipt. Nothing is persisted."""
        transactions = await self.fetch_candidates(
            session, company_id, limit=self.config.MATCH_CANDIDATE_LIMIT
        )
        return rank_candidates(receipt, transactions, self.config.MATCH_MIN_CONFIDENCE)

    async def auto_match_receipt(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
        threshold: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> AutoMatchResult:
        """
        Rank candidates and persist an auto_matched Match for the top one
        if it reaches the threshold.
        """
        started = time.time()
        threshold = self.config.AUTO_MATCH_CONFIDENCE_THRESHOLD if threshold is None else threshold
        result = AutoMatchResult(receipt_id=str(receipt.id), threshold=threshold)

        if await self.receipt_has_confirmed_match(session, receipt.id):
            result.skipped_reason = "receipt_already_confirmed"
            logger.info("auto_match_skipped", receipt_id=str(receipt.id), reason=result.skipped_reason)
            return result

        candidates = await self.find_receipt_matches(session, receipt, company_id)
        result.candidates = candidates
        if candidates and candidates[0].confidence >= threshold:
            best = candidates[0]
            match = await self.upsert_match(
                session,
                transaction_id=uuid.UUID(best.transaction_id),
                receipt_id=receipt.id,
                confidence=best.confidence,
                status=MatchStatus.AUTO_MATCHED,
                user_id=user_id,
            )
            result.matched = True
            result.match_id = str(match.id)
            result.transaction_id = best.transaction_id
            result.confidence = best.confidence
            result.reasons = best.reasons
            logger.info(
                "receipt_auto_matched",
                receipt_id=str(receipt.id),
                transaction_id=best.transaction_id,
                confidence=best.confidence,
            )
        else:
            result.confidence = candidates[0].confidence if candidates else 0.0
            logger.info(
                "receipt_left_for_review",
                receipt_id=str(receipt.id),
                candidates=len(candidates),
                top_confidence=result.confidence,
            )

        detector_duration_seconds.labels(detector="receipt_matcher").observe(time.time() - started)
        return result

    async def bulk_auto_match(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        threshold: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> BulkMatchResult:
        """
        Sequential greedy pass over completed, unconfirmed receipts that have
        an extracted amount. A transaction matched earlier in the run is not
        offered to later receipts.
        """
        threshold = self.config.AUTO_MATCH_CONFIDENCE_THRESHOLD if threshold is None else threshold

        receipts_result = await session.execute(
            select(Receipt)
            .where(
                Receipt.company_id == company_id,
                Receipt.processing_status == ProcessingStatus.COMPLETED.value,
                Receipt.extracted_amount.is_not(None),
                ~_receipt_confirmed(),
            )
            .order_by(Receipt.created_at, Receipt.id)
        )
        receipts = list(receipts_result.scalars().all())
        transactions = await self.fetch_candidates(session, company_id)

        summary = BulkMatchResult(
            threshold=threshold,
            total_receipts=len(receipts),
            total_transactions=len(transactions),
        )
        consumed: set[str] = set()

        for receipt in receipts:
            available = [tx for tx in transactions if str(tx.id) not in consumed]
            candidates = rank_candidates(receipt, available, self.config.MATCH_MIN_CONFIDENCE)
            if not candidates or candidates[0].confidence < threshold:
                continue

            best = candidates[0]
            match = await self.upsert_match(
                session,
                transaction_id=uuid.UUID(best.transaction_id),
                receipt_id=receipt.id,
                confidence=best.confidence,
                status=MatchStatus.AUTO_MATCHED,
                user_id=user_id,
            )
            consumed.add(best.transaction_id)
            summary.matched += 1
            summary.details.append(AutoMatchResult(
                receipt_id=str(receipt.id),
                matched=True,
                match_id=str(match.id),
                transaction_id=best.transaction_id,
                confidence=best.confidence,
                threshold=threshold,
                reasons=best.reasons,
            ))

        logger.info(
            "bulk_auto_match_completed",
            company_id=str(company_id),
            matched=summary.matched,
            total_receipts=summary.total_receipts,
            threshold=threshold,
        )
        return summary

    async def upsert_match(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
        receipt_id: uuid.UUID,
        confidence: float,
        status: MatchStatus = MatchStatus.PENDING,
        user_confirmed: bool = False,
        user_id: Optional[str] = None,
    ) -> Match:
        """Insert or replace the Match for a (transaction, receipt) pair. Last writer wins."""
        if user_confirmed:
            await ensure_receipt_unconfirmed(session, receipt_id, transaction_id)
        async with UnitOfWork(session, label="upsert_match"):
            existing = (await session.execute(
                select(Match).where(
                    Match.transaction_id == transaction_id,
                    Match.receipt_id == receipt_id,
                )
            )).scalar_one_or_none()

            if existing is None:
                match = Match(
                    id=uuid.uuid4(),
                    transaction_id=transaction_id,
                    receipt_id=receipt_id,
                    created_by=user_id,
                )
                session.add(match)
            else:
                match = existing

            match.confidence = confidence
            match.status = status.value
            match.user_confirmed = user_confirmed
            if user_confirmed:
                match.confirmed_by = user_id

        matches_created_total.labels(status=status.value).inc()
        return match

    async def create_manual_match(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
        receipt_id: uuid.UUID,
        company_id: uuid.UUID,
        confirm: bool = False,
        user_id: Optional[str] = None,
    ) -> Match:
        """User-created link, optionally confirmed immediately. Confidence is scored for reference."""
        receipt = await get_receipt(session, receipt_id, company_id)
        transaction = await get_transaction(session, transaction_id, company_id)
        candidate = score_candidate(receipt, transaction)
        status = MatchStatus.CONFIRMED if confirm else MatchStatus.PENDING
        return await self.upsert_match(
            session,
            transaction_id=transaction.id,
            receipt_id=receipt.id,
            confidence=candidate.confidence,
            status=status,
            user_confirmed=confirm,
            user_id=user_id,
        )
