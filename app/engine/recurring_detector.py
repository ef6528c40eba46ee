"""
Recurring expense recognition.

1. Score the company's active patterns against the transaction:
       merchant substring        0.40
       amount within tolerance   0.35 (0.20 within 2x tolerance)
       near next_expected        0.25 within 20% of the period (0.10 within 40%)
   Best score >= RECURRING_MATCH_THRESHOLD updates the pattern and records a
   RecurringMatch in one unit of work.
2. Otherwise look for >= RECURRING_MIN_OCCURRENCES similar transactions in the
   lookback window and seed a new pattern from the largest cluster.

next_expected always equals last_occurrence advanced by the pattern's own
frequency interval.
"""

import uuid
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import ZERO, quantize, to_decimal
from app.engine.dates import advance, infer_frequency, period_days
from app.engine.similarity import contains_ignore_case, merchant_keywords
from app.models.enums import Frequency
from app.models.tables import RecurringMatch, RecurringPattern, Transaction
from app.observability.metrics import recurring_events_total
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)

AUTO_DETECTED_CONFIDENCE = 0.8


class PatternScore(BaseModel):
    pattern_id: str
    pattern_name: str
    score: float
    variance_amount: Decimal = ZERO
    variance_days: int = 0


class RecurringResult(BaseModel):
    transaction_id: str
    is_recurring: bool = False
    is_new_pattern: bool = False
    confidence: float = 0.0
    pattern_id: Optional[str] = None
    frequency: Optional[Frequency] = None
    expected_amount: Optional[Decimal] = None
    next_expected: Optional[date] = None
    variance_amount: Optional[Decimal] = None
    variance_days: Optional[int] = None
    candidates: list[PatternScore] = []


# ── Scoring ──────────────────────────────────────────────────

def score_pattern(transaction: Transaction, pattern: RecurringPattern) -> float:
    score = 0.0

    if pattern.merchant_pattern and contains_ignore_case(transaction.description, pattern.merchant_pattern):
        score += 0.4

    expected = to_decimal(pattern.expected_amount)
    tolerance = to_decimal(pattern.amount_tolerance)
    if expected is not None and tolerance:
        diff = abs(abs(to_decimal(transaction.amount) or ZERO) - expected)
        if diff <= tolerance:
            score += 0.35
        elif diff <= tolerance * 2:
            score += 0.2

    if pattern.next_expected is not None:
        days = abs((transaction.date - pattern.next_expected).days)
        allowed = period_days(pattern.frequency) * 0.2
        if days <= allowed:
            score += 0.25
        elif days <= allowed * 2:
            score += 0.1

    return round(score, 4)


def pattern_variance(transaction: Transaction, pattern: RecurringPattern) -> tuple[Decimal, int]:
    amount_variance = ZERO
    expected = to_decimal(pattern.expected_amount)
    if expected is not None:
        amount_variance = quantize(abs(abs(to_decimal(transaction.amount) or ZERO) - expected))
    day_variance = 0
    if pattern.next_expected is not None:
        day_variance = abs((transaction.date - pattern.next_expected).days)
    return amount_variance, day_variance


class Cluster(BaseModel):
    key: tuple[str, int]
    count: int
    average_amount: Decimal
    first_occurrence: date
    last_occurrence: date
    category: Optional[str] = None

    @property
    def average_gap_days(self) -> float:
        if self.count < 2:
            return 0.0
        return (self.last_occurrence - self.first_occurrence).days / (self.count - 1)


def cluster_history(rows: list[Transaction], min_occurrences: int) -> list[Cluster]:
    """
    Group by (lower(description[:20]), round(|amount|)) and keep groups with at
    least `min_occurrences` rows, largest first.
    """
    groups: dict[tuple[str, int], list[Transaction]] = defaultdict(list)
    for row in rows:
        amount = abs(to_decimal(row.amount) or ZERO)
        key = ((row.description or "")[:20].lower(), int(amount.quantize(Decimal("1"))))
        groups[key].append(row)

    clusters = []
    for key, members in groups.items():
        if len(members) < min_occurrences:
            continue
        amounts = [abs(to_decimal(m.amount) or ZERO) for m in members]
        dates = [m.date for m in members]
        clusters.append(Cluster(
            key=key,
            count=len(members),
            average_amount=quantize(sum(amounts, ZERO) / len(amounts)),
            first_occurrence=min(dates),
            last_occurrence=max(dates),
            category=next((m.category for m in members if m.category), None),
        ))
    clusters.sort(key=lambda c: c.count, reverse=True)
    return clusters


# ── Detector ─────────────────────────────────────────────────

class RecurringDetector:
    def __init__(self, config: Settings = settings):
        self.config = config

    async def find_matching_patterns(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> list[RecurringPattern]:
        """Active patterns sharing a merchant keyword / description prefix or an amount window."""
        amount = abs(to_decimal(transaction.amount) or ZERO)
        keywords = merchant_keywords(transaction.description)
        prefix = (transaction.description or "")[:20].lower()

        merchant = func.lower(RecurringPattern.merchant_pattern)
        filters = [
            and_(
                RecurringPattern.expected_amount.is_not(None),
                RecurringPattern.amount_tolerance.is_not(None),
                func.abs(RecurringPattern.expected_amount - amount) <= RecurringPattern.amount_tolerance,
            ),
        ]
        if keywords:
            filters.append(merchant.contains(keywords[0], autoescape=True))
        if prefix:
            filters.append(merchant.contains(prefix, autoescape=True))

        result = await session.execute(
            select(RecurringPattern)
            .where(
                RecurringPattern.company_id == company_id,
                RecurringPattern.is_active.is_(True),
                or_(*filters),
            )
            .order_by(RecurringPattern.occurrence_count.desc())
        )
        return list(result.scalars().all())

    async def analyze_recurring(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> RecurringResult:
        result = RecurringResult(transaction_id=str(transaction.id))

        patterns = await self.find_matching_patterns(session, transaction, company_id)
        scored = []
        for pattern in patterns:
            variance_amount, variance_days = pattern_variance(transaction, pattern)
            scored.append((pattern, PatternScore(
                pattern_id=str(pattern.id),
                pattern_name=pattern.pattern_name,
                score=score_pattern(transaction, pattern),
                variance_amount=variance_amount,
                variance_days=variance_days,
            )))
        scored.sort(key=lambda pair: pair[1].score, reverse=True)
        result.candidates = [s for _, s in scored]

        if scored and scored[0][1].score >= self.config.RECURRING_MATCH_THRESHOLD:
            pattern, best = scored[0]
            await self.record_occurrence(session, pattern, transaction, best)
            result.is_recurring = True
            result.confidence = best.score
            result.pattern_id = best.pattern_id
            result.frequency = Frequency(pattern.frequency)
            result.expected_amount = to_decimal(pattern.expected_amount)
            result.next_expected = pattern.next_expected
            result.variance_amount = best.variance_amount
            result.variance_days = best.variance_days
            return result

        return await self.detect_new_pattern(session, transaction, company_id, result)

    async def record_occurrence(
        self,
        session: AsyncSession,
        pattern: RecurringPattern,
        transaction: Transaction,
        score: PatternScore,
    ) -> RecurringMatch:
        """Bump the pattern and link the transaction in one unit. A linked transaction counts once."""
        existing = (await session.execute(
            select(RecurringMatch).where(
                RecurringMatch.pattern_id == pattern.id,
                RecurringMatch.transaction_id == transaction.id,
            )
        )).scalar_one_or_none()
        if existing is not None:
            logger.info(
                "recurring_occurrence_already_recorded",
                pattern_id=str(pattern.id),
                transaction_id=str(transaction.id),
            )
            return existing

        async with UnitOfWork(session, label="record_recurring_occurrence") as uow:
            pattern.occurrence_count = (pattern.occurrence_count or 0) + 1
            # Older transactions never move the schedule backwards
            if pattern.last_occurrence is None or transaction.date > pattern.last_occurrence:
                pattern.last_occurrence = transaction.date
                pattern.next_expected = advance(transaction.date, pattern.frequency)
            match = RecurringMatch(
                id=uuid.uuid4(),
                pattern_id=pattern.id,
                transaction_id=transaction.id,
                match_confidence=score.score,
                variance_amount=score.variance_amount,
                variance_days=score.variance_days,
            )
            uow.add(match)

        recurring_events_total.labels(event="matched").inc()
        logger.info(
            "recurring_pattern_matched",
            pattern_id=str(pattern.id),
            transaction_id=str(transaction.id),
            score=score.score,
            occurrence_count=pattern.occurrence_count,
            next_expected=pattern.next_expected.isoformat() if pattern.next_expected else None,
        )
        return match

    async def detect_new_pattern(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
        result: RecurringResult,
    ) -> RecurringResult:
        """Seed a pattern from the largest cluster of similar recent transactions."""
        amount = abs(to_decimal(transaction.amount) or ZERO)
        keywords = merchant_keywords(transaction.description)
        needle = keywords[0] if keywords else (transaction.description or "")[:10].lower()
        since = transaction.date - timedelta(days=self.config.RECURRING_LOOKBACK_DAYS)

        filters = [func.abs(func.abs(Transaction.amount) - amount) <= amount * Decimal("0.1")]
        if needle:
            filters.append(func.lower(Transaction.description).contains(needle, autoescape=True))

        rows = (await session.execute(
            select(Transaction).where(
                Transaction.company_id == company_id,
                Transaction.date >= since,
                Transaction.date <= transaction.date,
                or_(*filters),
            )
        )).scalars().all()

        clusters = cluster_history(list(rows), self.config.RECURRING_MIN_OCCURRENCES)
        if not clusters:
            return result

        best = clusters[0]
        frequency = infer_frequency(best.average_gap_days)
        pattern = await self.create_recurring_pattern(
            session,
            company_id=company_id,
            pattern_name=f"Auto-detected: {(transaction.description or '')[:30]}",
            merchant_pattern=keywords[0] if keywords else (transaction.description or "")[:20],
            frequency=frequency,
            expected_amount=best.average_amount,
            amount_tolerance=quantize(best.average_amount * self.config.RECURRING_AMOUNT_TOLERANCE_PERCENT),
            category=best.category,
            occurrence_count=best.count,
            last_occurrence=best.last_occurrence,
        )
        recurring_events_total.labels(event="detected").inc()

        result.is_recurring = True
        result.is_new_pattern = True
        result.confidence = AUTO_DETECTED_CONFIDENCE
        result.pattern_id = str(pattern.id)
        result.frequency = frequency
        result.expected_amount = best.average_amount
        result.next_expected = pattern.next_expected
        return result

    async def create_recurring_pattern(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        pattern_name: str,
        frequency: Frequency = Frequency.MONTHLY,
        merchant_pattern: Optional[str] = None,
        expected_amount: Optional[Decimal] = None,
        amount_tolerance: Optional[Decimal] = None,
        category: Optional[str] = None,
        occurrence_count: int = 1,
        last_occurrence: Optional[date] = None,
    ) -> RecurringPattern:
        """Explicit or auto-detected pattern. next_expected = last_occurrence + interval."""
        last = last_occurrence or date.today()
        if expected_amount is not None and amount_tolerance is None:
            amount_tolerance = quantize(expected_amount * self.config.RECURRING_AMOUNT_TOLERANCE_PERCENT)

        async with UnitOfWork(session, label="create_recurring_pattern") as uow:
            pattern = RecurringPattern(
                id=uuid.uuid4(),
                company_id=company_id,
                pattern_name=pattern_name,
                merchant_pattern=merchant_pattern,
                frequency=frequency.value,
                expected_amount=expected_amount,
                amount_tolerance=amount_tolerance,
                category=category,
                occurrence_count=occurrence_count,
                last_occurrence=last,
                next_expected=advance(last, frequency.value),
                is_active=True,
            )
            uow.add(pattern)

        logger.info(
            "recurring_pattern_created",
            pattern_id=str(pattern.id),
            frequency=frequency.value,
            merchant_pattern=merchant_pattern,
            occurrence_count=occurrence_count,
        )
        return pattern

    async def list_recurring_patterns(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        is_active: bool = True,
    ) -> list[RecurringPattern]:
        result = await session.execute(
            select(RecurringPattern)
            .where(
                RecurringPattern.company_id == company_id,
                RecurringPattern.is_active.is_(is_active),
            )
            .order_by(RecurringPattern.occurrence_count.desc(), RecurringPattern.updated_at.desc())
        )
        return list(result.scalars().all())
