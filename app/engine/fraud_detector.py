"""
Fraud detector.

Runs a fixed battery of independent rules against one focal record. Each rule
yields at most one alert; the overall risk is the max across alerts and
requires_review is risk >= FRAUD_REVIEW_THRESHOLD.

Transaction rules:
    1. unusual_amount        gate 0.7  (needs FRAUD_MIN_HISTORY rows in 90 days)
    2. suspicious_merchant   gate 0.6
    3. time_anomaly          gate 0.5  (needs FRAUD_MIN_TIME_BUCKETS buckets)
    4. duplicate_transaction gate 0.9
    5. fraud_pattern         gate 0.5  (injected rule table)

Receipt rules:
    receipt_validation gate 0.4, ocr_inconsistency gate 0.5, duplicate_receipt gate 0.7

Every fired alert is persisted as one FraudAlert row. Repeated invocations
raise repeated alerts.
"""

import time
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import ZERO, extract_ocr_amounts, to_decimal
from app.engine.dates import is_weekend, parse_receipt_date, window
from app.engine.errors import InsufficientHistory, InvalidCandidate
from app.engine.patterns import PatternTable, RuleContext, default_pattern_table
from app.engine.similarity import levenshtein_ratio
from app.models.enums import FraudAlertType, ReviewStatus
from app.models.tables import FraudAlert, Receipt, Transaction
from app.observability.metrics import (
    detector_duration_seconds,
    fraud_alerts_total,
    fraud_risk_scores,
)
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)


class AlertCandidate(BaseModel):
    alert_type: FraudAlertType
    risk_score: float
    description: str = ""
    alert_id: Optional[str] = None


class FraudAnalysis(BaseModel):
    record_id: str
    record_type: str
    risk_score: float = 0.0
    alerts: list[AlertCandidate] = []
    requires_review: bool = False


class AmountHistory(BaseModel):
    count: int
    average: Decimal
    maximum: Decimal


# ── Pure rule evaluators ─────────────────────────────────────

def evaluate_unusual_amount(
    amount: Decimal,
    history: AmountHistory,
    config: Settings = settings,
) -> tuple[float, str]:
    """Max of the absolute tier floor and the deviation-ratio tier."""
    amount = abs(amount)
    risk = 0.0
    description = ""

    if amount > config.FRAUD_EXTREME_AMOUNT:
        risk = 0.9
        description = f"Extremely high amount: ${amount:.2f} (threshold: ${config.FRAUD_EXTREME_AMOUNT})"
    elif amount > config.FRAUD_VERY_HIGH_AMOUNT:
        risk = 0.7
        description = f"Very high amount: ${amount:.2f} (threshold: ${config.FRAUD_VERY_HIGH_AMOUNT})"
    elif amount > config.FRAUD_HIGH_AMOUNT:
        risk = 0.5
        description = f"High amount: ${amount:.2f} (threshold: ${config.FRAUD_HIGH_AMOUNT})"

    if history.average > ZERO:
        ratio = float(amount / history.average)
        for limit, tier_risk in ((10, 0.8), (5, 0.6), (3, 0.4)):
            if ratio > limit:
                if tier_risk > risk:
                    risk = tier_risk
                    description = f"Amount {ratio:.1f}x higher than average (${history.average:.2f})"
                break

    return risk, description


def evaluate_suspicious_text(description: str, patterns: PatternTable) -> tuple[float, str]:
    risk = 0.0
    reason = ""
    for rule in patterns.suspicious_merchants:
        if rule.matches(description) and rule.risk > risk:
            risk = rule.risk
            reason = rule.reason
    return risk, reason


def evaluate_time_anomaly(
    transaction: Transaction,
    weekday_counts: dict[int, int],
    patterns: PatternTable,
) -> tuple[float, str]:
    """
    Unusual hour only applies when a posting timestamp is known; a date-only
    transaction has no hour.
    """
    risk = 0.0
    description = ""

    if transaction.posted_at is not None:
        hour = transaction.posted_at.hour
        if hour >= 23 or hour <= 5:
            risk = 0.6
            description = f"Transaction at unusual hour: {hour}:00"

    total = sum(weekday_counts.values())
    weekend = weekday_counts.get(5, 0) + weekday_counts.get(6, 0)
    if is_weekend(transaction.date) and total and weekend / total < 0.1:
        risk = max(risk, 0.4)
        description = description or "Weekend transaction (unusual for this company)"

    if patterns.is_holiday(transaction.date.month, transaction.date.day):
        risk = max(risk, 0.3)
        description = description or "Holiday transaction"

    return risk, description


def duplicate_transaction_risk(focal: Transaction, other: Transaction) -> float:
    """0.4 exact amount + 0.4 x description similarity + time proximity, capped at 1."""
    risk = 0.0
    diff = abs((to_decimal(focal.amount) or ZERO) - (to_decimal(other.amount) or ZERO))
    if diff < Decimal("0.01"):
        risk += 0.4
    risk += levenshtein_ratio(focal.description, other.description) * 0.4

    days = abs((focal.date - other.date).days)
    if days < 1:
        risk += 0.3
    elif days < 3:
        risk += 0.2
    else:
        risk += 0.1
    return round(min(1.0, risk), 4)


def validate_receipt(
    receipt: Receipt,
    as_of: date,
    config: Settings = settings,
) -> tuple[float, str]:
    risk = 0.0
    notes = []

    if not receipt.ocr_text or len(receipt.ocr_text) < config.FRAUD_MIN_OCR_LENGTH:
        risk = max(risk, 0.6)
        notes.append("Receipt has insufficient OCR text")

    amount = to_decimal(receipt.extracted_amount)
    if amount is None or amount <= ZERO:
        risk = max(risk, 0.5)
        notes.append("Could not extract valid amount from receipt")

    if not receipt.extracted_date:
        risk = max(risk, 0.4)
        notes.append("Could not extract date from receipt")
    else:
        receipt_date = parse_receipt_date(receipt.extracted_date)
        if receipt_date is not None:
            age = (as_of - receipt_date).days
            if age > 365:
                risk = max(risk, 0.7)
                notes.append(f"Receipt is {age} days old")
            elif age > 90:
                risk = max(risk, 0.4)
                notes.append(f"Receipt is {age} days old")

    return risk, "; ".join(notes)


def check_ocr_consistency(receipt: Receipt, patterns: PatternTable) -> tuple[float, str]:
    if not receipt.ocr_text:
        return 0.0, ""

    risk = 0.0
    notes = []
    for rule in patterns.suspicious_ocr:
        if rule.matches(receipt.ocr_text):
            risk = max(risk, rule.risk)
            notes.append(f"Suspicious text detected: {rule.pattern.pattern}")

    amounts = extract_ocr_amounts(receipt.ocr_text)
    extracted = to_decimal(receipt.extracted_amount)
    if len(amounts) > 1 and len(set(amounts)) > 1 and extracted:
        if not any(abs(a - extracted) < Decimal("0.01") for a in set(amounts)):
            risk = max(risk, 0.6)
            notes.append("Extracted amount does not match amounts found in OCR text")

    return risk, "; ".join(notes)


def duplicate_receipt_risk(focal: Receipt, focal_date: date, other: Receipt, other_date: date) -> float:
    risk = 0.4
    if focal.extracted_merchant and other.extracted_merchant:
        risk += levenshtein_ratio(focal.extracted_merchant, other.extracted_merchant) * 0.4
    days = abs((focal_date - other_date).days)
    if days == 0:
        risk += 0.3
    elif days <= 1:
        risk += 0.2
    else:
        risk += 0.1
    return round(min(1.0, risk), 4)


# ── Detector ─────────────────────────────────────────────────

class FraudDetector:
    """
    Stateless rule runner. The pattern table is injected so callers can
    refresh it without touching module state.
    """

    def __init__(self, config: Settings = settings, patterns: Optional[PatternTable] = None):
        self.config = config
        self.patterns = patterns or default_pattern_table()

    # ── History loaders ──────────────────────────────────────

    def _history_query(self, transaction: Transaction, company_id: uuid.UUID, days: int):
        start = transaction.date - timedelta(days=days)
        query = select(Transaction).where(
            Transaction.company_id == company_id,
            Transaction.date.between(start, transaction.date),
        )
        if transaction.id is not None:
            query = query.where(Transaction.id != transaction.id)
        return query

    async def load_amount_history(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> AmountHistory:
        rows = (await session.execute(
            self._history_query(transaction, company_id, self.config.FRAUD_HISTORY_DAYS)
        )).scalars().all()
        amounts = [abs(to_decimal(r.amount) or ZERO) for r in rows]
        if len(amounts) < self.config.FRAUD_MIN_HISTORY:
            raise InsufficientHistory(
                "not enough transactions for amount statistics",
                required=self.config.FRAUD_MIN_HISTORY,
                found=len(amounts),
            )
        return AmountHistory(
            count=len(amounts),
            average=sum(amounts, ZERO) / len(amounts),
            maximum=max(amounts),
        )

    async def load_time_buckets(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> dict[int, int]:
        """Weekday histogram; raises when fewer than FRAUD_MIN_TIME_BUCKETS (hour, weekday) buckets exist."""
        rows = (await session.execute(
            self._history_query(transaction, company_id, self.config.FRAUD_HISTORY_DAYS)
        )).scalars().all()

        buckets: set[tuple[Optional[int], int]] = set()
        weekday_counts: dict[int, int] = {}
        for row in rows:
            hour = row.posted_at.hour if row.posted_at is not None else None
            weekday = row.date.weekday()
            buckets.add((hour, weekday))
            weekday_counts[weekday] = weekday_counts.get(weekday, 0) + 1

        if len(buckets) < self.config.FRAUD_MIN_TIME_BUCKETS:
            raise InsufficientHistory(
                "not enough distinct time buckets",
                required=self.config.FRAUD_MIN_TIME_BUCKETS,
                found=len(buckets),
            )
        return weekday_counts

    async def _prior_merchant_occurrences(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> int:
        prefix = (transaction.description or "").lower()[:20]
        if not prefix:
            return 0
        query = self._history_query(
            transaction, company_id, self.config.FRAUD_MERCHANT_HISTORY_DAYS
        ).where(func.lower(Transaction.description).contains(prefix, autoescape=True))
        count_query = select(func.count()).select_from(query.subquery())
        return (await session.execute(count_query)).scalar() or 0

    async def _same_merchant_same_day(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> int:
        prefix = (transaction.description or "").lower()[:20]
        if not prefix:
            return 0
        query = select(func.count(Transaction.id)).where(
            Transaction.company_id == company_id,
            Transaction.date == transaction.date,
            func.lower(Transaction.description).contains(prefix, autoescape=True),
        )
        if transaction.id is not None:
            query = query.where(Transaction.id != transaction.id)
        return (await session.execute(query)).scalar() or 0

    # ── Transaction rules ────────────────────────────────────

    async def detect_unusual_amount(self, session, transaction, company_id) -> Optional[AlertCandidate]:
        history = await self.load_amount_history(session, transaction, company_id)
        risk, description = evaluate_unusual_amount(
            to_decimal(transaction.amount) or ZERO, history, self.config
        )
        if risk >= self.config.FRAUD_UNUSUAL_AMOUNT_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.UNUSUAL_AMOUNT, risk_score=risk, description=description
            )
        return None

    async def detect_suspicious_merchant(self, session, transaction, company_id) -> Optional[AlertCandidate]:
        risk, description = evaluate_suspicious_text(transaction.description or "", self.patterns)

        amount = abs(to_decimal(transaction.amount) or ZERO)
        if amount > self.config.FRAUD_HIGH_AMOUNT:
            prior = await self._prior_merchant_occurrences(session, transaction, company_id)
            if prior == 0:
                risk = max(risk, 0.6)
                description = description or "New merchant with high amount"

        if risk >= self.config.FRAUD_SUSPICIOUS_MERCHANT_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.SUSPICIOUS_MERCHANT, risk_score=risk, description=description
            )
        return None

    async def detect_time_anomaly(self, session, transaction, company_id) -> Optional[AlertCandidate]:
        weekday_counts = await self.load_time_buckets(session, transaction, company_id)
        risk, description = evaluate_time_anomaly(transaction, weekday_counts, self.patterns)
        if risk >= self.config.FRAUD_TIME_ANOMALY_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.TIME_ANOMALY, risk_score=risk, description=description
            )
        return None

    async def detect_duplicate_transaction(self, session, transaction, company_id) -> Optional[AlertCandidate]:
        start, end = window(transaction.date, self.config.FRAUD_DUPLICATE_WINDOW_DAYS)
        amount = to_decimal(transaction.amount) or ZERO
        cent = Decimal("0.01")
        query = select(Transaction).where(
            Transaction.company_id == company_id,
            Transaction.date.between(start, end),
            Transaction.amount > amount - cent,
            Transaction.amount < amount + cent,
        )
        if transaction.id is not None:
            query = query.where(Transaction.id != transaction.id)
        rows = list((await session.execute(query)).scalars().all())
        rows.sort(key=lambda t: abs((t.date - transaction.date).days))
        rows = rows[:5]
        if not rows:
            return None

        best = None
        best_risk = 0.0
        for row in rows:
            risk = duplicate_transaction_risk(transaction, row)
            if risk > best_risk:
                best_risk = risk
                best = row

        if best is not None and best_risk >= self.config.FRAUD_DUPLICATE_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.DUPLICATE_TRANSACTION,
                risk_score=best_risk,
                description=f"Potential duplicate of transaction from {best.date.strftime('%m/%d/%Y')}",
            )
        return None

    async def detect_fraud_patterns(self, session, transaction, company_id) -> Optional[AlertCandidate]:
        ctx = RuleContext(
            amount=to_decimal(transaction.amount) or ZERO,
            same_merchant_same_day=await self._same_merchant_same_day(session, transaction, company_id),
        )
        best_risk = 0.0
        description = ""
        for rule in self.patterns.rules:
            risk = rule.evaluate(ctx)
            if risk > best_risk:
                best_risk = risk
                description = f"Matches fraud pattern: {rule.description}"

        if best_risk >= self.config.FRAUD_PATTERN_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.FRAUD_PATTERN, risk_score=best_risk, description=description
            )
        return None

    async def _run_rule(self, name: str, rule, *args) -> Optional[AlertCandidate]:
        try:
            return await rule(*args)
        except InsufficientHistory as e:
            logger.debug("fraud_rule_skipped", rule=name, required=e.required, found=e.found)
            return None
        except InvalidCandidate as e:
            logger.warning("candidate_skipped", rule=name, candidate_id=e.candidate_id, reason=e.message)
            return None

    async def analyze_transaction(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
    ) -> FraudAnalysis:
        started = time.time()
        rules = [
            ("unusual_amount", self.detect_unusual_amount),
            ("suspicious_merchant", self.detect_suspicious_merchant),
            ("time_anomaly", self.detect_time_anomaly),
            ("duplicate_transaction", self.detect_duplicate_transaction),
            ("fraud_pattern", self.detect_fraud_patterns),
        ]
        alerts = []
        for name, rule in rules:
            alert = await self._run_rule(name, rule, session, transaction, company_id)
            if alert is not None:
                alerts.append(alert)

        await self._persist_alerts(session, company_id, alerts, transaction_id=transaction.id)
        analysis = self._summarise(str(transaction.id), "transaction", alerts)
        detector_duration_seconds.labels(detector="fraud_transaction").observe(time.time() - started)
        return analysis

    # ── Receipt rules ────────────────────────────────────────

    async def detect_duplicate_receipt(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
    ) -> Optional[AlertCandidate]:
        amount = to_decimal(receipt.extracted_amount)
        receipt_date = parse_receipt_date(receipt.extracted_date)
        if amount is None or receipt_date is None:
            return None

        cent = Decimal("0.01")
        query = select(Receipt).where(
            Receipt.company_id == company_id,
            Receipt.extracted_amount > amount - cent,
            Receipt.extracted_amount < amount + cent,
        )
        if receipt.id is not None:
            query = query.where(Receipt.id != receipt.id)
        rows = (await session.execute(query)).scalars().all()

        start, end = window(receipt_date, self.config.FRAUD_RECEIPT_DUPLICATE_WINDOW_DAYS)
        best = None
        best_risk = 0.0
        considered = 0
        for row in rows:
            row_date = parse_receipt_date(row.extracted_date)
            if row_date is None:
                logger.warning(
                    "candidate_skipped",
                    candidate_id=str(row.id),
                    reason=f"unparseable extracted_date {row.extracted_date!r}",
                )
                continue
            if not start <= row_date <= end:
                continue
            considered += 1
            risk = duplicate_receipt_risk(receipt, receipt_date, row, row_date)
            if risk > best_risk:
                best_risk = risk
                best = row
            if considered >= 5:
                break

        if best is not None and best_risk >= self.config.FRAUD_RECEIPT_DUPLICATE_GATE:
            return AlertCandidate(
                alert_type=FraudAlertType.DUPLICATE_RECEIPT,
                risk_score=best_risk,
                description=f"Potential duplicate of receipt {best.filename or best.id}",
            )
        return None

    async def analyze_receipt(
        self,
        session: AsyncSession,
        receipt: Receipt,
        company_id: uuid.UUID,
        as_of: Optional[date] = None,
    ) -> FraudAnalysis:
        started = time.time()
        as_of = as_of or date.today()
        alerts = []

        risk, description = validate_receipt(receipt, as_of, self.config)
        if risk >= self.config.FRAUD_RECEIPT_VALIDATION_GATE:
            alerts.append(AlertCandidate(
                alert_type=FraudAlertType.RECEIPT_VALIDATION, risk_score=risk, description=description
            ))

        risk, description = check_ocr_consistency(receipt, self.patterns)
        if risk >= self.config.FRAUD_OCR_INCONSISTENCY_GATE:
            alerts.append(AlertCandidate(
                alert_type=FraudAlertType.OCR_INCONSISTENCY, risk_score=risk, description=description
            ))

        duplicate = await self.detect_duplicate_receipt(session, receipt, company_id)
        if duplicate is not None:
            alerts.append(duplicate)

        await self._persist_alerts(session, company_id, alerts, receipt_id=receipt.id)
        analysis = self._summarise(str(receipt.id), "receipt", alerts)
        detector_duration_seconds.labels(detector="fraud_receipt").observe(time.time() - started)
        return analysis

    # ── Shared ───────────────────────────────────────────────

    async def _persist_alerts(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        alerts: list[AlertCandidate],
        transaction_id: Optional[uuid.UUID] = None,
        receipt_id: Optional[uuid.UUID] = None,
    ) -> None:
        if not alerts:
            return

        async with UnitOfWork(session, label="persist_fraud_alerts") as uow:
            for alert in alerts:
                row = FraudAlert(
                    id=uuid.uuid4(),
                    company_id=company_id,
                    transaction_id=transaction_id,
                    receipt_id=receipt_id,
                    alert_type=alert.alert_type.value,
                    risk_score=alert.risk_score,
                    description=alert.description,
                    status=ReviewStatus.PENDING.value,
                )
                uow.add(row)
                alert.alert_id = str(row.id)

        for alert in alerts:
            fraud_alerts_total.labels(alert_type=alert.alert_type.value).inc()
            logger.info(
                "fraud_alert_raised",
                alert_id=alert.alert_id,
                alert_type=alert.alert_type.value,
                risk_score=alert.risk_score,
                transaction_id=str(transaction_id) if transaction_id else None,
                receipt_id=str(receipt_id) if receipt_id else None,
            )

    def _summarise(self, record_id: str, record_type: str, alerts: list[AlertCandidate]) -> FraudAnalysis:
        risk = max((a.risk_score for a in alerts), default=0.0)
        fraud_risk_scores.labels(record_type=record_type).observe(risk)
        return FraudAnalysis(
            record_id=record_id,
            record_type=record_type,
            risk_score=risk,
            alerts=alerts,
            requires_review=risk >= self.config.FRAUD_REVIEW_THRESHOLD,
        )
