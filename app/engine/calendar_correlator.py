"""
Calendar-event correlation.

Candidates: active events for the company (and the user, or unassigned) that
start or end within +/- CALENDAR_WINDOW_DAYS of the transaction date, or span it.

Score (max 1.0):
    time      0/1/2/3 days from event start -> 0.40/0.30/0.20/0.10
    amount    |amount| vs estimated cost within 20%/40%/60% -> 0.25/0.15/0.05
    location  any location keyword in the description -> 0.20
    title     matched/total title keywords x 0.15
"""

import time
import uuid
from datetime import datetime, timedelta
from datetime import time as dtime
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.engine.amounts import ZERO, to_decimal
from app.engine.similarity import keyword_overlap, location_keywords, title_keywords
from app.models.enums import CalendarSyncStatus, CorrelationType
from app.models.tables import CalendarCorrelation, CalendarEvent, Transaction
from app.observability.metrics import calendar_correlations_total, detector_duration_seconds
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)

TIME_TIERS = {0: 0.4, 1: 0.3, 2: 0.2, 3: 0.1}


class EventScore(BaseModel):
    event_id: str
    title: str
    score: float
    correlation_type: CorrelationType
    days_from_start: int


class CalendarResult(BaseModel):
    transaction_id: str
    has_correlation: bool = False
    confidence: float = 0.0
    events: list[EventScore] = []
    primary_event: Optional[EventScore] = None
    correlation_id: Optional[str] = None


def _days_from_start(transaction: Transaction, event: CalendarEvent) -> int:
    return abs((event.start_date.date() - transaction.date).days)


def _amount_ratio_diff(transaction: Transaction, event: CalendarEvent) -> Optional[tuple[Decimal, Decimal]]:
    cost = to_decimal(event.estimated_cost)
    if not cost:
        return None
    diff = abs(abs(to_decimal(transaction.amount) or ZERO) - cost)
    return diff, cost * Decimal("0.2")


def score_event(transaction: Transaction, event: CalendarEvent) -> float:
    score = TIME_TIERS.get(_days_from_start(transaction, event), 0.0)

    amount = _amount_ratio_diff(transaction, event)
    if amount is not None:
        diff, tolerance = amount
        if diff <= tolerance:
            score += 0.25
        elif diff <= tolerance * 2:
            score += 0.15
        elif diff <= tolerance * 3:
            score += 0.05

    if keyword_overlap(location_keywords(event.location), transaction.description) > 0:
        score += 0.2

    keywords = title_keywords(event.title)
    matched = keyword_overlap(keywords, transaction.description)
    if matched:
        score += min(0.15, matched / len(keywords) * 0.15)

    return round(min(1.0, score), 4)


def correlation_type(transaction: Transaction, event: CalendarEvent) -> CorrelationType:
    """Priority: same-day time, then location keyword, then amount, else merchant."""
    if _days_from_start(transaction, event) == 0:
        return CorrelationType.TIME
    if keyword_overlap(location_keywords(event.location), transaction.description) > 0:
        return CorrelationType.LOCATION
    amount = _amount_ratio_diff(transaction, event)
    if amount is not None and amount[0] <= amount[1]:
        return CorrelationType.AMOUNT
    return CorrelationType.MERCHANT


class CalendarCorrelator:
    def __init__(self, config: Settings = settings):
        self.config = config

    async def find_events(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
        user_id: Optional[str] = None,
    ) -> list[CalendarEvent]:
        days = timedelta(days=self.config.CALENDAR_WINDOW_DAYS)
        day_start = datetime.combine(transaction.date, dtime.min)
        day_end = datetime.combine(transaction.date, dtime.max)
        window_start = day_start - days
        window_end = day_end + days

        query = select(CalendarEvent).where(
            CalendarEvent.company_id == company_id,
            CalendarEvent.sync_status == CalendarSyncStatus.ACTIVE.value,
            or_(
                CalendarEvent.start_date.between(window_start, window_end),
                CalendarEvent.end_date.between(window_start, window_end),
                and_(CalendarEvent.start_date <= day_end, CalendarEvent.end_date >= day_start),
            ),
        )
        if user_id is not None:
            query = query.where(or_(CalendarEvent.user_id == user_id, CalendarEvent.user_id.is_(None)))

        events = list((await session.execute(query)).scalars().all())
        events.sort(key=lambda e: _days_from_start(transaction, e))
        return events[: self.config.CALENDAR_CANDIDATE_LIMIT]

    async def analyze_calendar_correlation(
        self,
        session: AsyncSession,
        transaction: Transaction,
        company_id: uuid.UUID,
        user_id: Optional[str] = None,
    ) -> CalendarResult:
        started = time.time()
        result = CalendarResult(transaction_id=str(transaction.id))

        events = await self.find_events(session, transaction, company_id, user_id)
        if not events:
            return result

        scored = [
            EventScore(
                event_id=str(event.id),
                title=event.title,
                score=score_event(transaction, event),
                correlation_type=correlation_type(transaction, event),
                days_from_start=_days_from_start(transaction, event),
            )
            for event in events
        ]
        scored.sort(key=lambda s: s.score, reverse=True)
        best = scored[0]
        result.events = scored
        result.confidence = best.score

        if best.score > self.config.CALENDAR_CORRELATION_THRESHOLD:
            async with UnitOfWork(session, label="create_calendar_correlation") as uow:
                row = CalendarCorrelation(
                    id=uuid.uuid4(),
                    calendar_event_id=uuid.UUID(best.event_id),
                    transaction_id=transaction.id,
                    correlation_score=best.score,
                    correlation_type=best.correlation_type.value,
                )
                uow.add(row)

            result.has_correlation = True
            result.primary_event = best
            result.correlation_id = str(row.id)
            calendar_correlations_total.labels(correlation_type=best.correlation_type.value).inc()
            logger.info(
                "calendar_correlation_created",
                transaction_id=str(transaction.id),
                event_id=best.event_id,
                score=best.score,
                correlation_type=best.correlation_type.value,
            )

        detector_duration_seconds.labels(detector="calendar_correlator").observe(time.time() - started)
        return result

    async def list_calendar_correlations(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
        user_id: Optional[str] = None,
    ) -> list[tuple[CalendarCorrelation, CalendarEvent, Transaction]]:
        query = (
            select(CalendarCorrelation, CalendarEvent, Transaction)
            .join(CalendarEvent, CalendarEvent.id == CalendarCorrelation.calendar_event_id)
            .join(Transaction, Transaction.id == CalendarCorrelation.transaction_id)
            .where(CalendarEvent.company_id == company_id)
            .order_by(CalendarCorrelation.correlation_score.desc(), CalendarCorrelation.created_at.desc())
        )
        if user_id is not None:
            query = query.where(CalendarEvent.user_id == user_id)
        result = await session.execute(query)
        return [tuple(row) for row in result.all()]
