"""
/api/v1/advanced endpoints.
Multi-receipt splits, recurring expense patterns and calendar correlation.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import (
    get_calendar_correlator,
    get_company_id,
    get_db,
    get_recurring_detector,
    get_split_allocator,
    get_user_id,
    verify_api_key,
)
from app.engine.calendar_correlator import CalendarCorrelator, CalendarResult
from app.engine.lookups import get_receipts, get_transaction
from app.engine.recurring_detector import RecurringDetector, RecurringResult
from app.engine.split_allocator import SplitAllocator, SplitAnalysis
from app.models.tables import RecurringPattern
from app.observability.logging import bind_detection_context
from app.schemas.requests import RecurringPatternCreate, SplitRequest
from app.schemas.responses import (
    CalendarCorrelationResponse,
    RecurringPatternResponse,
    TransactionSplitResponse,
)

router = APIRouter(prefix="/api/v1/advanced", tags=["advanced"], dependencies=[Depends(verify_api_key)])


def _pattern_response(pattern: RecurringPattern) -> RecurringPatternResponse:
    return RecurringPatternResponse(
        pattern_id=str(pattern.id),
        pattern_name=pattern.pattern_name,
        merchant_pattern=pattern.merchant_pattern,
        frequency=pattern.frequency,
        expected_amount=pattern.expected_amount,
        amount_tolerance=pattern.amount_tolerance,
        category=pattern.category,
        occurrence_count=pattern.occurrence_count,
        last_occurrence=pattern.last_occurrence,
        next_expected=pattern.next_expected,
        is_active=pattern.is_active,
    )


# ── Splits ───────────────────────────────────────────────────

@router.post("/transactions/{transaction_id}/splits/analyze", response_model=SplitAnalysis)
async def analyze_split(
    transaction_id: uuid.UUID,
    body: SplitRequest,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    allocator: SplitAllocator = Depends(get_split_allocator),
):
    """Proposed allocation without writing anything."""
    bind_detection_context(str(company_id), "split_allocator")
    transaction = await get_transaction(session, transaction_id, company_id)
    receipts = await get_receipts(session, body.receipt_ids, company_id)
    return allocator.analyze(transaction, receipts)


@router.post(
    "/transactions/{transaction_id}/splits",
    response_model=SplitAnalysis,
    status_code=status.HTTP_201_CREATED,
)
async def create_split(
    transaction_id: uuid.UUID,
    body: SplitRequest,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    allocator: SplitAllocator = Depends(get_split_allocator),
):
    bind_detection_context(str(company_id), "split_allocator")
    transaction = await get_transaction(session, transaction_id, company_id)
    receipts = await get_receipts(session, body.receipt_ids, company_id)
    return await allocator.split_transaction(session, transaction, receipts, user_id=user_id)


@router.get("/transactions/{transaction_id}/splits", response_model=list[TransactionSplitResponse])
async def list_splits(
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    allocator: SplitAllocator = Depends(get_split_allocator),
):
    transaction = await get_transaction(session, transaction_id, company_id)
    splits = await allocator.get_transaction_splits(session, transaction.id)
    return [
        TransactionSplitResponse(
            split_id=str(s.id),
            split_group_id=str(s.split_group_id),
            receipt_id=str(s.receipt_id),
            split_amount=s.split_amount,
            split_percentage=s.split_percentage,
            description=s.description,
        )
        for s in splits
    ]


# ── Recurring ────────────────────────────────────────────────

@router.post("/transactions/{transaction_id}/recurring", response_model=RecurringResult)
async def analyze_recurring(
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: RecurringDetector = Depends(get_recurring_detector),
):
    bind_detection_context(str(company_id), "recurring_detector")
    transaction = await get_transaction(session, transaction_id, company_id)
    return await detector.analyze_recurring(session, transaction, company_id)


@router.get("/recurring-patterns", response_model=list[RecurringPatternResponse])
async def list_patterns(
    is_active: bool = Query(True),
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: RecurringDetector = Depends(get_recurring_detector),
):
    patterns = await detector.list_recurring_patterns(session, company_id, is_active=is_active)
    return [_pattern_response(p) for p in patterns]


@router.post("/recurring-patterns", response_model=RecurringPatternResponse, status_code=status.HTTP_201_CREATED)
async def create_pattern(
    body: RecurringPatternCreate,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: RecurringDetector = Depends(get_recurring_detector),
):
    bind_detection_context(str(company_id), "recurring_detector")
    pattern = await detector.create_recurring_pattern(
        session,
        company_id=company_id,
        pattern_name=body.pattern_name,
        frequency=body.frequency,
        merchant_pattern=body.merchant_pattern,
        expected_amount=body.expected_amount,
        amount_tolerance=body.amount_tolerance,
        category=body.category,
        last_occurrence=body.last_occurrence,
    )
    return _pattern_response(pattern)


# ── Calendar ─────────────────────────────────────────────────

@router.post("/transactions/{transaction_id}/calendar", response_model=CalendarResult)
async def analyze_calendar(
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    correlator: CalendarCorrelator = Depends(get_calendar_correlator),
):
    bind_detection_context(str(company_id), "calendar_correlator")
    transaction = await get_transaction(session, transaction_id, company_id)
    return await correlator.analyze_calendar_correlation(session, transaction, company_id, user_id=user_id)


@router.get("/calendar-correlations", response_model=list[CalendarCorrelationResponse])
async def list_correlations(
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    correlator: CalendarCorrelator = Depends(get_calendar_correlator),
):
    rows = await correlator.list_calendar_correlations(session, company_id, user_id=user_id)
    return [
        CalendarCorrelationResponse(
            correlation_id=str(correlation.id),
            calendar_event_id=str(event.id),
            event_title=event.title,
            transaction_id=str(transaction.id),
            transaction_description=transaction.description,
            correlation_score=correlation.correlation_score,
            correlation_type=correlation.correlation_type,
        )
        for correlation, event, transaction in rows
    ]
