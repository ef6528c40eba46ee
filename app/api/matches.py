"""
/api/v1/matches endpoints.
Receipt-to-transaction candidate search, auto-matching and match review.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_company_id, get_db, get_receipt_matcher, get_user_id, verify_api_key
from app.engine.lookups import get_receipt
from app.engine.receipt_matcher import (
    AutoMatchResult,
    BulkMatchResult,
    MatchCandidate,
    ReceiptMatcher,
)
from app.models.tables import Match
from app.observability.logging import bind_detection_context
from app.review import queue
from app.review.stats import MatchStats, match_stats
from app.schemas.requests import AutoMatchRequest, ManualMatchRequest
from app.schemas.responses import JobEnqueuedResponse, MatchResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/matches", tags=["matches"], dependencies=[Depends(verify_api_key)])


def _match_response(match: Match) -> MatchResponse:
    return MatchResponse(
        match_id=str(match.id),
        transaction_id=str(match.transaction_id),
        receipt_id=str(match.receipt_id),
        confidence=match.confidence,
        status=match.status,
        user_confirmed=match.user_confirmed,
        confirmed_by=match.confirmed_by,
        created_at=match.created_at,
    )


@router.get("/receipts/{receipt_id}/candidates", response_model=list[MatchCandidate])
async def find_receipt_matches(
    receipt_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    matcher: ReceiptMatcher = Depends(get_receipt_matcher),
):
    """Ranked transaction candidates for a receipt. Nothing is written."""
    bind_detection_context(str(company_id), "receipt_matcher")
    receipt = await get_receipt(session, receipt_id, company_id)
    return await matcher.find_receipt_matches(session, receipt, company_id)


@router.post("/receipts/{receipt_id}/auto-match", response_model=AutoMatchResult)
async def auto_match_receipt(
    receipt_id: uuid.UUID,
    body: Optional[AutoMatchRequest] = None,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    matcher: ReceiptMatcher = Depends(get_receipt_matcher),
):
    bind_detection_context(str(company_id), "receipt_matcher")
    receipt = await get_receipt(session, receipt_id, company_id)
    threshold = body.threshold if body else None
    return await matcher.auto_match_receipt(session, receipt, company_id, threshold=threshold, user_id=user_id)


@router.post("/auto-match", response_model=BulkMatchResult)
async def bulk_auto_match(
    body: Optional[AutoMatchRequest] = None,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    matcher: ReceiptMatcher = Depends(get_receipt_matcher),
):
    """Greedy auto-match over every completed, unconfirmed receipt."""
    bind_detection_context(str(company_id), "receipt_matcher")
    threshold = body.threshold if body else None
    return await matcher.bulk_auto_match(session, company_id, threshold=threshold, user_id=user_id)


@router.post("/auto-match/enqueue", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_bulk_auto_match(
    body: Optional[AutoMatchRequest] = None,
    company_id: uuid.UUID = Depends(get_company_id),
):
    """Run the bulk auto-match on the background worker."""
    from app.worker.jobs import enqueue_bulk_auto_match as enqueue

    job_id = enqueue(str(company_id), threshold=body.threshold if body else None)
    return JobEnqueuedResponse(job_id=job_id)


@router.post("", response_model=MatchResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_match(
    body: ManualMatchRequest,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
    matcher: ReceiptMatcher = Depends(get_receipt_matcher),
):
    bind_detection_context(str(company_id), "receipt_matcher")
    match = await matcher.create_manual_match(
        session,
        transaction_id=body.transaction_id,
        receipt_id=body.receipt_id,
        company_id=company_id,
        confirm=body.confirm,
        user_id=user_id,
    )
    logger.info("manual_match_created", match_id=str(match.id), confirmed=body.confirm)
    return _match_response(match)


@router.get("/pending", response_model=list[MatchResponse])
async def list_pending_matches(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    matches = await queue.get_pending_matches(session, company_id, limit=limit, offset=offset)
    return [_match_response(m) for m in matches]


@router.get("/stats", response_model=MatchStats)
async def get_match_stats(
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    return await match_stats(session, company_id)


@router.post("/{match_id}/confirm", response_model=MatchResponse)
async def confirm_match(
    match_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
):
    match = await queue.confirm_match(session, match_id, company_id, reviewer=user_id)
    return _match_response(match)


@router.post("/{match_id}/reject", response_model=MatchResponse)
async def reject_match(
    match_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
):
    match = await queue.reject_match(session, match_id, company_id, reviewer=user_id)
    return _match_response(match)
