"""
/api/v1/duplicates endpoints.
Duplicate checks, batch scanning and duplicate-group review.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_company_id, get_db, get_duplicate_detector, verify_api_key
from app.engine.duplicate_detector import BatchDuplicateResult, DuplicateDetector, DuplicateResult
from app.engine.lookups import get_receipt, get_transaction
from app.models.enums import ReviewStatus
from app.models.tables import DuplicateGroup
from app.observability.logging import bind_detection_context
from app.review import queue
from app.review.stats import DuplicateStats, duplicate_stats
from app.schemas.requests import BatchDuplicateRequest, ReviewStatusUpdate
from app.schemas.responses import (
    DuplicateGroupDetail,
    DuplicateGroupResponse,
    DuplicateMemberResponse,
    JobEnqueuedResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/duplicates", tags=["duplicates"], dependencies=[Depends(verify_api_key)])


def _group_response(group: DuplicateGroup) -> DuplicateGroupResponse:
    return DuplicateGroupResponse(
        group_id=str(group.id),
        group_hash=group.group_hash,
        primary_transaction_id=str(group.primary_transaction_id) if group.primary_transaction_id else None,
        duplicate_count=group.duplicate_count,
        confidence_score=group.confidence_score,
        status=group.status,
        created_at=group.created_at,
    )


@router.post("/transactions/{transaction_id}", response_model=DuplicateResult)
async def check_transaction(
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
):
    """Score a transaction against its neighbours; groups near-certain duplicates."""
    bind_detection_context(str(company_id), "duplicate_detector")
    transaction = await get_transaction(session, transaction_id, company_id)
    return await detector.detect_duplicate_transactions(session, transaction, company_id)


@router.post("/receipts/{receipt_id}", response_model=DuplicateResult)
async def check_receipt(
    receipt_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
):
    bind_detection_context(str(company_id), "duplicate_detector")
    receipt = await get_receipt(session, receipt_id, company_id)
    return await detector.detect_duplicate_receipts(session, receipt, company_id)


@router.post("/batch", response_model=BatchDuplicateResult)
async def batch_process(
    body: Optional[BatchDuplicateRequest] = None,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
):
    """Inline scan of recent ungrouped transactions."""
    bind_detection_context(str(company_id), "duplicate_detector")
    limit = body.limit if body else None
    return await detector.batch_process_duplicates(session, company_id, limit=limit)


@router.post("/batch/enqueue", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_batch(
    body: Optional[BatchDuplicateRequest] = None,
    company_id: uuid.UUID = Depends(get_company_id),
):
    """Run the batch scan on the background worker."""
    from app.worker.jobs import enqueue_duplicate_scan

    job_id = enqueue_duplicate_scan(str(company_id), limit=body.limit if body else None)
    return JobEnqueuedResponse(job_id=job_id)


@router.get("/groups", response_model=list[DuplicateGroupResponse])
async def list_groups(
    status_filter: ReviewStatus = Query(ReviewStatus.PENDING, alias="status"),
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    groups = await queue.list_duplicate_groups(session, company_id, status=status_filter)
    return [_group_response(g) for g in groups]


@router.get("/stats", response_model=DuplicateStats)
async def get_duplicate_stats(
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    return await duplicate_stats(session, company_id)


@router.get("/groups/{group_id}", response_model=DuplicateGroupDetail)
async def get_group(
    group_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    rows = await queue.get_group_members(session, group_id, company_id)
    group = await queue.get_duplicate_group(session, group_id, company_id)
    return DuplicateGroupDetail(
        **_group_response(group).model_dump(),
        members=[
            DuplicateMemberResponse(
                transaction_id=str(member.transaction_id),
                is_primary=member.is_primary,
                similarity_score=member.similarity_score,
                transaction_date=transaction.date,
                description=transaction.description,
                amount=transaction.amount,
            )
            for member, transaction in rows
        ],
    )


@router.patch("/groups/{group_id}", response_model=DuplicateGroupResponse)
async def update_group_status(
    group_id: uuid.UUID,
    body: ReviewStatusUpdate,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    group = await queue.update_duplicate_group_status(session, group_id, company_id, body.status)
    return _group_response(group)


@router.delete("/groups/{group_id}/members/{transaction_id}")
async def remove_member(
    group_id: uuid.UUID,
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    group_deleted = await queue.remove_group_member(session, group_id, transaction_id, company_id)
    return {"removed": str(transaction_id), "group_deleted": group_deleted}
