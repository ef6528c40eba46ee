"""
/api/v1/fraud endpoints.
Fraud analysis triggers and alert review.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_company_id, get_db, get_fraud_detector, get_user_id, verify_api_key
from app.engine.fraud_detector import FraudAnalysis, FraudDetector
from app.engine.lookups import get_receipt, get_transaction
from app.models.enums import ReviewStatus
from app.models.tables import FraudAlert
from app.observability.logging import bind_detection_context
from app.review import queue
from app.review.stats import FraudStats, fraud_stats
from app.schemas.requests import ReviewStatusUpdate
from app.schemas.responses import FraudAlertResponse

router = APIRouter(prefix="/api/v1/fraud", tags=["fraud"], dependencies=[Depends(verify_api_key)])


def _alert_response(alert: FraudAlert) -> FraudAlertResponse:
    return FraudAlertResponse(
        alert_id=str(alert.id),
        transaction_id=str(alert.transaction_id) if alert.transaction_id else None,
        receipt_id=str(alert.receipt_id) if alert.receipt_id else None,
        alert_type=alert.alert_type,
        risk_score=alert.risk_score,
        description=alert.description,
        status=alert.status,
        reviewed_by=alert.reviewed_by,
        reviewed_at=alert.reviewed_at,
        created_at=alert.created_at,
    )


@router.post("/transactions/{transaction_id}", response_model=FraudAnalysis)
async def analyze_transaction(
    transaction_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: FraudDetector = Depends(get_fraud_detector),
):
    """Run every transaction rule. Fired alerts are persisted."""
    bind_detection_context(str(company_id), "fraud_detector")
    transaction = await get_transaction(session, transaction_id, company_id)
    return await detector.analyze_transaction(session, transaction, company_id)


@router.post("/receipts/{receipt_id}", response_model=FraudAnalysis)
async def analyze_receipt(
    receipt_id: uuid.UUID,
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
    detector: FraudDetector = Depends(get_fraud_detector),
):
    bind_detection_context(str(company_id), "fraud_detector")
    receipt = await get_receipt(session, receipt_id, company_id)
    return await detector.analyze_receipt(session, receipt, company_id)


@router.get("/alerts", response_model=list[FraudAlertResponse])
async def list_alerts(
    status_filter: ReviewStatus = Query(ReviewStatus.PENDING, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    alerts = await queue.list_fraud_alerts(session, company_id, status=status_filter, limit=limit, offset=offset)
    return [_alert_response(a) for a in alerts]


@router.patch("/alerts/{alert_id}", response_model=FraudAlertResponse)
async def update_alert_status(
    alert_id: uuid.UUID,
    body: ReviewStatusUpdate,
    company_id: uuid.UUID = Depends(get_company_id),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
):
    alert = await queue.update_fraud_alert_status(session, alert_id, company_id, body.status, reviewer=user_id)
    return _alert_response(alert)


@router.get("/stats", response_model=FraudStats)
async def get_fraud_stats(
    company_id: uuid.UUID = Depends(get_company_id),
    session: AsyncSession = Depends(get_db),
):
    return await fraud_stats(session, company_id)
