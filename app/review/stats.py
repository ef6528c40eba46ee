"""
Per-company statistics for the review dashboards.
"""

import uuid

from pydantic import BaseModel
from sqlalchemy import and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import MatchStatus, ProcessingStatus, ReviewStatus
from app.models.tables import DuplicateGroup, FraudAlert, Match, Receipt, Transaction


class MatchStats(BaseModel):
    total_matches: int = 0
    confirmed_matches: int = 0
    pending_matches: int = 0
    unmatched_receipts: int = 0
    unmatched_transactions: int = 0


class DuplicateStats(BaseModel):
    total_groups: int = 0
    total_duplicates: int = 0
    avg_confidence: float = 0.0
    confirmed_groups: int = 0
    dismissed_groups: int = 0
    prevented_duplicates: int = 0


class AlertTypeStats(BaseModel):
    alert_type: str
    count: int
    avg_risk_score: float
    confirmed_count: int
    dismissed_count: int


class FraudStats(BaseModel):
    total_alerts: int = 0
    pending_alerts: int = 0
    by_type: list[AlertTypeStats] = []


async def match_stats(session: AsyncSession, company_id: uuid.UUID) -> MatchStats:
    company_matches = (
        select(Match)
        .join(Transaction, Transaction.id == Match.transaction_id)
        .where(Transaction.company_id == company_id)
        .subquery()
    )
    row = (await session.execute(
        select(
            func.count(company_matches.c.id),
            func.count(company_matches.c.id).filter(company_matches.c.user_confirmed.is_(True)),
            func.count(company_matches.c.id).filter(
                and_(
                    company_matches.c.user_confirmed.is_(False),
                    company_matches.c.status != MatchStatus.REJECTED.value,
                )
            ),
        )
    )).one()

    unmatched_receipts = (await session.execute(
        select(func.count(Receipt.id)).where(
            Receipt.company_id == company_id,
            Receipt.processing_status == ProcessingStatus.COMPLETED.value,
            ~exists().where(Match.receipt_id == Receipt.id),
        )
    )).scalar() or 0

    unmatched_transactions = (await session.execute(
        select(func.count(Transaction.id)).where(
            Transaction.company_id == company_id,
            ~exists().where(Match.transaction_id == Transaction.id),
        )
    )).scalar() or 0

    return MatchStats(
        total_matches=row[0] or 0,
        confirmed_matches=row[1] or 0,
        pending_matches=row[2] or 0,
        unmatched_receipts=unmatched_receipts,
        unmatched_transactions=unmatched_transactions,
    )


async def duplicate_stats(session: AsyncSession, company_id: uuid.UUID) -> DuplicateStats:
    groups = list((await session.execute(
        select(DuplicateGroup).where(DuplicateGroup.company_id == company_id)
    )).scalars().all())
    if not groups:
        return DuplicateStats()

    confirmed = [g for g in groups if g.status == ReviewStatus.CONFIRMED.value]
    return DuplicateStats(
        total_groups=len(groups),
        total_duplicates=sum(g.duplicate_count for g in groups),
        avg_confidence=round(sum(g.confidence_score for g in groups) / len(groups), 4),
        confirmed_groups=len(confirmed),
        dismissed_groups=sum(1 for g in groups if g.status == ReviewStatus.DISMISSED.value),
        # Every confirmed group keeps one member, the rest are prevented
        prevented_duplicates=sum(g.duplicate_count - 1 for g in confirmed),
    )


async def fraud_stats(session: AsyncSession, company_id: uuid.UUID) -> FraudStats:
    rows = (await session.execute(
        select(
            FraudAlert.alert_type,
            func.count(FraudAlert.id),
            func.avg(FraudAlert.risk_score),
            func.count(FraudAlert.id).filter(FraudAlert.status == ReviewStatus.CONFIRMED.value),
            func.count(FraudAlert.id).filter(FraudAlert.status == ReviewStatus.DISMISSED.value),
            func.count(FraudAlert.id).filter(FraudAlert.status == ReviewStatus.PENDING.value),
        )
        .where(FraudAlert.company_id == company_id)
        .group_by(FraudAlert.alert_type)
        .order_by(func.count(FraudAlert.id).desc())
    )).all()

    stats = FraudStats()
    for alert_type, count, avg_risk, confirmed, dismissed, pending in rows:
        stats.by_type.append(AlertTypeStats(
            alert_type=alert_type,
            count=count,
            avg_risk_score=round(float(avg_risk or 0.0), 4),
            confirmed_count=confirmed,
            dismissed_count=dismissed,
        ))
        stats.total_alerts += count
        stats.pending_alerts += pending
    return stats
