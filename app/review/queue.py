"""
User review actions on engine artifacts.

Matches, duplicate groups and fraud alerts are created by the detectors and
only ever transitioned afterwards by a reviewer through these functions.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.engine.errors import RecordNotFound
from app.engine.receipt_matcher import ensure_receipt_unconfirmed
from app.models.enums import MatchStatus, ReviewStatus
from app.models.tables import (
    DuplicateGroup,
    DuplicateMember,
    FraudAlert,
    Match,
    Transaction,
)
from app.storage.unit_of_work import UnitOfWork

logger = structlog.get_logger(__name__)


# ── Matches ──────────────────────────────────────────────────

async def _get_match(session: AsyncSession, match_id: uuid.UUID, company_id: uuid.UUID) -> Match:
    result = await session.execute(
        select(Match)
        .join(Transaction, Transaction.id == Match.transaction_id)
        .where(Match.id == match_id, Transaction.company_id == company_id)
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise RecordNotFound("match", str(match_id))
    return match


async def confirm_match(
    session: AsyncSession,
    match_id: uuid.UUID,
    company_id: uuid.UUID,
    reviewer: Optional[str] = None,
) -> Match:
    match = await _get_match(session, match_id, company_id)
    await ensure_receipt_unconfirmed(session, match.receipt_id, match.transaction_id)
    async with UnitOfWork(session, label="confirm_match"):
        match.status = MatchStatus.CONFIRMED.value
        match.user_confirmed = True
        match.confirmed_by = reviewer
    logger.info("match_confirmed", match_id=str(match_id), reviewer=reviewer)
    return match


async def reject_match(
    session: AsyncSession,
    match_id: uuid.UUID,
    company_id: uuid.UUID,
    reviewer: Optional[str] = None,
) -> Match:
    match = await _get_match(session, match_id, company_id)
    async with UnitOfWork(session, label="reject_match"):
        match.status = MatchStatus.REJECTED.value
        match.user_confirmed = False
        match.confirmed_by = reviewer
    logger.info("match_rejected", match_id=str(match_id), reviewer=reviewer)
    return match


async def get_pending_matches(
    session: AsyncSession,
    company_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[Match]:
    """Unconfirmed matches, highest confidence first."""
    result = await session.execute(
        select(Match)
        .join(Transaction, Transaction.id == Match.transaction_id)
        .where(
            Transaction.company_id == company_id,
            Match.user_confirmed.is_(False),
            Match.status != MatchStatus.REJECTED.value,
        )
        .order_by(Match.confidence.desc(), Match.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


# ── Duplicate groups ─────────────────────────────────────────

async def get_duplicate_group(session: AsyncSession, group_id: uuid.UUID, company_id: uuid.UUID) -> DuplicateGroup:
    result = await session.execute(
        select(DuplicateGroup).where(
            DuplicateGroup.id == group_id,
            DuplicateGroup.company_id == company_id,
        )
    )
    group = result.scalar_one_or_none()
    if group is None:
        raise RecordNotFound("duplicate_group", str(group_id))
    return group


async def list_duplicate_groups(
    session: AsyncSession,
    company_id: uuid.UUID,
    status: ReviewStatus = ReviewStatus.PENDING,
) -> list[DuplicateGroup]:
    result = await session.execute(
        select(DuplicateGroup)
        .where(
            DuplicateGroup.company_id == company_id,
            DuplicateGroup.status == status.value,
        )
        .order_by(DuplicateGroup.confidence_score.desc(), DuplicateGroup.created_at.desc())
    )
    return list(result.scalars().all())


async def get_group_members(
    session: AsyncSession,
    group_id: uuid.UUID,
    company_id: uuid.UUID,
) -> list[tuple[DuplicateMember, Transaction]]:
    """Members with their transactions, primary first."""
    await get_duplicate_group(session, group_id, company_id)
    result = await session.execute(
        select(DuplicateMember, Transaction)
        .join(Transaction, Transaction.id == DuplicateMember.transaction_id)
        .where(DuplicateMember.group_id == group_id)
        .order_by(DuplicateMember.is_primary.desc(), DuplicateMember.similarity_score.desc())
    )
    return [tuple(row) for row in result.all()]


async def update_duplicate_group_status(
    session: AsyncSession,
    group_id: uuid.UUID,
    company_id: uuid.UUID,
    status: ReviewStatus,
) -> DuplicateGroup:
    group = await get_duplicate_group(session, group_id, company_id)
    async with UnitOfWork(session, label="update_duplicate_group_status"):
        group.status = status.value
    logger.info("duplicate_group_status_updated", group_id=str(group_id), status=status.value)
    return group


async def remove_group_member(
    session: AsyncSession,
    group_id: uuid.UUID,
    transaction_id: uuid.UUID,
    company_id: uuid.UUID,
) -> bool:
    """
    Drop one transaction from a group. Returns True when the group was deleted
    because at most one member remained.
    """
    group = await get_duplicate_group(session, group_id, company_id)

    async with UnitOfWork(session, label="remove_group_member") as uow:
        result = await uow.execute(
            delete(DuplicateMember).where(
                DuplicateMember.group_id == group_id,
                DuplicateMember.transaction_id == transaction_id,
            )
        )
        if result.rowcount == 0:
            raise RecordNotFound("duplicate_member", str(transaction_id))

        remaining = list((await uow.execute(
            select(DuplicateMember)
            .where(DuplicateMember.group_id == group_id)
            .order_by(DuplicateMember.similarity_score.desc())
        )).scalars().all())

        if len(remaining) <= 1:
            await uow.execute(delete(DuplicateMember).where(DuplicateMember.group_id == group_id))
            await uow.delete(group)
            deleted = True
        else:
            group.duplicate_count = len(remaining)
            if group.primary_transaction_id == transaction_id:
                new_primary = remaining[0]
                new_primary.is_primary = True
                group.primary_transaction_id = new_primary.transaction_id
            deleted = False

    logger.info(
        "duplicate_group_member_removed",
        group_id=str(group_id),
        transaction_id=str(transaction_id),
        group_deleted=deleted,
    )
    return deleted


# ── Fraud alerts ─────────────────────────────────────────────

async def list_fraud_alerts(
    session: AsyncSession,
    company_id: uuid.UUID,
    status: ReviewStatus = ReviewStatus.PENDING,
    limit: int = 100,
    offset: int = 0,
) -> list[FraudAlert]:
    """Alerts ordered by risk, newest first among equals."""
    result = await session.execute(
        select(FraudAlert)
        .where(FraudAlert.company_id == company_id, FraudAlert.status == status.value)
        .order_by(FraudAlert.risk_score.desc(), FraudAlert.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def update_fraud_alert_status(
    session: AsyncSession,
    alert_id: uuid.UUID,
    company_id: uuid.UUID,
    status: ReviewStatus,
    reviewer: Optional[str] = None,
) -> FraudAlert:
    alert = (await session.execute(
        select(FraudAlert).where(FraudAlert.id == alert_id, FraudAlert.company_id == company_id)
    )).scalar_one_or_none()
    if alert is None:
        raise RecordNotFound("fraud_alert", str(alert_id))

    async with UnitOfWork(session, label="update_fraud_alert_status"):
        alert.status = status.value
        alert.reviewed_by = reviewer
        alert.reviewed_at = datetime.now(timezone.utc)
    logger.info("fraud_alert_reviewed", alert_id=str(alert_id), status=status.value, reviewer=reviewer)
    return alert
