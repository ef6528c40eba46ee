"""
FastAPI dependency injection.
Provides DB sessions, tenant scope, API key validation and detector instances.
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.engine.calendar_correlator import CalendarCorrelator
from app.engine.duplicate_detector import DuplicateDetector
from app.engine.fraud_detector import FraudDetector
from app.engine.patterns import PatternTable, default_pattern_table
from app.engine.receipt_matcher import ReceiptMatcher
from app.engine.recurring_detector import RecurringDetector
from app.engine.split_allocator import SplitAllocator
from app.models.database import get_session


# ── Singleton instances ──────────────────────────────────────
_pattern_table: Optional[PatternTable] = None


def get_pattern_table() -> PatternTable:
    """Get or create the fraud pattern table singleton."""
    global _pattern_table
    if _pattern_table is None:
        _pattern_table = default_pattern_table()
    return _pattern_table


def get_receipt_matcher() -> ReceiptMatcher:
    return ReceiptMatcher(settings)


def get_duplicate_detector() -> DuplicateDetector:
    return DuplicateDetector(settings)


def get_fraud_detector() -> FraudDetector:
    return FraudDetector(settings, patterns=get_pattern_table())


def get_split_allocator() -> SplitAllocator:
    return SplitAllocator(settings)


def get_recurring_detector() -> RecurringDetector:
    return RecurringDetector(settings)


def get_calendar_correlator() -> CalendarCorrelator:
    return CalendarCorrelator(settings)


# ── Request scope ────────────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def get_company_id(
    x_company_id: str = Header(..., alias="X-Company-ID"),
) -> uuid.UUID:
    """Tenant scope for every engine call."""
    try:
        return uuid.UUID(x_company_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Company-ID header",
        )


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[str]:
    """Acting user, recorded as created_by / reviewed_by."""
    return x_user_id


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
