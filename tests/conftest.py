"""
Shared test fixtures.
"""

import os

# Must be set before any app module builds its engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("API_KEY", None)

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.models.database import build_session_factory, init_db
from app.models.enums import ProcessingStatus
from app.models.tables import CalendarEvent, Receipt, Transaction


@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test, schema created from the ORM metadata."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_company_id() -> uuid.UUID:
    return uuid.uuid4()


# ── Row builders ─────────────────────────────────────────────
# Unsaved rows for pure scoring tests; the add_* fixtures persist them.

def make_transaction(
    company_id: uuid.UUID,
    amount: str = "100.00",
    on: date = date(2024, 3, 15),
    description: str = "STARBUCKS STORE 1234",
    external_id: Optional[str] = None,
    posted_at: Optional[datetime] = None,
    category: Optional[str] = None,
) -> Transaction:
    return Transaction(
        id=uuid.uuid4(),
        company_id=company_id,
        date=on,
        posted_at=posted_at,
        description=description,
        amount=Decimal(amount),
        external_id=external_id,
        category=category,
    )


def make_receipt(
    company_id: uuid.UUID,
    amount: Optional[str] = "100.00",
    extracted_date: Optional[str] = "2024-03-15",
    merchant: Optional[str] = "Starbucks",
    ocr_text: Optional[str] = None,
    filename: Optional[str] = "receipt.jpg",
    file_size: Optional[int] = None,
    processing_status: str = ProcessingStatus.COMPLETED.value,
) -> Receipt:
    return Receipt(
        id=uuid.uuid4(),
        company_id=company_id,
        filename=filename,
        extracted_amount=Decimal(amount) if amount is not None else None,
        extracted_date=extracted_date,
        extracted_merchant=merchant,
        ocr_text=ocr_text,
        file_size=file_size,
        processing_status=processing_status,
    )


def make_event(
    company_id: uuid.UUID,
    title: str = "Client dinner with Acme",
    start: datetime = datetime(2024, 3, 15, 19, 0),
    end: Optional[datetime] = None,
    location: Optional[str] = None,
    estimated_cost: Optional[str] = None,
    user_id: Optional[str] = None,
) -> CalendarEvent:
    return CalendarEvent(
        id=uuid.uuid4(),
        company_id=company_id,
        user_id=user_id,
        title=title,
        start_date=start,
        end_date=end or start,
        location=location,
        estimated_cost=Decimal(estimated_cost) if estimated_cost is not None else None,
    )


@pytest.fixture
def add_transaction(session, company_id):
    async def _add(**kwargs) -> Transaction:
        kwargs.setdefault("company_id", company_id)
        row = make_transaction(**kwargs)
        session.add(row)
        await session.commit()
        return row
    return _add


@pytest.fixture
def add_receipt(session, company_id):
    async def _add(**kwargs) -> Receipt:
        kwargs.setdefault("company_id", company_id)
        row = make_receipt(**kwargs)
        session.add(row)
        await session.commit()
        return row
    return _add


@pytest.fixture
def add_event(session, company_id):
    async def _add(**kwargs) -> CalendarEvent:
        kwargs.setdefault("company_id", company_id)
        row = make_event(**kwargs)
        session.add(row)
        await session.commit()
        return row
    return _add
