"""
Pydantic response schemas for persisted engine artifacts.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class MatchResponse(BaseModel):
    match_id: str
    transaction_id: str
    receipt_id: str
    confidence: float
    status: str
    user_confirmed: bool
    confirmed_by: Optional[str] = None
    created_at: Optional[datetime] = None


class DuplicateGroupResponse(BaseModel):
    group_id: str
    group_hash: str
    primary_transaction_id: Optional[str] = None
    duplicate_count: int
    confidence_score: float
    status: str
    created_at: Optional[datetime] = None


class DuplicateMemberResponse(BaseModel):
    transaction_id: str
    is_primary: bool
    similarity_score: float
    transaction_date: date
    description: str
    amount: Decimal


class DuplicateGroupDetail(DuplicateGroupResponse):
    members: list[DuplicateMemberResponse] = []


class FraudAlertResponse(BaseModel):
    alert_id: str
    transaction_id: Optional[str] = None
    receipt_id: Optional[str] = None
    alert_type: str
    risk_score: float
    description: Optional[str] = None
    status: str
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TransactionSplitResponse(BaseModel):
    split_id: str
    split_group_id: str
    receipt_id: str
    split_amount: Decimal
    split_percentage: Decimal
    description: Optional[str] = None


class RecurringPatternResponse(BaseModel):
    pattern_id: str
    pattern_name: str
    merchant_pattern: Optional[str] = None
    frequency: str
    expected_amount: Optional[Decimal] = None
    amount_tolerance: Optional[Decimal] = None
    category: Optional[str] = None
    occurrence_count: int
    last_occurrence: Optional[date] = None
    next_expected: Optional[date] = None
    is_active: bool


class CalendarCorrelationResponse(BaseModel):
    correlation_id: str
    calendar_event_id: str
    event_title: str
    transaction_id: str
    transaction_description: str
    correlation_score: float
    correlation_type: str


class JobEnqueuedResponse(BaseModel):
    job_id: str
    status: str = "queued"
