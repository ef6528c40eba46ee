"""
Pydantic request bodies for the /api/v1 detector and review endpoints.
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.models.enums import Frequency, ReviewStatus


# ── Matches ──────────────────────────────────────────────────

class AutoMatchRequest(BaseModel):
    """Optional threshold override for an auto-match run."""
    threshold: Optional[float] = Field(default=None, ge=0, le=110)


class ManualMatchRequest(BaseModel):
    transaction_id: uuid.UUID
    receipt_id: uuid.UUID
    confirm: bool = False


# ── Duplicates / Fraud review ────────────────────────────────

class ReviewStatusUpdate(BaseModel):
    status: ReviewStatus


class BatchDuplicateRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


# ── Advanced matching ────────────────────────────────────────

class SplitRequest(BaseModel):
    """Receipts that together account for one transaction."""
    receipt_ids: list[uuid.UUID] = Field(min_length=1)

    @field_validator("receipt_ids")
    @classmethod
    def receipts_distinct(cls, value: list[uuid.UUID]) -> list[uuid.UUID]:
        if len(set(value)) != len(value):
            raise ValueError("receipt_ids must not repeat a receipt")
        return value


class RecurringPatternCreate(BaseModel):
    pattern_name: str = Field(min_length=1, max_length=255)
    frequency: Frequency = Frequency.MONTHLY
    merchant_pattern: Optional[str] = None
    expected_amount: Optional[Decimal] = Field(default=None, ge=0)
    amount_tolerance: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = None
    last_occurrence: Optional[date] = None
