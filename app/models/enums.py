"""
Python enums for the string-valued status/type columns.
Values are the lower-case strings stored in the database.
"""

from enum import Enum


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    AUTO_MATCHED = "auto_matched"


class ReviewStatus(str, Enum):
    """Review state shared by duplicate groups and fraud alerts."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISMISSED = "dismissed"


class FraudAlertType(str, Enum):
    UNUSUAL_AMOUNT = "unusual_amount"
    SUSPICIOUS_MERCHANT = "suspicious_merchant"
    TIME_ANOMALY = "time_anomaly"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    FRAUD_PATTERN = "fraud_pattern"
    RECEIPT_VALIDATION = "receipt_validation"
    OCR_INCONSISTENCY = "ocr_inconsistency"
    DUPLICATE_RECEIPT = "duplicate_receipt"


class Frequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class CorrelationType(str, Enum):
    TIME = "time"
    LOCATION = "location"
    AMOUNT = "amount"
    MERCHANT = "merchant"


class CalendarSyncStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
