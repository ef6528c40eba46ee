"""
RQ job functions for the batch detectors.
These are the entry points that the worker calls.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from app.config import settings
from app.engine.duplicate_detector import DuplicateDetector
from app.engine.receipt_matcher import ReceiptMatcher
from app.models.database import async_session_factory, close_db
from app.observability.logging import bind_detection_context

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the reconciliation job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def _enqueue(func, *args, **kwargs) -> str:
    q = get_queue()
    job = q.enqueue(
        func,
        *args,
        **kwargs,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", job=func.__name__, job_id=job.id)
    return job.id


def enqueue_bulk_auto_match(company_id: str, threshold: Optional[float] = None) -> str:
    """Queue a bulk auto-match run. Returns the job ID."""
    return _enqueue(bulk_auto_match_job, company_id, threshold)


def enqueue_duplicate_scan(company_id: str, limit: Optional[int] = None) -> str:
    """Queue a duplicate batch scan. Returns the job ID."""
    return _enqueue(duplicate_scan_job, company_id, limit)


# ── Jobs ─────────────────────────────────────────────────────

def bulk_auto_match_job(company_id: str, threshold: Optional[float] = None) -> dict:
    logger.info("job_started", job="bulk_auto_match", company_id=company_id)
    try:
        result = asyncio.run(_bulk_auto_match(company_id, threshold))
    except Exception as e:
        logger.error("job_failed", job="bulk_auto_match", company_id=company_id, error=str(e))
        raise
    logger.info("job_completed", job="bulk_auto_match", company_id=company_id, matched=result["matched"])
    return result


def duplicate_scan_job(company_id: str, limit: Optional[int] = None) -> dict:
    logger.info("job_started", job="duplicate_scan", company_id=company_id)
    try:
        result = asyncio.run(_duplicate_scan(company_id, limit))
    except Exception as e:
        logger.error("job_failed", job="duplicate_scan", company_id=company_id, error=str(e))
        raise
    logger.info("job_completed", job="duplicate_scan", company_id=company_id, processed=result["processed"])
    return result


async def _bulk_auto_match(company_id: str, threshold: Optional[float]) -> dict:
    bind_detection_context(company_id, "receipt_matcher")
    try:
        async with async_session_factory() as session:
            result = await ReceiptMatcher(settings).bulk_auto_match(
                session, uuid.UUID(company_id), threshold=threshold
            )
    finally:
        # Each job runs its own event loop; pooled connections cannot outlive it
        await close_db()
    return result.model_dump(mode="json")


async def _duplicate_scan(company_id: str, limit: Optional[int]) -> dict:
    bind_detection_context(company_id, "duplicate_detector")
    try:
        async with async_session_factory() as session:
            result = await DuplicateDetector(settings).batch_process_duplicates(
                session, uuid.UUID(company_id), limit=limit
            )
    finally:
        await close_db()
    return result.model_dump(mode="json")
