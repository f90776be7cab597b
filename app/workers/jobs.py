"""
Background job definitions.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

from redis import Redis
from rq_scheduler import Scheduler
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


# ============= JOB FUNCTIONS =============

def expire_stale_quotes_job(session_factory: Optional[Callable[[], Session]] = None) -> int:
    """
    Expire open quotes past their ``valid_until`` and record one STATUS_CHANGE per quote.

    The audit actor is the system (no user).
    """
    from app.db.models import AuditEntityType, QuoteStatus
    from app.db.session import SessionLocal
    from app.services.audit_trail import (
        AuditEntry, ChangeType, DatabaseAuditSink, StatusChangeDetail, audit_context
    )
    from app.services.quotes import expire_stale_quotes

    session_factory = session_factory or SessionLocal
    sink = DatabaseAuditSink(session_factory)

    db = session_factory()
    try:
        expired = expire_stale_quotes(db)
        entries = [
            AuditEntry(
                entity_type=AuditEntityType.QUOTE,
                entity_id=quote.id,
                change_type=ChangeType.STATUS_CHANGE,
                context=audit_context(None, reason="Quote validity period ended"),
                detail=StatusChangeDetail(from_status=previous, to_status=QuoteStatus.EXPIRED.value),
            )
            for quote, previous in expired
        ]
    finally:
        db.close()

    for entry in entries:
        sink.record(entry)

    logger.info(f"Quote expiry sweep finished: {len(entries)} expired", extra={"action": "quote.expire"})
    return len(entries)


# ============= QUEUE HELPERS =============

def setup_scheduled_jobs():
    """Register the periodic quote expiry sweep."""
    scheduler = get_scheduler()

    scheduler.schedule(
        scheduled_time=datetime.now(timezone.utc),
        func=expire_stale_quotes_job,
        interval=settings.QUOTE_EXPIRY_SWEEP_MINUTES * 60,
        repeat=None,
        queue_name="low",
    )

    logger.info(f"Scheduled quote expiry every {settings.QUOTE_EXPIRY_SWEEP_MINUTES} minutes")
