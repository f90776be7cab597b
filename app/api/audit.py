"""
Audit trail API routes (read only).
"""
from typing import List, Optional, Set
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session
from sqlalchemy import and_, desc, func, or_

from app.core.errors import ValidationError
from app.db.session import get_db
from app.db.models import AuditEntityType, AuditRecord, Order
from app.core.rbac import require_admin

router = APIRouter(prefix="/api/audit", tags=["Audit"])


# ============= SCHEMAS =============

class AuditRecordResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: int
    change_type: str
    actor_user_id: Optional[int] = None
    actor_email: Optional[str] = None
    reason: Optional[str] = None
    entity_status: Optional[str] = None
    snapshot: Optional[dict] = None
    detail: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AuditSummary(BaseModel):
    total_records: int
    records_today: int
    top_change_types: List[dict]
    top_actors: List[dict]


def _to_response(record: AuditRecord) -> AuditRecordResponse:
    response = AuditRecordResponse.model_validate(record)
    response.actor_email = record.actor.email if record.actor else None
    return response


# ============= ROUTES =============

@router.get("/records", response_model=List[AuditRecordResponse])
async def list_audit_records(
    entity_type: Optional[AuditEntityType] = Query(None, description="Filter by entity type"),
    entity_id: Optional[int] = Query(None, description="Filter by entity id"),
    change_type: Optional[str] = Query(None, description="Filter by change type"),
    user_id: Optional[int] = Query(None, description="Filter by acting user"),
    start_date: Optional[datetime] = Query(None, description="Start date filter"),
    end_date: Optional[datetime] = Query(None, description="End date filter"),
    limit: int = Query(100, le=500),
    offset: int = Query(0),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """List audit records, newest first (admin only)."""
    query = db.query(AuditRecord)

    if entity_type:
        query = query.filter(AuditRecord.entity_type == entity_type.value)

    if entity_id:
        query = query.filter(AuditRecord.entity_id == entity_id)

    if change_type:
        query = query.filter(AuditRecord.change_type == change_type.upper())

    if user_id:
        query = query.filter(AuditRecord.actor_user_id == user_id)

    if start_date:
        query = query.filter(AuditRecord.created_at >= start_date)

    if end_date:
        query = query.filter(AuditRecord.created_at <= end_date)

    records = (
        query.order_by(desc(AuditRecord.created_at), desc(AuditRecord.id))
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [_to_response(record) for record in records]


@router.get("/summary", response_model=AuditSummary)
async def get_audit_summary(
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Totals plus the most frequent change types and actors over the last 7 days."""
    total = db.query(AuditRecord).count()

    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today_count = db.query(AuditRecord).filter(AuditRecord.created_at >= today_start).count()

    week_ago = now - timedelta(days=7)
    change_counts = db.query(
        AuditRecord.change_type,
        func.count(AuditRecord.id).label('count')
    ).filter(
        AuditRecord.created_at >= week_ago
    ).group_by(AuditRecord.change_type).order_by(desc('count')).limit(10).all()

    actor_counts = db.query(
        AuditRecord.actor_user_id,
        func.count(AuditRecord.id).label('count')
    ).filter(
        AuditRecord.created_at >= week_ago,
        AuditRecord.actor_user_id.isnot(None)
    ).group_by(AuditRecord.actor_user_id).order_by(desc('count')).limit(10).all()

    return AuditSummary(
        total_records=total,
        records_today=today_count,
        top_change_types=[{"change_type": c, "count": n} for c, n in change_counts],
        top_actors=[{"user_id": u, "count": n} for u, n in actor_counts],
    )


@router.get("/timeline", response_model=List[AuditRecordResponse])
async def get_pipeline_timeline(
    quote_id: Optional[int] = None,
    order_id: Optional[int] = None,
    job_id: Optional[int] = None,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Merged trail across quote, order and job, oldest first.

    Any one id is enough: the related entities are found through the order's
    source quote and job links.
    """
    if not any((quote_id, order_id, job_id)):
        raise ValidationError("At least one of quote_id, order_id or job_id is required")

    quote_ids: Set[int] = {quote_id} if quote_id else set()
    order_ids: Set[int] = {order_id} if order_id else set()
    job_ids: Set[int] = {job_id} if job_id else set()

    link_filters = []
    if quote_ids:
        link_filters.append(Order.source_quote_id.in_(quote_ids))
    if order_ids:
        link_filters.append(Order.id.in_(order_ids))
    if job_ids:
        link_filters.append(Order.job_id.in_(job_ids))
    for order in db.query(Order).filter(or_(*link_filters)).all():
        order_ids.add(order.id)
        if order.source_quote_id:
            quote_ids.add(order.source_quote_id)
        if order.job_id:
            job_ids.add(order.job_id)

    entity_filters = []
    for entity_type, ids in (
        (AuditEntityType.QUOTE, quote_ids),
        (AuditEntityType.ORDER, order_ids),
        (AuditEntityType.JOB, job_ids),
    ):
        if ids:
            entity_filters.append(and_(
                AuditRecord.entity_type == entity_type.value,
                AuditRecord.entity_id.in_(ids),
            ))

    records = (
        db.query(AuditRecord)
        .filter(or_(*entity_filters))
        .order_by(AuditRecord.created_at.asc(), AuditRecord.id.asc())
        .all()
    )
    return [_to_response(record) for record in records]


@router.get("/{entity_type}/{entity_id}", response_model=List[AuditRecordResponse])
async def get_entity_audit_trail(
    entity_type: AuditEntityType,
    entity_id: int,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """One entity's trail, oldest first."""
    records = (
        db.query(AuditRecord)
        .filter(
            AuditRecord.entity_type == entity_type.value,
            AuditRecord.entity_id == entity_id,
        )
        .order_by(AuditRecord.created_at.asc(), AuditRecord.id.asc())
        .all()
    )
    return [_to_response(record) for record in records]
