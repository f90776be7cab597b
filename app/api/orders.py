"""
Order API routes.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session

from app.api.deps import AuditTrail, audit_trail
from app.api.jobs import JobResponse
from app.core.rbac import require_viewer
from app.db.models import AuditEntityType, OrderStatus, PaymentTerms
from app.db.session import get_db
from app.services import orders as order_service
from app.services.audit_trail import ChangeType, CustomerApprovalDetail, StatusChangeDetail
from app.services.conversion import convert_order_to_job

router = APIRouter(prefix="/api/orders", tags=["Orders"])


# ============= SCHEMAS =============

class OrderCreate(BaseModel):
    project_title: str = Field(..., max_length=500)
    customer_name: str = Field(..., max_length=255)
    contact_person: str = Field(..., max_length=255)
    project_value: float
    customer_id: Optional[int] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    quote_ref: Optional[str] = None
    lead_time_weeks: Optional[int] = Field(None, ge=0)
    items: Optional[List[Dict[str, Any]]] = None
    vat_rate: Optional[float] = Field(None, ge=0, le=100)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_terms: Optional[PaymentTerms] = None
    notes: Optional[str] = None


class CustomerApproval(BaseModel):
    approved: bool
    signature: Optional[str] = None
    timestamp: Optional[datetime] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    customer_approval: Optional[CustomerApproval] = None


class OrderResponse(BaseModel):
    id: int
    project_title: str
    quote_ref: Optional[str] = None
    order_type: Optional[str] = None
    status: str
    customer_id: Optional[int] = None
    customer_name: str
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    project_value: Optional[float] = None
    lead_time_weeks: Optional[int] = None
    items: Optional[List[Dict[str, Any]]] = None
    currency: Optional[str] = None
    vat_rate: Optional[float] = None
    sub_total: Optional[float] = None
    total_tax: Optional[float] = None
    total_amount: Optional[float] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    source_quote_id: Optional[int] = None
    job_id: Optional[int] = None
    created_by_id: Optional[int] = None
    project_owner_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderToJobResponse(BaseModel):
    message: str
    job: JobResponse
    order: OrderResponse


# ============= ROUTES =============

@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    data: OrderCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.ORDER, ChangeType.CREATE)),
    db: Session = Depends(get_db)
):
    """Create an order directly (not from a quote)."""
    order = order_service.create_order(db, actor_id=audit.actor_id, **data.model_dump())
    audit.record(order.id, reason="Order created")
    return order


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    status: Optional[OrderStatus] = None,
    customer_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return order_service.list_orders(
        db,
        status=status.value if status else None,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )


@router.get("/available", response_model=List[OrderResponse])
async def list_available_orders(
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    """Open orders that are not yet linked to a job."""
    return order_service.list_available_orders(db)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return order_service.get_order(db, order_id)


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.ORDER, ChangeType.STATUS_CHANGE)),
    db: Session = Depends(get_db)
):
    order, previous = order_service.update_order_status(db, order_id, data.status, actor_id=audit.actor_id)
    changed = previous != order.status
    approval = data.customer_approval

    # One record per request; an approval carries the transition with it
    if approval is not None:
        audit.record(
            order.id,
            reason=data.reason or "Customer approval " + ("given" if approval.approved else "refused"),
            detail=CustomerApprovalDetail(
                approved=approval.approved,
                signature=approval.signature,
                from_status=previous if changed else None,
                to_status=order.status if changed else None,
                **({"timestamp": approval.timestamp} if approval.timestamp else {}),
            ),
        )
    elif changed:
        audit.record(
            order.id,
            reason=data.reason or f"Status changed to: {order.status}",
            detail=StatusChangeDetail(from_status=previous, to_status=order.status),
        )
    return order


@router.post("/{order_id}/convert-to-job", response_model=OrderToJobResponse, status_code=status.HTTP_201_CREATED)
async def convert_to_job(
    order_id: int,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.ORDER, ChangeType.CONVERTED_TO_JOB)),
    db: Session = Depends(get_db)
):
    """Convert an APPROVED order into an ACTIVE job (at most once per order)."""
    job, order = convert_order_to_job(db, order_id, audit.actor_id)
    audit.record(
        order.id,
        reason=f"Converted to job {job.id}",
        detail=StatusChangeDetail(from_status=OrderStatus.APPROVED.value, to_status=order.status),
    )
    return OrderToJobResponse(
        message="Order successfully converted to job",
        job=JobResponse.model_validate(job),
        order=OrderResponse.model_validate(order),
    )
