"""
Quote API routes: creation, versioning, cloning, status and conversion to orders.
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from app.api.deps import AuditTrail, audit_trail
from app.api.orders import OrderResponse
from app.core.rbac import require_viewer
from app.db.models import AuditEntityType, QuoteStatus
from app.db.session import get_db
from app.services import quotes as quote_service
from app.services.audit_trail import ChangeType, StatusChangeDetail
from app.services.conversion import convert_quote_to_order

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])

OPEN_VERSION_STATUSES = {QuoteStatus.DRAFT, QuoteStatus.SENT, QuoteStatus.PENDING}


# ============= SCHEMAS =============

class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    material_code: Optional[str] = None


class QuoteCreate(BaseModel):
    customer_id: int
    title: str = Field(..., max_length=500)
    line_items: List[LineItemIn] = Field(..., min_length=1)
    description: Optional[str] = None
    notes: Optional[str] = None
    valid_until: Optional[datetime] = None
    total_amount: Optional[float] = Field(None, ge=0)
    customer_reference: Optional[str] = None
    contact_person: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None

    @field_validator('title')
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Title is required')
        return v.strip()


class QuoteUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    notes: Optional[str] = None
    valid_until: Optional[datetime] = None
    line_items: Optional[List[LineItemIn]] = None
    total_amount: Optional[float] = Field(None, ge=0)
    customer_reference: Optional[str] = None
    contact_person: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None


class QuoteVersionCreate(BaseModel):
    change_reason: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    notes: Optional[str] = None
    valid_until: Optional[datetime] = None
    line_items: Optional[List[LineItemIn]] = None
    total_amount: Optional[float] = Field(None, ge=0)
    status: Optional[QuoteStatus] = None

    @field_validator('status')
    @classmethod
    def status_is_open(cls, v: Optional[QuoteStatus]) -> Optional[QuoteStatus]:
        if v is not None and v not in OPEN_VERSION_STATUSES:
            raise ValueError('A new version must be DRAFT, SENT or PENDING')
        return v


class LineItemAdjustment(BaseModel):
    description: Optional[str] = None
    quantity: Optional[float] = Field(None, gt=0)
    unit_price: Optional[float] = Field(None, ge=0)


class QuoteClone(BaseModel):
    customer_id: Optional[int] = None
    title: Optional[str] = Field(None, max_length=500)
    total_amount: Optional[float] = Field(None, ge=0)
    adjustments: Optional[Dict[int, LineItemAdjustment]] = None


class QuoteStatusUpdate(BaseModel):
    status: QuoteStatus
    reason: Optional[str] = None


class LineItemResponse(BaseModel):
    id: int
    position: int
    description: str
    quantity: float
    unit_price: float
    material_id: Optional[int] = None
    line_total: float

    model_config = ConfigDict(from_attributes=True)


class CustomerSummary(BaseModel):
    id: int
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class QuoteResponse(BaseModel):
    id: int
    quote_number: str
    quote_reference: str
    version_number: int
    is_latest_version: bool
    parent_quote_id: Optional[int] = None
    change_reason: Optional[str] = None
    title: str
    description: Optional[str] = None
    notes: Optional[str] = None
    status: str
    customer_id: int
    customer: Optional[CustomerSummary] = None
    created_by_id: Optional[int] = None
    customer_reference: Optional[str] = None
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    valid_until: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    total_amount: float
    created_at: Optional[datetime] = None
    line_items: List[LineItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


class QuoteToOrderResponse(BaseModel):
    message: str
    order: OrderResponse
    quote: QuoteResponse


def _line_items(items: Optional[List[LineItemIn]]):
    if items is None:
        return None
    return [item.model_dump() for item in items]


# ============= ROUTES =============

@router.post("", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def create_quote(
    data: QuoteCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.CREATE)),
    db: Session = Depends(get_db)
):
    fields = data.model_dump(exclude={"line_items"})
    quote = quote_service.create_quote(
        db, created_by_id=audit.actor_id, line_items=_line_items(data.line_items), **fields
    )
    audit.record(quote.id, reason=f"Quote {quote.quote_number} created")
    return quote


@router.get("", response_model=List[QuoteResponse])
async def list_quotes(
    latest_only: bool = True,
    status: Optional[QuoteStatus] = None,
    customer_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return quote_service.list_quotes(
        db,
        latest_only=latest_only,
        status=status.value if status else None,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )


@router.get("/history/{quote_reference}", response_model=List[QuoteResponse])
async def get_quote_history(
    quote_reference: str,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    """Every version of a quote reference, oldest first."""
    return quote_service.get_quote_history_by_reference(db, quote_reference)


@router.get("/{quote_id}", response_model=QuoteResponse)
async def get_quote(
    quote_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return quote_service.get_quote(db, quote_id)


@router.put("/{quote_id}", response_model=QuoteResponse)
async def update_quote(
    quote_id: int,
    data: QuoteUpdate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.UPDATE)),
    db: Session = Depends(get_db)
):
    """Edit a DRAFT quote in place."""
    changes = data.model_dump(exclude_unset=True, exclude={"line_items"})
    if data.line_items is not None:
        changes["line_items"] = _line_items(data.line_items)
    quote = quote_service.update_draft_quote(db, quote_id, actor_id=audit.actor_id, **changes)
    audit.record(quote.id, reason="Draft quote updated")
    return quote


@router.patch("/{quote_id}/status", response_model=QuoteResponse)
async def update_quote_status(
    quote_id: int,
    data: QuoteStatusUpdate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.STATUS_CHANGE)),
    db: Session = Depends(get_db)
):
    quote, previous = quote_service.update_quote_status(db, quote_id, data.status, actor_id=audit.actor_id)
    if previous != quote.status:
        audit.record(
            quote.id,
            reason=data.reason or f"Status changed to: {quote.status}",
            detail=StatusChangeDetail(from_status=previous, to_status=quote.status),
        )
    return quote


@router.post("/{quote_id}/versions", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def create_quote_version(
    quote_id: int,
    data: QuoteVersionCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.NEW_VERSION)),
    db: Session = Depends(get_db)
):
    """Cut a new version of an open quote; the new row becomes the latest."""
    fields = data.model_dump(exclude_unset=True, exclude={"line_items", "change_reason"})
    version = quote_service.create_quote_version(
        db,
        quote_id,
        change_reason=data.change_reason,
        actor_id=audit.actor_id,
        line_items=_line_items(data.line_items),
        **fields,
    )
    audit.record(version.id, reason=data.change_reason)
    return version


@router.post("/{quote_id}/clone", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def clone_quote(
    quote_id: int,
    data: Optional[QuoteClone] = None,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.CLONE)),
    db: Session = Depends(get_db)
):
    """Copy a quote into a new DRAFT with its own reference."""
    data = data or QuoteClone()
    adjustments = None
    if data.adjustments:
        adjustments = {
            item_id: change.model_dump(exclude_none=True)
            for item_id, change in data.adjustments.items()
        }
    clone = quote_service.clone_quote(
        db,
        quote_id,
        actor_id=audit.actor_id,
        customer_id=data.customer_id,
        title=data.title,
        total_amount=data.total_amount,
        adjustments=adjustments,
    )
    audit.record(clone.id, reason=f"Cloned from quote {quote_id}")
    return clone


@router.post("/{quote_id}/convert-to-order", response_model=QuoteToOrderResponse, status_code=status.HTTP_201_CREATED)
async def convert_to_order(
    quote_id: int,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.QUOTE, ChangeType.CONVERTED_TO_ORDER)),
    db: Session = Depends(get_db)
):
    """Convert an APPROVED quote into an order; the quote becomes CONVERTED."""
    order, quote = convert_quote_to_order(db, quote_id, audit.actor_id)
    audit.record(
        quote.id,
        reason=f"Converted to order {order.id}",
        detail=StatusChangeDetail(from_status=QuoteStatus.APPROVED.value, to_status=quote.status),
    )
    return QuoteToOrderResponse(
        message="Quote successfully converted to order",
        order=OrderResponse.model_validate(order),
        quote=QuoteResponse.model_validate(quote),
    )
