"""
Customer API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session

from app.core.rbac import require_operator, require_viewer
from app.db.models import PaymentTerms
from app.db.session import get_db
from app.services import catalog

router = APIRouter(prefix="/api/customers", tags=["Customers"])


# ============= SCHEMAS =============

class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)
    contact_person: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    payment_terms: Optional[PaymentTerms] = None


class CustomerResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    contact_person: Optional[str] = None
    address: Optional[str] = None
    payment_terms: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============= ROUTES =============

@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    data: CustomerCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    return catalog.create_customer(db, **data.model_dump())


@router.get("", response_model=List[CustomerResponse])
async def list_customers(
    search: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return catalog.list_customers(db, search=search, limit=limit, offset=offset)


@router.get("/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    return catalog.get_customer(db, customer_id)
