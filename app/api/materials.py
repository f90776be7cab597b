"""
Material catalog API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.rbac import require_operator, require_viewer
from app.db.session import get_db
from app.services import catalog

router = APIRouter(prefix="/api/materials", tags=["Materials"])


# ============= SCHEMAS =============

class MaterialCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    unit_price: float = Field(..., ge=0)
    unit: str = "unit"
    current_stock: float = Field(0.0, ge=0)
    min_stock: float = Field(0.0, ge=0)
    reorder_point: float = Field(0.0, ge=0)
    supplier_id: Optional[int] = None


class MaterialResponse(BaseModel):
    id: int
    code: str
    name: str
    unit: Optional[str] = None
    unit_price: float
    current_stock: float
    min_stock: Optional[float] = None
    reorder_point: Optional[float] = None
    supplier_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# ============= ROUTES =============

@router.post("", response_model=MaterialResponse, status_code=status.HTTP_201_CREATED)
async def create_material(
    data: MaterialCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    return catalog.create_material(db, **data.model_dump())


@router.get("", response_model=List[MaterialResponse])
async def list_materials(
    search: Optional[str] = None,
    low_stock: bool = False,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    """List materials; ``low_stock`` keeps those at or below their reorder point."""
    return catalog.list_materials(db, search=search, low_stock=low_stock)
