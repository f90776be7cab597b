"""
Job API routes: creation, guarded deletion, status, materials and costs.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import AuditTrail, audit_trail
from app.core.rbac import require_viewer
from app.db.models import AuditEntityType, JobStatus
from app.db.session import get_db
from app.services import jobs as job_service
from app.services.audit_trail import ChangeType, MaterialChangeDetail, StatusChangeDetail

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


# ============= SCHEMAS =============

class JobCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    expected_end_date: datetime
    order_id: Optional[int] = None
    customer_id: Optional[int] = None
    description: Optional[str] = None
    status: Optional[JobStatus] = None
    start_date: Optional[datetime] = None


class JobStatusUpdate(BaseModel):
    status: JobStatus
    reason: Optional[str] = None


class JobMaterialCreate(BaseModel):
    material_id: int
    quantity_needed: float = Field(..., gt=0)
    unit_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class JobMaterialUpdate(BaseModel):
    quantity_needed: Optional[float] = Field(None, gt=0)
    quantity_used: Optional[float] = Field(None, ge=0)
    unit_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class JobCostCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    amount: float = Field(..., gt=0)
    category: str = "OTHER"
    cost_date: Optional[datetime] = None


class JobMaterialResponse(BaseModel):
    id: int
    job_id: int
    material_id: int
    quantity_needed: float
    quantity_used: float
    unit_cost: float
    total_cost: float
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class JobCostResponse(BaseModel):
    id: int
    job_id: int
    description: str
    category: Optional[str] = None
    amount: float
    cost_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: str
    customer_id: int
    start_date: Optional[datetime] = None
    expected_end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class JobTotals(BaseModel):
    material_cost: float
    other_costs: float
    total_cost: float
    order_value: float


class JobDetailResponse(JobResponse):
    order_ids: List[int] = []
    materials: List[JobMaterialResponse] = []
    costs: List[JobCostResponse] = []
    totals: JobTotals


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int
    page: int
    limit: int


# ============= ROUTES =============

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    data: JobCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.CREATE)),
    db: Session = Depends(get_db)
):
    """Create a job directly from an order or for a customer."""
    job = job_service.create_job(db, actor_id=audit.actor_id, **data.model_dump())
    audit.record(job.id, reason="Job created" + (f" for order {data.order_id}" if data.order_id else ""))
    return job


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status: Optional[JobStatus] = None,
    customer_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    jobs, total = job_service.list_jobs(
        db,
        status=status.value if status else None,
        customer_id=customer_id,
        search=search,
        page=page,
        limit=limit,
    )
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{job_id}", response_model=JobDetailResponse)
async def get_job(
    job_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db)
):
    """Job with its materials, costs, linked orders and cost totals."""
    job = job_service.get_job(db, job_id)
    return JobDetailResponse(
        **JobResponse.model_validate(job).model_dump(),
        order_ids=[order.id for order in job.orders],
        materials=[JobMaterialResponse.model_validate(m) for m in job.materials],
        costs=[JobCostResponse.model_validate(c) for c in job.costs],
        totals=JobTotals(**job_service.job_totals(job)),
    )


@router.patch("/{job_id}/status", response_model=JobResponse)
async def update_job_status(
    job_id: int,
    data: JobStatusUpdate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.STATUS_CHANGE)),
    db: Session = Depends(get_db)
):
    job, previous = job_service.update_job_status(db, job_id, data.status, actor_id=audit.actor_id)
    if previous != job.status:
        audit.record(
            job.id,
            reason=data.reason or f"Status changed to: {job.status}",
            detail=StatusChangeDetail(from_status=previous, to_status=job.status),
        )
    return job


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: int,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.DELETE)),
    db: Session = Depends(get_db)
):
    """Delete a DRAFT or CANCELED job; linked orders are unlinked, not deleted."""
    unlinked = job_service.delete_job(db, job_id, actor_id=audit.actor_id)
    reason = "Job deleted"
    if unlinked:
        reason += f"; unlinked orders {', '.join(str(order_id) for order_id in unlinked)}"
    audit.record(job_id, reason=reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============= MATERIALS & COSTS =============

@router.post("/{job_id}/materials", response_model=JobMaterialResponse, status_code=status.HTTP_201_CREATED)
async def add_job_material(
    job_id: int,
    data: JobMaterialCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.MATERIAL_ADDED)),
    db: Session = Depends(get_db)
):
    allocation = job_service.add_material_to_job(db, job_id, actor_id=audit.actor_id, **data.model_dump())
    audit.record(
        job_id,
        reason=f"Material {allocation.material_id} added",
        detail=MaterialChangeDetail(
            material_id=allocation.material_id,
            quantity_needed=allocation.quantity_needed,
            unit_cost=allocation.unit_cost,
            action="added",
        ),
    )
    return allocation


@router.patch("/{job_id}/materials/{material_id}", response_model=JobMaterialResponse)
async def update_job_material(
    job_id: int,
    material_id: int,
    data: JobMaterialUpdate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.MATERIAL_UPDATED)),
    db: Session = Depends(get_db)
):
    allocation = job_service.update_job_material(
        db, job_id, material_id, actor_id=audit.actor_id, **data.model_dump(exclude_unset=True)
    )
    audit.record(
        job_id,
        reason=f"Material {material_id} updated",
        detail=MaterialChangeDetail(
            material_id=allocation.material_id,
            quantity_needed=allocation.quantity_needed,
            unit_cost=allocation.unit_cost,
            action="updated",
        ),
    )
    return allocation


@router.delete("/{job_id}/materials/{material_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_job_material(
    job_id: int,
    material_id: int,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.MATERIAL_REMOVED)),
    db: Session = Depends(get_db)
):
    removed = job_service.remove_job_material(db, job_id, material_id, actor_id=audit.actor_id)
    audit.record(
        job_id,
        reason=f"Material {material_id} removed",
        detail=MaterialChangeDetail(action="removed", **removed),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{job_id}/costs", response_model=JobCostResponse, status_code=status.HTTP_201_CREATED)
async def add_job_cost(
    job_id: int,
    data: JobCostCreate,
    audit: AuditTrail = Depends(audit_trail(AuditEntityType.JOB, ChangeType.COST_ADDED)),
    db: Session = Depends(get_db)
):
    cost = job_service.add_job_cost(db, job_id, actor_id=audit.actor_id, **data.model_dump())
    audit.record(job_id, reason=f"{cost.category} cost of {cost.amount:.2f} added: {cost.description}")
    return cost
