"""
Job management: direct creation, guarded deletion, status, materials and costs.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from app.core.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from app.core.logging import get_logger
from app.db.models import (
    Customer, Job, JobCost, JobMaterial, JobStatus, Material, Order, status_value
)
from app.db.session import atomic

logger = get_logger(__name__)

DELETABLE_JOB_STATUSES = {JobStatus.DRAFT.value, JobStatus.CANCELED.value}
TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED.value, JobStatus.CANCELED.value}


def load_job(db: Session, job_id: int, lock: bool = False) -> Job:
    query = db.query(Job).filter(Job.id == job_id)
    if lock:
        query = query.with_for_update()
    job = query.first()
    if not job:
        raise NotFoundError("Job", job_id)
    return job


def auto_customer_email(name: str) -> str:
    return f"{name.replace(' ', '.').lower()}_job_auto@example.com"


def _resolve_customer_for_order(db: Session, order: Order) -> Customer:
    """Order's own customer, else a match by name, then by email, else a new customer."""
    if order.customer_id:
        customer = db.get(Customer, order.customer_id)
        if customer:
            return customer

    customer = db.query(Customer).filter(Customer.name == order.customer_name).first()
    if customer is None and order.contact_email:
        customer = db.query(Customer).filter(Customer.email == order.contact_email).first()
    if customer is None:
        customer = Customer(
            name=order.customer_name,
            email=auto_customer_email(order.customer_name),
            contact_person=order.contact_person,
            phone=order.contact_phone,
        )
        db.add(customer)
        db.flush()
        logger.info(f"Auto-created customer {customer.id} for order {order.id}")
    return customer


# ============= CREATE / DELETE =============

def create_job(
    db: Session,
    *,
    title: Optional[str],
    expected_end_date: Optional[datetime],
    order_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    description: Optional[str] = None,
    status: Optional[JobStatus] = None,
    start_date: Optional[datetime] = None,
    actor_id: Optional[int] = None,
) -> Job:
    """
    Create a job directly, optionally linked to an order.

    The order link is written in the same transaction as the job.
    """
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if expected_end_date is None:
        raise ValidationError("Expected end date is required")
    if not order_id and not customer_id:
        raise ValidationError("Either an order or a customer is required")

    with atomic(db):
        order = None
        if order_id:
            order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
            if not order:
                raise NotFoundError("Order", order_id)
            if order.job_id is not None:
                raise PreconditionError(
                    "Order has already been converted to a job",
                    status_code=409,
                    existing_job_id=order.job_id,
                )

        if customer_id:
            customer = db.get(Customer, customer_id)
            if not customer:
                raise NotFoundError("Customer", customer_id)
        else:
            customer = _resolve_customer_for_order(db, order)

        job = Job(
            title=title.strip(),
            description=description,
            status=status_value(status) or JobStatus.DRAFT.value,
            customer_id=customer.id,
            start_date=start_date,
            expected_end_date=expected_end_date,
        )
        db.add(job)
        db.flush()

        if order is not None:
            order.job_id = job.id
            if not order.customer_id:
                order.customer_id = customer.id
            db.flush()

    logger.info(
        f"Job {job.id} created",
        extra={"action": "job.create", "entity_type": "job", "entity_id": job.id, "user_id": actor_id},
    )
    return job


def delete_job(db: Session, job_id: int, *, actor_id: Optional[int] = None) -> List[int]:
    """Delete a DRAFT or CANCELED job. Linked orders are unlinked; their ids are returned."""
    with atomic(db):
        job = load_job(db, job_id, lock=True)
        if job.status not in DELETABLE_JOB_STATUSES:
            raise PreconditionError(
                "Cannot delete job: Only DRAFT or CANCELED jobs can be deleted.",
                current_status=job.status,
            )
        unlinked = [order.id for order in job.orders]
        db.query(Order).filter(Order.job_id == job.id).update(
            {Order.job_id: None}, synchronize_session="fetch"
        )
        db.delete(job)
        db.flush()

    logger.info(
        f"Job {job_id} deleted; unlinked orders {unlinked}",
        extra={"action": "job.delete", "entity_type": "job", "entity_id": job_id, "user_id": actor_id},
    )
    return unlinked


# ============= STATUS & READS =============

def update_job_status(db: Session, job_id: int, new_status: JobStatus, *, actor_id: Optional[int] = None):
    """Returns ``(job, previous_status)``. COMPLETED and CANCELED jobs are final."""
    target = status_value(new_status)

    with atomic(db):
        job = load_job(db, job_id, lock=True)
        previous = job.status
        if previous == target:
            return job, previous
        if previous in TERMINAL_JOB_STATUSES:
            raise PreconditionError(
                f"Job is {previous} and can no longer change status",
                current_status=previous,
            )
        job.status = target
        if target in (JobStatus.ACTIVE.value, JobStatus.IN_PROGRESS.value) and job.start_date is None:
            job.start_date = datetime.now(timezone.utc)
        db.flush()

    logger.info(
        f"Job {job.id} status {previous} -> {target}",
        extra={"action": "job.status", "entity_type": "job", "entity_id": job.id, "user_id": actor_id},
    )
    return job, previous


def list_jobs(
    db: Session,
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Job], int]:
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status)
    if customer_id:
        query = query.filter(Job.customer_id == customer_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Job.title.ilike(pattern), Job.description.ilike(pattern)))
    total = query.count()
    jobs = (
        query.order_by(Job.created_at.desc(), Job.id.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
        .all()
    )
    return jobs, total


def get_job(db: Session, job_id: int) -> Job:
    job = (
        db.query(Job)
        .options(selectinload(Job.materials), selectinload(Job.costs), selectinload(Job.orders))
        .filter(Job.id == job_id)
        .first()
    )
    if not job:
        raise NotFoundError("Job", job_id)
    return job


def job_totals(job: Job) -> Dict[str, float]:
    material_cost = round(sum(m.total_cost or 0 for m in job.materials), 2)
    other_costs = round(sum(c.amount or 0 for c in job.costs), 2)
    return {
        "material_cost": material_cost,
        "other_costs": other_costs,
        "total_cost": round(material_cost + other_costs, 2),
        "order_value": round(sum(o.total_amount or 0 for o in job.orders), 2),
    }


# ============= MATERIALS =============

def _load_allocation(db: Session, job_id: int, material_id: int) -> JobMaterial:
    allocation = (
        db.query(JobMaterial)
        .filter(JobMaterial.job_id == job_id, JobMaterial.material_id == material_id)
        .with_for_update()
        .first()
    )
    if not allocation:
        raise NotFoundError("Job material", material_id, details=f"Material is not allocated to job {job_id}")
    return allocation


def add_material_to_job(
    db: Session,
    job_id: int,
    *,
    material_id: int,
    quantity_needed: float,
    unit_cost: Optional[float] = None,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> JobMaterial:
    if quantity_needed is None or quantity_needed <= 0:
        raise ValidationError("Quantity needed must be positive")

    with atomic(db):
        load_job(db, job_id)
        material = db.get(Material, material_id)
        if not material:
            raise NotFoundError("Material", material_id)
        exists = db.query(JobMaterial).filter(
            JobMaterial.job_id == job_id, JobMaterial.material_id == material_id
        ).first()
        if exists:
            raise ConflictError("Material already allocated to this job", job_material_id=exists.id)

        cost = unit_cost if unit_cost is not None else material.unit_price
        allocation = JobMaterial(
            job_id=job_id,
            material_id=material_id,
            quantity_needed=quantity_needed,
            quantity_used=0.0,
            unit_cost=cost,
            total_cost=round(quantity_needed * cost, 2),
            notes=notes,
        )
        db.add(allocation)
        db.flush()

    logger.info(
        f"Material {material_id} allocated to job {job_id}",
        extra={"action": "job.material_add", "entity_type": "job", "entity_id": job_id, "user_id": actor_id},
    )
    return allocation


def update_job_material(
    db: Session,
    job_id: int,
    material_id: int,
    *,
    quantity_needed: Optional[float] = None,
    quantity_used: Optional[float] = None,
    unit_cost: Optional[float] = None,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> JobMaterial:
    """Stock moves by the change in ``quantity_used``."""
    with atomic(db):
        allocation = _load_allocation(db, job_id, material_id)
        material = db.query(Material).filter(Material.id == material_id).with_for_update().first()

        if quantity_needed is not None:
            if quantity_needed <= 0:
                raise ValidationError("Quantity needed must be positive")
            allocation.quantity_needed = quantity_needed
        if unit_cost is not None:
            allocation.unit_cost = unit_cost
        if notes is not None:
            allocation.notes = notes

        if quantity_used is not None:
            if quantity_used < 0:
                raise ValidationError("Quantity used cannot be negative")
            delta = quantity_used - (allocation.quantity_used or 0)
            if material is not None and delta:
                if delta > (material.current_stock or 0):
                    logger.warning(
                        f"Material {material.code} usage on job {job_id} exceeds stock "
                        f"({delta} requested, {material.current_stock} available)"
                    )
                material.current_stock = (material.current_stock or 0) - delta
            allocation.quantity_used = quantity_used

        allocation.total_cost = round(allocation.quantity_needed * allocation.unit_cost, 2)
        db.flush()

    logger.info(
        f"Material {material_id} allocation updated on job {job_id}",
        extra={"action": "job.material_update", "entity_type": "job", "entity_id": job_id, "user_id": actor_id},
    )
    return allocation


def remove_job_material(db: Session, job_id: int, material_id: int, *, actor_id: Optional[int] = None) -> Dict[str, Any]:
    """Drop an allocation, returning any used quantity to stock. Returns the removed allocation's fields."""
    with atomic(db):
        allocation = _load_allocation(db, job_id, material_id)
        removed = allocation_snapshot(allocation)
        if allocation.quantity_used:
            material = db.query(Material).filter(Material.id == material_id).with_for_update().first()
            if material is not None:
                material.current_stock = (material.current_stock or 0) + allocation.quantity_used
        db.delete(allocation)
        db.flush()

    logger.info(
        f"Material {material_id} removed from job {job_id}",
        extra={"action": "job.material_remove", "entity_type": "job", "entity_id": job_id, "user_id": actor_id},
    )
    return removed


# ============= COSTS =============

def add_job_cost(
    db: Session,
    job_id: int,
    *,
    description: Optional[str],
    amount: Optional[float],
    category: str = "OTHER",
    cost_date: Optional[datetime] = None,
    actor_id: Optional[int] = None,
) -> JobCost:
    if not description or not description.strip():
        raise ValidationError("Cost description is required")
    if amount is None or amount <= 0:
        raise ValidationError("Cost amount must be positive")

    with atomic(db):
        load_job(db, job_id)
        cost = JobCost(
            job_id=job_id,
            description=description.strip(),
            category=(category or "OTHER").upper(),
            amount=round(amount, 2),
        )
        if cost_date is not None:
            cost.cost_date = cost_date
        db.add(cost)
        db.flush()

    logger.info(
        f"Cost of {cost.amount} added to job {job_id}",
        extra={"action": "job.cost_add", "entity_type": "job", "entity_id": job_id, "user_id": actor_id},
    )
    return cost


def allocation_snapshot(allocation: JobMaterial) -> Dict[str, Any]:
    return {
        "material_id": allocation.material_id,
        "quantity_needed": allocation.quantity_needed,
        "unit_cost": allocation.unit_cost,
    }
