"""
Order lifecycle: direct creation, state machine and reads.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, PreconditionError, ValidationError
from app.core.logging import get_logger
from app.db.models import Customer, Order, OrderStatus, OrderType, PaymentTerms, status_value
from app.db.session import atomic
from app.services.conversion import split_vat

logger = get_logger(__name__)

# IN_PRODUCTION is only reachable through conversion or from ON_HOLD with a linked job
ORDER_TRANSITIONS: Dict[str, set] = {
    OrderStatus.DRAFT.value: {
        OrderStatus.PENDING_APPROVAL.value, OrderStatus.APPROVED.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.PENDING_APPROVAL.value: {
        OrderStatus.DRAFT.value, OrderStatus.APPROVED.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.APPROVED.value: {
        OrderStatus.ON_HOLD.value, OrderStatus.CANCELLED.value, OrderStatus.PENDING_APPROVAL.value,
    },
    OrderStatus.IN_PRODUCTION.value: {
        OrderStatus.ON_HOLD.value, OrderStatus.READY_FOR_DELIVERY.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.ON_HOLD.value: {
        OrderStatus.APPROVED.value, OrderStatus.IN_PRODUCTION.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.READY_FOR_DELIVERY.value: {
        OrderStatus.COMPLETED.value, OrderStatus.ON_HOLD.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def load_order(db: Session, order_id: int, lock: bool = False) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if lock:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def create_order(
    db: Session,
    *,
    project_title: Optional[str],
    customer_name: Optional[str],
    contact_person: Optional[str],
    project_value: Optional[float],
    actor_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    contact_email: Optional[str] = None,
    contact_phone: Optional[str] = None,
    quote_ref: Optional[str] = None,
    lead_time_weeks: Optional[int] = None,
    items: Optional[List[Dict[str, Any]]] = None,
    vat_rate: Optional[float] = None,
    currency: Optional[str] = None,
    payment_terms: Optional[PaymentTerms] = None,
    notes: Optional[str] = None,
) -> Order:
    """Create a DRAFT order directly; ``project_value`` is the VAT-inclusive total."""
    missing = [
        name for name, value in (
            ("project title", project_title),
            ("customer name", customer_name),
            ("contact person", contact_person),
        ) if not value or not str(value).strip()
    ]
    if missing:
        raise ValidationError("Missing required order fields", details=", ".join(missing))
    if not project_value:
        raise ValidationError("Project value must be non-zero")

    if vat_rate is None:
        vat_rate = settings.DEFAULT_VAT_RATE
    total = round(float(project_value), 2)
    sub_total, total_tax = split_vat(total, vat_rate)

    with atomic(db):
        customer = None
        if customer_id:
            customer = db.get(Customer, customer_id)
            if not customer:
                raise NotFoundError("Customer", customer_id)

        order = Order(
            project_title=project_title.strip(),
            quote_ref=quote_ref,
            order_type=(OrderType.CUSTOMER_LINKED if customer else OrderType.INTERNAL).value,
            status=OrderStatus.DRAFT.value,
            customer_id=customer.id if customer else None,
            customer_name=customer_name.strip(),
            contact_person=contact_person.strip(),
            contact_email=contact_email,
            contact_phone=contact_phone,
            project_value=total,
            lead_time_weeks=lead_time_weeks,
            items=items or [],
            currency=currency or settings.DEFAULT_CURRENCY,
            vat_rate=vat_rate,
            sub_total=sub_total,
            total_tax=total_tax,
            total_amount=total,
            payment_terms=status_value(payment_terms)
            or (customer.payment_terms if customer else None)
            or PaymentTerms.THIRTY_DAYS.value,
            notes=notes,
            created_by_id=actor_id,
            project_owner_id=actor_id,
        )
        db.add(order)
        db.flush()

    logger.info(
        f"Order {order.id} created",
        extra={"action": "order.create", "entity_type": "order", "entity_id": order.id, "user_id": actor_id},
    )
    return order


def update_order_status(db: Session, order_id: int, new_status: OrderStatus, *, actor_id: Optional[int] = None):
    """Apply one state-machine step. Returns ``(order, previous_status)``."""
    target = status_value(new_status)

    with atomic(db):
        order = load_order(db, order_id, lock=True)
        previous = order.status
        if previous == target:
            return order, previous

        allowed = ORDER_TRANSITIONS.get(previous, set())
        if target not in allowed:
            raise PreconditionError(
                f"Invalid status transition from {previous} to {target}",
                current_status=previous,
            )
        if target == OrderStatus.IN_PRODUCTION.value and order.job_id is None:
            raise PreconditionError(
                "Order must be converted to a job before entering production",
                current_status=previous,
            )
        order.status = target
        db.flush()

    logger.info(
        f"Order {order.id} status {previous} -> {target}",
        extra={"action": "order.status", "entity_type": "order", "entity_id": order.id, "user_id": actor_id},
    )
    return order, previous


def get_order(db: Session, order_id: int) -> Order:
    return load_order(db, order_id)


def list_orders(
    db: Session,
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Order]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()


def list_available_orders(db: Session) -> List[Order]:
    """Orders not yet linked to a job."""
    return (
        db.query(Order)
        .filter(
            Order.job_id.is_(None),
            Order.status.notin_([OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value]),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
