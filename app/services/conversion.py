"""
Conversion pipeline: APPROVED quote -> order -> job.

Each conversion runs its read-check-write sequence inside one transaction, with the
source row read under ``FOR UPDATE``. A failure anywhere rolls the whole step back.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, PreconditionError
from app.core.logging import get_logger
from app.db.models import (
    Customer, Job, JobStatus, Order, OrderStatus, OrderType, PaymentTerms, Quote, QuoteStatus
)
from app.db.session import atomic
from app.services.quotes import load_quote

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def split_vat(total: float, vat_rate: float) -> Tuple[float, float]:
    """Split a VAT-inclusive total into ``(sub_total, total_tax)``."""
    sub_total = round(total / (1 + (vat_rate or 0) / 100), 2)
    return sub_total, round(total - sub_total, 2)


def _order_items_from_quote(quote: Quote):
    items = []
    for item in quote.line_items:
        items.append({
            "material_id": item.material_id,
            "material_code": item.material.code if item.material else None,
            "description": item.description,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total": item.line_total,
        })
    return items


def convert_quote_to_order(db: Session, quote_id: int, actor_id: Optional[int]) -> Tuple[Order, Quote]:
    """
    Create an APPROVED order from an APPROVED quote and mark the quote CONVERTED.

    Both writes commit together or not at all.
    """
    with atomic(db):
        quote = load_quote(db, quote_id, lock=True)
        if quote.status != QuoteStatus.APPROVED.value:
            raise PreconditionError(
                f"Only APPROVED quotes can be converted. Current status is {quote.status}.",
                current_status=quote.status,
            )

        customer = db.get(Customer, quote.customer_id)
        if not customer:
            raise NotFoundError("Customer", quote.customer_id)

        vat_rate = settings.DEFAULT_VAT_RATE
        total = round(quote.total_amount or 0.0, 2)
        sub_total, total_tax = split_vat(total, vat_rate)

        order = Order(
            project_title=quote.title,
            quote_ref=quote.quote_number,
            order_type=OrderType.CUSTOMER_LINKED.value,
            status=OrderStatus.APPROVED.value,
            customer_id=customer.id,
            customer_name=customer.name,
            contact_person=quote.contact_person or customer.contact_person,
            contact_email=quote.contact_email or customer.email,
            contact_phone=quote.contact_phone or customer.phone,
            project_value=total,
            lead_time_weeks=settings.DEFAULT_LEAD_TIME_WEEKS,
            items=_order_items_from_quote(quote),
            currency=settings.DEFAULT_CURRENCY,
            vat_rate=vat_rate,
            sub_total=sub_total,
            total_tax=total_tax,
            total_amount=total,
            payment_terms=customer.payment_terms or PaymentTerms.THIRTY_DAYS.value,
            notes=f"Converted from Quote: {quote.quote_number} v{quote.version_number}",
            source_quote_id=quote.id,
            created_by_id=actor_id,
            project_owner_id=quote.created_by_id or actor_id,
        )
        db.add(order)
        quote.status = QuoteStatus.CONVERTED.value
        db.flush()

    logger.info(
        f"Quote {quote.quote_number} converted to order {order.id}",
        extra={"action": "quote.convert", "entity_type": "quote", "entity_id": quote.id, "user_id": actor_id},
    )
    return order, quote


def convert_order_to_job(db: Session, order_id: int, actor_id: Optional[int]) -> Tuple[Job, Order]:
    """
    Create an ACTIVE job for an APPROVED order and move the order to IN_PRODUCTION.

    An order converts at most once: a second attempt reports the existing job id.
    """
    with atomic(db):
        order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
        if not order:
            raise NotFoundError("Order", order_id)

        if order.job_id is not None:
            raise PreconditionError(
                "Order has already been converted to a job",
                status_code=409,
                existing_job_id=order.job_id,
            )
        if order.status != OrderStatus.APPROVED.value:
            raise PreconditionError(
                "Order must be approved before converting to job",
                current_status=order.status,
            )

        customer = db.get(Customer, order.customer_id) if order.customer_id else None
        if not customer:
            raise PreconditionError("Order has no linked customer; a job requires a customer")

        now = _now()
        if order.lead_time_weeks:
            expected_end_date = now + timedelta(days=order.lead_time_weeks * 7)
        else:
            expected_end_date = now + timedelta(days=settings.DEFAULT_JOB_DURATION_DAYS)

        job = Job(
            title=order.project_title,
            description=order.notes or f"Job created from order {order.quote_ref or order.id}",
            status=JobStatus.ACTIVE.value,
            customer_id=customer.id,
            start_date=now,
            expected_end_date=expected_end_date,
        )
        db.add(job)
        db.flush()

        # Conditional write: only an unconverted APPROVED order may take the link
        linked = (
            db.query(Order)
            .filter(
                Order.id == order.id,
                Order.job_id.is_(None),
                Order.status == OrderStatus.APPROVED.value,
            )
            .update(
                {Order.job_id: job.id, Order.status: OrderStatus.IN_PRODUCTION.value},
                synchronize_session="fetch",
            )
        )
        if linked != 1:
            # Another request linked the order after our read; report its job
            winner = db.query(Order.job_id).filter(Order.id == order.id).scalar()
            raise PreconditionError(
                "Order has already been converted to a job",
                status_code=409,
                existing_job_id=winner,
            )

    logger.info(
        f"Order {order.id} converted to job {job.id}",
        extra={"action": "order.convert", "entity_type": "order", "entity_id": order.id, "user_id": actor_id},
    )
    return job, order
