"""
Quote versioning engine.

A quote reference (``QR-0001``) names one proposal; every revision of it is a separate
row with an increasing ``version_number`` and exactly one row per reference carries
``is_latest_version``. Cloning starts a brand new reference instead.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload, selectinload

from app.core.config import settings
from app.core.errors import NotFoundError, PreconditionError, ValidationError
from app.core.logging import get_logger
from app.db.models import (
    CompanySettings, Customer, Material, Quote, QuoteLineItem, QuoteStatus, status_value
)
from app.db.session import atomic

logger = get_logger(__name__)

# A new version can only be cut from a quote that is still being negotiated
LOCKED_QUOTE_STATUSES = {
    QuoteStatus.APPROVED.value,
    QuoteStatus.DECLINED.value,
    QuoteStatus.EXPIRED.value,
    QuoteStatus.CONVERTED.value,
}
TERMINAL_QUOTE_STATUSES = {
    QuoteStatus.CONVERTED.value,
    QuoteStatus.DECLINED.value,
    QuoteStatus.EXPIRED.value,
}
EXPIRABLE_QUOTE_STATUSES = {
    QuoteStatus.DRAFT.value,
    QuoteStatus.SENT.value,
    QuoteStatus.PENDING.value,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_quote_total(line_items: Iterable[Dict[str, Any]], vat_rate: Optional[float] = None) -> float:
    """Sum of quantity x unit price, plus VAT."""
    if vat_rate is None:
        vat_rate = settings.DEFAULT_VAT_RATE
    subtotal = sum(float(item["quantity"]) * float(item["unit_price"]) for item in line_items)
    return round(subtotal * (1 + vat_rate / 100), 2)


def next_quote_reference(db: Session) -> str:
    """Mint the next quote reference under a row lock on the company settings."""
    company = db.query(CompanySettings).with_for_update().first()
    if company is None:
        company = CompanySettings(
            quote_reference_prefix=settings.QUOTE_REFERENCE_PREFIX,
            last_quote_reference_seq=0,
        )
        db.add(company)
        db.flush()
    company.last_quote_reference_seq = (company.last_quote_reference_seq or 0) + 1
    return f"{company.quote_reference_prefix}-{company.last_quote_reference_seq:04d}"


def _validate_line_items(line_items: List[Dict[str, Any]]):
    if not line_items:
        raise ValidationError("At least one line item is required")
    for index, item in enumerate(line_items, start=1):
        if not (item.get("description") or "").strip():
            raise ValidationError(f"Line item {index} is missing a description")
        if item.get("quantity") is None or float(item["quantity"]) <= 0:
            raise ValidationError(f"Line item {index} must have a positive quantity")
        if item.get("unit_price") is None or float(item["unit_price"]) < 0:
            raise ValidationError(f"Line item {index} must have a non-negative unit price")


def _build_line_items(db: Session, line_items: List[Dict[str, Any]]) -> List[QuoteLineItem]:
    """Resolve material codes to ids; unknown codes are kept as unlinked items."""
    built = []
    for position, item in enumerate(line_items):
        material_id = item.get("material_id")
        code = item.get("material_code")
        if code and material_id is None:
            material = db.query(Material).filter(Material.code == code).first()
            if material:
                material_id = material.id
            else:
                logger.warning(f"Material code '{code}' not found; line item stored without material link")
        built.append(QuoteLineItem(
            position=position,
            description=item["description"],
            quantity=float(item["quantity"]),
            unit_price=float(item["unit_price"]),
            material_id=material_id,
        ))
    return built


def _copy_line_items(quote: Quote) -> List[Dict[str, Any]]:
    return [
        {
            "id": item.id,
            "description": item.description,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "material_id": item.material_id,
        }
        for item in quote.line_items
    ]


def load_quote(db: Session, quote_id: int, lock: bool = False) -> Quote:
    query = db.query(Quote).filter(Quote.id == quote_id)
    if lock:
        query = query.with_for_update()
    quote = query.first()
    if not quote:
        raise NotFoundError("Quote", quote_id)
    return quote


def _require_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer", customer_id)
    return customer


# ============= CREATE / READ =============

def create_quote(
    db: Session,
    *,
    customer_id: Optional[int],
    title: Optional[str],
    line_items: List[Dict[str, Any]],
    created_by_id: Optional[int] = None,
    description: Optional[str] = None,
    notes: Optional[str] = None,
    valid_until: Optional[datetime] = None,
    total_amount: Optional[float] = None,
    customer_reference: Optional[str] = None,
    contact_person: Optional[str] = None,
    contact_email: Optional[str] = None,
    contact_phone: Optional[str] = None,
    status: QuoteStatus = QuoteStatus.DRAFT,
) -> Quote:
    """Insert version 1 of a new quote reference."""
    if not customer_id:
        raise ValidationError("Customer is required")
    if not title or not title.strip():
        raise ValidationError("Title is required")
    _validate_line_items(line_items)

    with atomic(db):
        customer = _require_customer(db, customer_id)
        reference = next_quote_reference(db)
        quote = Quote(
            quote_reference=reference,
            quote_number=f"{reference}-v1",
            version_number=1,
            is_latest_version=True,
            parent_quote_id=None,
            title=title.strip(),
            description=description,
            notes=notes,
            status=status_value(status),
            customer_id=customer.id,
            created_by_id=created_by_id,
            customer_reference=customer_reference,
            contact_person=contact_person or customer.contact_person,
            contact_email=contact_email or customer.email,
            contact_phone=contact_phone or customer.phone,
            valid_until=valid_until or _now() + timedelta(days=settings.QUOTE_VALIDITY_DAYS),
            total_amount=total_amount if total_amount is not None else calculate_quote_total(line_items),
        )
        quote.line_items = _build_line_items(db, line_items)
        db.add(quote)
        db.flush()

    logger.info(
        f"Quote {quote.quote_number} created",
        extra={"action": "quote.create", "entity_type": "quote", "entity_id": quote.id, "user_id": created_by_id},
    )
    return quote


def get_quote(db: Session, quote_id: int) -> Quote:
    return load_quote(db, quote_id)


def list_quotes(
    db: Session,
    latest_only: bool = True,
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Quote]:
    query = db.query(Quote).options(selectinload(Quote.line_items))
    if latest_only:
        query = query.filter(Quote.is_latest_version.is_(True))
    if status:
        query = query.filter(Quote.status == status)
    if customer_id:
        query = query.filter(Quote.customer_id == customer_id)
    return (
        query.order_by(Quote.quote_reference.desc(), Quote.version_number.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_quote_history_by_reference(db: Session, quote_reference: str) -> List[Quote]:
    """All versions sharing a reference, oldest first."""
    versions = (
        db.query(Quote)
        .options(selectinload(Quote.line_items))
        .filter(Quote.quote_reference == quote_reference)
        .order_by(Quote.version_number.asc())
        .all()
    )
    if not versions:
        raise NotFoundError("Quote reference", quote_reference)
    return versions


# ============= VERSIONING =============

def create_quote_version(
    db: Session,
    parent_id: int,
    *,
    change_reason: Optional[str],
    actor_id: Optional[int] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    notes: Optional[str] = None,
    line_items: Optional[List[Dict[str, Any]]] = None,
    total_amount: Optional[float] = None,
    valid_until: Optional[datetime] = None,
    status: Optional[QuoteStatus] = None,
) -> Quote:
    """
    Cut a new version of an open quote.

    Every existing row of the reference loses the latest flag and the new row gets
    ``max(version_number) + 1``, all in one transaction.
    """
    if status is not None and status_value(status) == QuoteStatus.CONVERTED.value:
        raise PreconditionError("Quotes can only become CONVERTED by converting them to an order")
    if line_items is not None:
        _validate_line_items(line_items)

    with atomic(db):
        parent = load_quote(db, parent_id, lock=True)
        if parent.status in LOCKED_QUOTE_STATUSES:
            raise PreconditionError(
                f"Cannot create a new version of a {parent.status} quote. Clone it instead.",
                current_status=parent.status,
            )

        lineage = (
            db.query(Quote)
            .filter(Quote.quote_reference == parent.quote_reference)
            .with_for_update()
            .all()
        )
        next_version = max(row.version_number for row in lineage) + 1
        for row in lineage:
            row.is_latest_version = False
        # Clear the latest flag before the new row claims it
        db.flush()

        items = line_items if line_items is not None else _copy_line_items(parent)
        if total_amount is not None:
            total = total_amount
        elif line_items is not None:
            total = calculate_quote_total(line_items)
        else:
            total = parent.total_amount

        version = Quote(
            quote_reference=parent.quote_reference,
            quote_number=f"{parent.quote_reference}-v{next_version}",
            version_number=next_version,
            is_latest_version=True,
            parent_quote_id=parent.id,
            change_reason=change_reason,
            title=(title or parent.title).strip(),
            description=description if description is not None else parent.description,
            notes=notes if notes is not None else parent.notes,
            status=status_value(status) if status else parent.status,
            customer_id=parent.customer_id,
            created_by_id=actor_id or parent.created_by_id,
            customer_reference=parent.customer_reference,
            contact_person=parent.contact_person,
            contact_email=parent.contact_email,
            contact_phone=parent.contact_phone,
            valid_until=valid_until or parent.valid_until,
            total_amount=total,
        )
        version.line_items = _build_line_items(db, items)
        db.add(version)
        db.flush()

    logger.info(
        f"Quote {version.quote_number} created from {parent.quote_number}",
        extra={"action": "quote.new_version", "entity_type": "quote", "entity_id": version.id, "user_id": actor_id},
    )
    return version


def clone_quote(
    db: Session,
    source_id: int,
    *,
    actor_id: Optional[int],
    customer_id: Optional[int] = None,
    title: Optional[str] = None,
    total_amount: Optional[float] = None,
    adjustments: Optional[Dict[Any, Dict[str, Any]]] = None,
) -> Quote:
    """
    Copy a quote into a new, independent DRAFT lineage at version 1.

    ``adjustments`` maps a source line item id to replacement fields
    (``description``, ``quantity``, ``unit_price``). The source lineage is untouched.
    """
    adjustments = {int(key): value for key, value in (adjustments or {}).items()}

    with atomic(db):
        source = load_quote(db, source_id)
        if customer_id and customer_id != source.customer_id:
            _require_customer(db, customer_id)
        target_customer_id = customer_id or source.customer_id

        items = []
        adjusted = False
        for item in _copy_line_items(source):
            change = adjustments.get(item.pop("id"))
            if change:
                adjusted = True
                for field in ("description", "quantity", "unit_price"):
                    if change.get(field) is not None:
                        item[field] = change[field]
            items.append(item)

        if total_amount is not None:
            total = total_amount
        elif adjusted:
            total = calculate_quote_total(items)
        else:
            total = source.total_amount

        reference = next_quote_reference(db)
        clone = Quote(
            quote_reference=reference,
            quote_number=f"{reference}-v1",
            version_number=1,
            is_latest_version=True,
            parent_quote_id=None,
            change_reason=f"Cloned from {source.quote_number}",
            title=title or f"{source.title} (Copy)",
            description=source.description,
            notes=source.notes,
            status=QuoteStatus.DRAFT.value,
            customer_id=target_customer_id,
            created_by_id=actor_id,
            customer_reference=source.customer_reference,
            contact_person=source.contact_person,
            contact_email=source.contact_email,
            contact_phone=source.contact_phone,
            valid_until=_now() + timedelta(days=settings.QUOTE_VALIDITY_DAYS),
            total_amount=total,
        )
        clone.line_items = _build_line_items(db, items)
        db.add(clone)
        db.flush()

    logger.info(
        f"Quote {source.quote_number} cloned as {clone.quote_number}",
        extra={"action": "quote.clone", "entity_type": "quote", "entity_id": clone.id, "user_id": actor_id},
    )
    return (
        db.query(Quote)
        .options(joinedload(Quote.customer), selectinload(Quote.line_items))
        .filter(Quote.id == clone.id)
        .one()
    )


# ============= UPDATES =============

def update_draft_quote(
    db: Session,
    quote_id: int,
    *,
    actor_id: Optional[int] = None,
    **changes: Any,
) -> Quote:
    """Edit a DRAFT quote in place. ``line_items`` replaces every item."""
    line_items = changes.pop("line_items", None)
    total_amount = changes.pop("total_amount", None)
    if line_items is not None:
        _validate_line_items(line_items)

    with atomic(db):
        quote = load_quote(db, quote_id, lock=True)
        if quote.status != QuoteStatus.DRAFT.value:
            raise PreconditionError(
                "Only DRAFT quotes can be edited. Create a new version instead.",
                current_status=quote.status,
            )
        for field in ("title", "description", "notes", "valid_until", "customer_reference",
                      "contact_person", "contact_email", "contact_phone"):
            if changes.get(field) is not None:
                setattr(quote, field, changes[field])
        if line_items is not None:
            quote.line_items = _build_line_items(db, line_items)
            quote.total_amount = total_amount if total_amount is not None else calculate_quote_total(line_items)
        elif total_amount is not None:
            quote.total_amount = total_amount
        db.flush()

    logger.info(
        f"Quote {quote.quote_number} updated",
        extra={"action": "quote.update", "entity_type": "quote", "entity_id": quote.id, "user_id": actor_id},
    )
    return quote


def update_quote_status(
    db: Session,
    quote_id: int,
    new_status: QuoteStatus,
    *,
    actor_id: Optional[int] = None,
):
    """Returns ``(quote, previous_status)``; setting the current status is a no-op."""
    target = status_value(new_status)

    with atomic(db):
        quote = load_quote(db, quote_id, lock=True)
        previous = quote.status
        if previous == target:
            return quote, previous
        if target == QuoteStatus.CONVERTED.value:
            raise PreconditionError("Quotes can only become CONVERTED by converting them to an order")
        if previous in TERMINAL_QUOTE_STATUSES:
            raise PreconditionError(
                f"Quote is {previous} and can no longer change status. Consider cloning it.",
                current_status=previous,
            )
        quote.status = target
        if target == QuoteStatus.SENT.value:
            quote.sent_at = _now()
        db.flush()

    logger.info(
        f"Quote {quote.quote_number} status {previous} -> {target}",
        extra={"action": "quote.status", "entity_type": "quote", "entity_id": quote.id, "user_id": actor_id},
    )
    return quote, previous


def expire_stale_quotes(db: Session, now: Optional[datetime] = None):
    """Move open quotes whose validity has lapsed to EXPIRED. Returns ``[(quote, previous_status)]``."""
    now = now or _now()
    with atomic(db):
        stale = (
            db.query(Quote)
            .filter(
                Quote.status.in_(EXPIRABLE_QUOTE_STATUSES),
                Quote.valid_until.isnot(None),
                Quote.valid_until < now,
            )
            .with_for_update()
            .all()
        )
        expired = []
        for quote in stale:
            expired.append((quote, quote.status))
            quote.status = QuoteStatus.EXPIRED.value
        db.flush()

    if expired:
        logger.info(f"Expired {len(expired)} stale quotes", extra={"action": "quote.expire"})
    return expired
