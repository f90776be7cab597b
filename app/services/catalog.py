"""
Customer and material catalog.
"""
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.db.models import Customer, Material, PaymentTerms, Supplier, status_value
from app.db.session import atomic

logger = get_logger(__name__)


def create_customer(
    db: Session,
    *,
    name: str,
    email: str,
    phone: Optional[str] = None,
    contact_person: Optional[str] = None,
    address: Optional[str] = None,
    payment_terms: Optional[PaymentTerms] = None,
) -> Customer:
    if not name or not name.strip():
        raise ValidationError("Customer name is required")
    email = email.strip().lower()

    with atomic(db):
        if db.query(Customer).filter(Customer.email == email).first():
            raise ConflictError("A customer with this email already exists", details=email)
        customer = Customer(
            name=name.strip(),
            email=email,
            phone=phone,
            contact_person=contact_person,
            address=address,
            payment_terms=status_value(payment_terms) or PaymentTerms.THIRTY_DAYS.value,
        )
        db.add(customer)
        db.flush()

    logger.info(f"Customer {customer.id} created", extra={"action": "customer.create", "entity_id": customer.id})
    return customer


def get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer", customer_id)
    return customer


def list_customers(db: Session, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Customer]:
    query = db.query(Customer)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Customer.name.ilike(pattern), Customer.email.ilike(pattern)))
    return query.order_by(Customer.name.asc()).offset(offset).limit(limit).all()


def create_material(
    db: Session,
    *,
    code: str,
    name: str,
    unit_price: float,
    unit: str = "unit",
    current_stock: float = 0.0,
    min_stock: float = 0.0,
    reorder_point: float = 0.0,
    supplier_id: Optional[int] = None,
) -> Material:
    code = (code or "").strip().upper()
    if not code:
        raise ValidationError("Material code is required")
    if unit_price is None or unit_price < 0:
        raise ValidationError("Unit price must be non-negative")

    with atomic(db):
        if db.query(Material).filter(Material.code == code).first():
            raise ConflictError("A material with this code already exists", details=code)
        if supplier_id and not db.get(Supplier, supplier_id):
            raise NotFoundError("Supplier", supplier_id)
        material = Material(
            code=code,
            name=name.strip(),
            unit=unit,
            unit_price=unit_price,
            current_stock=current_stock,
            min_stock=min_stock,
            reorder_point=reorder_point,
            supplier_id=supplier_id,
        )
        db.add(material)
        db.flush()

    logger.info(f"Material {material.code} created", extra={"action": "material.create", "entity_id": material.id})
    return material


def list_materials(db: Session, search: Optional[str] = None, low_stock: bool = False) -> List[Material]:
    query = db.query(Material)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Material.code.ilike(pattern), Material.name.ilike(pattern)))
    if low_stock:
        query = query.filter(Material.current_stock <= Material.reorder_point)
    return query.order_by(Material.code.asc()).all()
