"""
SQLAlchemy ORM models for JobFlow OS.

Statuses are stored as plain strings holding the value of the matching ``str`` enum,
which keeps the schema portable between Postgres and SQLite.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, JSON, UniqueConstraint, Index, event
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, expression
import enum

from app.db.session import Base


# ============= ENUMS =============

class UserRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


class QuoteStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


class OrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    IN_PRODUCTION = "IN_PRODUCTION"
    ON_HOLD = "ON_HOLD"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OrderType(str, enum.Enum):
    CUSTOMER_LINKED = "CUSTOMER_LINKED"
    INTERNAL = "INTERNAL"


class JobStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class PaymentTerms(str, enum.Enum):
    IMMEDIATE = "IMMEDIATE"
    FOURTEEN_DAYS = "FOURTEEN_DAYS"
    THIRTY_DAYS = "THIRTY_DAYS"
    SIXTY_DAYS = "SIXTY_DAYS"
    CUSTOM = "CUSTOM"


class AuditEntityType(str, enum.Enum):
    QUOTE = "quote"
    ORDER = "order"
    JOB = "job"


def status_value(value) -> str:
    """Return the stored string for an enum member or raw string."""
    if value is None:
        return None
    if hasattr(value, "value"):
        return value.value
    return str(value)


# ============= AUTH =============

class User(Base):
    """User accounts."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(255))
    role = Column(String(20), default=UserRole.VIEWER.value, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True))


# ============= CUSTOMERS & CATALOG =============

class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(50))
    contact_person = Column(String(255))
    address = Column(Text)
    payment_terms = Column(String(30), default=PaymentTerms.THIRTY_DAYS.value)
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    quotes = relationship("Quote", back_populates="customer")
    orders = relationship("Order", back_populates="customer")
    jobs = relationship("Job", back_populates="customer")


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    materials = relationship("Material", back_populates="supplier")


class Material(Base):
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    unit = Column(String(30), default="unit")
    unit_price = Column(Float, default=0.0, nullable=False)
    current_stock = Column(Float, default=0.0, nullable=False)
    min_stock = Column(Float, default=0.0)
    reorder_point = Column(Float, default=0.0)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    supplier = relationship("Supplier", back_populates="materials")


class CompanySettings(Base):
    """Single-row settings table holding the quote reference sequence."""
    __tablename__ = "company_settings"

    id = Column(Integer, primary_key=True)
    quote_reference_prefix = Column(String(20), default="QR", nullable=False)
    last_quote_reference_seq = Column(Integer, default=0, nullable=False)


# ============= QUOTES =============

class Quote(Base):
    """
    One version of a priced proposal.

    Versions of the same proposal share ``quote_reference``; ``parent_quote_id`` links a
    version to its predecessor and exactly one row per reference is the latest.
    """
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    quote_number = Column(String(60), nullable=False, unique=True)
    quote_reference = Column(String(50), nullable=False, index=True)
    version_number = Column(Integer, nullable=False, default=1)
    is_latest_version = Column(Boolean, nullable=False, default=True)
    parent_quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    change_reason = Column(Text)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    notes = Column(Text)
    status = Column(String(20), nullable=False, default=QuoteStatus.DRAFT.value, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    customer_reference = Column(String(255))
    contact_person = Column(String(255))
    contact_email = Column(String(255))
    contact_phone = Column(String(50))
    valid_until = Column(DateTime(timezone=True))
    sent_at = Column(DateTime(timezone=True))
    total_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    customer = relationship("Customer", back_populates="quotes")
    created_by = relationship("User")
    parent_quote = relationship("Quote", remote_side=[id], backref="child_quotes")
    line_items = relationship(
        "QuoteLineItem",
        back_populates="quote",
        order_by="QuoteLineItem.position",
        cascade="all, delete-orphan",
    )
    orders = relationship("Order", back_populates="source_quote")

    __table_args__ = (
        UniqueConstraint('quote_reference', 'version_number', name='uq_quote_reference_version'),
        Index(
            'uq_quote_reference_latest',
            'quote_reference',
            unique=True,
            postgresql_where=expression.true() == is_latest_version,
            sqlite_where=expression.true() == is_latest_version,
        ),
    )


class QuoteLineItem(Base):
    __tablename__ = "quote_line_items"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)
    quantity = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=True)

    quote = relationship("Quote", back_populates="line_items")
    material = relationship("Material")

    @property
    def line_total(self) -> float:
        return round((self.quantity or 0) * (self.unit_price or 0), 2)


# ============= ORDERS =============

class Order(Base):
    """Customer-committed order; ``job_id`` is set once when converted to a job."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    project_title = Column(String(500), nullable=False)
    quote_ref = Column(String(60), index=True)
    order_type = Column(String(30), default=OrderType.CUSTOMER_LINKED.value)
    status = Column(String(30), nullable=False, default=OrderStatus.DRAFT.value, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    customer_name = Column(String(255), nullable=False)
    contact_person = Column(String(255))
    contact_phone = Column(String(50))
    contact_email = Column(String(255))
    project_value = Column(Float, default=0.0)
    lead_time_weeks = Column(Integer)
    items = Column(JSON, default=list)
    currency = Column(String(3), default="GBP")
    vat_rate = Column(Float, default=0.0)
    sub_total = Column(Float, default=0.0)
    total_tax = Column(Float, default=0.0)
    total_amount = Column(Float, default=0.0)
    payment_terms = Column(String(30), default=PaymentTerms.THIRTY_DAYS.value)
    notes = Column(Text)
    source_quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    project_owner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    customer = relationship("Customer", back_populates="orders")
    source_quote = relationship("Quote", back_populates="orders")
    job = relationship("Job", back_populates="orders")
    created_by = relationship("User", foreign_keys=[created_by_id])
    project_owner = relationship("User", foreign_keys=[project_owner_id])


# ============= JOBS =============

class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default=JobStatus.DRAFT.value, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    start_date = Column(DateTime(timezone=True))
    expected_end_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    customer = relationship("Customer", back_populates="jobs")
    # Deleting a job unlinks its orders; it never deletes them
    orders = relationship("Order", back_populates="job", passive_deletes=False)
    materials = relationship("JobMaterial", back_populates="job", cascade="all, delete-orphan")
    costs = relationship("JobCost", back_populates="job", cascade="all, delete-orphan")


class JobMaterial(Base):
    """Material allocated to a job."""
    __tablename__ = "job_materials"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    quantity_needed = Column(Float, nullable=False)
    quantity_used = Column(Float, nullable=False, default=0.0)
    unit_cost = Column(Float, nullable=False, default=0.0)
    total_cost = Column(Float, nullable=False, default=0.0)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("Job", back_populates="materials")
    material = relationship("Material")

    __table_args__ = (
        UniqueConstraint('job_id', 'material_id', name='uq_job_material'),
    )


class JobCost(Base):
    __tablename__ = "job_costs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    category = Column(String(50), default="OTHER")
    amount = Column(Float, nullable=False)
    cost_date = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("Job", back_populates="costs")


# ============= AUDIT TRAIL =============

class AuditRecord(Base):
    """Append-only change record for quotes, orders and jobs."""
    __tablename__ = "audit_records"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Integer, nullable=False)
    change_type = Column(String(50), nullable=False, index=True)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    reason = Column(Text)
    entity_status = Column(String(30))
    snapshot = Column(JSON)
    detail = Column(JSON)
    ip_address = Column(String(50))
    user_agent = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    actor = relationship("User")

    __table_args__ = (
        Index('ix_audit_records_entity', 'entity_type', 'entity_id', 'created_at'),
    )


class AuditRecordImmutableError(RuntimeError):
    pass


@event.listens_for(AuditRecord, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditRecordImmutableError(f"Audit record {target.id} is append-only and cannot be modified")


@event.listens_for(AuditRecord, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditRecordImmutableError(f"Audit record {target.id} is append-only and cannot be deleted")
