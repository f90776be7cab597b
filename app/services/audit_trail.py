"""
Append-only audit trail for quotes, orders and jobs.

Business operations never write audit rows themselves. The HTTP boundary hands an
``AuditEntry`` to an ``AuditSink`` once the operation has committed; the sink writes
the row on its own session and swallows (but logs) every failure, so a broken audit
write can never change the outcome of the operation it describes.
"""
import enum
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models import AuditEntityType, AuditRecord, Job, Order, Quote

logger = get_logger(__name__)


class ChangeType(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    CLONE = "CLONE"
    NEW_VERSION = "NEW_VERSION"
    CONVERTED_TO_ORDER = "CONVERTED_TO_ORDER"
    CONVERTED_TO_JOB = "CONVERTED_TO_JOB"
    MATERIAL_ADDED = "MATERIAL_ADDED"
    MATERIAL_UPDATED = "MATERIAL_UPDATED"
    MATERIAL_REMOVED = "MATERIAL_REMOVED"
    COST_ADDED = "COST_ADDED"


ENTITY_MODELS = {
    AuditEntityType.QUOTE: Quote,
    AuditEntityType.ORDER: Order,
    AuditEntityType.JOB: Job,
}


# ============= DETAIL VARIANTS =============

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusChangeDetail(BaseModel):
    kind: Literal["status_change"] = "status_change"
    from_status: Optional[str] = None
    to_status: str


class MaterialChangeDetail(BaseModel):
    """Job material allocation change."""
    kind: Literal["material_change"] = "material_change"
    material_id: int
    quantity_needed: Optional[float] = None
    unit_cost: Optional[float] = None
    action: Literal["added", "updated", "removed"]
    timestamp: datetime = Field(default_factory=_utcnow)


class CustomerApprovalDetail(BaseModel):
    """Customer sign-off captured with an order status change."""
    kind: Literal["customer_approval"] = "customer_approval"
    approved: bool
    signature: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


AuditDetail = Annotated[
    Union[StatusChangeDetail, MaterialChangeDetail, CustomerApprovalDetail],
    Field(discriminator="kind"),
]


# ============= CONTEXT & ENTRY =============

class AuditContext(BaseModel):
    actor_user_id: Optional[int] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def audit_context(actor_id: Optional[int], reason: Optional[str] = None, request=None) -> AuditContext:
    """Capture who is acting (and from where) at the time of the call."""
    ip_address = None
    user_agent = None
    if request is not None:
        ip_address = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
    return AuditContext(actor_user_id=actor_id, reason=reason, ip_address=ip_address, user_agent=user_agent)


class AuditEntry(BaseModel):
    entity_type: AuditEntityType
    entity_id: int
    change_type: ChangeType
    context: AuditContext = Field(default_factory=AuditContext)
    detail: Optional[AuditDetail] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def snapshot_entity(entity) -> Dict[str, Any]:
    """Column-level copy of an ORM row, safe to store as JSON."""
    return {
        column.name: _jsonable(getattr(entity, column.key, None))
        for column in entity.__table__.columns
    }


# ============= SINKS =============

class AuditSink(ABC):
    """Destination for audit entries. ``record`` must never raise."""

    @abstractmethod
    def record(self, entry: AuditEntry) -> Optional[int]:
        pass


class DatabaseAuditSink(AuditSink):
    """Writes one ``AuditRecord`` per entry on a dedicated session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, entry: AuditEntry) -> Optional[int]:
        try:
            db = self.session_factory()
        except Exception:
            logger.exception(
                f"Audit write failed for {entry.entity_type.value} {entry.entity_id} ({entry.change_type.value})",
                extra={"entity_type": entry.entity_type.value, "entity_id": entry.entity_id,
                       "change_type": entry.change_type.value},
            )
            return None

        try:
            entity = db.get(ENTITY_MODELS[entry.entity_type], entry.entity_id)
            record = AuditRecord(
                entity_type=entry.entity_type.value,
                entity_id=entry.entity_id,
                change_type=entry.change_type.value,
                actor_user_id=entry.context.actor_user_id,
                reason=entry.context.reason,
                entity_status=getattr(entity, "status", None) if entity is not None else None,
                snapshot=snapshot_entity(entity) if entity is not None else None,
                detail=entry.detail.model_dump(mode="json") if entry.detail is not None else None,
                ip_address=entry.context.ip_address,
                user_agent=entry.context.user_agent,
            )
            db.add(record)
            db.commit()
            logger.info(
                f"Audit recorded: {entry.change_type.value} on {entry.entity_type.value} {entry.entity_id}",
                extra={"user_id": entry.context.actor_user_id, "entity_type": entry.entity_type.value,
                       "entity_id": entry.entity_id, "change_type": entry.change_type.value},
            )
            return record.id
        except Exception:
            db.rollback()
            logger.exception(
                f"Audit write failed for {entry.entity_type.value} {entry.entity_id} ({entry.change_type.value})",
                extra={"entity_type": entry.entity_type.value, "entity_id": entry.entity_id,
                       "change_type": entry.change_type.value},
            )
            return None
        finally:
            db.close()
