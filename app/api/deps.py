"""
Shared route dependencies: the audit sink and the per-route audit recorder.
"""
from typing import Optional

from fastapi import BackgroundTasks, Depends, Request

from app.core.rbac import require_operator
from app.db.models import AuditEntityType
from app.db.session import SessionLocal
from app.services.audit_trail import (
    AuditDetail, AuditEntry, AuditSink, ChangeType, DatabaseAuditSink, audit_context
)

_default_sink = DatabaseAuditSink(SessionLocal)


def get_audit_sink() -> AuditSink:
    return _default_sink


class AuditTrail:
    """
    Records one audit entry for the current request.

    Handlers call ``record`` only after their operation has committed; the write is
    deferred to a background task so it runs after the response is produced.
    """

    def __init__(
        self,
        entity_type: AuditEntityType,
        change_type: ChangeType,
        sink: AuditSink,
        background_tasks: BackgroundTasks,
        actor_id: Optional[int],
        request: Request,
    ):
        self.entity_type = entity_type
        self.change_type = change_type
        self.sink = sink
        self.background_tasks = background_tasks
        self.actor_id = actor_id
        self.request = request

    def record(
        self,
        entity_id: int,
        reason: Optional[str] = None,
        detail: Optional[AuditDetail] = None,
        change_type: Optional[ChangeType] = None,
        entity_type: Optional[AuditEntityType] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            entity_type=entity_type or self.entity_type,
            entity_id=entity_id,
            change_type=change_type or self.change_type,
            context=audit_context(self.actor_id, reason=reason, request=self.request),
            detail=detail,
        )
        self.background_tasks.add_task(self.sink.record, entry)
        return entry


def audit_trail(entity_type: AuditEntityType, change_type: ChangeType):
    """Dependency factory binding a route to one (entity type, change type) pair."""

    def dependency(
        request: Request,
        background_tasks: BackgroundTasks,
        user_context: dict = Depends(require_operator),
        sink: AuditSink = Depends(get_audit_sink),
    ) -> AuditTrail:
        return AuditTrail(
            entity_type=entity_type,
            change_type=change_type,
            sink=sink,
            background_tasks=background_tasks,
            actor_id=user_context["user_id"],
            request=request,
        )

    return dependency
