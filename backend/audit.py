# audit.py — Audit trail helper
# Rows are added to the caller's session so they commit (or roll back)
# together with the change they describe.
from typing import Optional, Dict, Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, AuditEventType, User


def request_id_of(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    return getattr(request.state, "request_id", None)


def record_audit(
    db: AsyncSession,
    event_type: AuditEventType,
    actor: Optional[User],
    resource_type: Optional[str] = None,
    resource_id=None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    entry = AuditLog(
        event_type=event_type,
        user_id=actor.id if actor is not None else None,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
        request_id=request_id_of(request),
    )
    db.add(entry)
    return entry
