from __future__ import annotations

from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from queuematic.models import AuditLog, AuthEvent

AUDIT_PAGE_LIMIT = 200


class AuditAction(str, Enum):
    AUTH_LOGIN = 'AUTH_LOGIN'
    AUTH_LOGOUT = 'AUTH_LOGOUT'
    TICKET_CALLED = 'TICKET_CALLED'
    TICKET_COMPLETED = 'TICKET_COMPLETED'
    TICKET_CANCELLED = 'TICKET_CANCELLED'
    STALE_TICKETS_CANCELLED = 'STALE_TICKETS_CANCELLED'
    COUNTER_SESSION_STARTED = 'COUNTER_SESSION_STARTED'
    COUNTER_SESSION_ENDED = 'COUNTER_SESSION_ENDED'
    BRANCH_CREATED = 'BRANCH_CREATED'
    BRANCH_UPDATED = 'BRANCH_UPDATED'
    COUNTER_CREATED = 'COUNTER_CREATED'
    COUNTER_UPDATED = 'COUNTER_UPDATED'
    USER_CREATED = 'USER_CREATED'
    USER_UPDATED = 'USER_UPDATED'


def log_auth_event(
    db: Session,
    *,
    attempted_username: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    principal_id: int | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_username=attempted_username,
            success=success,
            failure_reason=failure_reason,
            principal_id=principal_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: AuditAction,
    counter_session_id: int | None = None,
    ticket_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=AuditAction(action).value,
            counter_session_id=counter_session_id,
            ticket_id=ticket_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def list_audit_entries(
    db: Session,
    *,
    ticket_id: int | None = None,
    counter_session_id: int | None = None,
    actor_principal_id: int | None = None,
    limit: int = 50,
) -> list[AuditLog]:
    """Newest audit rows first, optionally narrowed to one ticket, session or actor."""
    stmt = select(AuditLog)
    if ticket_id is not None:
        stmt = stmt.where(AuditLog.ticket_id == ticket_id)
    if counter_session_id is not None:
        stmt = stmt.where(AuditLog.counter_session_id == counter_session_id)
    if actor_principal_id is not None:
        stmt = stmt.where(AuditLog.actor_principal_id == actor_principal_id)
    stmt = stmt.order_by(AuditLog.id.desc()).limit(max(1, min(limit, AUDIT_PAGE_LIMIT)))
    return list(db.execute(stmt).scalars())
