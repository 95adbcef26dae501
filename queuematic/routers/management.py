from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, require_admin
from queuematic.db import get_db
from queuematic.dependencies import get_client_ip, get_queue_engine
from queuematic.schemas import (
    AuditEntryOut,
    BranchIn,
    BranchOut,
    BranchUpdateIn,
    CounterIn,
    CounterOut,
    CounterSessionOut,
    CounterUpdateIn,
    EndSessionIn,
    PrincipalIn,
    PrincipalOut,
    PrincipalUpdateIn,
    StaleCleanupOut,
)
from queuematic.security.sessions import revoke_principal_sessions
from queuematic.services import admin_service
from queuematic.services.audit_service import AuditAction, list_audit_entries, log_audit
from queuematic.services.queue_engine import QueueEngine

router = APIRouter(prefix='/management', tags=['management'])


@router.get('/branches', response_model=list[BranchOut])
def list_branches(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return admin_service.list_branches(db)


@router.post('/branches', response_model=BranchOut, status_code=status.HTTP_201_CREATED)
def create_branch(
    payload: BranchIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    branch = admin_service.create_branch(db, name=payload.name, address=payload.address, phone=payload.phone)
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.BRANCH_CREATED,
        ip=get_client_ip(request),
        metadata={'branch_id': branch.id, 'name': branch.name},
    )
    db.commit()
    return branch


@router.patch('/branches/{branch_id}', response_model=BranchOut)
def update_branch(
    branch_id: int,
    payload: BranchUpdateIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    branch = admin_service.update_branch(db, branch_id=branch_id, **payload.model_dump(exclude_unset=True))
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.BRANCH_UPDATED,
        ip=get_client_ip(request),
        metadata={'branch_id': branch.id, **payload.model_dump(exclude_unset=True)},
    )
    db.commit()
    return branch


@router.get('/branches/{branch_id}/counters', response_model=list[CounterOut])
def list_counters(branch_id: int, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return admin_service.list_counters(db, branch_id=branch_id)


@router.post('/counters', response_model=CounterOut, status_code=status.HTTP_201_CREATED)
def create_counter(
    payload: CounterIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    counter = admin_service.create_counter(db, branch_id=payload.branch_id, number=payload.number)
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.COUNTER_CREATED,
        ip=get_client_ip(request),
        metadata={'counter_id': counter.id, 'branch_id': counter.branch_id, 'number': counter.number},
    )
    db.commit()
    return counter


@router.patch('/counters/{counter_id}', response_model=CounterOut)
def update_counter(
    counter_id: int,
    payload: CounterUpdateIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    counter = admin_service.update_counter(db, counter_id=counter_id, **payload.model_dump(exclude_unset=True))
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.COUNTER_UPDATED,
        ip=get_client_ip(request),
        metadata={'counter_id': counter.id, **payload.model_dump(exclude_unset=True)},
    )
    db.commit()
    return counter


@router.get('/users', response_model=list[PrincipalOut])
def list_users(
    branch_id: int | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return admin_service.list_users(db, branch_id=branch_id)


@router.post('/users', response_model=PrincipalOut, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: PrincipalIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    user = admin_service.create_user(
        db,
        username=payload.username,
        password=payload.password,
        role=payload.role,
        branch_id=payload.branch_id,
        full_name=payload.full_name,
    )
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.USER_CREATED,
        ip=get_client_ip(request),
        metadata={'principal_id': user.id, 'username': user.username, 'role': user.role.value},
    )
    db.commit()
    return user


@router.patch('/users/{principal_id}', response_model=PrincipalOut)
def update_user(
    principal_id: int,
    payload: PrincipalUpdateIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    changes = payload.model_dump(exclude_unset=True)
    user = admin_service.update_user(db, principal_id=principal_id, **changes)
    revoked = 0
    if changes.get('active') is False or payload.password is not None:
        revoked = revoke_principal_sessions(db, user.id)
    changes.pop('password', None)
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.USER_UPDATED,
        ip=get_client_ip(request),
        metadata={
            'principal_id': user.id,
            **changes,
            'password_reset': payload.password is not None,
            'sessions_revoked': revoked,
        },
    )
    db.commit()
    return user


@router.post('/sessions/{session_id}/terminate', response_model=CounterSessionOut)
def terminate_session(
    session_id: int,
    request: Request,
    payload: EndSessionIn | None = None,
    principal: Principal = Depends(require_admin),
    engine: QueueEngine = Depends(get_queue_engine),
):
    force = payload.force if payload else False
    return engine.end_session(session_id, principal, force=force, ip=get_client_ip(request))


@router.post('/housekeeping/cancel-stale', response_model=StaleCleanupOut)
def cancel_stale_tickets(
    request: Request,
    before: date | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    engine: QueueEngine = Depends(get_queue_engine),
):
    cutoff = before or clock.business_date()
    cancelled = engine.cancel_stale_waiting_tickets(cutoff)
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.STALE_TICKETS_CANCELLED,
        ip=get_client_ip(request),
        metadata={'before': cutoff.isoformat(), 'cancelled': cancelled},
    )
    db.commit()
    return StaleCleanupOut(cancelled=cancelled, before=cutoff)


@router.get('/audit', response_model=list[AuditEntryOut])
def audit_trail(
    ticket_id: int | None = None,
    counter_session_id: int | None = None,
    actor_principal_id: int | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return list_audit_entries(
        db,
        ticket_id=ticket_id,
        counter_session_id=counter_session_id,
        actor_principal_id=actor_principal_id,
        limit=limit,
    )
