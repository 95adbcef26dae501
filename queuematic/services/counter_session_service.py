from __future__ import annotations

import logging

from sqlalchemy import and_, exists, select, update
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, Role, is_admin_role
from queuematic.errors import Conflict, Forbidden, NotFound, Unavailable
from queuematic.models import (
    ACTIVE_TICKET_STATUSES,
    Branch,
    Counter,
    CounterSession,
    SessionEndReason,
    Ticket,
    TicketStatus,
)

logger = logging.getLogger(__name__)


def open_session_for_counter(db: Session, counter_id: int, *, lock: bool = False) -> CounterSession | None:
    stmt = select(CounterSession).where(
        CounterSession.counter_id == counter_id,
        CounterSession.ended_at.is_(None),
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def open_session_for_principal(db: Session, principal_id: int) -> CounterSession | None:
    return db.execute(
        select(CounterSession).where(
            CounterSession.principal_id == principal_id,
            CounterSession.ended_at.is_(None),
        )
    ).scalar_one_or_none()


def active_ticket_for_session(db: Session, session_id: int) -> Ticket | None:
    return db.execute(
        select(Ticket).where(
            Ticket.counter_session_id == session_id,
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        )
    ).scalar_one_or_none()


def _no_active_ticket(session_id: int):
    return ~exists().where(
        Ticket.counter_session_id == session_id,
        Ticket.status.in_(ACTIVE_TICKET_STATUSES),
    )


def start_session(db: Session, *, counter_id: int, actor: Principal) -> CounterSession:
    if actor.role != Role.CLERK:
        raise Forbidden('Only clerks can open a counter')

    counter = db.get(Counter, counter_id, with_for_update=True)
    if not counter:
        raise NotFound('Counter not found')
    branch = db.get(Branch, counter.branch_id)
    if not counter.active or not branch or not branch.active:
        raise Unavailable('Counter is not available')
    if actor.branch_id != counter.branch_id:
        raise Forbidden('Cannot open a counter at another branch')

    if open_session_for_counter(db, counter.id):
        raise Conflict('Counter is already in use')
    if open_session_for_principal(db, actor.id):
        raise Conflict('User already has an active counter session')

    # The partial unique indexes reject a concurrent duplicate at flush.
    session = CounterSession(counter_id=counter.id, principal_id=actor.id, started_at=clock.now())
    db.add(session)
    db.flush()
    logger.info('Principal %s opened counter %s (session %s)', actor.id, counter.id, session.id)
    return session


def end_session(
    db: Session,
    *,
    session_id: int,
    actor: Principal,
    force: bool = False,
    reason: SessionEndReason | None = None,
) -> tuple[CounterSession, Ticket | None]:
    """Close an open counter session.

    Returns the closed session and, for a forced close, the ticket that was
    cancelled with it (if any).
    """
    session = db.get(CounterSession, session_id, with_for_update=True)
    if not session:
        raise NotFound('Counter session not found')

    is_admin = is_admin_role(actor.role)
    if session.principal_id != actor.id and not is_admin:
        raise Forbidden('Cannot end another user\'s session')
    if force and not is_admin:
        raise Forbidden('Only admins can force-close a session')
    if session.ended_at is not None:
        raise Unavailable('Counter session is already closed')

    now = clock.now()
    cancelled_ticket = None
    active_ticket = active_ticket_for_session(db, session.id)
    if active_ticket:
        if not force:
            raise Conflict('Complete current service before ending the session')
        cancelled = db.execute(
            update(Ticket)
            .where(Ticket.id == active_ticket.id, Ticket.status.in_(ACTIVE_TICKET_STATUSES))
            .values(status=TicketStatus.CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount != 1:
            raise Conflict('Current ticket changed state, try again')
        cancelled_ticket = db.get(Ticket, active_ticket.id, populate_existing=True)
        logger.warning('Cancelled ticket %s while force-closing session %s', active_ticket.id, session.id)

    closed = db.execute(
        update(CounterSession)
        .where(
            and_(
                CounterSession.id == session.id,
                CounterSession.ended_at.is_(None),
                _no_active_ticket(session.id),
            )
        )
        .values(
            ended_at=now,
            ended_by_principal_id=actor.id,
            end_reason=reason or (SessionEndReason.FORCED if force else SessionEndReason.RELEASED),
        )
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        raise Conflict('Counter session changed state, try again')

    session = db.get(CounterSession, session.id, populate_existing=True)
    logger.info('Session %s on counter %s closed by %s', session.id, session.counter_id, actor.id)
    return session, cancelled_ticket


def resume_session(db: Session, *, principal_id: int) -> CounterSession | None:
    return open_session_for_principal(db, principal_id)


def last_available_counter(db: Session, *, principal_id: int) -> tuple[Counter, CounterSession] | None:
    """Counter of the principal's most recently closed session, if free to reopen."""
    last = db.execute(
        select(CounterSession)
        .where(
            CounterSession.principal_id == principal_id,
            CounterSession.ended_at.is_not(None),
        )
        .order_by(CounterSession.ended_at.desc(), CounterSession.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if not last:
        return None

    counter = db.get(Counter, last.counter_id)
    branch = db.get(Branch, counter.branch_id) if counter else None
    if not counter or not counter.active or not branch or not branch.active:
        return None
    if open_session_for_counter(db, counter.id):
        return None
    return counter, last


def release_sessions_for_logout(db: Session, *, principal_id: int) -> CounterSession | None:
    """Close the principal's open session on logout unless a ticket is still in service."""
    session = open_session_for_principal(db, principal_id)
    if not session:
        return None

    released = db.execute(
        update(CounterSession)
        .where(
            CounterSession.id == session.id,
            CounterSession.ended_at.is_(None),
            _no_active_ticket(session.id),
        )
        .values(ended_at=clock.now(), ended_by_principal_id=principal_id, end_reason=SessionEndReason.LOGOUT)
        .execution_options(synchronize_session=False)
    )
    if released.rowcount != 1:
        logger.info('Session %s kept open on logout: ticket still in service', session.id)
        return None
    return db.get(CounterSession, session.id, populate_existing=True)


def list_available_counters(db: Session, *, branch_id: int) -> list[Counter]:
    branch = db.get(Branch, branch_id)
    if not branch:
        raise NotFound('Branch not found')
    if not branch.active:
        return []

    occupied = exists().where(
        CounterSession.counter_id == Counter.id,
        CounterSession.ended_at.is_(None),
    )
    return list(
        db.execute(
            select(Counter)
            .where(Counter.branch_id == branch_id, Counter.active.is_(True), ~occupied)
            .order_by(Counter.number)
        ).scalars()
    )
