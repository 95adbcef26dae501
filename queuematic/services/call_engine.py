from __future__ import annotations

import logging

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session, aliased

from queuematic import clock
from queuematic.auth import Principal
from queuematic.config import settings
from queuematic.errors import Conflict, Forbidden, NotFound, Transient
from queuematic.models import ACTIVE_TICKET_STATUSES, Counter, CounterSession, Ticket, TicketStatus
from queuematic.services.counter_session_service import active_ticket_for_session, open_session_for_counter

logger = logging.getLogger(__name__)

CLAIM_ROUNDS = 3


def _owned_open_session(db: Session, *, counter_id: int, actor: Principal) -> CounterSession:
    session = open_session_for_counter(db, counter_id, lock=True)
    if not session or session.principal_id != actor.id:
        raise Forbidden('No active session on this counter for the current user')
    return session


def _waiting_candidates(db: Session, *, branch_id: int, limit: int) -> list[int]:
    return list(
        db.execute(
            select(Ticket.id)
            .where(Ticket.branch_id == branch_id, Ticket.status == TicketStatus.WAITING)
            .order_by(Ticket.created_at, Ticket.number, Ticket.id)
            .limit(limit)
        ).scalars()
    )


def _claim(db: Session, *, ticket_id: int, counter: Counter, session: CounterSession) -> bool:
    """Move one WAITING ticket to CALLED for ``session``; False if someone else got there first."""
    held = aliased(Ticket)
    claimed = db.execute(
        update(Ticket)
        .where(
            Ticket.id == ticket_id,
            Ticket.status == TicketStatus.WAITING,
            ~exists().where(
                held.counter_session_id == session.id,
                held.status.in_(ACTIVE_TICKET_STATUSES),
            ),
            exists().where(
                CounterSession.id == session.id,
                CounterSession.ended_at.is_(None),
            ),
        )
        .values(
            status=TicketStatus.CALLED,
            counter_id=counter.id,
            counter_session_id=session.id,
            called_at=clock.now(),
        )
        .execution_options(synchronize_session=False)
    )
    return claimed.rowcount == 1


def call_next(
    db: Session,
    *,
    counter_id: int,
    actor: Principal,
    candidate_limit: int | None = None,
) -> Ticket | None:
    """Hand the oldest waiting ticket of the counter's branch to the caller.

    Returns None when nobody is waiting. Candidates are tried in FIFO order
    with a conditional update, so two counters racing for the same ticket
    never both win; the loser moves on to the next candidate.
    """
    counter = db.get(Counter, counter_id)
    if not counter:
        raise NotFound('Counter not found')

    session = _owned_open_session(db, counter_id=counter.id, actor=actor)
    if active_ticket_for_session(db, session.id):
        raise Conflict('Counter already has an active ticket. Complete current service first.')

    limit = candidate_limit or settings.claim_candidate_limit
    for _ in range(CLAIM_ROUNDS):
        candidates = _waiting_candidates(db, branch_id=counter.branch_id, limit=limit)
        if not candidates:
            return None

        for ticket_id in candidates:
            if _claim(db, ticket_id=ticket_id, counter=counter, session=session):
                ticket = db.get(Ticket, ticket_id, populate_existing=True)
                logger.info(
                    'Counter %s called ticket #%s (session %s)',
                    counter.id,
                    ticket.number,
                    session.id,
                )
                return ticket
            logger.debug('Ticket %s was claimed elsewhere, trying next candidate', ticket_id)

        # Every candidate lost; make sure it was not our own session that moved.
        if active_ticket_for_session(db, session.id):
            raise Conflict('Counter already has an active ticket. Complete current service first.')
        if db.get(CounterSession, session.id, populate_existing=True).ended_at is not None:
            raise Conflict('Counter session was closed')

    raise Transient('Queue is busy, please retry')


def start_serving(db: Session, *, ticket_id: int, actor: Principal) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise NotFound('Ticket not found')
    if ticket.counter_session_id is None:
        raise Conflict('Ticket has not been called')

    session = db.get(CounterSession, ticket.counter_session_id)
    if not session or session.principal_id != actor.id:
        raise Forbidden('Ticket belongs to another counter session')
    if ticket.status != TicketStatus.CALLED:
        raise Conflict(f'Ticket cannot start service from status {ticket.status.value}')

    moved = db.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.status == TicketStatus.CALLED)
        .values(status=TicketStatus.SERVING, serving_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        raise Conflict('Ticket changed state, try again')
    return db.get(Ticket, ticket.id, populate_existing=True)
