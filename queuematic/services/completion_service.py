from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import update
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, is_admin_role
from queuematic.errors import Conflict, Forbidden, NotFound
from queuematic.models import ACTIVE_TICKET_STATUSES, CounterSession, Ticket, TicketStatus

logger = logging.getLogger(__name__)


def complete_ticket(db: Session, *, ticket_id: int, actor: Principal) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise NotFound('Ticket not found')
    if ticket.counter_session_id is None:
        raise Conflict('Ticket has not been called')

    session = db.get(CounterSession, ticket.counter_session_id)
    if not session or session.principal_id != actor.id:
        raise Forbidden('Ticket belongs to another counter session')
    if ticket.status not in ACTIVE_TICKET_STATUSES:
        raise Conflict(f'Ticket cannot be completed from status {ticket.status.value}')

    now = clock.now()
    started = ticket.called_at or ticket.created_at
    duration = max(0, round((now - started).total_seconds()))

    done = db.execute(
        update(Ticket)
        .where(
            Ticket.id == ticket.id,
            Ticket.counter_session_id == session.id,
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        )
        .values(status=TicketStatus.COMPLETED, completed_at=now, service_duration_seconds=duration)
        .execution_options(synchronize_session=False)
    )
    if done.rowcount != 1:
        raise Conflict('Ticket changed state, try again')

    logger.info('Ticket #%s completed at counter %s in %ss', ticket.number, ticket.counter_id, duration)
    return db.get(Ticket, ticket.id, populate_existing=True)


def cancel_ticket(db: Session, *, ticket_id: int, actor: Principal) -> Ticket:
    if not is_admin_role(actor.role):
        raise Forbidden('Only admins can cancel tickets')

    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise NotFound('Ticket not found')
    if ticket.status != TicketStatus.WAITING:
        raise Conflict('Only waiting tickets can be cancelled')

    cancelled = db.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.status == TicketStatus.WAITING)
        .values(status=TicketStatus.CANCELLED, cancelled_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    if cancelled.rowcount != 1:
        raise Conflict('Ticket was called before it could be cancelled')
    return db.get(Ticket, ticket.id, populate_existing=True)


def cancel_stale_waiting_tickets(db: Session, *, before: date) -> int:
    """Cancel tickets still waiting from business days earlier than ``before``."""
    result = db.execute(
        update(Ticket)
        .where(Ticket.status == TicketStatus.WAITING, Ticket.business_date < before)
        .values(status=TicketStatus.CANCELLED, cancelled_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info('Cancelled %s stale waiting ticket(s) from before %s', result.rowcount, before)
    return result.rowcount
