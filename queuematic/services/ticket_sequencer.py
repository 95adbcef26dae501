from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.errors import Invalid, NotFound, Unavailable
from queuematic.models import Branch, BranchTicketSequence, Ticket, TicketStatus

logger = logging.getLogger(__name__)


def _bump_sequence(db: Session, *, branch_id: int, business_date: date, now: datetime) -> int:
    """Reserve the next number for one branch-day inside the caller's transaction.

    The counter row is incremented in place so concurrent issuers serialize on
    it. The first issue of a day inserts the row; a racing insert fails on the
    primary key and the caller retries into the update path.
    """
    bumped = db.execute(
        update(BranchTicketSequence)
        .where(
            BranchTicketSequence.branch_id == branch_id,
            BranchTicketSequence.business_date == business_date,
        )
        .values(last_number=BranchTicketSequence.last_number + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount == 1:
        return db.execute(
            select(BranchTicketSequence.last_number).where(
                BranchTicketSequence.branch_id == branch_id,
                BranchTicketSequence.business_date == business_date,
            )
        ).scalar_one()

    # Tickets written before the sequence row existed still count.
    highest = db.execute(
        select(func.coalesce(func.max(Ticket.number), 0)).where(
            Ticket.branch_id == branch_id,
            Ticket.business_date == business_date,
        )
    ).scalar_one()
    number = int(highest) + 1
    db.add(
        BranchTicketSequence(
            branch_id=branch_id,
            business_date=business_date,
            last_number=number,
            updated_at=now,
        )
    )
    db.flush()
    return number


def issue_ticket(db: Session, *, branch_id: int) -> Ticket:
    if not branch_id or branch_id <= 0:
        raise Invalid('Branch ID is required')

    branch = db.get(Branch, branch_id)
    if not branch:
        raise NotFound('Branch not found')
    if not branch.active:
        raise Unavailable('Branch is not accepting customers')

    now = clock.now()
    business_date = clock.business_date(now)
    number = _bump_sequence(db, branch_id=branch.id, business_date=business_date, now=now)

    ticket = Ticket(
        branch_id=branch.id,
        business_date=business_date,
        number=number,
        status=TicketStatus.WAITING,
        created_at=now,
    )
    db.add(ticket)
    db.flush()
    logger.info('Issued ticket #%s for branch %s on %s', number, branch.id, business_date)
    return ticket
