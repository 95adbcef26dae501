from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, is_admin_role
from queuematic.config import settings
from queuematic.errors import Forbidden, NotFound
from queuematic.models import (
    ACTIVE_TICKET_STATUSES,
    Branch,
    Counter,
    CounterSession,
    Principal as PrincipalModel,
    Ticket,
    TicketStatus,
)
from queuematic.schemas import (
    BranchDisplayOut,
    BranchStatusOut,
    CompletedTicketOut,
    CounterBoardRowOut,
    CounterOccupantOut,
    CounterSessionOut,
    LastUsedCounterOut,
    ServiceRecordOut,
    ServingTicketOut,
    TicketOut,
    WorkHistoryOut,
)

RECENT_COMPLETED_STATUS = 5
RECENT_COMPLETED_DISPLAY = 3
DISPLAY_WAITING_LIMIT = 10


def ticket_out(db: Session, ticket: Ticket) -> TicketOut:
    counter = db.get(Counter, ticket.counter_id) if ticket.counter_id else None
    out = TicketOut.model_validate(ticket)
    out.counter_number = counter.number if counter else None
    return out


def session_out(db: Session, session: CounterSession, *, include_ticket: bool = True) -> CounterSessionOut:
    counter = db.get(Counter, session.counter_id)
    branch = db.get(Branch, counter.branch_id)
    current = None
    if include_ticket and session.ended_at is None:
        ticket = db.execute(
            select(Ticket).where(
                Ticket.counter_session_id == session.id,
                Ticket.status.in_(ACTIVE_TICKET_STATUSES),
            )
        ).scalar_one_or_none()
        current = ticket_out(db, ticket) if ticket else None
    return CounterSessionOut(
        id=session.id,
        counter_id=counter.id,
        counter_number=counter.number,
        branch_id=branch.id,
        branch_name=branch.name,
        principal_id=session.principal_id,
        started_at=session.started_at,
        ended_at=session.ended_at,
        end_reason=session.end_reason,
        current_ticket=current,
    )


def last_used_out(db: Session, counter: Counter, last_session: CounterSession) -> LastUsedCounterOut:
    branch = db.get(Branch, counter.branch_id)
    return LastUsedCounterOut(
        counter_id=counter.id,
        counter_number=counter.number,
        branch_id=branch.id,
        branch_name=branch.name,
        last_used_at=last_session.ended_at,
    )


def _get_branch(db: Session, branch_id: int, *, public: bool = False) -> Branch:
    branch = db.get(Branch, branch_id)
    # Closed branches are hidden from the public boards.
    if not branch or (public and not branch.active):
        raise NotFound('Branch not found')
    return branch


def _completed_between(branch_id: int, start: datetime, end: datetime):
    return and_(
        Ticket.branch_id == branch_id,
        Ticket.status == TicketStatus.COMPLETED,
        Ticket.completed_at >= start,
        Ticket.completed_at < end,
    )


def _with_counter_number():
    return select(Ticket, Counter.number).outerjoin(Counter, Counter.id == Ticket.counter_id)


def _live_counts(db: Session, branch_id: int) -> dict[TicketStatus, int]:
    rows = db.execute(
        select(Ticket.status, func.count(Ticket.id))
        .where(
            Ticket.branch_id == branch_id,
            Ticket.status.in_((TicketStatus.WAITING, *ACTIVE_TICKET_STATUSES)),
        )
        .group_by(Ticket.status)
    ).all()
    return {TicketStatus(status): int(count) for status, count in rows}


def _completed_stats(db: Session, branch_id: int, start: datetime, end: datetime) -> tuple[int, float | None]:
    count, average = db.execute(
        select(func.count(Ticket.id), func.avg(Ticket.service_duration_seconds)).where(
            _completed_between(branch_id, start, end)
        )
    ).one()
    return int(count or 0), (float(average) if average is not None else None)


def _highest_completed_number(db: Session, branch_id: int, day: date) -> int | None:
    # Ticket numbers restart daily, so only today's tickets are comparable.
    return db.execute(
        select(func.max(Ticket.number)).where(
            Ticket.branch_id == branch_id,
            Ticket.business_date == day,
            Ticket.status == TicketStatus.COMPLETED,
        )
    ).scalar_one()


def _current_serving(db: Session, branch_id: int) -> list[ServingTicketOut]:
    rows = db.execute(
        _with_counter_number()
        .where(Ticket.branch_id == branch_id, Ticket.status.in_(ACTIVE_TICKET_STATUSES))
        .order_by(Ticket.called_at, Ticket.id)
    ).all()
    return [
        ServingTicketOut(
            number=ticket.number,
            status=ticket.status,
            counter_number=counter_number,
            called_at=ticket.called_at,
        )
        for ticket, counter_number in rows
    ]


def _last_called(db: Session, branch_id: int, start: datetime) -> ServingTicketOut | None:
    row = db.execute(
        _with_counter_number()
        .where(Ticket.branch_id == branch_id, Ticket.called_at.is_not(None), Ticket.called_at >= start)
        .order_by(Ticket.called_at.desc(), Ticket.id.desc())
        .limit(1)
    ).one_or_none()
    if not row:
        return None
    ticket, counter_number = row
    return ServingTicketOut(
        number=ticket.number,
        status=ticket.status,
        counter_number=counter_number,
        called_at=ticket.called_at,
    )


def _recent_completed(
    db: Session, branch_id: int, start: datetime, end: datetime, limit: int
) -> list[CompletedTicketOut]:
    rows = db.execute(
        _with_counter_number()
        .where(_completed_between(branch_id, start, end))
        .order_by(Ticket.completed_at.desc(), Ticket.id.desc())
        .limit(limit)
    ).all()
    return [
        CompletedTicketOut(
            number=ticket.number,
            counter_number=counter_number,
            completed_at=ticket.completed_at,
            service_duration_seconds=ticket.service_duration_seconds,
        )
        for ticket, counter_number in rows
    ]


def count_active_counters(db: Session, branch_id: int) -> int:
    return int(
        db.execute(
            select(func.count(CounterSession.id))
            .join(Counter, Counter.id == CounterSession.counter_id)
            .where(
                Counter.branch_id == branch_id,
                Counter.active.is_(True),
                CounterSession.ended_at.is_(None),
            )
        ).scalar_one()
    )


def estimate_wait_seconds(waiting: int, avg_service_seconds: float, active_counters: int) -> int:
    # With nobody at a counter the queue drains at single-counter pace at best.
    return round(waiting * avg_service_seconds / max(active_counters, 1))


def branch_status(db: Session, *, branch_id: int) -> BranchStatusOut:
    branch = _get_branch(db, branch_id, public=True)
    now = clock.now()
    today = clock.business_date(now)
    start, end = clock.day_bounds(today)

    counts = _live_counts(db, branch.id)
    completed_today, average = _completed_stats(db, branch.id, start, end)
    avg_service = average if average is not None else float(settings.default_service_seconds)
    active_counters = count_active_counters(db, branch.id)
    recent = _recent_completed(db, branch.id, start, end, RECENT_COMPLETED_STATUS)
    waiting = counts.get(TicketStatus.WAITING, 0)

    return BranchStatusOut(
        branch_id=branch.id,
        branch_name=branch.name,
        business_date=today,
        waiting_count=waiting,
        called_count=counts.get(TicketStatus.CALLED, 0),
        serving_count=counts.get(TicketStatus.SERVING, 0),
        completed_today=completed_today,
        last_completed_number=_highest_completed_number(db, branch.id, today),
        current_serving=_current_serving(db, branch.id),
        last_called=_last_called(db, branch.id, start),
        recent_completed=recent,
        avg_service_seconds=round(avg_service),
        estimated_wait_seconds=estimate_wait_seconds(waiting, avg_service, active_counters),
        active_counters=active_counters,
        can_take_number=branch.active,
    )


def branch_display(db: Session, *, branch_id: int) -> BranchDisplayOut:
    branch = _get_branch(db, branch_id, public=True)
    now = clock.now()
    start, end = clock.day_bounds(clock.business_date(now))

    waiting_numbers = list(
        db.execute(
            select(Ticket.number)
            .where(Ticket.branch_id == branch.id, Ticket.status == TicketStatus.WAITING)
            .order_by(Ticket.created_at, Ticket.number, Ticket.id)
            .limit(DISPLAY_WAITING_LIMIT)
        ).scalars()
    )
    completed_today, _ = _completed_stats(db, branch.id, start, end)

    return BranchDisplayOut(
        branch_id=branch.id,
        branch_name=branch.name,
        currently_serving=_current_serving(db, branch.id),
        waiting_numbers=waiting_numbers,
        last_called=_last_called(db, branch.id, start),
        recent_completed=_recent_completed(db, branch.id, start, end, RECENT_COMPLETED_DISPLAY),
        active_counters=count_active_counters(db, branch.id),
        completed_today=completed_today,
        generated_at=now,
    )


def work_history(
    db: Session,
    *,
    principal_id: int,
    actor: Principal,
    business_date: date | None = None,
) -> WorkHistoryOut:
    if principal_id != actor.id and not is_admin_role(actor.role):
        raise Forbidden('Cannot view another user\'s history')
    if not db.get(PrincipalModel, principal_id):
        raise NotFound('User not found')

    day = business_date or clock.business_date()
    start, end = clock.day_bounds(day)
    rows = db.execute(
        _with_counter_number()
        .join(CounterSession, CounterSession.id == Ticket.counter_session_id)
        .where(
            CounterSession.principal_id == principal_id,
            Ticket.status == TicketStatus.COMPLETED,
            Ticket.completed_at >= start,
            Ticket.completed_at < end,
        )
        .order_by(Ticket.completed_at.desc(), Ticket.id.desc())
    ).all()

    records = [
        ServiceRecordOut(
            ticket_id=ticket.id,
            number=ticket.number,
            counter_number=counter_number,
            called_at=ticket.called_at,
            completed_at=ticket.completed_at,
            service_duration_seconds=ticket.service_duration_seconds,
        )
        for ticket, counter_number in rows
    ]
    durations = [r.service_duration_seconds for r in records if r.service_duration_seconds is not None]
    return WorkHistoryOut(
        principal_id=principal_id,
        business_date=day,
        total_completed=len(records),
        total_service_seconds=sum(durations),
        avg_service_seconds=round(sum(durations) / len(durations)) if durations else None,
        first_completed_at=records[-1].completed_at if records else None,
        last_completed_at=records[0].completed_at if records else None,
        records=records,
    )


def branch_counter_board(db: Session, *, branch_id: int) -> list[CounterBoardRowOut]:
    """Every counter of a branch with whoever currently occupies it."""
    branch = _get_branch(db, branch_id)
    rows = db.execute(
        select(Counter, CounterSession, PrincipalModel)
        .outerjoin(
            CounterSession,
            and_(CounterSession.counter_id == Counter.id, CounterSession.ended_at.is_(None)),
        )
        .outerjoin(PrincipalModel, PrincipalModel.id == CounterSession.principal_id)
        .where(Counter.branch_id == branch.id)
        .order_by(Counter.number)
    ).all()

    open_session_ids = [session.id for _, session, _ in rows if session is not None]
    active_by_session: dict[int, Ticket] = {}
    if open_session_ids:
        for ticket in db.execute(
            select(Ticket).where(
                Ticket.counter_session_id.in_(open_session_ids),
                Ticket.status.in_(ACTIVE_TICKET_STATUSES),
            )
        ).scalars():
            active_by_session[ticket.counter_session_id] = ticket

    board = []
    for counter, session, principal in rows:
        occupant = None
        if session is not None:
            ticket = active_by_session.get(session.id)
            occupant = CounterOccupantOut(
                session_id=session.id,
                principal_id=session.principal_id,
                username=principal.username if principal else '',
                full_name=principal.full_name if principal else None,
                started_at=session.started_at,
                current_ticket=ticket_out(db, ticket) if ticket else None,
            )
        board.append(CounterBoardRowOut(id=counter.id, number=counter.number, active=counter.active, occupant=occupant))
    return board
