"""Transactional entry points for the queue.

Every public method runs exactly one short database transaction through
``run_atomic`` and returns plain response models, so callers never hold ORM
state across a commit. Only ticket issue and call-next retry on transient
contention; everything else fails fast.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy.orm import Session, sessionmaker

from queuematic import clock
from queuematic.auth import Principal
from queuematic.config import settings
from queuematic.db import run_atomic
from queuematic.schemas import (
    BranchDisplayOut,
    BranchStatusOut,
    CallNextOut,
    CounterBoardRowOut,
    CounterOut,
    CounterSessionOut,
    LastUsedCounterOut,
    TicketOut,
    WorkHistoryOut,
)
from queuematic.services import (
    call_engine,
    completion_service,
    counter_session_service,
    status_service,
    ticket_sequencer,
)
from queuematic.services.audit_service import AuditAction, log_audit


class QueueEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        retry_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts or settings.claim_retry_attempts
        self._retry_backoff = (
            settings.claim_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )

    def _run(self, label: str, operation, *, retry: bool = False, retry_integrity_errors: bool = False):
        return run_atomic(
            self._session_factory,
            operation,
            label=label,
            attempts=self._retry_attempts if retry else 1,
            retry_integrity_errors=retry_integrity_errors,
            backoff_seconds=self._retry_backoff,
        )

    # Tickets

    def issue_ticket(self, branch_id: int) -> TicketOut:
        def _op(db: Session) -> TicketOut:
            ticket = ticket_sequencer.issue_ticket(db, branch_id=branch_id)
            return status_service.ticket_out(db, ticket)

        return self._run('issue_ticket', _op, retry=True, retry_integrity_errors=True)

    def call_next(self, counter_id: int, actor: Principal, *, ip: str | None = None) -> CallNextOut:
        def _op(db: Session) -> CallNextOut:
            ticket = call_engine.call_next(db, counter_id=counter_id, actor=actor)
            if ticket is None:
                return CallNextOut(ticket=None, none_waiting=True)
            log_audit(
                db,
                actor_principal_id=actor.id,
                action=AuditAction.TICKET_CALLED,
                counter_session_id=ticket.counter_session_id,
                ticket_id=ticket.id,
                ip=ip,
                metadata={'number': ticket.number, 'counter_id': counter_id},
            )
            return CallNextOut(ticket=status_service.ticket_out(db, ticket), none_waiting=False)

        # A lost partial-index race on our own session is a real conflict, not a retry.
        return self._run('call_next', _op, retry=True)

    def start_serving(self, ticket_id: int, actor: Principal) -> TicketOut:
        def _op(db: Session) -> TicketOut:
            ticket = call_engine.start_serving(db, ticket_id=ticket_id, actor=actor)
            return status_service.ticket_out(db, ticket)

        return self._run('start_serving', _op)

    def complete_ticket(self, ticket_id: int, actor: Principal, *, ip: str | None = None) -> TicketOut:
        def _op(db: Session) -> TicketOut:
            ticket = completion_service.complete_ticket(db, ticket_id=ticket_id, actor=actor)
            log_audit(
                db,
                actor_principal_id=actor.id,
                action=AuditAction.TICKET_COMPLETED,
                counter_session_id=ticket.counter_session_id,
                ticket_id=ticket.id,
                ip=ip,
                metadata={'service_duration_seconds': ticket.service_duration_seconds},
            )
            return status_service.ticket_out(db, ticket)

        return self._run('complete_ticket', _op)

    def cancel_ticket(self, ticket_id: int, actor: Principal, *, ip: str | None = None) -> TicketOut:
        def _op(db: Session) -> TicketOut:
            ticket = completion_service.cancel_ticket(db, ticket_id=ticket_id, actor=actor)
            log_audit(
                db,
                actor_principal_id=actor.id,
                action=AuditAction.TICKET_CANCELLED,
                ticket_id=ticket.id,
                ip=ip,
                metadata={'number': ticket.number},
            )
            return status_service.ticket_out(db, ticket)

        return self._run('cancel_ticket', _op)

    def cancel_stale_waiting_tickets(self, before: date | None = None) -> int:
        cutoff = before or clock.business_date()
        return self._run(
            'cancel_stale_waiting_tickets',
            lambda db: completion_service.cancel_stale_waiting_tickets(db, before=cutoff),
        )

    # Counter sessions

    def start_session(self, counter_id: int, actor: Principal, *, ip: str | None = None) -> CounterSessionOut:
        def _op(db: Session) -> CounterSessionOut:
            session = counter_session_service.start_session(db, counter_id=counter_id, actor=actor)
            log_audit(
                db,
                actor_principal_id=actor.id,
                action=AuditAction.COUNTER_SESSION_STARTED,
                counter_session_id=session.id,
                ip=ip,
                metadata={'counter_id': counter_id},
            )
            return status_service.session_out(db, session)

        return self._run('start_session', _op)

    def end_session(
        self,
        session_id: int,
        actor: Principal,
        *,
        force: bool = False,
        ip: str | None = None,
    ) -> CounterSessionOut:
        def _op(db: Session) -> CounterSessionOut:
            session, cancelled = counter_session_service.end_session(
                db, session_id=session_id, actor=actor, force=force
            )
            metadata = {'force': force, 'counter_id': session.counter_id}
            if cancelled is not None:
                metadata['cancelled_ticket_id'] = cancelled.id
            log_audit(
                db,
                actor_principal_id=actor.id,
                action=AuditAction.COUNTER_SESSION_ENDED,
                counter_session_id=session.id,
                ip=ip,
                metadata=metadata,
            )
            return status_service.session_out(db, session, include_ticket=False)

        return self._run('end_session', _op)

    def resume_session(self, principal_id: int) -> CounterSessionOut | None:
        def _op(db: Session) -> CounterSessionOut | None:
            session = counter_session_service.resume_session(db, principal_id=principal_id)
            return status_service.session_out(db, session) if session else None

        return self._run('resume_session', _op)

    def last_available_counter(self, principal_id: int) -> LastUsedCounterOut | None:
        def _op(db: Session) -> LastUsedCounterOut | None:
            found = counter_session_service.last_available_counter(db, principal_id=principal_id)
            if not found:
                return None
            counter, last_session = found
            return status_service.last_used_out(db, counter, last_session)

        return self._run('last_available_counter', _op)

    def release_sessions_for_logout(self, principal_id: int) -> CounterSessionOut | None:
        def _op(db: Session) -> CounterSessionOut | None:
            session = counter_session_service.release_sessions_for_logout(db, principal_id=principal_id)
            return status_service.session_out(db, session, include_ticket=False) if session else None

        return self._run('release_sessions_for_logout', _op)

    def list_available_counters(self, branch_id: int) -> list[CounterOut]:
        def _op(db: Session) -> list[CounterOut]:
            counters = counter_session_service.list_available_counters(db, branch_id=branch_id)
            return [CounterOut.model_validate(counter) for counter in counters]

        return self._run('list_available_counters', _op)

    def list_branch_counters(self, branch_id: int) -> list[CounterBoardRowOut]:
        return self._run(
            'list_branch_counters',
            lambda db: status_service.branch_counter_board(db, branch_id=branch_id),
        )

    # Read models

    def branch_status(self, branch_id: int) -> BranchStatusOut:
        return self._run('branch_status', lambda db: status_service.branch_status(db, branch_id=branch_id))

    def branch_display(self, branch_id: int) -> BranchDisplayOut:
        return self._run('branch_display', lambda db: status_service.branch_display(db, branch_id=branch_id))

    def work_history(
        self,
        principal_id: int,
        actor: Principal,
        business_date: date | None = None,
    ) -> WorkHistoryOut:
        return self._run(
            'work_history',
            lambda db: status_service.work_history(
                db, principal_id=principal_id, actor=actor, business_date=business_date
            ),
        )
