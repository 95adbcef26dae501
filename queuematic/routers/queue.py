from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Request, status

from queuematic.auth import Principal, get_current_principal, require_admin, require_clerk
from queuematic.dependencies import get_client_ip, get_queue_engine
from queuematic.schemas import (
    BranchDisplayOut,
    BranchStatusOut,
    CallNextIn,
    CallNextOut,
    IssueTicketIn,
    TicketOut,
    WorkHistoryOut,
)
from queuematic.services.queue_engine import QueueEngine

router = APIRouter(prefix='/queue', tags=['queue'])


@router.post('/tickets', response_model=TicketOut, status_code=status.HTTP_201_CREATED)
def issue_ticket(payload: IssueTicketIn, engine: QueueEngine = Depends(get_queue_engine)):
    return engine.issue_ticket(payload.branch_id)


@router.post('/call-next', response_model=CallNextOut)
def call_next(
    payload: CallNextIn,
    request: Request,
    principal: Principal = Depends(require_clerk),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.call_next(payload.counter_id, principal, ip=get_client_ip(request))


@router.post('/tickets/{ticket_id}/serving', response_model=TicketOut)
def start_serving(
    ticket_id: int,
    principal: Principal = Depends(require_clerk),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.start_serving(ticket_id, principal)


@router.post('/tickets/{ticket_id}/complete', response_model=TicketOut)
def complete_ticket(
    ticket_id: int,
    request: Request,
    principal: Principal = Depends(require_clerk),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.complete_ticket(ticket_id, principal, ip=get_client_ip(request))


@router.delete('/tickets/{ticket_id}', response_model=TicketOut)
def cancel_ticket(
    ticket_id: int,
    request: Request,
    principal: Principal = Depends(require_admin),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.cancel_ticket(ticket_id, principal, ip=get_client_ip(request))


@router.get('/status/{branch_id}', response_model=BranchStatusOut)
def branch_status(branch_id: int, engine: QueueEngine = Depends(get_queue_engine)):
    return engine.branch_status(branch_id)


@router.get('/display/{branch_id}', response_model=BranchDisplayOut)
def branch_display(branch_id: int, engine: QueueEngine = Depends(get_queue_engine)):
    return engine.branch_display(branch_id)


@router.get('/history/{principal_id}', response_model=WorkHistoryOut)
def work_history(
    principal_id: int,
    day: date | None = None,
    principal: Principal = Depends(get_current_principal),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.work_history(principal_id, principal, business_date=day)
