from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from queuematic.auth import Principal, assert_branch_scope, get_current_principal, require_clerk
from queuematic.dependencies import get_client_ip, get_queue_engine
from queuematic.schemas import (
    CounterBoardRowOut,
    CounterOut,
    CounterSessionOut,
    EndSessionIn,
    LastUsedCounterOut,
    StartSessionIn,
)
from queuematic.services.queue_engine import QueueEngine

router = APIRouter(prefix='/counters', tags=['counters'])


@router.get('/available/{branch_id}', response_model=list[CounterOut])
def available_counters(
    branch_id: int,
    principal: Principal = Depends(get_current_principal),
    engine: QueueEngine = Depends(get_queue_engine),
):
    assert_branch_scope(principal, branch_id)
    return engine.list_available_counters(branch_id)


@router.get('/branch/{branch_id}', response_model=list[CounterBoardRowOut])
def branch_counters(
    branch_id: int,
    principal: Principal = Depends(get_current_principal),
    engine: QueueEngine = Depends(get_queue_engine),
):
    assert_branch_scope(principal, branch_id)
    return engine.list_branch_counters(branch_id)


@router.get('/my-session', response_model=CounterSessionOut | None)
def my_session(
    principal: Principal = Depends(get_current_principal),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.resume_session(principal.id)


@router.get('/last-used', response_model=LastUsedCounterOut | None)
def last_used_counter(
    principal: Principal = Depends(require_clerk),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.last_available_counter(principal.id)


@router.post('/sessions', response_model=CounterSessionOut, status_code=status.HTTP_201_CREATED)
def start_session(
    payload: StartSessionIn,
    request: Request,
    principal: Principal = Depends(require_clerk),
    engine: QueueEngine = Depends(get_queue_engine),
):
    return engine.start_session(payload.counter_id, principal, ip=get_client_ip(request))


@router.post('/sessions/{session_id}/end', response_model=CounterSessionOut)
def end_session(
    session_id: int,
    request: Request,
    payload: EndSessionIn | None = None,
    principal: Principal = Depends(get_current_principal),
    engine: QueueEngine = Depends(get_queue_engine),
):
    force = payload.force if payload else False
    return engine.end_session(session_id, principal, force=force, ip=get_client_ip(request))
