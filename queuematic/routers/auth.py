from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, get_current_principal
from queuematic.config import settings
from queuematic.db import get_db
from queuematic.dependencies import get_client_ip, get_login_rate_limiter, get_queue_engine
from queuematic.models import Principal as PrincipalModel
from queuematic.schemas import LoginIn, LoginOut, PrincipalOut
from queuematic.security.passwords import burn_verification, verify_and_upgrade
from queuematic.security.rate_limit import LoginRateLimiter
from queuematic.security.sessions import create_web_session, request_token, revoke_web_session
from queuematic.services.audit_service import AuditAction, log_audit, log_auth_event
from queuematic.services.queue_engine import QueueEngine

router = APIRouter(tags=['auth'])

INVALID_CREDENTIALS = 'Invalid username or password'


def _reject(db: Session, *, username: str, reason: str, principal_id: int | None, ip, user_agent) -> None:
    log_auth_event(
        db,
        attempted_username=username,
        success=False,
        failure_reason=reason,
        principal_id=principal_id,
        ip=ip,
        user_agent=user_agent,
    )
    db.commit()
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)


@router.post('/login', response_model=LoginOut)
def login(
    payload: LoginIn,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    limiter: LoginRateLimiter = Depends(get_login_rate_limiter),
    engine: QueueEngine = Depends(get_queue_engine),
):
    username = payload.username.strip()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    limiter_key = f'{ip}:{username.lower()}'
    if not limiter.hit(limiter_key):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail='Too many login attempts, try again later',
            headers={'Retry-After': str(limiter.retry_after(limiter_key))},
        )

    principal = db.execute(
        select(PrincipalModel).where(func.lower(PrincipalModel.username) == username.lower())
    ).scalar_one_or_none()
    if not principal:
        burn_verification(payload.password)
        _reject(db, username=username, reason='UNKNOWN_USERNAME', principal_id=None, ip=ip, user_agent=user_agent)
    if not principal.active:
        _reject(db, username=username, reason='INACTIVE_PRINCIPAL', principal_id=principal.id, ip=ip, user_agent=user_agent)
    valid, upgraded_hash = verify_and_upgrade(payload.password, principal.password_hash)
    if not valid:
        _reject(db, username=username, reason='BAD_PASSWORD', principal_id=principal.id, ip=ip, user_agent=user_agent)
    if upgraded_hash:
        principal.password_hash = upgraded_hash

    token = create_web_session(db, principal.id, ip=ip, user_agent=user_agent)
    principal.last_login_at = clock.now()
    log_auth_event(
        db,
        attempted_username=username,
        success=True,
        failure_reason=None,
        principal_id=principal.id,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(
        db,
        actor_principal_id=principal.id,
        action=AuditAction.AUTH_LOGIN,
        ip=ip,
        metadata={'username': username},
    )
    db.commit()
    limiter.reset(limiter_key)

    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return LoginOut(
        token=token,
        user=PrincipalOut.model_validate(principal),
        session=engine.resume_session(principal.id),
    )


@router.post('/logout')
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    engine: QueueEngine = Depends(get_queue_engine),
):
    principal = getattr(request.state, 'principal', None)
    token = request_token(request)
    if token:
        revoke_web_session(db, token)

    released = None
    if principal:
        released = engine.release_sessions_for_logout(principal.id)

    log_audit(
        db,
        actor_principal_id=principal.id if principal else None,
        action=AuditAction.AUTH_LOGOUT,
        counter_session_id=released.id if released else None,
        ip=get_client_ip(request),
        metadata={},
    )
    db.commit()

    response.delete_cookie(settings.session_cookie_name)
    return {'ok': True, 'released_session_id': released.id if released else None}


@router.get('/me')
def me(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    engine: QueueEngine = Depends(get_queue_engine),
):
    record = db.get(PrincipalModel, principal.id)
    return {
        'user': PrincipalOut.model_validate(record),
        'session': engine.resume_session(principal.id),
    }
