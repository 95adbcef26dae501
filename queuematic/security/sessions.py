"""Opaque bearer tokens for clerks and admins.

Only a SHA-256 digest of each token is stored, so a leaked ``web_sessions``
table cannot be replayed. Tokens slide forward on every authenticated request.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta

from fastapi import FastAPI, Request
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.auth import Principal, Role
from queuematic.config import settings
from queuematic.db import SessionLocal
from queuematic.models import Principal as PrincipalModel
from queuematic.models import WebSession

logger = logging.getLogger(__name__)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _session_expiry(now: datetime) -> datetime:
    return now + timedelta(minutes=settings.session_ttl_minutes)


def create_web_session(db: Session, principal_id: int, ip: str | None, user_agent: str | None) -> str:
    token = secrets.token_urlsafe(48)
    now = clock.now()
    db.add(
        WebSession(
            token_digest=_digest(token),
            principal_id=principal_id,
            ip=ip,
            user_agent=user_agent,
            created_at=now,
            last_seen_at=now,
            expires_at=_session_expiry(now),
        )
    )
    db.flush()
    return token


def revoke_web_session(db: Session, token: str) -> bool:
    revoked = db.execute(
        update(WebSession)
        .where(WebSession.token_digest == _digest(token), WebSession.revoked_at.is_(None))
        .values(revoked_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    return revoked.rowcount == 1


def revoke_principal_sessions(db: Session, principal_id: int) -> int:
    """Sign a user out everywhere, e.g. after deactivation or a password reset."""
    revoked = db.execute(
        update(WebSession)
        .where(WebSession.principal_id == principal_id, WebSession.revoked_at.is_(None))
        .values(revoked_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    if revoked.rowcount:
        logger.info('Revoked %s web session(s) for principal %s', revoked.rowcount, principal_id)
    return revoked.rowcount


def purge_web_sessions(db: Session, *, before: datetime) -> int:
    """Delete sessions that expired or were revoked before ``before``."""
    purged = db.execute(
        delete(WebSession)
        .where(or_(WebSession.expires_at < before, WebSession.revoked_at < before))
        .execution_options(synchronize_session=False)
    )
    return purged.rowcount


def to_principal(principal: PrincipalModel) -> Principal:
    return Principal(
        id=principal.id,
        username=principal.username,
        role=Role(principal.role.value),
        branch_id=principal.branch_id,
        active=principal.active,
    )


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, PrincipalModel)
        .join(PrincipalModel, PrincipalModel.id == WebSession.principal_id)
        .where(WebSession.token_digest == _digest(token))
    ).one_or_none()
    if not row:
        return None

    web_session, principal = row
    now = clock.now()
    if web_session.revoked_at is not None or web_session.expires_at <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = _session_expiry(now)
    return to_principal(principal)


def request_token(request: Request) -> str | None:
    authorization = request.headers.get('authorization', '')
    scheme, _, credentials = authorization.partition(' ')
    if scheme.lower() == 'bearer' and credentials.strip():
        return credentials.strip()
    return request.cookies.get(settings.session_cookie_name)


def install_auth_session_middleware(app: FastAPI) -> None:
    # Public kiosk and board routes run without a principal; role checks live in the routers.
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        request.state.principal = None
        token = request_token(request)
        if token:
            session_factory = getattr(request.app.state, 'session_factory', SessionLocal)
            with session_factory() as db:
                request.state.principal = load_principal_from_token(db, token)
                db.commit()
        return await call_next(request)
