from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from typing import TypeVar

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from queuematic.config import settings
from queuematic.errors import Conflict, Transient
from queuematic.models import Base

logger = logging.getLogger(__name__)

T = TypeVar('T')


def build_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.database_url_normalized
    timeout_seconds = settings.db_statement_timeout_seconds
    if url.startswith('sqlite'):
        # sqlite3 waits this long on a locked database before raising.
        kwargs.setdefault('connect_args', {'check_same_thread': False, 'timeout': timeout_seconds})
    else:
        timeout_ms = int(timeout_seconds * 1000)
        kwargs.setdefault(
            'connect_args',
            {'options': f'-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}'},
        )
        kwargs.setdefault('pool_timeout', settings.db_pool_timeout_seconds)
    return create_engine(url, pool_pre_ping=True, echo=settings.sql_debug, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    session_factory = getattr(request.app.state, 'session_factory', SessionLocal)
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind: Engine | None = None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def run_atomic(
    session_factory: Callable[[], Session],
    operation: Callable[[Session], T],
    *,
    label: str,
    attempts: int = 1,
    retry_integrity_errors: bool = False,
    backoff_seconds: float | None = None,
) -> T:
    """Run ``operation`` in its own transaction and commit it.

    Lock timeouts, serialization failures and pool exhaustion are retried up
    to ``attempts`` times and then surface as ``Transient``. Constraint
    violations are retried only when ``retry_integrity_errors`` is set (a
    lost insert race); otherwise they mean a competing writer won and surface
    as ``Conflict``. Domain errors propagate untouched after rollback.
    """
    attempts = max(1, attempts)
    backoff = settings.claim_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    failure: Exception | None = None

    for attempt in range(1, attempts + 1):
        with session_factory() as db:
            try:
                result = operation(db)
                db.commit()
                return result
            except IntegrityError as exc:
                db.rollback()
                if not retry_integrity_errors:
                    logger.info('%s lost a uniqueness race: %s', label, exc.orig)
                    raise Conflict('Request conflicts with a concurrent change') from exc
                failure = exc
            except (OperationalError, PoolTimeoutError) as exc:
                db.rollback()
                failure = exc
            except Exception:
                db.rollback()
                raise

        if attempt < attempts:
            logger.info('%s attempt %s/%s failed, retrying: %s', label, attempt, attempts, failure)
            time.sleep(backoff * attempt)

    logger.warning('%s gave up after %s attempt(s): %s', label, attempts, failure)
    raise Transient(f'{label} could not complete, please retry') from failure
