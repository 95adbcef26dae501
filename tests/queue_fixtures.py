from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from queuematic import clock
from queuematic.auth import Principal
from queuematic.db import build_engine, build_session_factory
from queuematic.models import Base, Branch, Counter, Principal as PrincipalModel, PrincipalRole
from queuematic.security.sessions import to_principal


def memory_database():
    engine = build_engine('sqlite://', poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return engine, build_session_factory(engine)


def file_database(directory: str):
    engine = build_engine(f'sqlite:///{directory}/queue.db')
    Base.metadata.create_all(engine)
    return engine, build_session_factory(engine)


def add_branch(db: Session, name: str, *, active: bool = True) -> Branch:
    branch = Branch(name=name, active=active, created_at=clock.now())
    db.add(branch)
    db.flush()
    return branch


def add_counter(db: Session, branch: Branch, number: int, *, active: bool = True) -> Counter:
    now = clock.now()
    counter = Counter(branch_id=branch.id, number=number, active=active, created_at=now, updated_at=now)
    db.add(counter)
    db.flush()
    return counter


def add_user(
    db: Session,
    username: str,
    *,
    role: PrincipalRole = PrincipalRole.CLERK,
    branch: Branch | None = None,
    password_hash: str = 'unused',
) -> PrincipalModel:
    now = clock.now()
    user = PrincipalModel(
        username=username,
        password_hash=password_hash,
        role=role,
        branch_id=branch.id if branch else None,
        active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    db.flush()
    return user


def actor(user: PrincipalModel) -> Principal:
    return to_principal(user)


def build_branch(session_factory: sessionmaker[Session], *, counters: int = 2, clerks: int = 2):
    """One active branch with numbered counters, clerks and an admin."""
    with session_factory() as db:
        branch = add_branch(db, 'Main')
        counter_rows = [add_counter(db, branch, number) for number in range(1, counters + 1)]
        clerk_rows = [add_user(db, f'clerk{index}', branch=branch) for index in range(1, clerks + 1)]
        admin = add_user(db, 'admin', role=PrincipalRole.ADMIN)
        db.commit()
    return branch, counter_rows, [actor(row) for row in clerk_rows], actor(admin)


def at(year: int, month: int, day: int, hour: int = 9, minute: int = 0, second: float = 0) -> datetime:
    whole = int(second)
    return datetime(year, month, day, hour, minute, whole, int((second - whole) * 1_000_000), tzinfo=timezone.utc)
