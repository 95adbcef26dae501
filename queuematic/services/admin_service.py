from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from queuematic import clock
from queuematic.errors import Conflict, Invalid, NotFound
from queuematic.models import Branch, Counter, Principal as PrincipalModel, PrincipalRole
from queuematic.security.passwords import hash_password
from queuematic.services.counter_session_service import open_session_for_counter, open_session_for_principal


def list_branches(db: Session, *, include_inactive: bool = True) -> list[Branch]:
    stmt = select(Branch).order_by(Branch.name.asc())
    if not include_inactive:
        stmt = stmt.where(Branch.active.is_(True))
    return list(db.execute(stmt).scalars())


def _branch_name_taken(db: Session, name: str, *, exclude_id: int | None = None) -> bool:
    stmt = select(Branch.id).where(func.lower(Branch.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Branch.id != exclude_id)
    return db.execute(stmt).first() is not None


def create_branch(db: Session, *, name: str, address: str | None = None, phone: str | None = None) -> Branch:
    clean_name = name.strip()
    if not clean_name:
        raise Invalid('Branch name is required')
    if _branch_name_taken(db, clean_name):
        raise Conflict('Branch name is already in use')

    branch = Branch(name=clean_name, address=address, phone=phone, active=True, created_at=clock.now())
    db.add(branch)
    db.flush()
    return branch


def update_branch(
    db: Session,
    *,
    branch_id: int,
    name: str | None = None,
    address: str | None = None,
    phone: str | None = None,
    active: bool | None = None,
) -> Branch:
    branch = db.get(Branch, branch_id)
    if not branch:
        raise NotFound('Branch not found')

    if name is not None:
        clean_name = name.strip()
        if not clean_name:
            raise Invalid('Branch name is required')
        if _branch_name_taken(db, clean_name, exclude_id=branch.id):
            raise Conflict('Branch name is already in use')
        branch.name = clean_name
    if address is not None:
        branch.address = address
    if phone is not None:
        branch.phone = phone
    if active is not None:
        branch.active = active
    db.flush()
    return branch


def list_counters(db: Session, *, branch_id: int) -> list[Counter]:
    if not db.get(Branch, branch_id):
        raise NotFound('Branch not found')
    return list(db.execute(select(Counter).where(Counter.branch_id == branch_id).order_by(Counter.number)).scalars())


def _counter_number_taken(db: Session, *, branch_id: int, number: int, exclude_id: int | None = None) -> bool:
    stmt = select(Counter.id).where(Counter.branch_id == branch_id, Counter.number == number)
    if exclude_id is not None:
        stmt = stmt.where(Counter.id != exclude_id)
    return db.execute(stmt).first() is not None


def create_counter(db: Session, *, branch_id: int, number: int) -> Counter:
    if not db.get(Branch, branch_id):
        raise NotFound('Branch not found')
    if number <= 0:
        raise Invalid('Counter number must be positive')
    if _counter_number_taken(db, branch_id=branch_id, number=number):
        raise Conflict(f'Counter {number} already exists at this branch')

    now = clock.now()
    counter = Counter(branch_id=branch_id, number=number, active=True, created_at=now, updated_at=now)
    db.add(counter)
    db.flush()
    return counter


def update_counter(
    db: Session,
    *,
    counter_id: int,
    number: int | None = None,
    active: bool | None = None,
) -> Counter:
    counter = db.get(Counter, counter_id, with_for_update=True)
    if not counter:
        raise NotFound('Counter not found')

    if number is not None and number != counter.number:
        if number <= 0:
            raise Invalid('Counter number must be positive')
        if _counter_number_taken(db, branch_id=counter.branch_id, number=number, exclude_id=counter.id):
            raise Conflict(f'Counter {number} already exists at this branch')
        counter.number = number

    if active is False and counter.active:
        if open_session_for_counter(db, counter.id):
            raise Conflict('Cannot deactivate a counter while a session is open on it')
        counter.active = False
    elif active is True:
        counter.active = True

    counter.updated_at = clock.now()
    db.flush()
    return counter


def list_users(db: Session, *, branch_id: int | None = None) -> list[PrincipalModel]:
    stmt = select(PrincipalModel).order_by(PrincipalModel.role.asc(), PrincipalModel.username.asc())
    if branch_id is not None:
        stmt = stmt.where(PrincipalModel.branch_id == branch_id)
    return list(db.execute(stmt).scalars())


def create_user(
    db: Session,
    *,
    username: str,
    password: str,
    role: PrincipalRole,
    branch_id: int | None,
    full_name: str | None = None,
) -> PrincipalModel:
    clean_username = username.strip()
    if not clean_username:
        raise Invalid('Username is required')
    if not password.strip():
        raise Invalid('Password is required')
    if role == PrincipalRole.CLERK and branch_id is None:
        raise Invalid('Clerks must be assigned to a branch')
    if branch_id is not None and not db.get(Branch, branch_id):
        raise NotFound('Branch not found')

    existing = db.execute(
        select(PrincipalModel.id).where(func.lower(PrincipalModel.username) == clean_username.lower())
    ).first()
    if existing:
        raise Conflict('Username is already in use')

    now = clock.now()
    principal = PrincipalModel(
        username=clean_username,
        password_hash=hash_password(password),
        full_name=full_name,
        role=role,
        branch_id=branch_id,
        active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(principal)
    db.flush()
    return principal


def update_user(
    db: Session,
    *,
    principal_id: int,
    full_name: str | None = None,
    branch_id: int | None = None,
    active: bool | None = None,
    password: str | None = None,
) -> PrincipalModel:
    principal = db.get(PrincipalModel, principal_id)
    if not principal:
        raise NotFound('User not found')

    if branch_id is not None and branch_id != principal.branch_id:
        if not db.get(Branch, branch_id):
            raise NotFound('Branch not found')
        if open_session_for_principal(db, principal.id):
            raise Conflict('Close the user\'s counter session before moving branches')
        principal.branch_id = branch_id
    if active is False and principal.active:
        if open_session_for_principal(db, principal.id):
            raise Conflict('Close the user\'s counter session before deactivating')
        principal.active = False
    elif active is True:
        principal.active = True
    if full_name is not None:
        principal.full_name = full_name
    if password is not None:
        if not password.strip():
            raise Invalid('Password is required')
        principal.password_hash = hash_password(password)

    principal.updated_at = clock.now()
    db.flush()
    return principal
