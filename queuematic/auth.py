from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    ADMIN = "ADMIN"
    CLERK = "CLERK"


@dataclass
class Principal:
    id: int
    username: str
    role: Role
    branch_id: int | None
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def is_admin_role(role: Role) -> bool:
    return role == Role.ADMIN


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


require_admin = require_role(Role.ADMIN)
require_clerk = require_role(Role.CLERK)


def can_access_branch(principal: Principal, branch_id: int) -> bool:
    if is_admin_role(principal.role):
        return True
    return principal.branch_id == branch_id


def assert_branch_scope(principal: Principal, target_branch_id: int) -> None:
    if not can_access_branch(principal, target_branch_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
