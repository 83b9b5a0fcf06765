"""
Hierarchy-aware authorization predicates.

Every workflow operation composes these before touching state:

  - SUPERVISOR acts on direct reports (single hop via User.supervisorId, never transitive)
  - MANAGER acts on users of the same department
  - HR acts on everyone

Predicates return bool; the ``require_*`` helpers raise FORBIDDEN so callers can
short-circuit before any mutation.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import select

from models import User
from utils import ApiError, AuthContext, normalize_role


def get_user(db, user_id: str) -> User | None:
    uid = str(user_id or "").strip()
    if not uid:
        return None
    return db.execute(select(User).where(User.userId == uid)).scalar_one_or_none()


def require_user(db, user_id: str, *, label: str = "User") -> User:
    usr = get_user(db, user_id)
    if not usr:
        raise ApiError("NOT_FOUND", f"{label} not found", details={"userId": str(user_id or "")})
    return usr


def actor_role(actor: AuthContext | None) -> str:
    if not actor or not actor.valid:
        return ""
    return normalize_role(actor.role) or ""


def has_role(actor: AuthContext | None, allowed_roles: Iterable[str]) -> bool:
    role = actor_role(actor)
    if not role:
        return False
    return role in {normalize_role(r) for r in allowed_roles}


def is_own_record(actor: AuthContext | None, target_user_id: str) -> bool:
    if not actor or not actor.valid:
        return False
    return bool(target_user_id) and str(actor.userId or "") == str(target_user_id)


def is_direct_supervisor_of(db, actor: AuthContext | None, target_user_id: str) -> bool:
    if not actor or not actor.valid:
        return False
    target = get_user(db, target_user_id)
    if not target:
        return False
    sup = str(target.supervisorId or "").strip()
    return bool(sup) and sup == str(actor.userId or "")


def is_same_department(db, actor: AuthContext | None, target_user_id: str) -> bool:
    if not actor or not actor.valid:
        return False
    me = get_user(db, actor.userId)
    target = get_user(db, target_user_id)
    if not me or not target:
        return False
    dept = str(me.department or "").strip().upper()
    return bool(dept) and dept == str(target.department or "").strip().upper()


def can_manage_user(db, actor: AuthContext | None, target_user_id: str, *, allowed_roles: Iterable[str]) -> bool:
    """Role in ``allowed_roles`` plus the hierarchy rule that role carries."""

    if not has_role(actor, allowed_roles):
        return False
    role = actor_role(actor)
    if role == "HR":
        return True
    if role == "SUPERVISOR":
        return is_direct_supervisor_of(db, actor, target_user_id)
    if role == "MANAGER":
        return is_same_department(db, actor, target_user_id)
    if role == "ADMIN":
        return True
    return False


def can_view_user(db, actor: AuthContext | None, target_user_id: str) -> bool:
    if is_own_record(actor, target_user_id):
        return True
    role = actor_role(actor)
    if role in {"HR", "ADMIN"}:
        return True
    if role == "SUPERVISOR":
        return is_direct_supervisor_of(db, actor, target_user_id)
    if role == "MANAGER":
        return is_same_department(db, actor, target_user_id)
    return False


def require_manage(db, actor: AuthContext | None, target_user_id: str, *, allowed_roles: Iterable[str]) -> None:
    if not actor or not actor.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    if not can_manage_user(db, actor, target_user_id, allowed_roles=allowed_roles):
        raise ApiError(
            "FORBIDDEN",
            "Not allowed to act on this employee",
            details={"role": actor_role(actor), "targetUserId": str(target_user_id or "")},
        )


def require_view(db, actor: AuthContext | None, target_user_id: str) -> None:
    if not actor or not actor.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    if not can_view_user(db, actor, target_user_id):
        raise ApiError("FORBIDDEN", "Not allowed to view this employee", details={"targetUserId": str(target_user_id or "")})


def can_be_assigned_supervisor(supervisor: User, employee: User) -> bool:
    """Whether ``supervisor`` would pass ``can_manage_user`` for ``employee`` as SUPERVISOR or MANAGER."""

    role = normalize_role(supervisor.role) or ""
    if str(supervisor.status or "ACTIVE").upper() != "ACTIVE":
        return False
    if role == "SUPERVISOR":
        return str(employee.supervisorId or "").strip() == str(supervisor.userId or "")
    if role == "MANAGER":
        dept = str(supervisor.department or "").strip().upper()
        return bool(dept) and dept == str(employee.department or "").strip().upper()
    return False
