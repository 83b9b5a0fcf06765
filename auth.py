from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import NO_RULE, get_cached_roles, get_cached_rule, put_cached_roles, put_cached_rule
from models import Permission, Role, Session as DbSession, User
from utils import (
    ApiError,
    AuthContext,
    iso_utc_now,
    new_uuid,
    normalize_role,
    parse_datetime_maybe,
    parse_roles_csv,
    sha256_hex,
    to_iso_utc,
    utc_now,
)


ALL_ROLES = ["EMPLOYEE", "SUPERVISOR", "MANAGER", "HR", "ADMIN"]

PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
}


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "GET_ME": ALL_ROLES,
    "SESSION_LOGOUT": ALL_ROLES,
    # Catalog (read-only reference data)
    "TASK_CATALOG_LIST": ALL_ROLES,
    "JOURNEY_TYPES_LIST": ALL_ROLES,
    # Stage tracker
    "ONBOARDING_JOURNEY_CREATE": ["HR", "ADMIN"],
    "ONBOARDING_JOURNEY_RESET": ["HR", "ADMIN"],
    "ONBOARDING_JOURNEY_DELETE": ["HR", "ADMIN"],
    "ONBOARDING_PHASE_ADVANCE": ["HR", "SUPERVISOR"],
    "ONBOARDING_PROGRESS_GET": ALL_ROLES,
    "ONBOARDING_PROGRESS_LIST": ["HR", "ADMIN", "MANAGER", "SUPERVISOR"],
    # Task ledger
    "TASK_COMPLETION_SET": ["HR", "SUPERVISOR"],
    "TASK_VALIDATE": ["HR"],
    # Supervisor assessment workflow (phase_1 -> phase_2)
    "SUPERVISOR_ASSESSMENT_INIT": ["SUPERVISOR", "MANAGER", "HR"],
    "SUPERVISOR_ASSESSMENT_UPLOAD_CERTIFICATE": ["SUPERVISOR", "MANAGER"],
    "SUPERVISOR_ASSESSMENT_CONDUCT": ["SUPERVISOR", "MANAGER"],
    "SUPERVISOR_ASSESSMENT_DECIDE": ["SUPERVISOR", "MANAGER"],
    "SUPERVISOR_ASSESSMENT_HR_APPROVE": ["HR"],
    "SUPERVISOR_ASSESSMENT_GET": ALL_ROLES,
    "SUPERVISOR_ASSESSMENTS_BY_SUPERVISOR": ["SUPERVISOR", "MANAGER", "HR"],
    "SUPERVISOR_ASSESSMENTS_HR_QUEUE": ["HR"],
    # HR assessment workflow (phase_2 -> completed)
    "HR_ASSESSMENT_INIT": ["HR"],
    "HR_ASSESSMENT_CONDUCT": ["HR"],
    "HR_ASSESSMENT_DECIDE": ["HR"],
    "HR_ASSESSMENT_GET": ["HR"],
    "HR_ASSESSMENTS_BY_HR": ["HR"],
    "HR_ASSESSMENTS_QUEUE": ["HR"],
    # Notifications inbox
    "NOTIFICATIONS_LIST": ALL_ROLES,
    "NOTIFICATION_MARK_READ": ALL_ROLES,
}



def _invalid() -> AuthContext:
    return AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "sub": "TEST"}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")

    try:
        payload = google_id_token.verify_oauth2_token(id_token, google_requests.Request(), audience=google_client_id)
    except ValueError:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")
    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
    }


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    issued_at = iso_utc_now()
    expires_at = to_iso_utc(utc_now() + timedelta(minutes=session_ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=str(normalize_role(role) or ""),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_session(db, token: str, *, revoked_by: str) -> bool:
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _invalid()

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _invalid()

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < utc_now():
        return _invalid()

    user_id = str(ses.userId or "").strip()
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _invalid()
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled")

    ses.lastSeenAt = iso_utc_now()

    # Role comes from the directory so a role change takes effect without re-login.
    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=str(normalize_role(usr.role) or ""),
        expiresAt=str(ses.expiresAt or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cached = get_cached_rule(perm_type_u, perm_key_u)
    if cached is NO_RULE:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")} if row else None
    put_cached_rule(perm_type_u, perm_key_u, out)
    return out


def _roles_index(db) -> dict[str, str]:
    cached = get_cached_roles()
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    if not rows:
        out = {rc: "ACTIVE" for rc in ALL_ROLES}
    else:
        out = {normalize_role(r.roleCode): str(r.status or "ACTIVE").upper() for r in rows if normalize_role(r.roleCode)}
    put_cached_roles(out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    return _roles_index(db).get(r) == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")

    roles = (rule.get("roles") or []) if has_dyn else (allowed_static or [])
    if role_u not in roles:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
