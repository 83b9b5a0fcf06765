from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import issue_session_token, revoke_session, verify_google_id_token
from models import User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str) -> User | None:
    email_lc = str(email or "").strip().lower()
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def serialize_me(user: User) -> dict:
    return {
        "userId": user.userId,
        "email": str(user.email or ""),
        "fullName": str(user.fullName or ""),
        "role": normalize_role(user.role),
        "department": str(user.department or ""),
        "supervisorId": str(user.supervisorId or ""),
    }


def login_exchange(data, auth: AuthContext | None, db, cfg):
    google_user = verify_google_id_token(
        (data or {}).get("idToken"),
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )

    user = _find_user_by_email(db, google_user.get("email") or "")
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in directory")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role) or "", expiresAt=ses["expiresAt"]),
    )

    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": serialize_me(user)}


def get_me(data, auth: AuthContext | None, db, cfg):
    user = db.execute(select(User).where(User.userId == str(auth.userId if auth else ""))).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "Login required")
    return {"me": serialize_me(user), "expiresAt": auth.expiresAt}


def session_logout(data, auth: AuthContext | None, db, cfg):
    token = str((data or {}).get("sessionToken") or "").strip()
    if not token:
        raise ApiError("BAD_REQUEST", "Missing sessionToken")
    revoked = revoke_session(db, token, revoked_by=str(auth.userId if auth else ""))
    return {"revoked": revoked}
