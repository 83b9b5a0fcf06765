from __future__ import annotations

from sqlalchemy import select

from models import Notification
from services.notifications import serialize_notification
from utils import ApiError, AuthContext, iso_utc_now, parse_bool


def notifications_list(data, auth: AuthContext | None, db, cfg):
    unread_only = parse_bool((data or {}).get("unreadOnly"), default=False)
    try:
        limit = max(1, min(200, int((data or {}).get("limit") or 50)))
    except (TypeError, ValueError):
        limit = 50

    q = select(Notification).where(Notification.userId == str(auth.userId if auth else ""))
    if unread_only:
        q = q.where(Notification.isRead == False)  # noqa: E712
    rows = db.execute(q.order_by(Notification.createdAt.desc(), Notification.id.desc()).limit(limit)).scalars().all()
    return {"items": [serialize_notification(r) for r in rows], "total": len(rows)}


def notification_mark_read(data, auth: AuthContext | None, db, cfg):
    try:
        nid = int((data or {}).get("notificationId"))
    except (TypeError, ValueError):
        raise ApiError("VALIDATION_ERROR", "notificationId is required", details={"field": "notificationId"})

    row = db.execute(select(Notification).where(Notification.id == nid)).scalar_one_or_none()
    if not row or row.userId != str(auth.userId if auth else ""):
        raise ApiError("NOT_FOUND", "Notification not found")
    if not row.isRead:
        row.isRead = True
        row.readAt = iso_utc_now()
    return {"notification": serialize_notification(row)}
