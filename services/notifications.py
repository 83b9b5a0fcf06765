from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import requests
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from models import Notification, User
from utils import iso_utc_now, json_dumps_safe, json_loads_dict


log = logging.getLogger("notifications")


def notify(db, cfg, *, user_id: str, type: str, title: str, message: str, metadata: dict[str, Any] | None = None) -> int | None:
    """
    Fire-and-forget notification.

    The row is written inside a SAVEPOINT so a failure here never rolls back the
    workflow step that triggered it. Returns the notification id, or None when
    nothing was stored.
    """

    uid = str(user_id or "").strip()
    if not uid:
        return None

    # Pending workflow writes go out first; their failures belong to the caller.
    db.flush()

    try:
        with db.begin_nested():
            row = Notification(
                userId=uid,
                type=str(type or ""),
                title=str(title or ""),
                message=str(message or ""),
                metadataJson=json_dumps_safe(metadata or {}),
                isRead=False,
                readAt="",
                deliveredAt="",
                createdAt=iso_utc_now(),
            )
            db.add(row)
            db.flush()
            notification_id = int(row.id)
    except SQLAlchemyError:
        log.exception("notification store failed user=%s type=%s", uid, type)
        return None

    if bool(getattr(cfg, "NOTIFY_ASYNC", False)):
        _enqueue_delivery(notification_id, uid)

    return notification_id


def _enqueue_delivery(notification_id: int, user_id: str) -> None:
    try:
        from jobs.notifications import deliver_notification

        deliver_notification.delay(notification_id)
    except Exception:
        # Broker outages must not surface as a workflow failure.
        log.exception("notification enqueue failed id=%s user=%s", notification_id, user_id)


def sign_webhook_payload(payload: dict, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``"<timestamp>:<sorted compact json>"``."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode("utf-8"), f"{timestamp}:{body}".encode("utf-8"), hashlib.sha256).hexdigest()


def webhook_payload(row: Notification, recipient: User | None) -> dict:
    return {
        "notificationId": int(row.id or 0),
        "userId": str(row.userId or ""),
        "email": str(recipient.email or "") if recipient else "",
        "fullName": str(recipient.fullName or "") if recipient else "",
        "type": str(row.type or ""),
        "title": str(row.title or ""),
        "message": str(row.message or ""),
        "metadata": json_loads_dict(row.metadataJson),
        "createdAt": str(row.createdAt or ""),
    }


def deliver_notification_webhook(db, cfg, notification_id: int) -> dict:
    """
    POST one stored notification to ``cfg.NOTIFY_WEBHOOK_URL`` and stamp ``deliveredAt``.

    Already-delivered rows are skipped so a retried task never posts twice.
    ``requests.RequestException`` propagates to the caller for retry.
    """

    row = db.execute(select(Notification).where(Notification.id == int(notification_id))).scalar_one_or_none()
    if not row:
        return {"notificationId": notification_id, "status": "missing"}
    if row.deliveredAt:
        return {"notificationId": notification_id, "status": "already_delivered", "deliveredAt": row.deliveredAt}

    url = str(getattr(cfg, "NOTIFY_WEBHOOK_URL", "") or "").strip()
    if not url:
        raise RuntimeError("NOTIFY_WEBHOOK_URL is not configured")

    recipient = db.execute(select(User).where(User.userId == row.userId)).scalar_one_or_none()
    payload = webhook_payload(row, recipient)
    timestamp = int(time.time())
    headers = {"Content-Type": "application/json", "X-Timestamp": str(timestamp)}
    secret = str(getattr(cfg, "NOTIFY_WEBHOOK_SECRET", "") or "")
    if secret:
        headers["X-Signature"] = sign_webhook_payload(payload, secret, timestamp)

    resp = requests.post(url, json=payload, headers=headers, timeout=int(getattr(cfg, "NOTIFY_WEBHOOK_TIMEOUT", 10) or 10))
    resp.raise_for_status()

    row.deliveredAt = iso_utc_now()
    log.info("notification delivered id=%s user=%s status=%s", row.id, row.userId, resp.status_code)
    return {"notificationId": int(row.id), "status": "delivered", "deliveredAt": row.deliveredAt}


def notify_role(db, cfg, *, role: str, type: str, title: str, message: str, metadata: dict[str, Any] | None = None) -> int:
    role_u = str(role or "").upper().strip()
    users = (
        db.execute(select(User).where(User.role == role_u).where(User.status == "ACTIVE").order_by(User.userId.asc()))
        .scalars()
        .all()
    )
    sent = 0
    for u in users:
        if notify(db, cfg, user_id=u.userId, type=type, title=title, message=message, metadata=metadata) is not None:
            sent += 1
    return sent


def serialize_notification(row: Notification) -> dict:
    return {
        "id": int(row.id or 0),
        "userId": str(row.userId or ""),
        "type": str(row.type or ""),
        "title": str(row.title or ""),
        "message": str(row.message or ""),
        "metadata": json_loads_dict(row.metadataJson),
        "isRead": bool(row.isRead),
        "readAt": str(row.readAt or ""),
        "deliveredAt": str(row.deliveredAt or ""),
        "createdAt": str(row.createdAt or ""),
    }
