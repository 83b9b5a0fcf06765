from __future__ import annotations

import logging

import requests

import db as db_module
from config import Config
from jobs import celery_app
from services.notifications import deliver_notification_webhook


log = logging.getLogger("notifications")


def _session():
    if db_module.engine is None:
        db_module.init_engine(Config().DATABASE_URL)
    return db_module.SessionLocal()


@celery_app.task(autoretry_for=(requests.RequestException,), retry_backoff=True, max_retries=5)
def deliver_notification(notification_id: int) -> dict:
    """Posts one stored notification to the configured webhook."""
    cfg = Config()
    with _session() as db:
        out = deliver_notification_webhook(db, cfg, notification_id)
        db.commit()
    log.info("deliver_notification id=%s status=%s", notification_id, out["status"])
    return out
