"""
Celery worker for notification webhooks.

    celery -A jobs.celery_app worker -Q notifications --loglevel=INFO

The worker shares ``config.Config`` with the web app; REDIS_URL is the broker.
"""
from __future__ import annotations

from celery import Celery
from dotenv import load_dotenv

from config import Config


def make_celery(cfg: Config | None = None) -> Celery:
    cfg = cfg or Config()
    broker = cfg.REDIS_URL or "redis://localhost:6379/0"

    app = Celery("onboarding_gate", broker=broker, include=["jobs.notifications"])
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        task_ignore_result=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_routes={"jobs.notifications.*": {"queue": "notifications"}},
        broker_connection_retry_on_startup=True,
        enable_utc=True,
    )
    return app


load_dotenv()
celery_app = make_celery()
