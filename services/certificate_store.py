"""
Certificate files for supervisor assessments.

Files live under ``UPLOAD_DIR`` and follow the request transaction: a file
written by a transaction that rolls back is removed, and a file dropped by a
deleted assessment is removed only once the delete commits.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import event
from werkzeug.utils import secure_filename

from db import SessionLocal
from utils import ApiError, new_uuid


log = logging.getLogger("certificates")

ALLOWED_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "pdf", "doc", "docx"}

_WRITTEN_KEY = "certificates_written"
_DISCARD_KEY = "certificates_discarded"


def _upload_dir(cfg: Any) -> str:
    return str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError:
        log.warning("certificate cleanup failed path=%s", path, exc_info=True)
        return
    log.info("certificate removed path=%s", path)


def save_certificate(db, cfg: Any, *, assessment_id: str, file_name: str, file_bytes: bytes) -> str:
    """Validate and persist an uploaded certificate; returns the stored file reference."""

    safe_name = secure_filename(str(file_name or "")) or "certificate"
    ext = safe_name.rsplit(".", 1)[-1].lower() if "." in safe_name else ""
    if ext not in ALLOWED_EXTENSIONS:
        raise ApiError(
            "VALIDATION_ERROR",
            "Only images (jpeg, jpg, png, gif), PDFs and Word documents are allowed",
            details={"field": "file", "allowed": sorted(ALLOWED_EXTENSIONS)},
        )

    size = len(file_bytes or b"")
    if size <= 0:
        raise ApiError("VALIDATION_ERROR", "Certificate file is required", details={"field": "file"})
    max_mb = int(getattr(cfg, "MAX_CERTIFICATE_MB", 10) or 10)
    if size > max_mb * 1024 * 1024:
        raise ApiError("VALIDATION_ERROR", f"Max upload size is {max_mb}MB", http_status=413, details={"field": "file"})

    upload_dir = _upload_dir(cfg)
    os.makedirs(upload_dir, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    stored_name = f"certificate_{secure_filename(assessment_id)}_{stamp}_{new_uuid()[:8]}.{ext}"
    path = os.path.join(upload_dir, stored_name)

    with open(path, "wb") as fh:
        fh.write(file_bytes)
    db.info.setdefault(_WRITTEN_KEY, []).append(path)
    return stored_name


def discard_certificate(db, cfg: Any, file_ref: str) -> bool:
    """Schedule removal of a stored certificate for when ``db`` commits."""
    path = certificate_path(cfg, file_ref)
    if not path:
        return False
    db.info.setdefault(_DISCARD_KEY, []).append(path)
    return True


def certificate_path(cfg: Any, file_ref: str) -> str | None:
    ref = str(file_ref or "").strip()
    if not ref or ref != secure_filename(ref):
        return None
    path = os.path.join(_upload_dir(cfg), ref)
    return path if os.path.isfile(path) else None


@event.listens_for(SessionLocal, "after_commit")
def _after_commit(session):
    session.info.pop(_WRITTEN_KEY, None)
    for path in session.info.pop(_DISCARD_KEY, []):
        _remove(path)


@event.listens_for(SessionLocal, "after_soft_rollback")
def _after_soft_rollback(session, previous_transaction):
    # Savepoint rollbacks (notifications) leave the outer transaction's files alone.
    if previous_transaction.parent is not None:
        return
    session.info.pop(_DISCARD_KEY, None)
    for path in session.info.pop(_WRITTEN_KEY, []):
        _remove(path)
