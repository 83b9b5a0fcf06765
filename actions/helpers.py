from __future__ import annotations

import os
from enum import Enum
from typing import Any, Mapping

from flask import g, has_request_context

from models import AuditLog
from utils import ApiError, AuthContext, iso_utc_now, json_dumps_safe, redact_for_audit


def _correlation_id() -> str:
    if not has_request_context():
        return ""
    return str(getattr(g, "request_id", "") or "")


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: AuthContext | None = None,
    at: str | None = None,
    before: Any = None,
    after: Any = None,
    meta: Any = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId) if actor else "SYSTEM",
            actorRole=str(actor.role) if actor else "SYSTEM",
            actorEmail=str(getattr(actor, "email", "") or "") if actor else "",
            at=at or iso_utc_now(),
            correlationId=_correlation_id(),
            beforeJson=json_dumps_safe(before) if before is not None else "",
            afterJson=json_dumps_safe(after) if after is not None else "",
            metaJson=json_dumps_safe(redact_for_audit(meta)) if meta is not None else "",
        )
    )


def actor_id(auth: AuthContext | None) -> str:
    return str((auth.userId if auth else "") or (auth.email if auth else "") or "SYSTEM").strip()


def next_state(table: Mapping[tuple, Enum], current: str, action: str, *, entity: str) -> Enum:
    """
    Look up (current, action) in a workflow transition table.

    Raises INVALID_STATE naming the status the action needs, so callers can tell
    which step has to happen first.
    """

    key = (str(current or ""), str(action or ""))
    for (frm, act), to in table.items():
        if (str(frm.value if isinstance(frm, Enum) else frm), act) == key:
            return to

    required = [str(frm.value if isinstance(frm, Enum) else frm) for (frm, act) in table if act == action]
    if not required:
        raise ApiError(
            "INVALID_STATE",
            f"{entity} has no transition defined from status '{current}'",
            details={"currentStatus": str(current or ""), "action": action},
        )
    raise ApiError(
        "INVALID_STATE",
        f"{entity} must be in status '{required[0]}' to {action.replace('_', ' ')} (current: '{current}')",
        details={"currentStatus": str(current or ""), "requiredStatus": required[0] if len(required) == 1 else required},
    )


def require_text(data: dict, key: str, *, label: str | None = None) -> str:
    value = str((data or {}).get(key) or "").strip()
    if not value:
        raise ApiError("VALIDATION_ERROR", f"{label or key} is required", details={"field": key})
    return value


def optional_score(data: dict, key: str = "score") -> int | None:
    raw = (data or {}).get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        score = float(raw)
    except (TypeError, ValueError):
        raise ApiError("VALIDATION_ERROR", "Score must be a number between 0 and 100", details={"field": key})
    if score != score or score < 0 or score > 100:
        raise ApiError("VALIDATION_ERROR", "Score must be between 0 and 100", details={"field": key, "value": raw})
    return int(round(score))


def require_choice(data: dict, key: str, choices: Enum | type, *, label: str | None = None) -> str:
    value = str((data or {}).get(key) or "").strip().lower()
    allowed = [c.value for c in choices]  # type: ignore[union-attr]
    if not value:
        raise ApiError("VALIDATION_ERROR", f"{label or key} is required", details={"field": key, "allowed": allowed})
    if value not in allowed:
        raise ApiError(
            "VALIDATION_ERROR",
            f"Invalid {label or key}: {value}",
            details={"field": key, "allowed": allowed},
        )
    return value
