from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "VALIDATION_ERROR": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INVALID_STATE": 409,
    "INTERNAL": 500,
}


class ApiError(Exception):
    """Domain error surfaced through the {ok: false, error: {...}} envelope."""

    def __init__(self, code: str, message: str, *, http_status: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))
        self.details = dict(details or {})


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


def ok(data: Any = None, http_status: int = 200):
    return {"ok": True, "data": data}, http_status


def err(code: str, message: str, *, http_status: int = 400, details: dict | None = None):
    body: dict[str, Any] = {"ok": False, "error": {"code": code, "message": message}}
    if details:
        body["error"]["details"] = details
    return body, http_status


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_monotonic() -> float:
    return time.monotonic()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_utc_now() -> str:
    return to_iso_utc(utc_now())


def iso_utc_in(days: int) -> str:
    return to_iso_utc(utc_now() + timedelta(days=int(days)))


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


_ROLE_ALIASES = {
    "MGR": "MANAGER",
    "SUPERVISOR": "SUPERVISOR",
    "HR_ADMIN": "HR",
}


def normalize_role(role: Any) -> str | None:
    r = str(role or "").strip().upper()
    if not r:
        return None
    return _ROLE_ALIASES.get(r, r)


def parse_roles_csv(value: str) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def parse_json_body(raw: str) -> dict:
    if not raw:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value if value is not None else "").strip().lower()
    if not s:
        return default
    return s in {"1", "true", "yes", "y", "on"}


def json_dumps_safe(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return "{}"


def json_loads_dict(raw: str) -> dict:
    try:
        out = json.loads(str(raw or "") or "{}")
    except json.JSONDecodeError:
        return {}
    return out if isinstance(out, dict) else {}


_SENSITIVE_KEY_RE = re.compile(r"(token|password|secret|idtoken|file(blob|bytes))", re.IGNORECASE)


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if _SENSITIVE_KEY_RE.search(str(k)):
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data
