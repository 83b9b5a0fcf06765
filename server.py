from __future__ import annotations

import logging
import mimetypes
import os
import re
from typing import Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request, send_file
from flask_cors import CORS
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from actions import dispatch
from actions.task_catalog import seed_task_catalog
from auth import ALL_ROLES, STATIC_RBAC_PERMISSIONS, assert_permission, is_public_action, role_or_public, validate_session_token
from cache_layer import cache_clear, invalidate_rbac
from config import Config
from db import SessionLocal, init_engine
from models import AuditLog, Permission, Role
from services.certificate_store import certificate_path
from utils import ApiError, err, iso_utc_now, json_dumps_safe, now_monotonic, ok, parse_json_body, redact_for_audit


rest_api = Blueprint("rest_api", __name__)

log = logging.getLogger("api")


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def _body() -> dict:
    body = request.get_json(silent=True)
    return dict(body) if isinstance(body, dict) else {}


def _api_call_audit(db, action: str, auth_ctx, data: Any, stage_tag: str) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=action,
            stageTag=stage_tag,
            actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
            actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
            actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
            at=iso_utc_now(),
            correlationId=str(getattr(g, "request_id", "") or ""),
            metaJson=json_dumps_safe({"data": redact_for_audit(data or {})}),
        )
    )


def _rest_handle(action: str, data: dict):
    cfg = current_app.config["CFG"]
    token = _rest_token()
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()
        auth_ctx = validate_session_token(db, token, action=action_u)
        if not auth_ctx or not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")

        role = role_or_public(auth_ctx)
        assert_permission(db, role, action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)
        _api_call_audit(db, action_u, auth_ctx, data, "API_CALL_REST")

        db.commit()
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(cfg, action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status, details=e.details)[0], e.http_status
    except Exception:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", "Unexpected error")
        _write_error_audit(cfg, action_u, auth_ctx, data, api_err)
        log.exception("rest action=%s", action_u)
        return err(api_err.code, api_err.message, http_status=500)[0], 500
    finally:
        if db is not None:
            db.close()


# ---- onboarding journey -------------------------------------------------


@rest_api.post("/api/onboarding/create")
def rest_onboarding_create():
    return _rest_handle("ONBOARDING_JOURNEY_CREATE", _body())


@rest_api.get("/api/onboarding/progress")
def rest_onboarding_progress_list():
    return _rest_handle(
        "ONBOARDING_PROGRESS_LIST",
        {"stage": request.args.get("stage") or "", "status": request.args.get("status") or ""},
    )


@rest_api.get("/api/onboarding/progress/<user_id>")
def rest_onboarding_progress_get(user_id: str):
    return _rest_handle("ONBOARDING_PROGRESS_GET", {"userId": user_id})


@rest_api.put("/api/onboarding/progress/<user_id>/advance")
def rest_onboarding_advance(user_id: str):
    return _rest_handle("ONBOARDING_PHASE_ADVANCE", {**_body(), "userId": user_id})


@rest_api.post("/api/onboarding/<user_id>/reset")
def rest_onboarding_reset(user_id: str):
    return _rest_handle("ONBOARDING_JOURNEY_RESET", {**_body(), "userId": user_id})


@rest_api.delete("/api/onboarding/<user_id>")
def rest_onboarding_delete(user_id: str):
    return _rest_handle("ONBOARDING_JOURNEY_DELETE", {"userId": user_id})


@rest_api.get("/api/onboarding/tasks/default")
def rest_task_catalog_list():
    return _rest_handle(
        "TASK_CATALOG_LIST",
        {"stage": request.args.get("stage") or "", "journeyType": request.args.get("journeyType") or ""},
    )


@rest_api.get("/api/onboarding/journey-types")
def rest_journey_types_list():
    return _rest_handle("JOURNEY_TYPES_LIST", {})


@rest_api.put("/api/onboarding/tasks/<int:task_id>/complete")
def rest_task_complete(task_id: int):
    return _rest_handle("TASK_COMPLETION_SET", {**_body(), "taskId": task_id})


@rest_api.put("/api/onboarding/tasks/<int:task_id>/validate")
def rest_task_validate(task_id: int):
    return _rest_handle("TASK_VALIDATE", {**_body(), "taskId": task_id})


# ---- supervisor assessments ---------------------------------------------


@rest_api.post("/api/supervisor-assessments/initialize/<user_id>")
def rest_supervisor_assessment_init(user_id: str):
    return _rest_handle("SUPERVISOR_ASSESSMENT_INIT", {**_body(), "userId": user_id})


@rest_api.post("/api/supervisor-assessments/<assessment_id>/upload-certificate")
def rest_supervisor_assessment_upload(assessment_id: str):
    up = request.files.get("file")
    if up is not None:
        data = {
            "assessmentId": assessment_id,
            "fileName": str(getattr(up, "filename", "") or "").strip(),
            "fileBytes": up.read() or b"",
        }
    else:
        data = {**_body(), "assessmentId": assessment_id}
    return _rest_handle("SUPERVISOR_ASSESSMENT_UPLOAD_CERTIFICATE", data)


@rest_api.post("/api/supervisor-assessments/<assessment_id>/conduct-assessment")
def rest_supervisor_assessment_conduct(assessment_id: str):
    return _rest_handle("SUPERVISOR_ASSESSMENT_CONDUCT", {**_body(), "assessmentId": assessment_id})


@rest_api.post("/api/supervisor-assessments/<assessment_id>/make-decision")
def rest_supervisor_assessment_decide(assessment_id: str):
    return _rest_handle("SUPERVISOR_ASSESSMENT_DECIDE", {**_body(), "assessmentId": assessment_id})


@rest_api.post("/api/supervisor-assessments/<assessment_id>/hr-approve")
def rest_supervisor_assessment_hr_approve(assessment_id: str):
    return _rest_handle("SUPERVISOR_ASSESSMENT_HR_APPROVE", {**_body(), "assessmentId": assessment_id})


@rest_api.get("/api/supervisor-assessments/pending-hr-approval")
def rest_supervisor_assessments_hr_queue():
    return _rest_handle("SUPERVISOR_ASSESSMENTS_HR_QUEUE", {})


@rest_api.get("/api/supervisor-assessments/supervisor/<supervisor_id>")
def rest_supervisor_assessments_by_supervisor(supervisor_id: str):
    return _rest_handle(
        "SUPERVISOR_ASSESSMENTS_BY_SUPERVISOR",
        {"supervisorId": supervisor_id, "status": request.args.get("status") or ""},
    )


@rest_api.get("/api/supervisor-assessments/<assessment_id>")
def rest_supervisor_assessment_get(assessment_id: str):
    return _rest_handle("SUPERVISOR_ASSESSMENT_GET", {"assessmentId": assessment_id})


@rest_api.get("/api/supervisor-assessments/<assessment_id>/certificate")
def rest_supervisor_assessment_certificate(assessment_id: str):
    cfg: Config = current_app.config["CFG"]
    token = _rest_token()

    db = None
    try:
        db = SessionLocal()
        auth_ctx = validate_session_token(db, token, action="SUPERVISOR_ASSESSMENT_GET")
        if not auth_ctx.valid:
            return err("AUTH_INVALID", "Invalid or expired session", http_status=401)[0], 401

        role = role_or_public(auth_ctx)
        assert_permission(db, role, "SUPERVISOR_ASSESSMENT_GET")

        # Same visibility rules as reading the assessment itself.
        out = dispatch("SUPERVISOR_ASSESSMENT_GET", {"assessmentId": assessment_id}, auth_ctx, db, cfg)
        file_ref = str((out.get("assessment") or {}).get("certificateFile") or "")
        path = certificate_path(cfg, file_ref)
        if not path:
            return err("NOT_FOUND", "Certificate not found", http_status=404)[0], 404

        mime = mimetypes.guess_type(path)[0] or "application/octet-stream"
        resp = send_file(path, mimetype=mime, as_attachment=False, download_name=os.path.basename(path))
        resp.headers["X-Content-Type-Options"] = "nosniff"
        return resp
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status, details=e.details)[0], e.http_status
    finally:
        if db is not None:
            db.close()


# ---- hr assessments -----------------------------------------------------


@rest_api.post("/api/hr-assessments/initialize/<user_id>")
def rest_hr_assessment_init(user_id: str):
    return _rest_handle("HR_ASSESSMENT_INIT", {**_body(), "userId": user_id})


@rest_api.post("/api/hr-assessments/<assessment_id>/conduct-assessment")
def rest_hr_assessment_conduct(assessment_id: str):
    return _rest_handle("HR_ASSESSMENT_CONDUCT", {**_body(), "assessmentId": assessment_id})


@rest_api.post("/api/hr-assessments/<assessment_id>/make-decision")
def rest_hr_assessment_decide(assessment_id: str):
    return _rest_handle("HR_ASSESSMENT_DECIDE", {**_body(), "assessmentId": assessment_id})


@rest_api.get("/api/hr-assessments/pending")
def rest_hr_assessments_queue():
    return _rest_handle("HR_ASSESSMENTS_QUEUE", {})


@rest_api.get("/api/hr-assessments/hr/<hr_id>")
def rest_hr_assessments_by_hr(hr_id: str):
    return _rest_handle("HR_ASSESSMENTS_BY_HR", {"hrId": hr_id})


@rest_api.get("/api/hr-assessments/<assessment_id>")
def rest_hr_assessment_get(assessment_id: str):
    return _rest_handle("HR_ASSESSMENT_GET", {"assessmentId": assessment_id})


# ---- notifications ------------------------------------------------------


@rest_api.get("/api/notifications")
def rest_notifications_list():
    return _rest_handle(
        "NOTIFICATIONS_LIST",
        {"unreadOnly": request.args.get("unreadOnly") or "", "limit": request.args.get("limit") or ""},
    )


@rest_api.post("/api/notifications/<int:notification_id>/read")
def rest_notification_mark_read(notification_id: int):
    return _rest_handle("NOTIFICATION_MARK_READ", {"notificationId": notification_id})


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {str(r.roleCode or "").upper() for r in db.execute(select(Role)).scalars().all()}
    for rc in ALL_ROLES:
        if rc in existing_roles:
            continue
        db.add(Role(roleCode=rc, roleName=rc, status="ACTIVE", createdAt=now, createdBy=actor))

    # Only inserts missing keys so custom RBAC rows survive restarts.
    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.execute(select(Permission)).scalars().all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        if ("ACTION", action.upper()) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def _ping_redis(redis_url: str) -> bool:
    if not redis_url:
        return True
    try:
        import redis

        r = redis.from_url(redis_url, socket_connect_timeout=2)
        r.ping()
        return True
    except Exception:
        log.warning("redis ping failed", exc_info=True)
        return False


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)
    cache_clear()

    app = Flask(__name__)
    app.config["CFG"] = cfg
    # Progress views key stages in journey order.
    app.json.sort_keys = False
    # Multipart bodies carry the certificate plus form overhead.
    app.config["MAX_CONTENT_LENGTH"] = (cfg.MAX_CERTIFICATE_MB + 1) * 1024 * 1024

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    db0 = SessionLocal()
    try:
        _seed_roles_and_permissions(db0)
        created = seed_task_catalog(db0)
        db0.commit()
        invalidate_rbac()
        if created:
            logging.getLogger("workflow").info("seeded %s default onboarding tasks", created)
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats
        from db import get_pool_stats

        return ok({"status": "ok", "time": iso_utc_now(), "version": cfg.APP_VERSION, "db_pool": get_pool_stats(), "cache": cache_stats()})[0]

    @app.get("/ready")
    def ready():
        db_ok = True
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError:
            log.exception("readiness db check failed")
            db_ok = False
        finally:
            db.close()

        redis_ok = _ping_redis(cfg.REDIS_URL)
        all_ok = db_ok and redis_ok
        body = {
            "status": "ok" if all_ok else "degraded",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "checks": {"db": "ok" if db_ok else "error", "redis": "ok" if redis_ok else "error"},
        }
        return ok(body)[0], (200 if all_ok else 503)

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("VALIDATION_ERROR", f"Max upload size is {cfg.MAX_CERTIFICATE_MB}MB", http_status=413)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        raw = request.get_data(as_text=True)
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(raw)
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token") or _rest_token()
            data = body.get("data") or {}
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token, action=action_u)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")

            role = role_or_public(auth_ctx)
            assert_permission(db, role, action_u)

            if action_u == "SESSION_LOGOUT" and not data.get("sessionToken"):
                data = {**data, "sessionToken": token}

            out = dispatch(action_u, data, auth_ctx, db, cfg2)
            _api_call_audit(db, action_u, auth_ctx, data, "API_CALL")

            db.commit()

            latency_ms = int((now_monotonic() - g.start_ts) * 1000)
            log.info(
                "request_id=%s action=%s user=%s role=%s latency_ms=%s",
                g.request_id,
                action_u,
                (auth_ctx.userId if auth_ctx else "PUBLIC"),
                (auth_ctx.role if auth_ctx else "PUBLIC"),
                latency_ms,
            )
            return ok(out)[0]
        except ApiError as e:
            if db is not None:
                db.rollback()
            _write_error_audit(cfg2, action_u, auth_ctx, data, e)
            return err(e.code, e.message, http_status=e.http_status, details=e.details)[0], e.http_status
        except DBAPIError as e:
            if db is not None:
                db.rollback()

            request_id = str(getattr(g, "request_id", "") or "").strip()
            orig_msg = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()[:300]
            if cfg2.IS_PRODUCTION or not orig_msg:
                msg = f"Database error (requestId: {request_id})"
            else:
                msg = f"Database error: {orig_msg} (requestId: {request_id})"

            api_err = ApiError("INTERNAL", msg, http_status=500)
            _write_error_audit(cfg2, action_u, auth_ctx, data, api_err)
            log.exception("request_id=%s action=%s", request_id, action_u)
            return err(api_err.code, api_err.message, http_status=500)[0], 500
        except Exception as e:
            if db is not None:
                db.rollback()

            request_id = str(getattr(g, "request_id", "") or "").strip()
            if cfg2.IS_PRODUCTION:
                msg = f"Unexpected error (requestId: {request_id})"
            else:
                msg = f"Unexpected error: {type(e).__name__} (requestId: {request_id})"

            api_err = ApiError("INTERNAL", msg, http_status=500)
            _write_error_audit(cfg2, action_u, auth_ctx, data, api_err)
            log.exception("request_id=%s action=%s", request_id, action_u)
            return err(api_err.code, api_err.message, http_status=500)[0], 500
        finally:
            if db is not None:
                db.close()

    return app


def _write_error_audit(cfg: Config, action: str, auth_ctx, data: Any, err_obj: ApiError):
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json_dumps_safe(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    }
                ),
            )
        )
        db2.commit()
    except SQLAlchemyError:
        db2.rollback()
        log.warning("error audit write failed action=%s", action, exc_info=True)
    finally:
        db2.close()


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    app.run(host=cfg.HOST, port=cfg.PORT)
