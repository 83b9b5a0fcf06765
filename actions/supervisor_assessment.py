"""
Supervisor assessment: the gate between phase_1 and phase_2.

    pending_certificate --upload_certificate--> certificate_uploaded
    certificate_uploaded --conduct_assessment--> assessment_completed
    assessment_completed --make_decision--> hr_approval_pending
    hr_approval_pending --hr_approve--> hr_approved
    hr_approval_pending --hr_reject--> hr_rejected
    hr_approval_pending --hr_request_changes--> assessment_pending

assessment_pending has no outgoing transition yet; every action on it fails with
INVALID_STATE until the follow-up step is defined.
"""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from actions.events import SUPERVISOR_ASSESSMENT_APPROVED, SUPERVISOR_DECISION_MADE, DomainEvent, publish
from actions.helpers import actor_id, append_audit, next_state, optional_score, require_choice, require_text
from actions.progress_ledger import get_tracker, phase_tasks_completed
from actions.task_catalog import Phase, query_tasks
from guards import actor_role, can_be_assigned_supervisor, can_view_user, require_manage, require_user
from models import SupervisorAssessment, User
from services.certificate_store import save_certificate
from services.notifications import notify, notify_role
from utils import ApiError, AuthContext, iso_utc_now, new_uuid


log = logging.getLogger("workflow")


class SupervisorAssessmentStatus(str, Enum):
    PENDING_CERTIFICATE = "pending_certificate"
    CERTIFICATE_UPLOADED = "certificate_uploaded"
    ASSESSMENT_COMPLETED = "assessment_completed"
    HR_APPROVAL_PENDING = "hr_approval_pending"
    HR_APPROVED = "hr_approved"
    HR_REJECTED = "hr_rejected"
    ASSESSMENT_PENDING = "assessment_pending"


class SupervisorDecision(str, Enum):
    PROCEED_TO_PHASE_2 = "proceed_to_phase_2"
    TERMINATE = "terminate"
    PUT_ON_HOLD = "put_on_hold"


class HRDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


S = SupervisorAssessmentStatus

TRANSITIONS: dict[tuple[SupervisorAssessmentStatus, str], SupervisorAssessmentStatus] = {
    (S.PENDING_CERTIFICATE, "upload_certificate"): S.CERTIFICATE_UPLOADED,
    (S.CERTIFICATE_UPLOADED, "conduct_assessment"): S.ASSESSMENT_COMPLETED,
    (S.ASSESSMENT_COMPLETED, "make_decision"): S.HR_APPROVAL_PENDING,
    (S.HR_APPROVAL_PENDING, "hr_approve"): S.HR_APPROVED,
    (S.HR_APPROVAL_PENDING, "hr_reject"): S.HR_REJECTED,
    (S.HR_APPROVAL_PENDING, "hr_request_changes"): S.ASSESSMENT_PENDING,
}

HR_DECISION_ACTIONS = {
    HRDecision.APPROVE.value: "hr_approve",
    HRDecision.REJECT.value: "hr_reject",
    HRDecision.REQUEST_CHANGES.value: "hr_request_changes",
}

INIT_ROLES = {"SUPERVISOR", "MANAGER", "HR"}
SUPERVISOR_ROLES = {"SUPERVISOR", "MANAGER"}


def _transition(row: SupervisorAssessment, action: str) -> SupervisorAssessmentStatus:
    if row.status == S.ASSESSMENT_PENDING.value:
        raise ApiError(
            "INVALID_STATE",
            "HR requested changes on this assessment; no follow-up transition is defined for "
            "status 'assessment_pending' (requires product clarification)",
            details={"currentStatus": row.status, "action": action, "unresolved": True},
        )
    return next_state(TRANSITIONS, row.status, action, entity="Supervisor assessment")


def serialize_supervisor_assessment(row: SupervisorAssessment) -> dict:
    return {
        "assessmentId": str(row.assessmentId or ""),
        "progressId": str(row.progressId or ""),
        "userId": str(row.userId or ""),
        "supervisorId": str(row.supervisorId or ""),
        "status": str(row.status or ""),
        "phase1CompletedDate": str(row.phase1CompletedDate or ""),
        "certificateFile": str(row.certificateFile or ""),
        "certificateUploadDate": str(row.certificateUploadDate or ""),
        "assessmentDate": str(row.assessmentDate or ""),
        "assessmentNotes": str(row.assessmentNotes or ""),
        "assessmentScore": row.assessmentScore,
        "supervisorDecision": str(row.supervisorDecision or ""),
        "supervisorComments": str(row.supervisorComments or ""),
        "decisionDate": str(row.decisionDate or ""),
        "hrDecision": str(row.hrDecision or ""),
        "hrDecisionComments": str(row.hrDecisionComments or ""),
        "hrDecisionDate": str(row.hrDecisionDate or ""),
        "hrValidatorId": str(row.hrValidatorId or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def _employee_brief(db, user_id: str) -> dict:
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return {"userId": user_id, "fullName": "", "department": ""}
    return {"userId": usr.userId, "fullName": str(usr.fullName or ""), "department": str(usr.department or "")}


def _load(db, data, *, for_update: bool = False) -> SupervisorAssessment:
    assessment_id = str((data or {}).get("assessmentId") or "").strip()
    if not assessment_id:
        raise ApiError("VALIDATION_ERROR", "assessmentId is required", details={"field": "assessmentId"})
    q = select(SupervisorAssessment).where(SupervisorAssessment.assessmentId == assessment_id)
    if for_update:
        q = q.with_for_update(of=SupervisorAssessment)
    row = db.execute(q).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Assessment not found", details={"assessmentId": assessment_id})
    return row


def _audit(db, row: SupervisorAssessment, *, action: str, before: dict, auth, at: str, meta: dict | None = None) -> None:
    append_audit(
        db,
        entityType="SUPERVISOR_ASSESSMENT",
        entityId=row.assessmentId,
        action=action,
        fromState=before.get("status", ""),
        toState=row.status,
        stageTag=Phase.PHASE_1.value,
        actor=auth,
        at=at,
        before=before,
        after=serialize_supervisor_assessment(row),
        meta=meta,
    )


def _resolve_supervisor_id(db, data, auth: AuthContext, employee: User) -> str:
    supervisor_id = str((data or {}).get("supervisorId") or "").strip()
    if not supervisor_id and actor_role(auth) == "SUPERVISOR":
        supervisor_id = str(auth.userId or "")
    if not supervisor_id:
        supervisor_id = str(employee.supervisorId or "").strip()
    if not supervisor_id:
        raise ApiError("VALIDATION_ERROR", "Supervisor ID is required", details={"field": "supervisorId"})
    supervisor = require_user(db, supervisor_id, label="Supervisor")
    if not can_be_assigned_supervisor(supervisor, employee):
        raise ApiError(
            "VALIDATION_ERROR",
            "Supervisor must be the employee's direct supervisor or a manager of the same department",
            details={"field": "supervisorId", "supervisorId": supervisor_id, "role": str(supervisor.role or "")},
        )
    return supervisor_id


def supervisor_assessment_init(data, auth: AuthContext | None, db, cfg):
    user_id = str((data or {}).get("userId") or "").strip()
    if not user_id:
        raise ApiError("VALIDATION_ERROR", "userId is required", details={"field": "userId"})

    require_manage(db, auth, user_id, allowed_roles=INIT_ROLES)
    employee = require_user(db, user_id, label="Employee")

    tracker = get_tracker(db, user_id, for_update=True)
    if not tracker:
        raise ApiError("NOT_FOUND", "Onboarding progress not found", details={"userId": user_id})

    existing = db.execute(select(SupervisorAssessment).where(SupervisorAssessment.progressId == tracker.progressId)).scalar_one_or_none()
    if existing:
        raise ApiError(
            "CONFLICT",
            "Supervisor assessment already exists for this user",
            details={"assessmentId": existing.assessmentId, "currentStatus": existing.status},
        )

    supervisor_id = _resolve_supervisor_id(db, data, auth, employee)

    if not phase_tasks_completed(db, user_id, Phase.PHASE_1, tracker.journeyType):
        total = len(query_tasks(db, stage_or_phase=Phase.PHASE_1.value, journey_type=tracker.journeyType))
        raise ApiError(
            "VALIDATION_ERROR",
            "All Phase 1 tasks must be completed before the supervisor assessment",
            details={"phase": Phase.PHASE_1.value, "journeyType": tracker.journeyType, "tasksInPhase": total},
        )

    now = iso_utc_now()
    row = SupervisorAssessment(
        assessmentId="SA-" + new_uuid(),
        progressId=tracker.progressId,
        userId=user_id,
        supervisorId=supervisor_id,
        status=S.PENDING_CERTIFICATE.value,
        phase1CompletedDate=now,
        createdAt=now,
        updatedAt=now,
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        raise ApiError("CONFLICT", "Supervisor assessment already exists for this user", details={"userId": user_id})

    _audit(db, row, action="SUPERVISOR_ASSESSMENT_INIT", before={}, auth=auth, at=now)

    name = employee.fullName or user_id
    notify(
        db,
        cfg,
        user_id=supervisor_id,
        type="supervisor_assessment",
        title="Supervisor Assessment Required",
        message=f"{name} has completed Phase 1 of onboarding and requires your assessment.",
        metadata={"assessmentId": row.assessmentId, "employeeId": user_id, "employeeName": name},
    )
    notify(
        db,
        cfg,
        user_id=user_id,
        type="supervisor_assessment_pending",
        title="Assessment Pending",
        message="You have completed Phase 1! Your supervisor will now assess your progress before you can proceed to Phase 2.",
        metadata={"assessmentId": row.assessmentId},
    )
    log.info("supervisor assessment init user=%s supervisor=%s id=%s", user_id, supervisor_id, row.assessmentId)

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_supervisor_assessment(row)}


def supervisor_assessment_upload_certificate(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles=SUPERVISOR_ROLES)
    to = _transition(row, "upload_certificate")
    file_bytes = (data or {}).get("fileBytes")
    if isinstance(file_bytes, (bytes, bytearray)):
        file_ref = save_certificate(
            db,
            cfg,
            assessment_id=row.assessmentId,
            file_name=str((data or {}).get("fileName") or ""),
            file_bytes=bytes(file_bytes),
        )
    else:
        file_ref = require_text(data, "fileRef", label="Certificate file")

    before = serialize_supervisor_assessment(row)
    now = iso_utc_now()
    row.certificateFile = file_ref
    row.certificateUploadDate = now
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="SUPERVISOR_ASSESSMENT_UPLOAD_CERTIFICATE", before=before, auth=auth, at=now)

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_supervisor_assessment(row)}


def supervisor_assessment_conduct(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles=SUPERVISOR_ROLES)
    to = _transition(row, "conduct_assessment")
    notes = require_text(data, "notes", label="Assessment notes")
    score = optional_score(data, "score")

    before = serialize_supervisor_assessment(row)
    now = iso_utc_now()
    row.assessmentNotes = notes
    row.assessmentScore = score
    row.assessmentDate = now
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="SUPERVISOR_ASSESSMENT_CONDUCT", before=before, auth=auth, at=now)

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_supervisor_assessment(row)}


def supervisor_assessment_decide(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles=SUPERVISOR_ROLES)
    to = _transition(row, "make_decision")
    decision = require_choice(data, "decision", SupervisorDecision, label="decision")
    comments = require_text(data, "comments", label="Comments")

    before = serialize_supervisor_assessment(row)
    now = iso_utc_now()
    row.supervisorDecision = decision
    row.supervisorComments = comments
    row.decisionDate = now
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="SUPERVISOR_ASSESSMENT_DECIDE", before=before, auth=auth, at=now, meta={"decision": decision})

    # proceed_to_phase_2 moves the visible stage now, before HR has approved.
    publish(
        db,
        DomainEvent(
            name=SUPERVISOR_DECISION_MADE,
            userId=row.userId,
            assessmentId=row.assessmentId,
            actor=auth,
            payload={"decision": decision},
        ),
        cfg,
    )

    employee = _employee_brief(db, row.userId)
    notify_role(
        db,
        cfg,
        role="HR",
        type="supervisor_assessment_hr_approval",
        title="Supervisor Assessment Awaiting HR Approval",
        message=f"A supervisor decision ({decision}) for {employee['fullName'] or row.userId} needs HR approval.",
        metadata={"assessmentId": row.assessmentId, "employeeId": row.userId, "decision": decision},
    )

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_supervisor_assessment(row)}


def supervisor_assessment_hr_approve(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles={"HR"})
    if row.status != S.HR_APPROVAL_PENDING.value:
        _transition(row, "hr_approve")
    hr_decision = require_choice(data, "hrDecision", HRDecision, label="HR decision")
    comments = require_text(data, "comments", label="HR decision comments")
    to = _transition(row, HR_DECISION_ACTIONS[hr_decision])

    before = serialize_supervisor_assessment(row)
    now = iso_utc_now()
    row.hrDecision = hr_decision
    row.hrDecisionComments = comments
    row.hrDecisionDate = now
    row.hrValidatorId = actor_id(auth)
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="SUPERVISOR_ASSESSMENT_HR_APPROVE", before=before, auth=auth, at=now, meta={"hrDecision": hr_decision})

    # hr_rejected leaves the stage where the supervisor decision put it.
    if hr_decision == HRDecision.APPROVE.value:
        publish(
            db,
            DomainEvent(
                name=SUPERVISOR_ASSESSMENT_APPROVED,
                userId=row.userId,
                assessmentId=row.assessmentId,
                actor=auth,
                payload={"supervisorDecision": row.supervisorDecision},
            ),
            cfg,
        )

    titles = {
        HRDecision.APPROVE.value: ("Assessment Approved", "HR has approved your supervisor assessment."),
        HRDecision.REJECT.value: ("Assessment Rejected", "HR has rejected your supervisor assessment."),
        HRDecision.REQUEST_CHANGES.value: ("Assessment Changes Requested", "HR has requested changes to your supervisor assessment."),
    }
    title, message = titles[hr_decision]
    meta = {"assessmentId": row.assessmentId, "hrDecision": hr_decision}
    notify(db, cfg, user_id=row.userId, type="supervisor_assessment_hr_decision", title=title, message=message, metadata=meta)
    notify(
        db,
        cfg,
        user_id=row.supervisorId,
        type="supervisor_assessment_hr_decision",
        title=title,
        message=f"HR decision on the assessment for {_employee_brief(db, row.userId)['fullName'] or row.userId}: {hr_decision}.",
        metadata=meta,
    )

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_supervisor_assessment(row)}


def supervisor_assessment_get(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data)
    if not (can_view_user(db, auth, row.userId) or (auth and auth.userId == row.supervisorId)):
        raise ApiError("FORBIDDEN", "Not allowed to view this assessment")
    out = serialize_supervisor_assessment(row)
    out["employee"] = _employee_brief(db, row.userId)
    return {"assessment": out}


def supervisor_assessments_by_supervisor(data, auth: AuthContext | None, db, cfg):
    supervisor_id = str((data or {}).get("supervisorId") or "").strip() or str(auth.userId if auth else "")
    role = actor_role(auth)
    if role == "SUPERVISOR" and supervisor_id != str(auth.userId or ""):
        raise ApiError("FORBIDDEN", "Supervisors can only list their own assessments")

    q = select(SupervisorAssessment).where(SupervisorAssessment.supervisorId == supervisor_id)
    status = str((data or {}).get("status") or "").strip().lower()
    if status:
        q = q.where(SupervisorAssessment.status == status)
    rows = db.execute(q.order_by(SupervisorAssessment.createdAt.desc())).scalars().all()

    items = []
    for r in rows:
        if role == "MANAGER" and not can_view_user(db, auth, r.userId):
            continue
        item = serialize_supervisor_assessment(r)
        item["employee"] = _employee_brief(db, r.userId)
        items.append(item)
    return {"items": items, "total": len(items)}


def supervisor_assessments_hr_queue(data, auth: AuthContext | None, db, cfg):
    rows = (
        db.execute(
            select(SupervisorAssessment)
            .where(SupervisorAssessment.status == S.HR_APPROVAL_PENDING.value)
            .order_by(SupervisorAssessment.decisionDate.asc())
        )
        .scalars()
        .all()
    )
    items = []
    for r in rows:
        item = serialize_supervisor_assessment(r)
        item["employee"] = _employee_brief(db, r.userId)
        items.append(item)
    return {"items": items, "total": len(items)}
