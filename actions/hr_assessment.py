from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from actions.events import HR_ASSESSMENT_APPROVED, DomainEvent, publish
from actions.helpers import append_audit, next_state, optional_score, require_choice, require_text
from actions.progress_ledger import get_tracker, phase_tasks_completed
from actions.supervisor_assessment import HRDecision
from actions.task_catalog import Phase, phase_of
from guards import require_manage, require_user
from models import HRAssessment, User
from services.notifications import notify
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role


log = logging.getLogger("workflow")


class HRAssessmentStatus(str, Enum):
    PENDING_ASSESSMENT = "pending_assessment"
    ASSESSMENT_COMPLETED = "assessment_completed"
    DECISION_MADE = "decision_made"


H = HRAssessmentStatus

TRANSITIONS: dict[tuple[HRAssessmentStatus, str], HRAssessmentStatus] = {
    (H.PENDING_ASSESSMENT, "conduct_assessment"): H.ASSESSMENT_COMPLETED,
    (H.ASSESSMENT_COMPLETED, "make_decision"): H.DECISION_MADE,
}

HR_ROLES = {"HR"}


def serialize_hr_assessment(row: HRAssessment) -> dict:
    return {
        "assessmentId": str(row.assessmentId or ""),
        "progressId": str(row.progressId or ""),
        "userId": str(row.userId or ""),
        "hrId": str(row.hrId or ""),
        "status": str(row.status or ""),
        "phase2CompletedDate": str(row.phase2CompletedDate or ""),
        "assessmentRequestedDate": str(row.assessmentRequestedDate or ""),
        "assessmentDate": str(row.assessmentDate or ""),
        "assessmentNotes": str(row.assessmentNotes or ""),
        "assessmentScore": row.assessmentScore,
        "hrDecision": str(row.hrDecision or ""),
        "hrDecisionComments": str(row.hrDecisionComments or ""),
        "hrDecisionDate": str(row.hrDecisionDate or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def _with_employee(db, row: HRAssessment) -> dict:
    out = serialize_hr_assessment(row)
    usr = db.execute(select(User).where(User.userId == row.userId)).scalar_one_or_none()
    out["employee"] = {
        "userId": row.userId,
        "fullName": str(usr.fullName or "") if usr else "",
        "department": str(usr.department or "") if usr else "",
    }
    return out


def _load(db, data, *, for_update: bool = False) -> HRAssessment:
    assessment_id = str((data or {}).get("assessmentId") or "").strip()
    if not assessment_id:
        raise ApiError("VALIDATION_ERROR", "assessmentId is required", details={"field": "assessmentId"})
    q = select(HRAssessment).where(HRAssessment.assessmentId == assessment_id)
    if for_update:
        q = q.with_for_update(of=HRAssessment)
    row = db.execute(q).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "HR assessment not found", details={"assessmentId": assessment_id})
    return row


def _audit(db, row: HRAssessment, *, action: str, before: dict, auth, at: str, meta: dict | None = None) -> None:
    append_audit(
        db,
        entityType="HR_ASSESSMENT",
        entityId=row.assessmentId,
        action=action,
        fromState=before.get("status", ""),
        toState=row.status,
        stageTag=Phase.PHASE_2.value,
        actor=auth,
        at=at,
        before=before,
        after=serialize_hr_assessment(row),
        meta=meta,
    )


def hr_assessment_init(data, auth: AuthContext | None, db, cfg):
    user_id = str((data or {}).get("userId") or "").strip()
    if not user_id:
        raise ApiError("VALIDATION_ERROR", "userId is required", details={"field": "userId"})

    require_manage(db, auth, user_id, allowed_roles=HR_ROLES)
    require_user(db, user_id, label="Employee")

    hr_id = str((data or {}).get("hrId") or "").strip() or str(auth.userId or "")
    hr_user = require_user(db, hr_id, label="HR user")
    if normalize_role(hr_user.role) != "HR":
        raise ApiError("VALIDATION_ERROR", "hrId must reference an HR user", details={"field": "hrId"})

    tracker = get_tracker(db, user_id, for_update=True)
    if not tracker:
        raise ApiError("NOT_FOUND", "Onboarding progress not found", details={"userId": user_id})

    if phase_of(tracker.stage) != Phase.PHASE_2.value:
        raise ApiError(
            "INVALID_STATE",
            "User must be in Phase 2 to initialize HR assessment",
            details={"currentStatus": str(tracker.stage or ""), "requiredStatus": Phase.PHASE_2.value},
        )

    existing = db.execute(select(HRAssessment).where(HRAssessment.progressId == tracker.progressId)).scalar_one_or_none()
    if existing:
        raise ApiError(
            "CONFLICT",
            "HR assessment already exists for this user",
            details={"assessmentId": existing.assessmentId, "currentStatus": existing.status},
        )

    if not phase_tasks_completed(db, user_id, Phase.PHASE_2, tracker.journeyType):
        raise ApiError(
            "VALIDATION_ERROR",
            "All Phase 2 tasks must be completed before HR assessment",
            details={"phase": Phase.PHASE_2.value, "journeyType": tracker.journeyType},
        )

    now = iso_utc_now()
    row = HRAssessment(
        assessmentId="HRA-" + new_uuid(),
        progressId=tracker.progressId,
        userId=user_id,
        hrId=hr_id,
        status=H.PENDING_ASSESSMENT.value,
        phase2CompletedDate=now,
        assessmentRequestedDate=now,
        createdAt=now,
        updatedAt=now,
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        raise ApiError("CONFLICT", "HR assessment already exists for this user", details={"userId": user_id})

    _audit(db, row, action="HR_ASSESSMENT_INIT", before={}, auth=auth, at=now)
    notify(
        db,
        cfg,
        user_id=hr_id,
        type="hr_assessment",
        title="HR Assessment Required",
        message="An employee has completed Phase 2 of onboarding and is ready for the final HR assessment.",
        metadata={"assessmentId": row.assessmentId, "employeeId": user_id},
    )
    log.info("hr assessment init user=%s hr=%s id=%s", user_id, hr_id, row.assessmentId)

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_hr_assessment(row)}


def hr_assessment_conduct(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles=HR_ROLES)
    to = next_state(TRANSITIONS, row.status, "conduct_assessment", entity="HR assessment")
    notes = require_text(data, "notes", label="Assessment notes")
    score = optional_score(data, "score")

    before = serialize_hr_assessment(row)
    now = iso_utc_now()
    row.assessmentNotes = notes
    row.assessmentScore = score
    row.assessmentDate = now
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="HR_ASSESSMENT_CONDUCT", before=before, auth=auth, at=now)

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_hr_assessment(row)}


def hr_assessment_decide(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data, for_update=True)
    require_manage(db, auth, row.userId, allowed_roles=HR_ROLES)
    to = next_state(TRANSITIONS, row.status, "make_decision", entity="HR assessment")
    decision = require_choice(data, "hrDecision", HRDecision, label="HR decision")
    comments = require_text(data, "comments", label="HR decision comments")

    before = serialize_hr_assessment(row)
    now = iso_utc_now()
    row.hrDecision = decision
    row.hrDecisionComments = comments
    row.hrDecisionDate = now
    row.status = to.value
    row.updatedAt = now
    _audit(db, row, action="HR_ASSESSMENT_DECIDE", before=before, auth=auth, at=now, meta={"hrDecision": decision})

    if decision == HRDecision.APPROVE.value:
        publish(
            db,
            DomainEvent(name=HR_ASSESSMENT_APPROVED, userId=row.userId, assessmentId=row.assessmentId, actor=auth),
            cfg,
        )

    messages = {
        HRDecision.APPROVE.value: "Congratulations! HR has approved your final assessment and your onboarding is complete.",
        HRDecision.REJECT.value: "HR has not approved your final onboarding assessment.",
        HRDecision.REQUEST_CHANGES.value: "HR has requested changes before approving your final onboarding assessment.",
    }
    notify(
        db,
        cfg,
        user_id=row.userId,
        type="hr_assessment_decision",
        title="HR Assessment Decision",
        message=messages[decision],
        metadata={"assessmentId": row.assessmentId, "hrDecision": decision},
    )

    return {"assessmentId": row.assessmentId, "status": row.status, "assessment": serialize_hr_assessment(row)}


def hr_assessment_get(data, auth: AuthContext | None, db, cfg):
    row = _load(db, data)
    return {"assessment": _with_employee(db, row)}


def hr_assessments_by_hr(data, auth: AuthContext | None, db, cfg):
    hr_id = str((data or {}).get("hrId") or "").strip() or str(auth.userId if auth else "")
    rows = (
        db.execute(select(HRAssessment).where(HRAssessment.hrId == hr_id).order_by(HRAssessment.createdAt.desc()))
        .scalars()
        .all()
    )
    items = [_with_employee(db, r) for r in rows]
    return {"items": items, "total": len(items)}


def hr_assessments_queue(data, auth: AuthContext | None, db, cfg):
    rows = (
        db.execute(
            select(HRAssessment)
            .where(HRAssessment.status.in_([H.PENDING_ASSESSMENT.value, H.ASSESSMENT_COMPLETED.value]))
            .order_by(HRAssessment.assessmentRequestedDate.asc())
        )
        .scalars()
        .all()
    )
    items = [_with_employee(db, r) for r in rows]
    return {"items": items, "total": len(items)}
