from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from actions.events import (
    HR_ASSESSMENT_APPROVED,
    SUPERVISOR_ASSESSMENT_APPROVED,
    SUPERVISOR_DECISION_MADE,
    DomainEvent,
    subscribe,
)
from actions.helpers import actor_id, append_audit
from actions.hr_assessment import serialize_hr_assessment
from actions.progress_ledger import (
    calculate_overall_progress,
    calculate_phase_progress,
    ensure_records_for_tasks,
    get_tracker,
    serialize_task_progress,
)
from actions.supervisor_assessment import serialize_supervisor_assessment
from actions.task_catalog import (
    STAGE_ORDER,
    Phase,
    Stage,
    first_stage_of,
    normalize_journey_type,
    normalize_stage,
    phase_of,
    query_tasks,
    serialize_task,
    stage_index,
)
from guards import actor_role, can_view_user, require_manage, require_user, require_view
from models import HRAssessment, OnboardingProgress, SupervisorAssessment, User, UserTaskProgress
from services.certificate_store import discard_certificate
from services.notifications import notify
from utils import ApiError, AuthContext, iso_utc_in, iso_utc_now, new_uuid, parse_bool


log = logging.getLogger("workflow")

JOURNEY_ADMIN_ROLES = {"HR", "ADMIN"}
ADVANCE_ROLES = {"HR", "SUPERVISOR"}
PROGRESS_STATUSES = {"pending", "in_progress", "completed"}


def _stage_days(cfg) -> int:
    return int(getattr(cfg, "STAGE_DURATION_DAYS", 30) or 30)


def _journey_days(cfg) -> int:
    return int(getattr(cfg, "JOURNEY_DURATION_DAYS", 90) or 90)


def serialize_tracker(row: OnboardingProgress) -> dict:
    return {
        "progressId": str(row.progressId or ""),
        "userId": str(row.userId or ""),
        "stage": str(row.stage or ""),
        "phase": phase_of(row.stage),
        "progress": int(row.progress or 0),
        "status": str(row.status or ""),
        "journeyType": str(row.journeyType or ""),
        "stageStartDate": str(row.stageStartDate or ""),
        "estimatedCompletionDate": str(row.estimatedCompletionDate or ""),
        "notes": str(row.notes or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def require_tracker(db, user_id: str, *, for_update: bool = False) -> OnboardingProgress:
    tracker = get_tracker(db, user_id, for_update=for_update)
    if not tracker:
        raise ApiError("NOT_FOUND", "Onboarding journey not found", details={"userId": str(user_id or "")})
    return tracker


def _user_id(data) -> str:
    user_id = str((data or {}).get("userId") or "").strip()
    if not user_id:
        raise ApiError("VALIDATION_ERROR", "userId is required", details={"field": "userId"})
    return user_id


def advance_to_phase(db, tracker: OnboardingProgress, phase: Phase, *, actor: AuthContext | None, cfg, cause: str) -> bool:
    """
    Move the tracker to the first stage of ``phase``.

    No-op when the tracker is already inside that phase group (or past it), so a
    repeated approval never moves the stage twice.
    """

    target = first_stage_of(phase)
    if stage_index(tracker.stage) >= stage_index(target):
        log.info("advance_to_phase noop user=%s stage=%s target=%s cause=%s", tracker.userId, tracker.stage, target, cause)
        return False

    before = serialize_tracker(tracker)
    now = iso_utc_now()
    tracker.stage = target
    tracker.stageStartDate = now
    tracker.estimatedCompletionDate = iso_utc_in(_stage_days(cfg))
    if tracker.status == "pending":
        tracker.status = "in_progress"
    tracker.updatedAt = now
    tracker.updatedBy = actor_id(actor)

    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=tracker.progressId,
        action="STAGE_ADVANCE",
        fromState=before["stage"],
        toState=target,
        stageTag=phase.value,
        remark=cause,
        actor=actor,
        at=now,
        before=before,
        after=serialize_tracker(tracker),
    )
    return True


def _on_supervisor_decision_made(db, event: DomainEvent, cfg):
    if event.payload.get("decision") != "proceed_to_phase_2":
        return False
    tracker = require_tracker(db, event.userId, for_update=True)
    return advance_to_phase(db, tracker, Phase.PHASE_2, actor=event.actor, cfg=cfg, cause=event.name)


def _on_supervisor_assessment_approved(db, event: DomainEvent, cfg):
    if event.payload.get("supervisorDecision") != "proceed_to_phase_2":
        return False
    tracker = require_tracker(db, event.userId, for_update=True)
    return advance_to_phase(db, tracker, Phase.PHASE_2, actor=event.actor, cfg=cfg, cause=event.name)


def _on_hr_assessment_approved(db, event: DomainEvent, cfg):
    tracker = require_tracker(db, event.userId, for_update=True)
    if tracker.status == "completed":
        return False
    before = serialize_tracker(tracker)
    now = iso_utc_now()
    tracker.status = "completed"
    tracker.updatedAt = now
    tracker.updatedBy = actor_id(event.actor)
    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=tracker.progressId,
        action="JOURNEY_COMPLETE",
        fromState=before["status"],
        toState="completed",
        stageTag=Phase.PHASE_2.value,
        remark=event.name,
        actor=event.actor,
        at=now,
        before=before,
        after=serialize_tracker(tracker),
    )
    return True


subscribe(SUPERVISOR_DECISION_MADE, _on_supervisor_decision_made)
subscribe(SUPERVISOR_ASSESSMENT_APPROVED, _on_supervisor_assessment_approved)
subscribe(HR_ASSESSMENT_APPROVED, _on_hr_assessment_approved)


def onboarding_journey_create(data, auth: AuthContext | None, db, cfg):
    user_id = _user_id(data)
    journey_type = normalize_journey_type((data or {}).get("journeyType"), default="SFP")
    notes = str((data or {}).get("notes") or "").strip()

    require_manage(db, auth, user_id, allowed_roles=JOURNEY_ADMIN_ROLES)
    employee = require_user(db, user_id, label="Employee")

    if get_tracker(db, user_id):
        raise ApiError("CONFLICT", "Onboarding journey already exists for this user", details={"userId": user_id})

    now = iso_utc_now()
    tracker = OnboardingProgress(
        progressId="OBP-" + new_uuid(),
        userId=user_id,
        stage=Stage.PREPARE.value,
        progress=0,
        status="pending",
        journeyType=journey_type,
        stageStartDate=now,
        estimatedCompletionDate=iso_utc_in(_journey_days(cfg)),
        notes=notes,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    try:
        with db.begin_nested():
            db.add(tracker)
    except IntegrityError:
        raise ApiError("CONFLICT", "Onboarding journey already exists for this user", details={"userId": user_id})

    tasks = query_tasks(db, journey_type=journey_type, default_only=True)
    ensure_records_for_tasks(db, user_id, tasks)

    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=tracker.progressId,
        action="ONBOARDING_JOURNEY_CREATE",
        fromState="",
        toState=tracker.stage,
        stageTag=Phase.PRE_ONBOARDING.value,
        actor=auth,
        at=now,
        after=serialize_tracker(tracker),
        meta={"journeyType": journey_type, "tasksSeeded": len(tasks)},
    )

    notify(
        db,
        cfg,
        user_id=user_id,
        type="onboarding_started",
        title="Welcome aboard",
        message=f"Your {journey_type} onboarding journey has started.",
        metadata={"progressId": tracker.progressId},
    )
    log.info("journey created user=%s journey=%s tasks=%s", employee.userId, journey_type, len(tasks))

    return {"progress": serialize_tracker(tracker), "tasksSeeded": len(tasks)}


def onboarding_phase_advance(data, auth: AuthContext | None, db, cfg):
    user_id = _user_id(data)
    require_manage(db, auth, user_id, allowed_roles=ADVANCE_ROLES)
    tracker = require_tracker(db, user_id, for_update=True)

    idx = stage_index(tracker.stage)
    if idx == -1 or idx == len(STAGE_ORDER) - 1:
        raise ApiError(
            "INVALID_STATE",
            "Cannot advance: already at last stage or invalid stage",
            details={"currentStatus": str(tracker.stage or ""), "requiredStatus": [s.value for s in STAGE_ORDER[:-1]]},
        )

    # Manual advance is unconditional; it does not consult either assessment.
    before = serialize_tracker(tracker)
    now = iso_utc_now()
    tracker.stage = STAGE_ORDER[idx + 1].value
    tracker.stageStartDate = now
    tracker.estimatedCompletionDate = iso_utc_in(_stage_days(cfg))
    tracker.updatedAt = now
    tracker.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=tracker.progressId,
        action="ONBOARDING_PHASE_ADVANCE",
        fromState=before["stage"],
        toState=tracker.stage,
        stageTag=phase_of(tracker.stage),
        actor=auth,
        at=now,
        before=before,
        after=serialize_tracker(tracker),
    )
    notify(
        db,
        cfg,
        user_id=user_id,
        type="stage_advanced",
        title="Onboarding stage updated",
        message=f"You have moved to the {tracker.stage} stage.",
        metadata={"progressId": tracker.progressId, "stage": tracker.stage},
    )
    return {"progress": serialize_tracker(tracker)}


def onboarding_journey_reset(data, auth: AuthContext | None, db, cfg):
    user_id = _user_id(data)
    reset_to = normalize_stage((data or {}).get("resetToStage") or Stage.PREPARE.value)
    keep_completed = parse_bool((data or {}).get("keepCompletedTasks"), default=False)

    require_manage(db, auth, user_id, allowed_roles=JOURNEY_ADMIN_ROLES)
    tracker = require_tracker(db, user_id, for_update=True)

    before = serialize_tracker(tracker)
    now = iso_utc_now()
    tracker.stage = reset_to
    tracker.progress = 0
    tracker.status = "pending"
    tracker.stageStartDate = now
    tracker.estimatedCompletionDate = iso_utc_in(_stage_days(cfg))
    tracker.updatedAt = now
    tracker.updatedBy = actor_id(auth)

    removed = 0
    if not keep_completed:
        removed = db.execute(delete(UserTaskProgress).where(UserTaskProgress.userId == user_id)).rowcount or 0

    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=tracker.progressId,
        action="ONBOARDING_JOURNEY_RESET",
        fromState=before["stage"],
        toState=reset_to,
        stageTag=phase_of(reset_to),
        actor=auth,
        at=now,
        before=before,
        after=serialize_tracker(tracker),
        meta={"keepCompletedTasks": keep_completed, "taskRowsRemoved": int(removed)},
    )
    return {"progress": serialize_tracker(tracker), "taskRowsRemoved": int(removed)}


def onboarding_journey_delete(data, auth: AuthContext | None, db, cfg):
    user_id = _user_id(data)
    require_manage(db, auth, user_id, allowed_roles=JOURNEY_ADMIN_ROLES)
    tracker = require_tracker(db, user_id, for_update=True)
    before = serialize_tracker(tracker)

    for file_ref in db.execute(
        select(SupervisorAssessment.certificateFile).where(SupervisorAssessment.progressId == tracker.progressId)
    ).scalars():
        discard_certificate(db, cfg, file_ref)

    tasks_removed = db.execute(delete(UserTaskProgress).where(UserTaskProgress.userId == user_id)).rowcount or 0
    sa_removed = db.execute(delete(SupervisorAssessment).where(SupervisorAssessment.progressId == tracker.progressId)).rowcount or 0
    hr_removed = db.execute(delete(HRAssessment).where(HRAssessment.progressId == tracker.progressId)).rowcount or 0
    db.delete(tracker)

    append_audit(
        db,
        entityType="ONBOARDING_PROGRESS",
        entityId=before["progressId"],
        action="ONBOARDING_JOURNEY_DELETE",
        fromState=before["stage"],
        toState="",
        actor=auth,
        before=before,
        meta={"taskRowsRemoved": int(tasks_removed), "supervisorAssessmentsRemoved": int(sa_removed), "hrAssessmentsRemoved": int(hr_removed)},
    )
    return {"deleted": True, "userId": user_id}


def onboarding_progress_get(data, auth: AuthContext | None, db, cfg):
    user_id = str((data or {}).get("userId") or "").strip() or str(auth.userId if auth else "")
    require_view(db, auth, user_id)
    tracker = require_tracker(db, user_id)

    tasks = query_tasks(db, journey_type=tracker.journeyType)
    records = ensure_records_for_tasks(db, user_id, tasks)

    phases: dict[str, dict] = {}
    for st in STAGE_ORDER:
        stage_tasks = [t for t in tasks if t.stage == st.value]
        items = []
        for t in stage_tasks:
            item = serialize_task(t)
            item["progress"] = serialize_task_progress(records[int(t.id)])
            items.append(item)
        phases[st.value] = {
            "progress": calculate_phase_progress(db, user_id, st.value, journey_type=tracker.journeyType),
            "tasks": items,
        }

    phase_groups = {
        p.value: calculate_phase_progress(db, user_id, p.value, journey_type=tracker.journeyType) for p in Phase
    }

    # Recomputed and persisted on every read.
    overall = calculate_overall_progress(db, user_id)

    sa = db.execute(select(SupervisorAssessment).where(SupervisorAssessment.progressId == tracker.progressId)).scalar_one_or_none()
    hra = db.execute(select(HRAssessment).where(HRAssessment.progressId == tracker.progressId)).scalar_one_or_none()

    out = serialize_tracker(tracker)
    out.update(
        {
            "progress": overall,
            "phases": phases,
            "phaseGroups": phase_groups,
            "supervisorAssessment": serialize_supervisor_assessment(sa) if sa else None,
            "hrAssessment": serialize_hr_assessment(hra) if hra else None,
        }
    )
    return out


LIST_ROLES = {"HR", "ADMIN", "MANAGER", "SUPERVISOR"}


def onboarding_progress_list(data, auth: AuthContext | None, db, cfg):
    """Journeys the caller may see: HR everyone, a manager their department, a supervisor direct reports."""

    role = actor_role(auth)
    if role not in LIST_ROLES:
        raise ApiError("FORBIDDEN", "Not allowed to list onboarding journeys", details={"role": role})

    stage = str((data or {}).get("stage") or "").strip()
    status = str((data or {}).get("status") or "").strip().lower()
    q = select(OnboardingProgress, User).join(User, User.userId == OnboardingProgress.userId)
    if stage:
        q = q.where(OnboardingProgress.stage == normalize_stage(stage))
    if status:
        if status not in PROGRESS_STATUSES:
            raise ApiError("VALIDATION_ERROR", f"Invalid status: {status}", details={"field": "status", "allowed": sorted(PROGRESS_STATUSES)})
        q = q.where(OnboardingProgress.status == status)

    items = []
    for tracker, usr in db.execute(q.order_by(OnboardingProgress.createdAt.asc(), OnboardingProgress.userId.asc())).all():
        if role in {"MANAGER", "SUPERVISOR"} and usr.userId == auth.userId:
            continue
        if not can_view_user(db, auth, usr.userId):
            continue
        item = serialize_tracker(tracker)
        item["employee"] = {
            "userId": usr.userId,
            "fullName": str(usr.fullName or ""),
            "email": str(usr.email or ""),
            "role": str(usr.role or ""),
            "department": str(usr.department or ""),
        }
        items.append(item)
    return {"items": items, "total": len(items)}
