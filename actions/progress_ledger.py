from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import actor_id, append_audit
from actions.task_catalog import Phase, get_task, phase_of, query_tasks, serialize_task
from guards import require_manage, require_user
from models import HRAssessment, OnboardingProgress, OnboardingTask, SupervisorAssessment, UserTaskProgress
from services.notifications import notify, notify_role
from utils import ApiError, AuthContext, iso_utc_now, parse_bool


log = logging.getLogger("workflow")

COMPLETION_ROLES = {"HR", "SUPERVISOR"}


def _get_record(db, user_id: str, task_id: int, *, for_update: bool = False) -> UserTaskProgress | None:
    q = select(UserTaskProgress).where(UserTaskProgress.userId == user_id).where(UserTaskProgress.taskId == int(task_id))
    if for_update:
        q = q.with_for_update()
    return db.execute(q).scalar_one_or_none()


def ensure_progress_record(db, user_id: str, task_id: int) -> UserTaskProgress:
    """Lookup-or-create keyed by (userId, taskId); a concurrent insert is re-read, never duplicated."""

    row = _get_record(db, user_id, task_id)
    if row:
        return row
    try:
        with db.begin_nested():
            row = UserTaskProgress(
                userId=str(user_id),
                taskId=int(task_id),
                isCompleted=False,
                completedAt="",
                completedBy="",
                hrValidated=False,
                hrValidatedAt="",
                hrValidatedBy="",
                hrComments="",
                notes="",
                updatedAt=iso_utc_now(),
            )
            db.add(row)
    except IntegrityError:
        row = _get_record(db, user_id, task_id)
        if not row:
            raise
    return row


def ensure_records_for_tasks(db, user_id: str, tasks: list[OnboardingTask]) -> dict[int, UserTaskProgress]:
    existing = {
        int(r.taskId): r
        for r in db.execute(select(UserTaskProgress).where(UserTaskProgress.userId == user_id)).scalars().all()
    }
    for t in tasks:
        if int(t.id) not in existing:
            existing[int(t.id)] = ensure_progress_record(db, user_id, int(t.id))
    return existing


def _records_for(db, user_id: str, task_ids: list[int]) -> list[UserTaskProgress]:
    if not task_ids:
        return []
    return (
        db.execute(select(UserTaskProgress).where(UserTaskProgress.userId == user_id).where(UserTaskProgress.taskId.in_(task_ids)))
        .scalars()
        .all()
    )


def ratio_percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round(done / total * 100))


def calculate_phase_progress(db, user_id: str, stage: str, *, journey_type: str | None = None) -> int:
    """Share of the stage's (or phase group's) tasks that are completed and HR-validated."""

    if journey_type is None:
        tracker = get_tracker(db, user_id)
        journey_type = tracker.journeyType if tracker else None
    tasks = query_tasks(db, stage_or_phase=stage, journey_type=journey_type)
    records = _records_for(db, user_id, [int(t.id) for t in tasks])
    done = sum(1 for r in records if r.isCompleted and r.hrValidated)
    return ratio_percent(done, len(tasks))


def phase_tasks_completed(db, user_id: str, phase: Phase, journey_type: str) -> bool:
    """Every task of the phase for the journey type is marked complete (validation not required)."""

    tasks = query_tasks(db, stage_or_phase=phase.value, journey_type=journey_type)
    if not tasks:
        return False
    records = _records_for(db, user_id, [int(t.id) for t in tasks])
    if len(records) != len(tasks):
        return False
    return all(bool(r.isCompleted) for r in records)


def get_tracker(db, user_id: str, *, for_update: bool = False) -> OnboardingProgress | None:
    q = select(OnboardingProgress).where(OnboardingProgress.userId == str(user_id or ""))
    if for_update:
        q = q.with_for_update()
    return db.execute(q).scalar_one_or_none()


def calculate_overall_progress(db, user_id: str) -> int:
    """
    Ratio over every task row the user has, independent of phase.

    Writes the result back to the tracker on every call: 100 flips status to
    completed; anything else moves a started journey to in_progress.
    """

    total = int(db.execute(select(func.count(UserTaskProgress.id)).where(UserTaskProgress.userId == user_id)).scalar_one() or 0)
    done = int(
        db.execute(
            select(func.count(UserTaskProgress.id))
            .where(UserTaskProgress.userId == user_id)
            .where(UserTaskProgress.isCompleted == True)  # noqa: E712
            .where(UserTaskProgress.hrValidated == True)  # noqa: E712
        ).scalar_one()
        or 0
    )
    pct = ratio_percent(done, total)

    tracker = get_tracker(db, user_id)
    if tracker:
        tracker.progress = pct
        if pct >= 100:
            tracker.status = "completed"
        elif pct > 0 and tracker.status != "completed":
            tracker.status = "in_progress"
        tracker.updatedAt = iso_utc_now()
    return pct


def serialize_task_progress(row: UserTaskProgress) -> dict:
    return {
        "userId": str(row.userId or ""),
        "taskId": int(row.taskId or 0),
        "isCompleted": bool(row.isCompleted),
        "completedAt": str(row.completedAt or ""),
        "completedBy": str(row.completedBy or ""),
        "hrValidated": bool(row.hrValidated),
        "hrValidatedAt": str(row.hrValidatedAt or ""),
        "hrValidatedBy": str(row.hrValidatedBy or ""),
        "hrComments": str(row.hrComments or ""),
        "notes": str(row.notes or ""),
        "countsTowardProgress": bool(row.isCompleted and row.hrValidated),
    }


def _snapshot(row: UserTaskProgress) -> dict:
    return {
        "isCompleted": bool(row.isCompleted),
        "completedAt": str(row.completedAt or ""),
        "hrValidated": bool(row.hrValidated),
        "hrValidatedAt": str(row.hrValidatedAt or ""),
    }


def _load_task_for_user(db, data) -> tuple[str, OnboardingTask, OnboardingProgress]:
    user_id = str((data or {}).get("userId") or "").strip()
    if not user_id:
        raise ApiError("VALIDATION_ERROR", "userId is required", details={"field": "userId"})
    task = get_task(db, (data or {}).get("taskId"))
    require_user(db, user_id, label="Employee")
    tracker = get_tracker(db, user_id)
    if not tracker:
        raise ApiError("NOT_FOUND", "Onboarding journey not found", details={"userId": user_id})
    return user_id, task, tracker


def _check_task_journey(task: OnboardingTask, tracker: OnboardingProgress) -> None:
    if str(task.journeyType or "") not in {"both", str(tracker.journeyType or "")}:
        raise ApiError(
            "VALIDATION_ERROR",
            f"Task does not belong to the {tracker.journeyType} journey",
            details={"field": "taskId", "taskJourneyType": str(task.journeyType or "")},
        )


def _maybe_announce_phase1_done(db, cfg, *, user_id: str, tracker: OnboardingProgress) -> None:
    if not phase_tasks_completed(db, user_id, Phase.PHASE_1, tracker.journeyType):
        return
    existing = db.execute(select(SupervisorAssessment.assessmentId).where(SupervisorAssessment.progressId == tracker.progressId)).first()
    if existing:
        return
    employee = require_user(db, user_id, label="Employee")
    if not str(employee.supervisorId or "").strip():
        log.warning("phase_1 complete but no supervisor assigned user=%s", user_id)
        return
    notify(
        db,
        cfg,
        user_id=employee.supervisorId,
        type="supervisor_assessment_required",
        title="Supervisor Assessment Required",
        message=f"{employee.fullName or user_id} has completed Phase 1 of onboarding and is ready for your assessment.",
        metadata={"employeeId": user_id, "progressId": tracker.progressId},
    )


def _maybe_announce_phase2_done(db, cfg, *, user_id: str, tracker: OnboardingProgress) -> None:
    if phase_of(tracker.stage) != Phase.PHASE_2.value:
        return
    if not phase_tasks_completed(db, user_id, Phase.PHASE_2, tracker.journeyType):
        return
    existing = db.execute(select(HRAssessment.assessmentId).where(HRAssessment.progressId == tracker.progressId)).first()
    if existing:
        return
    notify_role(
        db,
        cfg,
        role="HR",
        type="hr_assessment_required",
        title="HR Assessment Required",
        message=f"Employee {user_id} has completed Phase 2 of onboarding and is ready for the final HR assessment.",
        metadata={"employeeId": user_id, "progressId": tracker.progressId},
    )


def task_completion_set(data, auth: AuthContext | None, db, cfg):
    user_id, task, tracker = _load_task_for_user(db, data)
    require_manage(db, auth, user_id, allowed_roles=COMPLETION_ROLES)
    _check_task_journey(task, tracker)

    completed = parse_bool((data or {}).get("completed"), default=True)
    notes = (data or {}).get("notes")

    row = ensure_progress_record(db, user_id, int(task.id))
    row = _get_record(db, user_id, int(task.id), for_update=True) or row
    before = _snapshot(row)

    now = iso_utc_now()
    row.isCompleted = bool(completed)
    row.completedAt = now if completed else ""
    row.completedBy = actor_id(auth) if completed else ""
    if notes is not None:
        row.notes = str(notes or "").strip()
    row.updatedAt = now

    append_audit(
        db,
        entityType="TASK_PROGRESS",
        entityId=f"{user_id}:{task.id}",
        action="TASK_COMPLETION_SET",
        fromState="COMPLETED" if before["isCompleted"] else "OPEN",
        toState="COMPLETED" if completed else "OPEN",
        stageTag=str(task.stage or ""),
        actor=auth,
        at=now,
        before=before,
        after=_snapshot(row),
    )

    overall = calculate_overall_progress(db, user_id)
    if completed and phase_of(task.stage) == Phase.PHASE_1.value:
        _maybe_announce_phase1_done(db, cfg, user_id=user_id, tracker=tracker)
    elif completed and phase_of(task.stage) == Phase.PHASE_2.value:
        _maybe_announce_phase2_done(db, cfg, user_id=user_id, tracker=tracker)

    return {"task": serialize_task(task), "taskProgress": serialize_task_progress(row), "overallProgress": overall}


def task_validate(data, auth: AuthContext | None, db, cfg):
    user_id, task, tracker = _load_task_for_user(db, data)
    require_manage(db, auth, user_id, allowed_roles={"HR"})
    _check_task_journey(task, tracker)
    comments = str((data or {}).get("comments") or "").strip()

    row = ensure_progress_record(db, user_id, int(task.id))
    row = _get_record(db, user_id, int(task.id), for_update=True) or row
    if not row.isCompleted:
        raise ApiError(
            "INVALID_STATE",
            "Task must be completed before it can be validated",
            details={"currentStatus": "open", "requiredStatus": "completed"},
        )
    if row.hrValidated:
        raise ApiError(
            "INVALID_STATE",
            "Task is already validated",
            details={"currentStatus": "validated", "requiredStatus": "completed"},
        )

    before = _snapshot(row)
    now = iso_utc_now()
    row.hrValidated = True
    row.hrValidatedAt = now
    row.hrValidatedBy = actor_id(auth)
    row.hrComments = comments
    row.updatedAt = now

    append_audit(
        db,
        entityType="TASK_PROGRESS",
        entityId=f"{user_id}:{task.id}",
        action="TASK_VALIDATE",
        fromState="COMPLETED",
        toState="VALIDATED",
        stageTag=str(task.stage or ""),
        actor=auth,
        at=now,
        before=before,
        after=_snapshot(row),
    )

    overall = calculate_overall_progress(db, user_id)
    return {"task": serialize_task(task), "taskProgress": serialize_task_progress(row), "overallProgress": overall}
