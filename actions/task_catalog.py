from __future__ import annotations

from enum import Enum

from sqlalchemy import or_, select

from models import OnboardingTask
from utils import ApiError, AuthContext, iso_utc_now


class Stage(str, Enum):
    PREPARE = "prepare"
    ORIENT = "orient"
    LAND = "land"
    INTEGRATE = "integrate"
    EXCEL = "excel"


STAGE_ORDER = [Stage.PREPARE, Stage.ORIENT, Stage.LAND, Stage.INTEGRATE, Stage.EXCEL]


class Phase(str, Enum):
    PRE_ONBOARDING = "pre_onboarding"
    PHASE_1 = "phase_1"
    PHASE_2 = "phase_2"


# The two gated phases group the five stages: the supervisor assessment sits
# between land and integrate, the HR assessment after excel.
PHASE_STAGES: dict[Phase, tuple[Stage, ...]] = {
    Phase.PRE_ONBOARDING: (Stage.PREPARE,),
    Phase.PHASE_1: (Stage.ORIENT, Stage.LAND),
    Phase.PHASE_2: (Stage.INTEGRATE, Stage.EXCEL),
}


class JourneyType(str, Enum):
    SFP = "SFP"
    CC = "CC"


JOURNEY_TYPE_LABELS = {
    JourneyType.SFP: "Structured Foundation Programme",
    JourneyType.CC: "Client Centre",
}

CONTROLLED_BY = {"hr", "employee", "both"}


DEFAULT_TASKS: list[dict] = [
    {"key": "PREPARE_CONTRACT", "stage": "prepare", "order": 1, "title": "Sign employment contract", "controlledBy": "hr", "journeyType": "both"},
    {"key": "PREPARE_PAPERWORK", "stage": "prepare", "order": 2, "title": "Complete pre-arrival paperwork", "controlledBy": "employee", "journeyType": "both"},
    {"key": "PREPARE_SFP_PACK", "stage": "prepare", "order": 3, "title": "Read the SFP welcome pack", "controlledBy": "employee", "journeyType": "SFP"},
    {"key": "PREPARE_CC_PACK", "stage": "prepare", "order": 3, "title": "Read the Client Centre welcome pack", "controlledBy": "employee", "journeyType": "CC"},
    {"key": "ORIENT_WELCOME", "stage": "orient", "order": 1, "title": "Attend welcome session", "controlledBy": "hr", "journeyType": "both"},
    {"key": "ORIENT_MEET_SUPERVISOR", "stage": "orient", "order": 2, "title": "Meet your supervisor", "controlledBy": "both", "journeyType": "both"},
    {"key": "LAND_SHADOWING", "stage": "land", "order": 1, "title": "Shadow a team member for one week", "controlledBy": "both", "journeyType": "both"},
    {"key": "LAND_COMPLIANCE", "stage": "land", "order": 2, "title": "Complete mandatory compliance training", "controlledBy": "hr", "journeyType": "both"},
    {"key": "INTEGRATE_FIRST_ASSIGNMENT", "stage": "integrate", "order": 1, "title": "Deliver first independent assignment", "controlledBy": "both", "journeyType": "both"},
    {"key": "INTEGRATE_CHECKIN", "stage": "integrate", "order": 2, "title": "Mid-point check-in with HR", "controlledBy": "hr", "journeyType": "both"},
    {"key": "EXCEL_LEARNING_REVIEW", "stage": "excel", "order": 1, "title": "Present learning review", "controlledBy": "employee", "journeyType": "both"},
    {"key": "EXCEL_SFP_CAPSTONE", "stage": "excel", "order": 2, "title": "Complete SFP capstone project", "controlledBy": "both", "journeyType": "SFP"},
    {"key": "EXCEL_CC_CASE_REVIEW", "stage": "excel", "order": 2, "title": "Lead a client case review", "controlledBy": "both", "journeyType": "CC"},
]


def normalize_stage(value: str) -> str:
    s = str(value or "").strip().lower()
    if s not in {st.value for st in Stage}:
        raise ApiError("VALIDATION_ERROR", f"Invalid stage: {value}", details={"field": "stage", "allowed": [st.value for st in STAGE_ORDER]})
    return s


def normalize_journey_type(value: str, *, default: str | None = None) -> str:
    s = str(value or "").strip().upper() or str(default or "")
    if s not in {jt.value for jt in JourneyType}:
        raise ApiError("VALIDATION_ERROR", f"Invalid journeyType: {value}", details={"field": "journeyType", "allowed": [jt.value for jt in JourneyType]})
    return s


def phase_of(stage: str) -> str:
    s = str(stage or "").strip().lower()
    for phase, stages in PHASE_STAGES.items():
        if s in {st.value for st in stages}:
            return phase.value
    return ""


def stages_for(stage_or_phase: str) -> list[str]:
    """Accepts a stage ("orient") or a phase group ("phase_1")."""

    s = str(stage_or_phase or "").strip().lower()
    for phase, stages in PHASE_STAGES.items():
        if s == phase.value:
            return [st.value for st in stages]
    return [normalize_stage(s)]


def first_stage_of(phase: Phase) -> str:
    return PHASE_STAGES[phase][0].value


def stage_index(stage: str) -> int:
    s = str(stage or "").strip().lower()
    for i, st in enumerate(STAGE_ORDER):
        if st.value == s:
            return i
    return -1


def seed_task_catalog(db) -> int:
    now = iso_utc_now()
    existing = {str(k or "") for k in db.execute(select(OnboardingTask.taskKey)).scalars().all()}
    added = 0
    for d in DEFAULT_TASKS:
        if d["key"] in existing:
            continue
        db.add(
            OnboardingTask(
                taskKey=d["key"],
                stage=d["stage"],
                order=int(d["order"]),
                title=d["title"],
                description=str(d.get("description") or ""),
                controlledBy=d["controlledBy"],
                isDefault=bool(d.get("isDefault", True)),
                journeyType=d["journeyType"],
                createdAt=now,
            )
        )
        added += 1
    return added


def query_tasks(db, *, stage_or_phase: str | None = None, journey_type: str | None = None, default_only: bool = False) -> list[OnboardingTask]:
    q = select(OnboardingTask)
    if stage_or_phase:
        q = q.where(OnboardingTask.stage.in_(stages_for(stage_or_phase)))
    if journey_type:
        q = q.where(or_(OnboardingTask.journeyType == journey_type, OnboardingTask.journeyType == "both"))
    if default_only:
        q = q.where(OnboardingTask.isDefault == True)  # noqa: E712
    rows = db.execute(q.order_by(OnboardingTask.id.asc())).scalars().all()
    return sorted(rows, key=lambda t: (stage_index(t.stage), int(t.order or 0), int(t.id or 0)))


def get_task(db, task_id) -> OnboardingTask:
    try:
        tid = int(task_id)
    except (TypeError, ValueError):
        raise ApiError("VALIDATION_ERROR", "Invalid taskId", details={"field": "taskId"})
    row = db.execute(select(OnboardingTask).where(OnboardingTask.id == tid)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Task not found", details={"taskId": tid})
    return row


def serialize_task(row: OnboardingTask) -> dict:
    return {
        "taskId": int(row.id or 0),
        "taskKey": str(row.taskKey or ""),
        "stage": str(row.stage or ""),
        "phase": phase_of(row.stage),
        "order": int(row.order or 0),
        "title": str(row.title or ""),
        "description": str(row.description or ""),
        "controlledBy": str(row.controlledBy or ""),
        "isDefault": bool(row.isDefault),
        "journeyType": str(row.journeyType or ""),
    }


def task_catalog_list(data, auth: AuthContext | None, db, cfg):
    stage = str((data or {}).get("stage") or "").strip()
    journey = str((data or {}).get("journeyType") or "").strip()
    jt = normalize_journey_type(journey) if journey else None
    rows = query_tasks(db, stage_or_phase=stage or None, journey_type=jt, default_only=True)
    return {"items": [serialize_task(r) for r in rows], "total": len(rows)}


def journey_types_list(data, auth: AuthContext | None, db, cfg):
    return {
        "items": [{"journeyType": jt.value, "label": JOURNEY_TYPE_LABELS[jt]} for jt in JourneyType],
        "stages": [st.value for st in STAGE_ORDER],
        "phases": {p.value: [st.value for st in stages] for p, stages in PHASE_STAGES.items()},
    }
