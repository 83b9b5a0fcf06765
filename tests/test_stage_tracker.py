from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func, select

from actions.stage_tracker import advance_to_phase
from actions.task_catalog import Phase
from db import SessionLocal
from models import AuditLog, HRAssessment, Notification, OnboardingProgress, SupervisorAssessment, UserTaskProgress
from utils import parse_datetime_maybe


def _count(model, *where) -> int:
    with SessionLocal() as db:
        q = select(func.count()).select_from(model)
        for w in where:
            q = q.where(w)
        return int(db.execute(q).scalar_one())


def test_create_journey_seeds_tasks_for_journey_type(workflow):
    progress = workflow.create_journey("USR-EMP", journey_type="CC")
    assert progress["stage"] == "prepare"
    assert progress["phase"] == "pre_onboarding"
    assert progress["status"] == "pending"
    assert progress["journeyType"] == "CC"
    assert progress["progressId"].startswith("OBP-")

    started = parse_datetime_maybe(progress["stageStartDate"])
    eta = parse_datetime_maybe(progress["estimatedCompletionDate"])
    assert timedelta(days=89) < eta - started <= timedelta(days=90, minutes=1)

    expected = len(workflow.task_ids("prepare", "CC") + workflow.task_ids("phase_1", "CC") + workflow.task_ids("phase_2", "CC"))
    assert _count(UserTaskProgress, UserTaskProgress.userId == "USR-EMP") == expected
    assert _count(Notification, Notification.userId == "USR-EMP", Notification.type == "onboarding_started") == 1


def test_create_journey_conflict_and_validation(workflow):
    workflow.create_journey("USR-EMP")

    res = workflow.post("/api/onboarding/create", "USR-HR", {"userId": "USR-EMP"})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "CONFLICT"

    res = workflow.post("/api/onboarding/create", "USR-HR", {"userId": "USR-EMP2", "journeyType": "XYZ"})
    assert res.status_code == 400
    assert res.get_json()["error"]["details"]["field"] == "journeyType"

    res = workflow.post("/api/onboarding/create", "USR-HR", {"userId": "USR-GHOST"})
    assert res.status_code == 404

    assert _count(OnboardingProgress) == 1


def test_admin_can_create_journey(workflow):
    res = workflow.post("/api/onboarding/create", "USR-ADMIN", {"userId": "USR-EMP2", "journeyType": "SFP"})
    assert res.get_json()["ok"] is True


def test_manual_advance_walks_stages_and_stops_at_last(workflow):
    workflow.create_journey("USR-EMP")
    seen = []
    for _ in range(4):
        res = workflow.client.put("/api/onboarding/progress/USR-EMP/advance", headers=workflow.headers("USR-HR"))
        body = res.get_json()
        assert body["ok"] is True
        seen.append(body["data"]["progress"]["stage"])
    assert seen == ["orient", "land", "integrate", "excel"]

    res = workflow.client.put("/api/onboarding/progress/USR-EMP/advance", headers=workflow.headers("USR-HR"))
    assert res.status_code == 409
    body = res.get_json()
    assert body["error"]["code"] == "INVALID_STATE"
    assert body["error"]["details"]["currentStatus"] == "excel"

    res = workflow.client.put("/api/onboarding/progress/USR-EMP2/advance", headers=workflow.headers("USR-HR"))
    assert res.status_code == 404


def test_supervisor_can_advance_direct_report_only(workflow):
    workflow.create_journey("USR-EMP")
    workflow.create_journey("USR-EMP2")

    res = workflow.client.put("/api/onboarding/progress/USR-EMP/advance", headers=workflow.headers("USR-SUP"))
    assert res.get_json()["data"]["progress"]["stage"] == "orient"

    res = workflow.client.put("/api/onboarding/progress/USR-EMP2/advance", headers=workflow.headers("USR-SUP"))
    assert res.status_code == 403


def test_advance_to_phase_is_idempotent(workflow):
    workflow.create_journey("USR-EMP")

    with SessionLocal() as db:
        tracker = db.execute(select(OnboardingProgress).where(OnboardingProgress.userId == "USR-EMP")).scalar_one()
        assert advance_to_phase(db, tracker, Phase.PHASE_2, actor=None, cfg=None, cause="test") is True
        assert tracker.stage == "integrate"
        assert tracker.status == "in_progress"
        assert advance_to_phase(db, tracker, Phase.PHASE_2, actor=None, cfg=None, cause="test") is False
        assert advance_to_phase(db, tracker, Phase.PHASE_1, actor=None, cfg=None, cause="test") is False
        db.commit()

    assert _count(AuditLog, AuditLog.action == "STAGE_ADVANCE") == 1


def test_reset_clears_task_rows_but_keeps_assessments(workflow):
    assessment_id = workflow.start_supervisor_assessment()
    workflow.supervisor_decision(assessment_id, "proceed_to_phase_2")

    res = workflow.post("/api/onboarding/USR-EMP/reset", "USR-HR", {"resetToStage": "orient"})
    body = res.get_json()
    assert body["ok"] is True
    assert body["data"]["progress"]["stage"] == "orient"
    assert body["data"]["progress"]["status"] == "pending"
    assert body["data"]["progress"]["progress"] == 0
    assert body["data"]["taskRowsRemoved"] > 0

    assert _count(UserTaskProgress, UserTaskProgress.userId == "USR-EMP") == 0
    assert _count(SupervisorAssessment) == 1

    res = workflow.post("/api/onboarding/USR-EMP/reset", "USR-HR", {"resetToStage": "graduate"})
    assert res.status_code == 400


def test_reset_can_keep_completed_tasks(workflow):
    workflow.create_journey("USR-EMP")
    workflow.complete_phase("USR-EMP", "prepare", validate=True)
    before = _count(UserTaskProgress, UserTaskProgress.userId == "USR-EMP")

    body = workflow.post("/api/onboarding/USR-EMP/reset", "USR-ADMIN", {"keepCompletedTasks": True}).get_json()
    assert body["data"]["taskRowsRemoved"] == 0
    assert _count(UserTaskProgress, UserTaskProgress.userId == "USR-EMP") == before


def test_delete_removes_journey_and_assessments(workflow):
    assessment_id = workflow.start_supervisor_assessment()
    workflow.supervisor_decision(assessment_id, "proceed_to_phase_2")

    res = workflow.client.delete("/api/onboarding/USR-EMP", headers=workflow.headers("USR-HR"))
    assert res.get_json()["data"] == {"deleted": True, "userId": "USR-EMP"}

    assert _count(OnboardingProgress) == 0
    assert _count(UserTaskProgress) == 0
    assert _count(SupervisorAssessment) == 0
    assert _count(HRAssessment) == 0

    res = workflow.client.get("/api/onboarding/progress/USR-EMP", headers=workflow.headers("USR-HR"))
    assert res.status_code == 404


def test_progress_view_groups_tasks_by_stage(workflow):
    workflow.create_journey("USR-EMP")
    data = workflow.progress()

    assert list(data["phases"].keys()) == ["prepare", "orient", "land", "integrate", "excel"]
    assert set(data["phaseGroups"].keys()) == {"pre_onboarding", "phase_1", "phase_2"}
    assert data["supervisorAssessment"] is None
    assert data["hrAssessment"] is None

    prepare = data["phases"]["prepare"]["tasks"]
    assert [t["order"] for t in prepare] == sorted(t["order"] for t in prepare)
    assert all(t["journeyType"] in {"both", "SFP"} for stage in data["phases"].values() for t in stage["tasks"])
    assert prepare[0]["progress"]["isCompleted"] is False


def test_task_catalog_and_journey_types(workflow):
    body = workflow.client.get("/api/onboarding/tasks/default?stage=phase_1&journeyType=CC", headers=workflow.headers("USR-EMP")).get_json()
    assert body["data"]["total"] == 4
    assert {t["stage"] for t in body["data"]["items"]} == {"orient", "land"}

    body = workflow.client.get("/api/onboarding/tasks/default?stage=excel", headers=workflow.headers("USR-EMP")).get_json()
    assert {t["journeyType"] for t in body["data"]["items"]} == {"both", "SFP", "CC"}

    res = workflow.client.get("/api/onboarding/tasks/default?stage=nowhere", headers=workflow.headers("USR-EMP"))
    assert res.status_code == 400

    body = workflow.client.get("/api/onboarding/journey-types", headers=workflow.headers("USR-EMP")).get_json()
    assert [i["journeyType"] for i in body["data"]["items"]] == ["SFP", "CC"]
    assert body["data"]["phases"]["phase_2"] == ["integrate", "excel"]
