from __future__ import annotations

from sqlalchemy import func, select

from actions.progress_ledger import calculate_phase_progress, ensure_progress_record, ratio_percent
from db import SessionLocal
from models import OnboardingProgress, UserTaskProgress


def test_ratio_percent_rounds_and_handles_empty():
    assert ratio_percent(0, 0) == 0
    assert ratio_percent(1, 2) == 50
    assert ratio_percent(2, 3) == 67
    assert ratio_percent(4, 4) == 100


def test_stage_progress_counts_only_validated_tasks(workflow):
    workflow.create_journey("USR-EMP")
    orient = workflow.task_ids("orient")
    assert len(orient) == 2

    with SessionLocal() as db:
        assert calculate_phase_progress(db, "USR-EMP", "orient") == 0

    # Completed but not yet validated does not count.
    for tid in orient:
        assert workflow.complete("USR-EMP", tid).get_json()["ok"] is True
    assert workflow.progress()["phases"]["orient"]["progress"] == 0

    assert workflow.validate("USR-EMP", orient[0]).get_json()["ok"] is True
    assert workflow.progress()["phases"]["orient"]["progress"] == 50

    assert workflow.validate("USR-EMP", orient[1]).get_json()["ok"] is True
    data = workflow.progress()
    assert data["phases"]["orient"]["progress"] == 100
    assert data["phaseGroups"]["phase_1"] == 50


def test_overall_progress_writes_back_status(workflow):
    workflow.create_journey("USR-EMP")
    all_tasks = workflow.task_ids("prepare") + workflow.task_ids("phase_1") + workflow.task_ids("phase_2")

    assert workflow.complete("USR-EMP", all_tasks[0]).get_json()["ok"] is True
    body = workflow.validate("USR-EMP", all_tasks[0]).get_json()
    assert body["data"]["overallProgress"] == ratio_percent(1, len(all_tasks))

    with SessionLocal() as db:
        tracker = db.execute(select(OnboardingProgress).where(OnboardingProgress.userId == "USR-EMP")).scalar_one()
        assert tracker.status == "in_progress"
        assert tracker.progress == ratio_percent(1, len(all_tasks))

    for tid in all_tasks[1:]:
        assert workflow.complete("USR-EMP", tid).get_json()["ok"] is True
        assert workflow.validate("USR-EMP", tid).get_json()["ok"] is True

    data = workflow.progress()
    assert data["progress"] == 100
    assert data["status"] == "completed"

    # Un-completing a task lowers progress but never demotes a completed journey.
    body = workflow.complete("USR-EMP", all_tasks[0], completed=False).get_json()
    assert body["ok"] is True
    assert body["data"]["overallProgress"] < 100
    assert workflow.progress()["status"] == "completed"


def test_validate_requires_completed_task(workflow):
    workflow.create_journey("USR-EMP")
    tid = workflow.task_ids("prepare")[0]

    res = workflow.validate("USR-EMP", tid)
    assert res.status_code == 409
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "INVALID_STATE"

    assert workflow.complete("USR-EMP", tid).get_json()["ok"] is True
    assert workflow.validate("USR-EMP", tid).get_json()["ok"] is True

    res = workflow.validate("USR-EMP", tid)
    assert res.status_code == 409
    assert res.get_json()["error"]["details"]["currentStatus"] == "validated"


def test_task_from_other_journey_type_is_rejected(workflow):
    workflow.create_journey("USR-EMP", journey_type="SFP")
    sfp = set(workflow.task_ids("prepare", "SFP"))
    cc_only = [tid for tid in workflow.task_ids("prepare", "CC") if tid not in sfp]
    assert cc_only

    res = workflow.complete("USR-EMP", cc_only[0])
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_completion_unknown_task_and_unknown_journey(workflow):
    res = workflow.complete("USR-EMP", 9999)
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"

    # Existing task but no journey for the user.
    tid = workflow.task_ids("prepare")[0]
    res = workflow.complete("USR-EMP", tid)
    assert res.status_code == 404
    assert "journey" in res.get_json()["error"]["message"].lower()


def test_ensure_progress_record_is_lookup_or_create(workflow):
    workflow.create_journey("USR-EMP")
    tid = workflow.task_ids("orient")[0]

    with SessionLocal() as db:
        first = ensure_progress_record(db, "USR-EMP", tid)
        second = ensure_progress_record(db, "USR-EMP", tid)
        db.commit()
        assert first.id == second.id

        count = db.execute(
            select(func.count(UserTaskProgress.id)).where(UserTaskProgress.userId == "USR-EMP").where(UserTaskProgress.taskId == tid)
        ).scalar_one()
        assert count == 1


def test_stage_without_catalog_tasks_reports_zero(workflow):
    from sqlalchemy import delete

    from models import OnboardingTask

    workflow.create_journey("USR-EMP")
    orient = workflow.task_ids("orient")
    with SessionLocal() as db:
        db.execute(delete(UserTaskProgress).where(UserTaskProgress.taskId.in_(orient)))
        db.execute(delete(OnboardingTask).where(OnboardingTask.id.in_(orient)))
        db.commit()

    workflow.complete_phase("USR-EMP", "land", validate=True)

    with SessionLocal() as db:
        assert calculate_phase_progress(db, "USR-EMP", "orient") == 0
        assert calculate_phase_progress(db, "USR-EMP", "land") == 100
        assert calculate_phase_progress(db, "USR-EMP", "phase_1") == 100

    data = workflow.progress()
    assert data["phases"]["orient"] == {"progress": 0, "tasks": []}
