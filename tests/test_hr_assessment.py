from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import HRAssessment, Notification, OnboardingProgress


def _tracker(user_id: str = "USR-EMP") -> OnboardingProgress:
    with SessionLocal() as db:
        return db.execute(select(OnboardingProgress).where(OnboardingProgress.userId == user_id)).scalar_one()


def _into_phase2(workflow, user_id: str = "USR-EMP") -> None:
    assessment_id = workflow.start_supervisor_assessment(user_id)
    workflow.supervisor_decision(assessment_id, "proceed_to_phase_2")
    res = workflow.post(
        f"/api/supervisor-assessments/{assessment_id}/hr-approve",
        "USR-HR",
        {"hrDecision": "approve", "comments": "ok"},
    )
    assert res.get_json()["ok"] is True
    assert _tracker(user_id).stage == "integrate"


def test_initialize_outside_phase2_is_invalid_state(workflow):
    workflow.create_journey("USR-EMP")
    workflow.complete_phase("USR-EMP", "phase_2")

    res = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR")
    assert res.status_code == 409
    body = res.get_json()
    assert body["error"]["code"] == "INVALID_STATE"
    assert body["error"]["details"] == {"currentStatus": "prepare", "requiredStatus": "phase_2"}


def test_initialize_requires_phase2_tasks(workflow):
    _into_phase2(workflow)

    res = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR")
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"

    with SessionLocal() as db:
        assert db.execute(select(HRAssessment)).scalars().all() == []


def test_full_hr_assessment_completes_journey(workflow):
    _into_phase2(workflow)
    workflow.complete_phase("USR-EMP", "phase_2")

    with SessionLocal() as db:
        announced = db.execute(select(Notification).where(Notification.type == "hr_assessment_required")).scalars().all()
    assert {n.userId for n in announced} == {"USR-HR", "USR-HR2"}

    body = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR").get_json()
    assert body["ok"] is True
    assessment_id = body["data"]["assessmentId"]
    assert body["data"]["status"] == "pending_assessment"
    assert body["data"]["assessment"]["hrId"] == "USR-HR"

    res = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR")
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "CONFLICT"

    res = workflow.post(f"/api/hr-assessments/{assessment_id}/make-decision", "USR-HR", {"hrDecision": "approve", "comments": "early"})
    assert res.status_code == 409
    assert res.get_json()["error"]["details"]["requiredStatus"] == "assessment_completed"

    body = workflow.post(f"/api/hr-assessments/{assessment_id}/conduct-assessment", "USR-HR", {"notes": "Strong finish", "score": 91}).get_json()
    assert body["data"]["status"] == "assessment_completed"
    assert body["data"]["assessment"]["assessmentScore"] == 91

    body = workflow.post(
        f"/api/hr-assessments/{assessment_id}/make-decision",
        "USR-HR",
        {"hrDecision": "approve", "comments": "Welcome to the team"},
    ).get_json()
    assert body["data"]["status"] == "decision_made"
    assert body["data"]["assessment"]["hrDecision"] == "approve"

    tracker = _tracker()
    assert tracker.status == "completed"

    with SessionLocal() as db:
        decided = db.execute(select(Notification).where(Notification.type == "hr_assessment_decision")).scalars().all()
    assert [n.userId for n in decided] == ["USR-EMP"]


def test_hr_reject_does_not_complete_journey(workflow):
    _into_phase2(workflow)
    workflow.complete_phase("USR-EMP", "phase_2")

    assessment_id = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR").get_json()["data"]["assessmentId"]
    workflow.post(f"/api/hr-assessments/{assessment_id}/conduct-assessment", "USR-HR", {"notes": "Gaps remain"})
    body = workflow.post(
        f"/api/hr-assessments/{assessment_id}/make-decision",
        "USR-HR",
        {"hrDecision": "reject", "comments": "Not yet"},
    ).get_json()
    assert body["data"]["status"] == "decision_made"
    assert _tracker().status != "completed"


def test_initialize_with_non_hr_assignee_is_rejected(workflow):
    _into_phase2(workflow)
    workflow.complete_phase("USR-EMP", "phase_2")

    res = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR", {"hrId": "USR-SUP"})
    assert res.status_code == 400
    assert res.get_json()["error"]["details"]["field"] == "hrId"


def test_hr_assessment_listings(workflow):
    _into_phase2(workflow)
    workflow.complete_phase("USR-EMP", "phase_2")
    assessment_id = workflow.post("/api/hr-assessments/initialize/USR-EMP", "USR-HR", {"hrId": "USR-HR2"}).get_json()["data"]["assessmentId"]

    body = workflow.client.get("/api/hr-assessments/hr/USR-HR2", headers=workflow.headers("USR-HR")).get_json()
    assert [i["assessmentId"] for i in body["data"]["items"]] == [assessment_id]
    assert body["data"]["items"][0]["employee"]["department"] == "Sales"

    body = workflow.client.get("/api/hr-assessments/pending", headers=workflow.headers("USR-HR")).get_json()
    assert body["data"]["total"] == 1

    body = workflow.client.get(f"/api/hr-assessments/{assessment_id}", headers=workflow.headers("USR-HR2")).get_json()
    assert body["data"]["assessment"]["hrId"] == "USR-HR2"

    res = workflow.client.get("/api/hr-assessments/pending", headers=workflow.headers("USR-SUP"))
    assert res.status_code == 403
