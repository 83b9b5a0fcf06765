from __future__ import annotations

from db import SessionLocal
from guards import can_manage_user, can_view_user, is_direct_supervisor_of, is_same_department
from models import User
from utils import AuthContext, iso_utc_now


def _ctx(user_id: str, role: str) -> AuthContext:
    return AuthContext(valid=True, userId=user_id, email="", role=role, expiresAt="")


def test_supervisor_relationship_is_single_hop(directory):
    now = iso_utc_now()
    with SessionLocal() as db:
        # USR-MGR supervises USR-SUP, who supervises USR-EMP.
        assert is_direct_supervisor_of(db, _ctx("USR-SUP", "SUPERVISOR"), "USR-EMP") is True
        assert is_direct_supervisor_of(db, _ctx("USR-MGR", "SUPERVISOR"), "USR-EMP") is False

        db.add(User(userId="USR-LEAD", email="lead@example.com", role="SUPERVISOR", department="Ops", createdAt=now, updatedAt=now))
        db.commit()
        assert can_manage_user(db, _ctx("USR-LEAD", "SUPERVISOR"), "USR-EMP", allowed_roles={"SUPERVISOR"}) is False


def test_manager_and_hr_scope(directory):
    with SessionLocal() as db:
        assert is_same_department(db, _ctx("USR-MGR", "MANAGER"), "USR-EMP") is True
        assert can_manage_user(db, _ctx("USR-MGR", "MANAGER"), "USR-EMP", allowed_roles={"MANAGER"}) is True
        assert can_manage_user(db, _ctx("USR-MGR2", "MANAGER"), "USR-EMP", allowed_roles={"MANAGER"}) is False
        assert can_manage_user(db, _ctx("USR-HR", "HR"), "USR-EMP2", allowed_roles={"HR"}) is True
        # Role must be in the operation's allow-list even for HR.
        assert can_manage_user(db, _ctx("USR-HR", "HR"), "USR-EMP", allowed_roles={"SUPERVISOR"}) is False

        assert can_view_user(db, _ctx("USR-EMP", "EMPLOYEE"), "USR-EMP") is True
        assert can_view_user(db, _ctx("USR-EMP", "EMPLOYEE"), "USR-EMP2") is False


def test_supervisor_cannot_act_on_non_report(workflow):
    workflow.create_journey("USR-EMP")
    workflow.complete_phase("USR-EMP", "phase_1")

    res = workflow.post("/api/supervisor-assessments/initialize/USR-EMP", "USR-SUP2")
    assert res.status_code == 403
    body = res.get_json()
    assert body["error"]["code"] == "FORBIDDEN"
    assert body["error"]["details"]["targetUserId"] == "USR-EMP"


def test_forbidden_is_reported_before_state_errors(workflow):
    assessment_id = workflow.start_supervisor_assessment()

    # Out-of-order step by a non-report supervisor: authorization wins.
    res = workflow.post(f"/api/supervisor-assessments/{assessment_id}/make-decision", "USR-SUP2", {})
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_manager_same_department_can_run_assessment(workflow):
    assessment_id = workflow.start_supervisor_assessment(actor="USR-MGR")

    res = workflow.post(f"/api/supervisor-assessments/{assessment_id}/upload-certificate", "USR-MGR2", {"fileRef": "c.pdf"})
    assert res.status_code == 403

    data = workflow.supervisor_decision(assessment_id, "proceed_to_phase_2", actor="USR-MGR")
    assert data["status"] == "hr_approval_pending"
    # Defaults to the employee's own supervisor when a manager initializes.
    assert data["assessment"]["supervisorId"] == "USR-SUP"


def test_role_allow_lists_are_enforced(workflow):
    assessment_id = workflow.start_supervisor_assessment()

    res = workflow.post("/api/supervisor-assessments/initialize/USR-EMP", "USR-EMP")
    assert res.status_code == 403

    res = workflow.post(f"/api/supervisor-assessments/{assessment_id}/conduct-assessment", "USR-HR", {"notes": "x"})
    assert res.status_code == 403

    res = workflow.post(
        f"/api/supervisor-assessments/{assessment_id}/hr-approve",
        "USR-SUP",
        {"hrDecision": "approve", "comments": "self-approve"},
    )
    assert res.status_code == 403

    res = workflow.post("/api/onboarding/create", "USR-SUP", {"userId": "USR-EMP2"})
    assert res.status_code == 403


def test_progress_visibility(workflow):
    workflow.create_journey("USR-EMP")
    workflow.create_journey("USR-EMP2")

    assert workflow.progress("USR-EMP", actor="USR-EMP")["userId"] == "USR-EMP"
    assert workflow.progress("USR-EMP", actor="USR-SUP")["userId"] == "USR-EMP"
    assert workflow.progress("USR-EMP", actor="USR-MGR")["userId"] == "USR-EMP"

    for actor in ("USR-EMP", "USR-SUP", "USR-MGR"):
        res = workflow.client.get("/api/onboarding/progress/USR-EMP2", headers=workflow.headers(actor))
        assert res.status_code == 403, actor


def test_supervisor_lists_only_own_assessments(workflow):
    workflow.start_supervisor_assessment()

    res = workflow.client.get("/api/supervisor-assessments/supervisor/USR-SUP", headers=workflow.headers("USR-SUP2"))
    assert res.status_code == 403

    body = workflow.client.get("/api/supervisor-assessments/supervisor/USR-SUP", headers=workflow.headers("USR-MGR2")).get_json()
    assert body["data"]["items"] == []


def test_missing_or_bad_token_is_auth_invalid(app_client, directory):
    _app, client = app_client
    res = client.get("/api/onboarding/progress/USR-EMP")
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

    res = client.get("/api/onboarding/progress/USR-EMP", headers={"Authorization": "Bearer ST-nope"})
    assert res.status_code == 401


def _listed(workflow, actor: str, query: str = "") -> list[str]:
    body = workflow.client.get(f"/api/onboarding/progress{query}", headers=workflow.headers(actor)).get_json()
    assert body["ok"] is True, body
    return sorted(item["userId"] for item in body["data"]["items"])


def test_progress_listing_follows_hierarchy(workflow):
    for user_id in ("USR-EMP", "USR-EMP2", "USR-SUP"):
        workflow.create_journey(user_id)

    assert _listed(workflow, "USR-HR") == ["USR-EMP", "USR-EMP2", "USR-SUP"]
    assert _listed(workflow, "USR-ADMIN") == ["USR-EMP", "USR-EMP2", "USR-SUP"]
    assert _listed(workflow, "USR-MGR") == ["USR-EMP", "USR-SUP"]
    assert _listed(workflow, "USR-MGR2") == ["USR-EMP2"]
    assert _listed(workflow, "USR-SUP") == ["USR-EMP"]
    assert _listed(workflow, "USR-SUP2") == ["USR-EMP2"]

    res = workflow.client.get("/api/onboarding/progress", headers=workflow.headers("USR-EMP"))
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_progress_listing_filters(workflow):
    workflow.create_journey("USR-EMP")
    workflow.create_journey("USR-EMP2")
    workflow.client.put("/api/onboarding/progress/USR-EMP/advance", headers=workflow.headers("USR-HR"))

    assert _listed(workflow, "USR-HR", "?stage=orient") == ["USR-EMP"]
    assert _listed(workflow, "USR-HR", "?status=pending") == ["USR-EMP", "USR-EMP2"]
    assert _listed(workflow, "USR-HR", "?status=completed") == []

    body = workflow.client.get("/api/onboarding/progress", headers=workflow.headers("USR-HR")).get_json()
    item = next(i for i in body["data"]["items"] if i["userId"] == "USR-EMP2")
    assert item["employee"]["department"] == "Ops"
    assert item["stage"] == "prepare"

    res = workflow.client.get("/api/onboarding/progress?status=stalled", headers=workflow.headers("USR-HR"))
    assert res.status_code == 400
    assert res.get_json()["error"]["details"]["field"] == "status"
