from __future__ import annotations

import json

import pytest

from utils import iso_utc_now


DIRECTORY = [
    # userId, email, role, supervisorId, department
    ("USR-HR", "hr@example.com", "HR", "", "People"),
    ("USR-HR2", "hr2@example.com", "HR", "", "People"),
    ("USR-ADMIN", "admin@example.com", "ADMIN", "", ""),
    ("USR-SUP", "sup@example.com", "SUPERVISOR", "USR-MGR", "Sales"),
    ("USR-SUP2", "sup2@example.com", "SUPERVISOR", "", "Ops"),
    ("USR-MGR", "mgr@example.com", "MANAGER", "", "Sales"),
    ("USR-MGR2", "mgr2@example.com", "MANAGER", "", "Ops"),
    ("USR-EMP", "emp@example.com", "EMPLOYEE", "USR-SUP", "Sales"),
    ("USR-EMP2", "emp2@example.com", "EMPLOYEE", "USR-SUP2", "Ops"),
]


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'onboarding.db'}")
    monkeypatch.setenv("ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("NOTIFY_ASYNC", "0")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.delenv("REDIS_URL", raising=False)

    from server import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client


@pytest.fixture()
def directory(app_client):
    from db import SessionLocal
    from models import User

    now = iso_utc_now()
    with SessionLocal() as db:
        for user_id, email, role, supervisor_id, department in DIRECTORY:
            db.add(
                User(
                    userId=user_id,
                    email=email,
                    fullName=user_id.replace("USR-", "").title(),
                    role=role,
                    supervisorId=supervisor_id,
                    department=department,
                    status="ACTIVE",
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.commit()
    return {row[0]: row[1] for row in DIRECTORY}


@pytest.fixture()
def login(app_client, directory):
    _app, client = app_client
    tokens: dict[str, str] = {}

    def _login(user_id: str) -> str:
        if user_id not in tokens:
            res = client.post(
                "/api",
                data=json.dumps({"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{directory[user_id]}"}}),
                content_type="text/plain; charset=utf-8",
            )
            body = res.get_json()
            assert body["ok"] is True, body
            tokens[user_id] = body["data"]["sessionToken"]
        return tokens[user_id]

    return _login


class Workflow:
    """Drives a journey through the REST surface on behalf of a test."""

    def __init__(self, client, login):
        self.client = client
        self.login = login

    def headers(self, user_id: str) -> dict:
        return {"Authorization": f"Bearer {self.login(user_id)}"}

    def create_journey(self, user_id: str = "USR-EMP", journey_type: str = "SFP") -> dict:
        res = self.client.post(
            "/api/onboarding/create",
            json={"userId": user_id, "journeyType": journey_type},
            headers=self.headers("USR-HR"),
        )
        body = res.get_json()
        assert body["ok"] is True, body
        return body["data"]["progress"]

    def task_ids(self, stage_or_phase: str, journey_type: str = "SFP") -> list[int]:
        from actions.task_catalog import query_tasks
        from db import SessionLocal

        with SessionLocal() as db:
            return [int(t.id) for t in query_tasks(db, stage_or_phase=stage_or_phase, journey_type=journey_type)]

    def complete(self, user_id: str, task_id: int, *, completed: bool = True, actor: str = "USR-HR"):
        return self.client.put(
            f"/api/onboarding/tasks/{task_id}/complete",
            json={"userId": user_id, "completed": completed},
            headers=self.headers(actor),
        )

    def validate(self, user_id: str, task_id: int, *, actor: str = "USR-HR"):
        return self.client.put(
            f"/api/onboarding/tasks/{task_id}/validate",
            json={"userId": user_id, "comments": "ok"},
            headers=self.headers(actor),
        )

    def complete_phase(self, user_id: str, phase: str, *, journey_type: str = "SFP", validate: bool = False) -> None:
        for tid in self.task_ids(phase, journey_type):
            assert self.complete(user_id, tid).get_json()["ok"] is True
            if validate:
                assert self.validate(user_id, tid).get_json()["ok"] is True

    def progress(self, user_id: str = "USR-EMP", actor: str = "USR-HR") -> dict:
        body = self.client.get(f"/api/onboarding/progress/{user_id}", headers=self.headers(actor)).get_json()
        assert body["ok"] is True, body
        return body["data"]

    def post(self, path: str, actor: str, payload: dict | None = None):
        return self.client.post(path, json=payload or {}, headers=self.headers(actor))

    def start_supervisor_assessment(self, user_id: str = "USR-EMP", actor: str = "USR-SUP") -> str:
        self.create_journey(user_id)
        self.complete_phase(user_id, "phase_1")
        body = self.post(f"/api/supervisor-assessments/initialize/{user_id}", actor).get_json()
        assert body["ok"] is True, body
        return body["data"]["assessmentId"]

    def supervisor_decision(self, assessment_id: str, decision: str, actor: str = "USR-SUP") -> dict:
        steps = [
            ("upload-certificate", {"fileRef": "certificate.pdf"}),
            ("conduct-assessment", {"notes": "Solid first weeks", "score": 82}),
            ("make-decision", {"decision": decision, "comments": "Reviewed with employee"}),
        ]
        body = {}
        for step, payload in steps:
            body = self.post(f"/api/supervisor-assessments/{assessment_id}/{step}", actor, payload).get_json()
            assert body["ok"] is True, body
        return body["data"]


@pytest.fixture()
def workflow(app_client, login):
    _app, client = app_client
    return Workflow(client, login)
