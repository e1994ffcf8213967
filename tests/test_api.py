import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auth import get_password_hash
from conftest import seed_user, token_for
from main import create_app

TEST_PAYLOAD = {
    "title": "Fractions",
    "description": "Adding and comparing fractions",
    "time_limit": 30,
    "questions": [
        {"prompt": "1/2 + 1/4?", "points": 2, "options": [
            {"text": "3/4", "is_correct": True}, {"text": "2/6"}, {"text": "1/8"},
        ]},
        {"prompt": "Is 2/3 > 3/5?", "options": [{"text": "Yes", "is_correct": True}, {"text": "No"}]},
    ],
}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(mongo_db):
    with TestClient(create_app(mongo_db, auto_save_interval=3600)) as client:
        yield client


@pytest.fixture
def people(mongo_db):
    admin_id = seed_user(mongo_db, "admin")
    student_id = seed_user(mongo_db, "student")
    return {
        "student_id": student_id,
        "admin": bearer(token_for(admin_id, "admin")),
        "student": bearer(token_for(student_id, "student")),
        "student_token": token_for(student_id, "student"),
    }


def assigned_test(client, people, **assign):
    response = client.post("/admin/tests", json=TEST_PAYLOAD, headers=people["admin"])
    assert response.status_code == 201
    test = response.json()
    assert client.post(f"/admin/tests/{test['id']}/publish", headers=people["admin"]).status_code == 200
    due = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    response = client.post(
        f"/admin/tests/{test['id']}/assign",
        json={"student_ids": [people["student_id"]], "due_date": due, **assign},
        headers=people["admin"],
    )
    assert response.status_code == 200
    return test


def correct_answers(test):
    return [{"question_id": q["id"], "selected_option_id": q["options"][0]["id"]} for q in test["questions"]]


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Assessment Portal API running"}
    health = client.get("/health").json()
    assert health["database"] == "connected"
    assert health["live_sessions"] == 0


def test_register_login_and_me(client):
    response = client.post("/auth/register", data={"name": "Ada", "email": "ada@example.com", "password": "s3cret"})
    assert response.status_code == 200
    again = client.post("/auth/register", data={"name": "Ada", "email": "ada@example.com", "password": "x"})
    assert again.status_code == 400
    assert again.json()["errors"][0]["field"] == "email"

    login = client.post("/auth/token", data={"username": "ada@example.com", "password": "s3cret"})
    assert login.status_code == 200
    me = client.get("/auth/me", headers=bearer(login.json()["access_token"])).json()
    assert me["role"] == "student"

    wrong = client.post("/auth/token", data={"username": "ada@example.com", "password": "nope"})
    assert wrong.status_code == 401


def test_login_for_provisioned_admin(client, mongo_db):
    seed_user(mongo_db, "admin", email="root@example.com", password_hash=get_password_hash("pw"))
    login = client.post("/auth/token", data={"username": "root@example.com", "password": "pw"})
    me = client.get("/auth/me", headers=bearer(login.json()["access_token"])).json()
    assert me["role"] == "admin"


def test_admin_routes_require_admin(client, people):
    assert client.get("/admin/tests").status_code == 401
    assert client.get("/admin/tests", headers=people["student"]).status_code == 403
    assert client.get("/admin/tests", headers=people["admin"]).status_code == 200


def test_assign_rejects_unknown_students(client, people):
    test = client.post("/admin/tests", json=TEST_PAYLOAD, headers=people["admin"]).json()
    client.post(f"/admin/tests/{test['id']}/publish", headers=people["admin"])
    due = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    response = client.post(
        f"/admin/tests/{test['id']}/assign",
        json={"student_ids": ["not-an-id"], "due_date": due},
        headers=people["admin"],
    )
    assert response.status_code == 400


def test_full_attempt_flow(client, people):
    test = assigned_test(client, people, max_attempts=1)

    assignments = client.get("/student/assignments", headers=people["student"]).json()
    assert [a["test_id"] for a in assignments] == [test["id"]]

    started = client.post(f"/student/tests/{test['id']}/start", headers=people["student"])
    assert started.status_code == 200
    body = started.json()
    assert body["attempt_number"] == 1
    assert body["time_limit"] == 30
    assert "is_correct" not in json.dumps(body["questions"])

    session = client.get(f"/student/tests/{test['id']}/session", headers=people["student"]).json()
    assert session["state"] == "running"
    assert client.get("/admin/sessions", headers=people["admin"]).json()[0]["test_id"] == test["id"]

    submitted = client.post(
        f"/student/tests/{test['id']}/submit",
        json={"answers": correct_answers(test), "time_spent": 95},
        headers=people["student"],
    )
    assert submitted.status_code == 201
    result = submitted.json()
    assert (result["score"], result["percentage"], result["attempt_number"]) == (3, 100, 1)

    again = client.post(
        f"/student/tests/{test['id']}/submit",
        json={"answers": correct_answers(test)},
        headers=people["student"],
    )
    assert again.status_code == 403

    results = client.get(f"/tests/{test['id']}/results", headers=people["admin"]).json()
    assert len(results) == 1
    assert results[0]["answers"][0]["is_correct"] is True


def test_questions_lock_once_assigned(client, people):
    test = assigned_test(client, people)
    response = client.put(
        f"/admin/tests/{test['id']}/questions",
        json={"questions": TEST_PAYLOAD["questions"][:1]},
        headers=people["admin"],
    )
    assert response.status_code == 403


def test_due_date_extension(client, people):
    test = assigned_test(client, people)
    later = (datetime.now(timezone.utc) + timedelta(days=7)).replace(microsecond=0)
    response = client.patch(
        f"/admin/tests/{test['id']}/assignment/due-date",
        json={"due_date": later.isoformat()},
        headers=people["admin"],
    )
    assert response.status_code == 200
    current = client.get(f"/admin/tests/{test['id']}/assignment", headers=people["admin"]).json()
    assert datetime.fromisoformat(current["due_date"].replace("Z", "+00:00")) == later


def test_beacon_submit_as_plain_text(client, people):
    test = assigned_test(client, people, max_attempts=2)
    client.post(f"/student/tests/{test['id']}/start", headers=people["student"])
    body = json.dumps({"answers": correct_answers(test), "auth_token": people["student_token"]})
    response = client.post(
        f"/student/tests/{test['id']}/submit", content=body, headers={"Content-Type": "text/plain"},
    )
    assert response.status_code == 201
    # a second beacon on tab close finds nothing in progress
    repeat = client.post(
        f"/student/tests/{test['id']}/submit", content=body, headers={"Content-Type": "text/plain"},
    )
    assert repeat.status_code == 409


def test_invalid_bearer_does_not_fall_back_to_beacon(client, people):
    test = assigned_test(client, people)
    client.post(f"/student/tests/{test['id']}/start", headers=people["student"])
    response = client.post(
        f"/student/tests/{test['id']}/submit",
        json={"answers": correct_answers(test), "auth_token": people["student_token"]},
        headers=bearer("garbage"),
    )
    assert response.status_code == 401


def test_malformed_submission_is_a_validation_error(client, people):
    test = assigned_test(client, people)
    response = client.post(
        f"/student/tests/{test['id']}/submit", content="{not json", headers=people["student"],
    )
    assert response.status_code == 400


def test_websocket_heartbeat_reports_server_time(client, people):
    test = assigned_test(client, people)
    client.post(f"/student/tests/{test['id']}/start", headers=people["student"])
    with client.websocket_connect(f"/ws?token={people['student_token']}") as ws:
        ws.send_json({"event": "test:heartbeat", "data": {"test_id": test["id"]}})
        frame = ws.receive_json()
        assert frame["event"] == "test:time-update"
        assert 1790 <= frame["data"]["remaining"] <= 1800

        ws.send_json({"event": "test:auto-save", "data": {
            "test_id": test["id"], "answers": correct_answers(test)[:1],
        }})
        assert ws.receive_json()["event"] == "test:auto-saved"

        ws.send_json({"event": "admin:broadcast", "data": {"message": "hi"}})
        assert ws.receive_json() == {"event": "error", "data": {"detail": "Only admins can broadcast"}}


def test_websocket_requires_a_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
