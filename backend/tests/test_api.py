import json

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.core as core
import database.db as db
from backend.services.reports import REPORT_APOLOGY, ReportGenerator


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "smartattend_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    with TestClient(main.app) as c:
        c.app.state.engine.report_generator = ReportGenerator(api_key=None)
        yield c


def _register(client, *, name: str, email: str, role: str = "student", student_id: str | None = None):
    res = client.post(
        "/auth/register",
        json={"name": name, "email": email, "role": role, "student_id": student_id},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    return body["user"], {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture()
def lecturer(client):
    return _register(client, name="Lin Lecturer", email="lin@example.edu", role="lecturer")


@pytest.fixture()
def student(client):
    return _register(client, name="Ada Student", email="ada@example.edu", student_id="S-001")


def _open_session(client, headers, course_id: str = "c1") -> dict:
    res = client.post(f"/courses/{course_id}/sessions", headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


def _qr_text(client, headers, session_id: str) -> str:
    res = client.get(f"/sessions/{session_id}/proof", headers=headers)
    assert res.status_code == 200, res.text
    return res.json()["qr_text"]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_debug_dbpath_disabled_by_default(client, lecturer):
    _, headers = lecturer
    res = client.get("/debug/dbpath", headers=headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, lecturer):
    _, headers = lecturer
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_read_endpoints_require_session(client):
    for path in ("/courses", "/attendance", "/reports/students", "/auth/me"):
        res = client.get(path)
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."

    res = client.get("/courses", headers={"Authorization": "Bearer forged.token"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid or expired session token."


def test_register_and_login(client, student):
    user, headers = student
    assert user["attendance_key"] == "s-001"

    res = client.get("/auth/me", headers=headers)
    assert res.status_code == 200
    assert res.json()["email"] == "ada@example.edu"

    res = client.post("/auth/login", json={"identifier": "s-001"})
    assert res.status_code == 200
    assert res.json()["user"]["id"] == user["id"]

    res = client.post("/auth/login", json={"identifier": "ADA@example.edu", "role": "lecturer"})
    assert res.status_code == 403
    assert "registered as a student" in res.json()["detail"]

    res = client.post("/auth/login", json={"identifier": "ghost@example.edu"})
    assert res.status_code == 401


def test_register_rejects_duplicate_email(client, student):
    res = client.post(
        "/auth/register",
        json={"name": "Other", "email": "ADA@example.edu", "role": "student"},
    )
    assert res.status_code == 409
    assert res.json()["detail"] == "This email is already associated with an account."


def test_courses_are_seeded(client, lecturer):
    _, headers = lecturer
    res = client.get("/courses", headers=headers)
    assert res.status_code == 200
    codes = {c["code"]: c for c in res.json()}
    assert set(codes) == {"CS101", "CS302", "DB101"}
    assert codes["CS302"]["token_lifetime_minutes"] == 10
    assert codes["CS302"]["token_rotation_seconds"] == 30
    assert codes["CS302"]["latest_session"] is None
    assert codes["CS302"]["lecturer_id"] is None


def test_update_course_settings(client, lecturer):
    _, headers = lecturer
    res = client.patch("/courses/c1/settings", json={"token_rotation_seconds": 15}, headers=headers)
    assert res.status_code == 200
    assert res.json()["token_rotation_seconds"] == 15
    assert res.json()["token_lifetime_minutes"] == 15

    res = client.patch("/courses/c1/settings", json={"token_rotation_seconds": 5000}, headers=headers)
    assert res.status_code == 400

    res = client.patch("/courses/c1/settings", json={"token_lifetime_minutes": 0}, headers=headers)
    assert res.status_code == 422

    res = client.patch("/courses/nope/settings", json={"token_lifetime_minutes": 5}, headers=headers)
    assert res.status_code == 404


def test_open_session_for_unknown_course(client, lecturer):
    _, headers = lecturer
    res = client.post("/courses/nope/sessions", headers=headers)
    assert res.status_code == 404


def test_scan_then_override_then_rescan(client, lecturer, student):
    _, lecturer_headers = lecturer
    student_user, student_headers = student
    session = _open_session(client, lecturer_headers)
    assert session["status"] == "active"
    assert session["proof"]["courseId"] == "c1"

    qr_text = _qr_text(client, lecturer_headers, session["id"])
    res = client.post("/attendance/scan", json={"payload": qr_text}, headers=student_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["decision_code"] == "RECORDED"
    assert body["accepted"] is True
    assert body["record"]["status"] == "present"

    res = client.post(
        "/attendance/override",
        json={"user_id": student_user["id"], "session_id": session["id"], "status": "absent"},
        headers=lecturer_headers,
    )
    assert res.status_code == 200
    assert res.json()["decision_code"] == "UPDATED"

    res = client.post("/attendance/scan", json={"payload": qr_text}, headers=student_headers)
    assert res.json()["decision_code"] == "DUPLICATE_SUBMISSION"

    res = client.get("/attendance", params={"session_id": session["id"]}, headers=lecturer_headers)
    records = res.json()
    assert len(records) == 1
    assert records[0]["status"] == "absent"

    res = client.get(f"/sessions/{session['id']}/roster", headers=lecturer_headers)
    roster = res.json()["students"]
    assert roster[0]["record"]["status"] == "absent"


def test_scan_rejections(client, lecturer, student):
    _, lecturer_headers = lecturer
    _, student_headers = student
    session = _open_session(client, lecturer_headers)
    proof = json.loads(_qr_text(client, lecturer_headers, session["id"]))

    cases = [
        ("not-json", "INVALID_PAYLOAD"),
        (json.dumps({**proof, "courseId": "wrong"}), "INVALID_PAYLOAD"),
        (json.dumps({**proof, "sessionId": "session-missing"}), "SESSION_INACTIVE"),
        (json.dumps({**proof, "token": "guessed"}), "TOKEN_MISMATCH"),
    ]
    for payload, expected in cases:
        res = client.post("/attendance/scan", json={"payload": payload}, headers=student_headers)
        assert res.status_code == 200
        assert res.json()["decision_code"] == expected
        assert res.json()["record"] is None

    res = client.post("/attendance/scan", json={"payload": proof}, headers=lecturer_headers)
    assert res.json()["decision_code"] == "ROLE_MISMATCH"

    res = client.get("/attendance", headers=lecturer_headers)
    assert res.json() == []


def test_scan_from_rendered_qr_image(client, lecturer, student):
    _, lecturer_headers = lecturer
    _, student_headers = student
    session = _open_session(client, lecturer_headers)

    res = client.get(f"/sessions/{session['id']}/proof.png", headers=lecturer_headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"

    files = {"file": ("qr.png", res.content, "image/png")}
    res = client.post("/attendance/scan/image", files=files, headers=student_headers)
    assert res.status_code == 200
    assert res.json()["decision_code"] == "RECORDED"


def test_scan_image_rejects_bad_uploads(client, student):
    _, headers = student
    files = {"file": ("frame.png", b"not-an-image", "image/png")}
    res = client.post("/attendance/scan/image", files=files, headers=headers)
    assert res.status_code == 200
    assert res.json()["decision_code"] == "INVALID_PAYLOAD"

    files = {"file": ("frame.gif", b"GIF89a", "image/gif")}
    res = client.post("/attendance/scan/image", files=files, headers=headers)
    assert res.status_code == 400


def test_override_validation(client, lecturer, student):
    _, lecturer_headers = lecturer
    student_user, _ = student
    session = _open_session(client, lecturer_headers)

    res = client.post(
        "/attendance/override",
        json={"user_id": student_user["id"], "session_id": session["id"], "status": "late"},
        headers=lecturer_headers,
    )
    assert res.status_code == 422

    res = client.post(
        "/attendance/override",
        json={"user_id": student_user["id"], "session_id": "session-missing", "status": "present"},
        headers=lecturer_headers,
    )
    assert res.status_code == 404

    res = client.post(
        "/attendance/override",
        json={"user_id": "u-missing", "session_id": session["id"], "status": "present"},
        headers=lecturer_headers,
    )
    assert res.status_code == 404


def test_reports(client, lecturer, student):
    _, lecturer_headers = lecturer
    _, student_headers = student
    _register(client, name="Bo Student", email="bo@example.edu")

    session = _open_session(client, lecturer_headers)
    client.post(
        "/attendance/scan",
        json={"payload": _qr_text(client, lecturer_headers, session["id"])},
        headers=student_headers,
    )

    res = client.get("/reports/students", headers=lecturer_headers)
    rows = {r["email"]: r for r in res.json()}
    assert set(rows) == {"ada@example.edu", "bo@example.edu"}
    assert rows["ada@example.edu"]["presence_rate"] == 1.0
    assert rows["ada@example.edu"]["last_seen"] is not None
    assert rows["bo@example.edu"]["presence_rate"] == 0
    assert rows["bo@example.edu"]["last_seen"] is None

    res = client.get("/reports/students/S-001", headers=lecturer_headers)
    assert res.json()["present_count"] == 1

    res = client.get("/reports/courses", headers=lecturer_headers)
    body = res.json()
    by_id = {c["course_id"]: c for c in body["courses"]}
    assert by_id["c1"]["attendance"] == 1
    assert by_id["c2"]["attendance"] == 0
    assert body["global_presence_rate"] == 1.0

    res = client.post("/reports/generate", json={"course_id": "c1"}, headers=lecturer_headers)
    assert res.status_code == 200
    assert res.json()["report"] == REPORT_APOLOGY

    res = client.post("/reports/generate", json={"course_id": "nope"}, headers=lecturer_headers)
    assert res.status_code == 404


def test_state_survives_restart(tmp_path, monkeypatch):
    test_db = tmp_path / "smartattend_restart.db"
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    with TestClient(main.app) as c:
        _, lecturer_headers = _register(c, name="Lin", email="lin@example.edu", role="lecturer")
        _, student_headers = _register(c, name="Ada", email="ada@example.edu")
        session = _open_session(c, lecturer_headers)
        res = c.post(
            "/attendance/scan",
            json={"payload": _qr_text(c, lecturer_headers, session["id"])},
            headers=student_headers,
        )
        assert res.json()["decision_code"] == "RECORDED"

    with TestClient(main.app) as c:
        res = c.post("/auth/login", json={"identifier": "ada@example.edu"})
        assert res.status_code == 200
        headers = {"Authorization": f"Bearer {res.json()['access_token']}"}
        records = c.get("/attendance", headers=headers).json()
        assert len(records) == 1
        assert records[0]["student_key"] == "ada@example.edu"
        # Live sessions are in-memory only.
        assert c.get(f"/sessions/{session['id']}", headers=headers).status_code == 404


def test_reset_clears_store(client, lecturer, student):
    _, lecturer_headers = lecturer
    _, student_headers = student
    session = _open_session(client, lecturer_headers)
    client.post(
        "/attendance/scan",
        json={"payload": _qr_text(client, lecturer_headers, session["id"])},
        headers=student_headers,
    )

    res = client.post("/admin/reset", headers=lecturer_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.json()["saved"] is True

    # Accounts are gone, so old bearer tokens no longer resolve to a user.
    res = client.get("/auth/me", headers=student_headers)
    assert res.status_code == 401

    _, fresh_headers = _register(client, name="Lin", email="lin@example.edu", role="lecturer")
    assert client.get("/attendance", headers=fresh_headers).json() == []
    assert len(client.get("/courses", headers=fresh_headers).json()) == 3
    assert client.get(f"/sessions/{session['id']}", headers=fresh_headers).status_code == 404
