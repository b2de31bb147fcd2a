import pytest

from app.qdocs import create_app

from tests.conftest import USERS, login


def test_health_ok(app):
    client = app.test_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json == {"ok": True, "auditMode": False}

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_me_logout(app):
    client = app.test_client()
    assert client.get("/auth/me").status_code == 401
    assert client.get("/documents").status_code == 401

    r = client.post("/auth/login", json={"email": USERS["tech"][0], "password": "wrong"})
    assert r.status_code == 401
    assert r.json["reason"] == "invalid_credentials"

    r = login(client, USERS["tech"][0])
    assert r.json["user"]["roles"] == ["technologist"]
    assert "docs.create" in r.json["user"]["permissions"]
    assert r.json["csrfToken"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == USERS["tech"][0]

    assert client.get("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_accepts_form_post(app):
    client = app.test_client()
    r = client.post("/auth/login", data={"email": USERS["emp1"][0].upper(), "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == USERS["emp1"][0]


def test_csrf_enforced_when_enabled(app):
    app.config["CSRF_ENABLED"] = True
    client = app.test_client()
    token = login(client, USERS["emp1"][0]).json["csrfToken"]

    payload = {"date": "2026-10-19", "entries": [{"subject": "Fridge 1", "values": {"morning": 3}}]}
    r = client.put("/journals/temperature/entries", json=payload)
    assert r.status_code == 400
    assert r.json["reason"] == "csrf_failed"

    r = client.put("/journals/temperature/entries", json=payload, headers={"X-CSRF-Token": token})
    assert r.status_code == 200


def test_json_errors(app, login_as):
    client = login_as("emp1")
    r = client.get("/no-such-page")
    assert r.status_code == 404
    assert r.json["reason"] == "not_found"

    r = client.delete("/documents")
    assert r.status_code == 405

    r = client.get("/documents/4242")
    assert r.status_code == 404
    assert r.json["reason"] == "not_found"


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()


def test_release_audit_gate_check(app, login_as, capsys):
    from app.qdocs.db import session_scope
    from app.qdocs.models import AuditModeState
    from scripts.release import check_audit_gate

    db_url = app.config["DATABASE_URL"]
    check_audit_gate(db_url)

    login_as("head").post("/audit-session", json={"auditType": "HACCP"})
    check_audit_gate(db_url)
    assert "is active" in capsys.readouterr().out

    with session_scope(app) as s:
        s.query(AuditModeState).delete()
    with pytest.raises(RuntimeError, match="audit_mode_state"):
        check_audit_gate(db_url)
