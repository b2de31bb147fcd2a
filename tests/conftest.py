import pytest
from werkzeug.security import generate_password_hash

from app.qdocs import create_app
from app.qdocs.auth import _login_attempts
from app.qdocs.db import session_scope
from app.qdocs.models import Base, Role, User
from app.qdocs.notifications import Notifier
from scripts.init_db import seed

PASSWORD = "pw"

# handle -> (email, role key)
USERS = {
    "director": ("director@example.com", "director"),
    "head": ("head@example.com", "head"),
    "tech": ("tech@example.com", "technologist"),
    "emp1": ("emp1@example.com", "employee"),
    "emp2": ("emp2@example.com", "employee"),
    "emp3": ("emp3@example.com", "employee"),
    "auditor": ("auditor@example.com", "auditor"),
}


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def task_assigned(self, user, document, task) -> None:
        self.calls.append(("task_assigned", user.id, document.id, task.step))

    def document_status(self, user, document, status, comment=None) -> None:
        self.calls.append(("document_status", user.id, document.id, status))


@pytest.fixture(autouse=True)
def _reset_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email=USERS["director"][0], admin_password=PASSWORD)
        for handle, (email, role_key) in USERS.items():
            if handle == "director":
                continue
            role = s.query(Role).filter(Role.key == role_key).one()
            u = User(
                email=email,
                name=handle,
                password_hash=generate_password_hash(PASSWORD),
                is_active=True,
            )
            u.roles.append(role)
            s.add(u)

    app.extensions["notifier"] = RecordingNotifier()
    return app


@pytest.fixture()
def users(app) -> dict[str, int]:
    with session_scope(app) as s:
        return {handle: s.query(User).filter(User.email == email).one().id for handle, (email, _r) in USERS.items()}


@pytest.fixture()
def notifier(app) -> RecordingNotifier:
    return app.extensions["notifier"]


def login(client, email: str, password: str = PASSWORD):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.get_json()
    return r


@pytest.fixture()
def login_as(app):
    """One test client per user so session cookies stay apart."""
    clients = {}

    def _login(handle: str):
        if handle not in clients:
            c = app.test_client()
            login(c, USERS[handle][0])
            clients[handle] = c
        return clients[handle]

    return _login


def create_document(client, *, recipient: int, stages: list[dict], **extra) -> dict:
    payload = {
        "title": "Sanitation procedure",
        "body": "Daily sanitation of line 2 before start of shift.",
        "recipientId": recipient,
        "stages": stages,
        **extra,
    }
    r = client.post("/documents", json=payload)
    assert r.status_code == 200, r.get_json()
    return r.get_json()["document"]


def task_ids(doc: dict) -> dict[int, int]:
    return {t["step"]: t["id"] for t in doc["tasks"]}
