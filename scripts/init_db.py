import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.qdocs.models import AuditModeState, Permission, Role, User
from app.qdocs.rbac import PERMISSION_NAMES, ROLE_PERMISSIONS


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed(s: Session, *, admin_email: str, admin_password: str) -> User:
    """
    Idempotent seed of permissions, the role matrix, the audit-mode state row
    and the director account. Never overwrites an existing password.
    """
    perms: dict[str, Permission] = {}
    for key, name in PERMISSION_NAMES.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, perm_keys) in ROLE_PERMISSIONS.items():
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=name)
            s.add(r)
        for pk in perm_keys:
            if perms[pk] not in r.permissions:
                r.permissions.append(perms[pk])
        roles[key] = r

    state = s.get(AuditModeState, AuditModeState.SINGLETON_ID)
    if state is None:
        s.add(AuditModeState(id=AuditModeState.SINGLETON_ID, active_session_id=None))

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(
            email=admin_email,
            name="Director",
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(user)
    if roles["director"] not in user.roles:
        user.roles.append(roles["director"])
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "director@qdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///qdocs.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with _session_scope(db_url) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Director email: {admin_email}")
    print("Director password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
