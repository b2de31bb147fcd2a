"""
Deploy-time database preparation for qdocs.

Runs before gunicorn starts (see scripts/start.py) or by hand:

    DATABASE_URL=postgresql+psycopg://... python scripts/release.py

Steps, in order: upgrade the schema to the alembic head, seed the RBAC matrix
and director account, then confirm the audit-mode gate row exists. A release
during an open inspection is allowed but logged loudly, since guarded writes
stay locked until someone closes the audit session.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if db_url.startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must point at Postgres in production; audit-mode locking needs row locks.")
        if not os.environ.get("ADMIN_PASSWORD"):
            print("WARNING: ADMIN_PASSWORD unset; a new director account would get the default password.", flush=True)
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def check_audit_gate(db_url: str) -> None:
    """Fail the release if the audit-mode state row is missing after seeding."""
    from scripts.init_db import _session_scope
    from app.qdocs.models import AuditModeState

    with _session_scope(db_url) as s:
        state = s.get(AuditModeState, AuditModeState.SINGLETON_ID)
        if state is None:
            raise RuntimeError("audit_mode_state row missing after seed; guarded writes cannot be checked.")
        if state.active_session_id is not None:
            print(
                f"WARNING: audit session {state.active_session_id} is active; "
                "document imports and journal writes stay locked until it is closed.",
                flush=True,
            )


def run_release() -> None:
    db_url = _database_url()
    from scripts import init_db

    steps = (
        ("schema upgrade", lambda: migrate(db_url)),
        ("seed roles and director", lambda: init_db.seed_only(database_url=db_url)),
        ("audit gate check", lambda: check_audit_gate(db_url)),
    )
    for name, step in steps:
        print(f"[release] {name}...", flush=True)
        step()
    print("[release] done", flush=True)


if __name__ == "__main__":
    run_release()
