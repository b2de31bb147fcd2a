from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator
from typing import Any

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Primary keys are INTEGER columns; PostgreSQL's is 32-bit.
MAX_ID = 2**31 - 1


def parse_id(value: Any) -> int | None:
    """Return ``value`` as a row id, or None if it is not an integer in ``1..MAX_ID``."""
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return None
    if not isinstance(value, int) or not 1 <= value <= MAX_ID:
        return None
    return value


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    engine = create_engine(db_url, **engine_kwargs)
    if db_url.startswith("sqlite"):
        # SQLite ships with FK enforcement off; cascades and RESTRICTs depend on it.
        @event.listens_for(engine, "connect")
        def _sqlite_fk_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except Exception:
            logger.exception("Failed to close request DB session")
        g.db_session = None


@contextmanager
def unit_of_work(s: Session) -> Generator[Session, None, None]:
    """
    All-or-nothing boundary for a workflow mutation on an existing session.

    Everything flushed inside the block is committed together; any exception
    rolls the whole block back and is re-raised to the caller.
    """
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
