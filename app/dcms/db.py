from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def engine_kwargs(db_url: str) -> dict[str, object]:
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    elif db_url.startswith("sqlite"):
        # Threads share pooled connections; a writer waits on the file lock instead of failing fast.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return kwargs


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_kwargs(db_url))
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    app.logger.info("Database engine ready (dialect=%s)", engine.dialect.name)


def _sessionmaker(app: Flask | None) -> sessionmaker:
    return (app or current_app).extensions["sqlalchemy_sessionmaker"]


def db_session(app: Flask | None = None) -> Session:
    """One session per request, closed by ``teardown_db_session``."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        s = _sessionmaker(app)()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Session outside a request (scripts, tests, worker threads). Commits on
    clean exit, rolls back and re-raises otherwise.
    """
    s: Session = _sessionmaker(app)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
