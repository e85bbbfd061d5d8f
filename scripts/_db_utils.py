from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.dcms.db import engine_kwargs


@contextmanager
def script_session(db_url: str) -> Iterator[Session]:
    """Commit-or-rollback session for release/seed scripts that run without building the Flask app."""
    engine = create_engine(db_url, **engine_kwargs(db_url))
    s = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
