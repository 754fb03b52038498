from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dealscore.models import Base

log = logging.getLogger(__name__)

DATABASE_URL_ENV = "DEALSCORE_DATABASE_URL"
DATA_DIR = Path(__file__).parent / "data"

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def resolve_database_url(url_or_path: str | Path | None = None) -> str:
    """Explicit argument, then ``DEALSCORE_DATABASE_URL``, then the bundled SQLite file."""
    if url_or_path is None:
        url_or_path = os.environ.get(DATABASE_URL_ENV, "").strip() or None
    if url_or_path is None:
        url_or_path = DATA_DIR / "dealscore.db"
    if isinstance(url_or_path, Path) or "://" not in str(url_or_path):
        path = Path(url_or_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path}"
    return str(url_or_path)


def init_db(url_or_path: str | Path | None = None) -> Engine:
    global _engine, _SessionLocal
    url = resolve_database_url(url_or_path)
    with _lock:
        if _engine is not None:
            _engine.dispose()
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        log.info("Database ready at %s", _engine.url.render_as_string(hide_password=True))
        return _engine


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a session that is rolled back on error.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
