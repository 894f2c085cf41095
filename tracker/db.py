from __future__ import annotations

import logging
import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from tracker.models import Base

log = logging.getLogger(__name__)

DB_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_db_name(name: str) -> str:
    """Strip and validate a database name. Raises ValueError if invalid."""
    name = name.strip()
    if not name or not DB_NAME_RE.match(name):
        raise ValueError("Invalid database name (letters, numbers, hyphens, underscores only)")
    return name

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_current_db_path: Path | None = None


def data_dir() -> Path:
    override = os.environ.get("TRACKER_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).parent / "data"


def default_db_name() -> str:
    return os.environ.get("TRACKER_DB", "").strip() or "tracker"


def _enable_sqlite_fks(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str, **kwargs):
    """Create an engine with foreign keys enforced on SQLite connections."""
    engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)
    event.listen(engine, "connect", _enable_sqlite_fks)
    return engine


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = data_dir() / f"{default_db_name()}.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = make_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path
        log.info("Using database %s", db_path)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

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


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_name() -> str:
    """Return the stem (filename without .db) of the active database."""
    if _current_db_path is None:
        return default_db_name()
    return _current_db_path.stem


def list_databases() -> list[str]:
    """Return sorted list of DB stems in the data directory."""
    directory = data_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return sorted(p.stem for p in directory.glob("*.db"))


def switch_db(name: str) -> None:
    """Switch to a different team database by stem name. Creates if it doesn't exist."""
    name = validate_db_name(name)
    init_db(data_dir() / f"{name}.db")


def create_database(name: str) -> None:
    """Create a new team database and switch to it."""
    name = validate_db_name(name)
    db_path = data_dir() / f"{name}.db"
    if db_path.exists():
        raise ValueError(f"Database '{name}' already exists")
    init_db(db_path)
