from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


# Bound lazily by init_engine(); modules import this name at load time.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine: Optional[Engine] = None


def _install_sqlite_savepoint_support(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT
    # semantics used by begin_nested(); take over transaction start explicitly.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_engine(database_url: str) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required")

    kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20
        kwargs["pool_recycle"] = 1800

    engine = create_engine(url, **kwargs)
    if is_sqlite:
        _install_sqlite_savepoint_support(engine)

    SessionLocal.configure(bind=engine)
    _engine = engine
    return engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("DB not initialized")
    return _engine


def ping_db() -> bool:
    if _engine is None:
        return False
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"initialized": False}
    pool = _engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = fn()
            except Exception:
                out[name] = None
    return out
