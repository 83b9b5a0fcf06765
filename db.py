from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

engine = None

# Bound in init_engine(); importing modules keep a stable reference.
SessionLocal = sessionmaker(autoflush=True, expire_on_commit=False)


def _sqlite_pragmas(dbapi_conn, _record):
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT (begin_nested) nests correctly.
    dbapi_conn.isolation_level = None
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


def init_engine(database_url: str):
    global engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("Missing DATABASE_URL")

    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20

    if engine is not None:
        engine.dispose()
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
        event.listen(engine, "begin", _sqlite_begin)

    SessionLocal.configure(bind=engine)
    return engine


def get_pool_stats() -> dict[str, Any]:
    if engine is None:
        return {"initialized": False}
    pool = engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            out[name] = fn()
    return out
