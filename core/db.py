"""
core/db.py -- Engine construction shared by every SQLAlchemy Core store.

UserStore, DeviceStore and AuditStore each own a table but build their
engines here so SQLite is configured the same way everywhere.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine, applying SQLite-specific connection settings.

    check_same_thread=False: FastAPI runs sync handlers in a thread pool and
    the audit dispatcher writes from its own worker thread.
    sqlite:///:memory: is pinned to one shared connection (StaticPool);
    otherwise every thread would see its own empty database.
    In-memory databases skip WAL (not supported there).
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)
    if db_url.endswith(":memory:"):
        return create_engine(db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    if "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine
