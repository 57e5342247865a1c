from __future__ import annotations
from typing import Any, Callable, Iterable
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from sqlalchemy.dialects import postgresql, sqlite
from weather_analytics.config import Settings


class Base(DeclarativeBase):
    pass


def build_engine(settings: Settings) -> Engine:
    dsn = settings.postgres_dsn
    if dsn.startswith("sqlite"):
        engine = create_engine(dsn, connect_args={"check_same_thread": False})
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(dsn, pool_pre_ping=True, pool_size=settings.db_pool_size)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite manages BEGIN itself and breaks SAVEPOINT; take over transaction control
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # noqa
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):  # noqa
        conn.exec_driver_sql("BEGIN")


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def healthcheck(engine: Engine) -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True


def _insert_for(session: Session):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"upsert not supported for dialect {name}")


def upsert(
    session: Session,
    model,
    values: dict[str, Any],
    conflict_cols: Iterable[str],
    update: Callable[[Any], dict[str, Any]] | None = None,
):
    """Execute ``INSERT ... ON CONFLICT`` for one row.

    ``update`` receives the insert statement (so it can reference
    ``stmt.excluded`` and the target table) and returns the SET clause. When it
    is None the conflict resolves to DO NOTHING.
    """
    insert = _insert_for(session)
    stmt = insert(model).values(**values)
    if update is None:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_cols))
    else:
        stmt = stmt.on_conflict_do_update(index_elements=list(conflict_cols), set_=update(stmt))
    return session.execute(stmt)
