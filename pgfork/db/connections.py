from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from sqlalchemy import Connection, Engine, URL, create_engine, event, text

from pgfork.fork.types import ConnectionConfig, ForkSpec

MAINTENANCE_DATABASE = "postgres"
APPLICATION_NAME = "pgfork"
CONNECT_TIMEOUT_SECONDS = 10
SQLITE_BUSY_TIMEOUT_SECONDS = 30
SQLITE_PROGRESS_STEPS = 10_000
MIN_STATEMENT_TIMEOUT_MS = 1


@dataclass(frozen=True)
class ServerInfo:
    version: str
    current_user: str | None


def sqlite_database_path(config: ConnectionConfig, database: str | None = None) -> Path:
    return Path(config.host) / f"{database or config.database}.db"


def build_url(config: ConnectionConfig, database: str | None = None, *, read_only: bool = False) -> URL:
    name = database or config.database
    if config.is_sqlite:
        path = sqlite_database_path(config, name).resolve(strict=False).as_posix()
        if read_only:
            return URL.create("sqlite", database=f"file:{path}", query={"mode": "ro", "uri": "true"})
        return URL.create("sqlite", database=path)
    return URL.create(
        "postgresql+psycopg2",
        username=config.user or None,
        password=config.password or None,
        host=config.host,
        port=config.port,
        database=name,
        query={"sslmode": config.sslmode},
    )


def _configure_read_only(engine: Engine) -> None:
    is_sqlite = engine.url.get_backend_name() == "sqlite"

    @event.listens_for(engine, "connect")
    def _set_read_only(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        if is_sqlite:
            cursor.execute("PRAGMA query_only=ON;")
        else:
            cursor.execute("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY")
            dbapi_connection.commit()
        cursor.close()


def _configure_sqlite_writer(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()


def build_engine(
    config: ConnectionConfig,
    database: str | None = None,
    *,
    read_only: bool = False,
    pool_size: int = 2,
    autocommit: bool = False,
) -> Engine:
    url = build_url(config, database, read_only=read_only)
    options: dict[str, object] = {"pool_pre_ping": True, "future": True}
    if config.is_sqlite:
        options["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    else:
        options["connect_args"] = {
            "connect_timeout": CONNECT_TIMEOUT_SECONDS,
            "application_name": APPLICATION_NAME,
        }
        options["pool_size"] = pool_size
        options["max_overflow"] = 1
    if autocommit:
        options["isolation_level"] = "AUTOCOMMIT"

    engine = create_engine(url, **options)
    if read_only:
        _configure_read_only(engine)
    elif config.is_sqlite:
        _configure_sqlite_writer(engine)
    return engine


@contextmanager
def bounded_statements(conn: Connection, seconds: float | None) -> Iterator[None]:
    """Abort any statement run on ``conn`` inside the block once ``seconds`` have passed.

    PostgreSQL gets transaction-local ``statement_timeout`` and ``lock_timeout``
    values, so the block must run inside the transaction it bounds. SQLite
    statements are interrupted from a progress handler.
    """
    if seconds is None:
        yield
        return
    if conn.dialect.name == "postgresql":
        milliseconds = max(int(seconds * 1000), MIN_STATEMENT_TIMEOUT_MS)
        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {milliseconds}")
        conn.exec_driver_sql(f"SET LOCAL lock_timeout = {milliseconds}")
        yield
        return

    driver_connection = conn.connection.driver_connection
    deadline = time.monotonic() + seconds
    driver_connection.set_progress_handler(lambda: int(time.monotonic() >= deadline), SQLITE_PROGRESS_STEPS)
    try:
        yield
    finally:
        driver_connection.set_progress_handler(None, 0)


def inspect_server(engine: Engine) -> ServerInfo:
    with engine.connect() as conn:
        if engine.dialect.name == "sqlite":
            version = conn.execute(text("SELECT sqlite_version()")).scalar_one()
            return ServerInfo(version=f"SQLite {version}", current_user=None)
        version = conn.execute(text("SELECT version()")).scalar_one()
        current_user = conn.execute(text("SELECT current_user")).scalar_one()
        return ServerInfo(version=str(version), current_user=str(current_user))


class ConnectionManager:
    """Owns every engine opened for one fork.

    The source engine is read-only and shared between workers. The target engine
    hands each worker its own connection, so a destination table is only ever
    written through the connection of the worker that owns it.
    """

    def __init__(self, spec: ForkSpec, *, logger: logging.Logger | None = None):
        self._spec = spec
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._source: Engine | None = None
        self._target: Engine | None = None
        self._admins: dict[str, Engine] = {}

    @property
    def spec(self) -> ForkSpec:
        return self._spec

    def source_engine(self) -> Engine:
        with self._lock:
            if self._source is None:
                self._source = build_engine(
                    self._spec.source,
                    read_only=True,
                    pool_size=self._spec.max_connections,
                )
                self._logger.debug("Opened read-only source pool for %s", self._spec.source.describe())
            return self._source

    def target_engine(self) -> Engine:
        with self._lock:
            if self._target is None:
                self._target = build_engine(
                    self._spec.destination,
                    self._spec.target_database,
                    pool_size=self._spec.max_connections,
                )
            return self._target

    def admin_engine(self, config: ConnectionConfig) -> Engine:
        key = "|".join(str(part) for part in config.server_identity())
        with self._lock:
            engine = self._admins.get(key)
            if engine is None:
                engine = build_engine(config, MAINTENANCE_DATABASE, pool_size=1, autocommit=True)
                self._admins[key] = engine
            return engine

    def dispose_source(self) -> None:
        with self._lock:
            if self._source is not None:
                self._source.dispose()
                self._source = None

    def dispose_target(self) -> None:
        with self._lock:
            if self._target is not None:
                self._target.dispose()
                self._target = None

    def close(self) -> None:
        self.dispose_source()
        self.dispose_target()
        with self._lock:
            for engine in self._admins.values():
                engine.dispose()
            self._admins.clear()

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()
