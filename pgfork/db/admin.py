from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Iterable

from sqlalchemy import Engine, create_engine, text

from pgfork.db.connections import (
    MAINTENANCE_DATABASE,
    ConnectionManager,
    build_engine,
    inspect_server,
    sqlite_database_path,
)
from pgfork.fork.errors import ForkError, TransientError
from pgfork.fork.retry import BackoffSchedule, RetryPolicy, classify_error
from pgfork.fork.types import ConnectionConfig

DROP_RETRY_ATTEMPTS = 5
DROP_RETRY_INITIAL_DELAY_SECONDS = 0.5
SYSTEM_DATABASES = {"postgres", "template0", "template1"}


def quote_identifier(engine: Engine, name: str) -> str:
    return engine.dialect.identifier_preparer.quote_identifier(name)


def _matches(name: str, pattern: str | None, exclude: Iterable[str]) -> bool:
    if name in set(exclude):
        return False
    return pattern is None or fnmatch.fnmatchcase(name, pattern)


def _object_in_use(error: BaseException) -> ForkError:
    classified = classify_error(error)
    if "being accessed by other users" in classified.message:
        return TransientError(classified.message)
    return classified


class PostgresAdmin:
    def __init__(
        self,
        config: ConnectionConfig,
        engine: Engine,
        *,
        owns_engine: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self._engine = engine
        self._owns_engine = owns_engine
        self._logger = logger or logging.getLogger(__name__)

    def close(self) -> None:
        if self._owns_engine:
            self._engine.dispose()

    def server_version(self) -> str:
        return inspect_server(self._engine).version

    def current_user(self) -> str | None:
        return inspect_server(self._engine).current_user

    def database_exists(self, name: str) -> bool:
        with self._engine.connect() as conn:
            found = conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name}).scalar()
        return found is not None

    def list_databases(self, pattern: str | None = None, exclude: Iterable[str] = ()) -> list[str]:
        with self._engine.connect() as conn:
            names = conn.execute(
                text(
                    """
                    SELECT datname
                    FROM pg_database
                    WHERE datistemplate = false
                    ORDER BY datname
                    """
                )
            ).scalars()
            excluded = set(exclude)
            return [name for name in names if name not in SYSTEM_DATABASES and _matches(name, pattern, excluded)]

    def database_size(self, name: str) -> int | None:
        with self._engine.connect() as conn:
            size = conn.execute(text("SELECT pg_database_size(:name)"), {"name": name}).scalar()
        return None if size is None else int(size)

    def create_database(self, name: str) -> None:
        with self._engine.connect() as conn:
            conn.exec_driver_sql(f"CREATE DATABASE {quote_identifier(self._engine, name)} WITH TEMPLATE template1")
        self._logger.info("Created database %s", name)

    def clone_database(self, source: str, target: str) -> None:
        statement = (
            f"CREATE DATABASE {quote_identifier(self._engine, target)} "
            f"WITH TEMPLATE {quote_identifier(self._engine, source)}"
        )
        with self._engine.connect() as conn:
            conn.exec_driver_sql(statement)
        self._logger.info("Cloned database %s into %s", source, target)

    def drop_database(self, name: str) -> None:
        policy = RetryPolicy(
            max_attempts=DROP_RETRY_ATTEMPTS,
            schedule=BackoffSchedule(initial_delay=DROP_RETRY_INITIAL_DELAY_SECONDS, max_delay=8.0),
            classifier=_object_in_use,
            logger=self._logger,
        )
        policy.run(lambda: self._terminate_and_drop(name), description=f"drop database {name}")
        self._logger.info("Dropped database %s", name)

    def _terminate_and_drop(self, name: str) -> None:
        with self._engine.connect() as conn:
            conn.execute(
                text(
                    """
                    SELECT pg_terminate_backend(pid)
                    FROM pg_stat_activity
                    WHERE datname = :name AND pid <> pg_backend_pid()
                    """
                ),
                {"name": name},
            )
            conn.exec_driver_sql(f"DROP DATABASE IF EXISTS {quote_identifier(self._engine, name)}")


class SqliteAdmin:
    """Treats a directory as a server and ``<name>.db`` files in it as databases."""

    def __init__(self, config: ConnectionConfig, *, logger: logging.Logger | None = None):
        self.config = config
        self._root = Path(config.host)
        self._logger = logger or logging.getLogger(__name__)

    def _path(self, name: str) -> Path:
        return sqlite_database_path(self.config, name)

    def close(self) -> None:
        pass

    def server_version(self) -> str:
        engine = create_engine("sqlite://")
        try:
            return inspect_server(engine).version
        finally:
            engine.dispose()

    def current_user(self) -> str | None:
        return self.config.user or None

    def database_exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def list_databases(self, pattern: str | None = None, exclude: Iterable[str] = ()) -> list[str]:
        if not self._root.is_dir():
            return []
        excluded = set(exclude)
        names = sorted(path.stem for path in self._root.glob("*.db"))
        return [name for name in names if _matches(name, pattern, excluded)]

    def database_size(self, name: str) -> int | None:
        path = self._path(name)
        if not path.exists():
            return None
        return sum(candidate.stat().st_size for candidate in self._sidecars(path) if candidate.exists())

    def create_database(self, name: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        engine = build_engine(self.config, name)
        try:
            with engine.connect() as conn:
                conn.execute(text("PRAGMA user_version"))
        finally:
            engine.dispose()
        self._logger.info("Created database %s", name)

    def clone_database(self, source: str, target: str) -> None:
        source_engine = build_engine(self.config, source, read_only=True)
        target_engine = build_engine(self.config, target)
        try:
            source_raw = source_engine.raw_connection()
            target_raw = target_engine.raw_connection()
            try:
                source_raw.driver_connection.backup(target_raw.driver_connection)
            finally:
                target_raw.close()
                source_raw.close()
        finally:
            target_engine.dispose()
            source_engine.dispose()
        self._logger.info("Cloned database %s into %s", source, target)

    def drop_database(self, name: str) -> None:
        for path in self._sidecars(self._path(name)):
            path.unlink(missing_ok=True)
        self._logger.info("Dropped database %s", name)

    def _sidecars(self, path: Path) -> list[Path]:
        return [path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")]


DatabaseAdmin = PostgresAdmin | SqliteAdmin


def admin_for(
    config: ConnectionConfig,
    connections: ConnectionManager | None = None,
    *,
    logger: logging.Logger | None = None,
) -> DatabaseAdmin:
    if config.is_sqlite:
        return SqliteAdmin(config, logger=logger)
    if connections is not None:
        return PostgresAdmin(config, connections.admin_engine(config), logger=logger)
    engine = build_engine(config, MAINTENANCE_DATABASE, pool_size=1, autocommit=True)
    return PostgresAdmin(config, engine, owns_engine=True, logger=logger)
