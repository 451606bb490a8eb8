from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, create_engine, func, inspect, insert, select

import pgfork.db.session as db_session_module
from pgfork.core.config import get_settings
from pgfork.fork.types import ConnectionConfig, ForkSpec


def _reset_globals() -> None:
    get_settings.cache_clear()
    if db_session_module._engine is not None:
        db_session_module._engine.dispose()
    db_session_module._engine = None
    db_session_module._session_factory = None


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    state_dir = tmp_path / "state"
    monkeypatch.setenv("PGFORK_STATE_DIR", state_dir.as_posix())
    _reset_globals()
    yield state_dir
    _reset_globals()


class SqliteServers:
    """Two directories standing in for a source and a destination server."""

    def __init__(self, root: Path):
        self.source_root = root / "source-server"
        self.dest_root = root / "dest-server"
        self.state_dir = root / "state"
        self.source_root.mkdir(parents=True, exist_ok=True)
        self.dest_root.mkdir(parents=True, exist_ok=True)

    def seed_scenario(self, *, users: int = 100, products: int = 50, audit_logs: int = 1000) -> None:
        engine = create_engine(f"sqlite:///{(self.source_root / 'app.db').as_posix()}")
        metadata = MetaData()
        users_table = Table(
            "users",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("email", String(120), nullable=False, unique=True),
            Column("name", String(80)),
        )
        products_table = Table(
            "products",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("sku", String(32), nullable=False),
            Column("price_cents", Integer, nullable=False),
            Index("ix_products_sku", "sku"),
        )
        audit_table = Table(
            "audit_logs",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("user_id", Integer, ForeignKey("users.id", name="fk_audit_logs_user"), nullable=False),
            Column("action", String(40), nullable=False),
        )
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(
                insert(users_table),
                [{"id": i, "email": f"user{i}@example.com", "name": f"User {i}"} for i in range(1, users + 1)],
            )
            conn.execute(
                insert(products_table),
                [{"id": i, "sku": f"SKU-{i:04d}", "price_cents": i * 100} for i in range(1, products + 1)],
            )
            if audit_logs:
                conn.execute(
                    insert(audit_table),
                    [
                        {"id": i, "user_id": (i % users) + 1, "action": "login" if i % 2 else "logout"}
                        for i in range(1, audit_logs + 1)
                    ],
                )
        engine.dispose()

    def source(self) -> ConnectionConfig:
        return ConnectionConfig(host=self.source_root.as_posix(), database="app", driver="sqlite", port=0, user="")

    def destination(self, *, same_server: bool = False) -> ConnectionConfig:
        root = self.source_root if same_server else self.dest_root
        return ConnectionConfig(host=root.as_posix(), driver="sqlite", port=0, user="")

    def spec(self, *, same_server: bool = False, **overrides: Any) -> ForkSpec:
        values: dict[str, Any] = {
            "source": self.source(),
            "destination": self.destination(same_server=same_server),
            "target_database": "app_fork",
            "state_dir": self.state_dir,
            "max_connections": 2,
            "chunk_size": 25,
            "timeout_seconds": 60.0,
            "retry_initial_delay_seconds": 0.0,
            "retry_max_delay_seconds": 0.0,
        }
        values.update(overrides)
        return ForkSpec(**values)

    def _engine(self, root: Path, database: str):  # type: ignore[no-untyped-def]
        return create_engine(f"sqlite:///{(root / f'{database}.db').as_posix()}")

    def target_path(self, database: str = "app_fork", *, same_server: bool = False) -> Path:
        root = self.source_root if same_server else self.dest_root
        return root / f"{database}.db"

    def tables(self, database: str = "app_fork", *, same_server: bool = False) -> set[str]:
        root = self.source_root if same_server else self.dest_root
        engine = self._engine(root, database)
        try:
            return set(inspect(engine).get_table_names())
        finally:
            engine.dispose()

    def count(self, table: str, database: str = "app_fork", *, same_server: bool = False) -> int:
        root = self.source_root if same_server else self.dest_root
        engine = self._engine(root, database)
        try:
            with engine.connect() as conn:
                table_ref = Table(table, MetaData())
                return int(conn.execute(select(func.count()).select_from(table_ref)).scalar_one())
        finally:
            engine.dispose()

    def indexes(self, table: str, database: str = "app_fork") -> set[str]:
        engine = self._engine(self.dest_root, database)
        try:
            return {index["name"] for index in inspect(engine).get_indexes(table)}
        finally:
            engine.dispose()


@pytest.fixture
def servers(tmp_path: Path) -> SqliteServers:
    return SqliteServers(tmp_path)
