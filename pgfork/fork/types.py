from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url

from pgfork.db.models import JobPhase, Strategy, TaskStatus
from pgfork.fork.errors import ForkError

SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")
SUPPORTED_DRIVERS = ("postgresql", "sqlite")
DEFAULT_POSTGRES_PORT = 5432


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    database: str = "postgres"
    port: int = DEFAULT_POSTGRES_PORT
    user: str = "postgres"
    password: str = ""
    sslmode: str = "prefer"
    driver: str = "postgresql"

    @classmethod
    def from_uri(cls, uri: str) -> "ConnectionConfig":
        url = make_url(uri)
        backend = url.get_backend_name()
        if backend == "sqlite":
            if not url.database:
                raise ValueError("SQLite URI must name a database file")
            path = Path(url.database)
            return cls(
                driver="sqlite",
                host=path.parent.resolve(strict=False).as_posix(),
                database=path.stem,
                port=0,
                user="",
            )
        if backend not in {"postgres", "postgresql"}:
            raise ValueError(f"Unsupported database URI scheme: {url.drivername}")
        sslmode = url.query.get("sslmode", "prefer")
        if isinstance(sslmode, tuple):
            sslmode = sslmode[-1]
        return cls(
            host=url.host or "localhost",
            port=url.port or DEFAULT_POSTGRES_PORT,
            user=url.username or "postgres",
            password=url.password or "",
            database=url.database or "postgres",
            sslmode=sslmode,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.driver == "sqlite"

    def with_database(self, database: str) -> "ConnectionConfig":
        return replace(self, database=database)

    def server_identity(self) -> tuple[str, str, int, str]:
        return (self.driver, self.host.strip().lower(), self.port, self.user)

    def describe(self, database: str | None = None) -> str:
        name = database or self.database
        if self.is_sqlite:
            return f"sqlite:{self.host}/{name}.db"
        return f"{self.user}@{self.host}:{self.port}/{name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "driver": self.driver,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
            "sslmode": self.sslmode,
        }


@dataclass(frozen=True)
class HookConfig:
    pre_fork: tuple[str, ...] = ()
    post_fork: tuple[str, ...] = ()
    on_error: tuple[str, ...] = ()


@dataclass(frozen=True)
class ForkSpec:
    source: ConnectionConfig
    destination: ConnectionConfig
    target_database: str
    include_tables: tuple[str, ...] = ()
    exclude_tables: tuple[str, ...] = ()
    schema_only: bool = False
    data_only: bool = False
    drop_if_exists: bool = False
    max_connections: int = 4
    chunk_size: int = 1000
    timeout_seconds: float = 1800.0
    retry_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    dry_run: bool = False
    job_id: str | None = None
    resume: bool = False
    state_dir: Path | None = None
    progress_file: Path | None = None
    progress_interval_seconds: float = 2.0
    metrics_file: Path | None = None
    hooks: HookConfig = field(default_factory=HookConfig)

    @property
    def same_server(self) -> bool:
        return self.source.server_identity() == self.destination.server_identity()

    @property
    def has_table_filters(self) -> bool:
        return bool(self.include_tables or self.exclude_tables)

    def resume_identity(self) -> dict[str, Any]:
        return {
            "source": {
                "driver": self.source.driver,
                "host": self.source.host,
                "port": self.source.port,
                "user": self.source.user,
                "database": self.source.database,
            },
            "destination": {
                "driver": self.destination.driver,
                "host": self.destination.host,
                "port": self.destination.port,
                "user": self.destination.user,
            },
            "target_database": self.target_database,
            "include_tables": sorted(set(self.include_tables)),
            "exclude_tables": sorted(set(self.exclude_tables)),
            "schema_only": self.schema_only,
            "data_only": self.data_only,
        }

    def fingerprint(self) -> str:
        encoded = json.dumps(self.resume_identity(), sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "target_database": self.target_database,
            "include_tables": list(self.include_tables),
            "exclude_tables": list(self.exclude_tables),
            "schema_only": self.schema_only,
            "data_only": self.data_only,
            "drop_if_exists": self.drop_if_exists,
            "max_connections": self.max_connections,
            "chunk_size": self.chunk_size,
            "timeout_seconds": self.timeout_seconds,
            "dry_run": self.dry_run,
        }


class DdlKind(str, Enum):
    CREATE_DATABASE = "create-database"
    CLONE = "clone"
    TABLE = "table"
    SEQUENCE = "sequence"
    INDEX = "index"
    FOREIGN_KEY = "foreign-key"
    FOREIGN_KEY_DROP = "foreign-key-drop"
    SEQUENCE_SYNC = "sequence-sync"


@dataclass(frozen=True)
class DdlStatement:
    key: str
    kind: DdlKind
    sql: str
    table: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "kind": self.kind.value, "sql": self.sql, "table": self.table}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DdlStatement":
        return cls(key=data["key"], kind=DdlKind(data["kind"]), sql=data["sql"], table=data.get("table"))


@dataclass(frozen=True)
class PlannedTable:
    name: str
    estimated_rows: int | None


@dataclass(frozen=True)
class TransferPlan:
    strategy: Strategy
    tables: tuple[PlannedTable, ...]
    schema_ddl: tuple[DdlStatement, ...] = ()
    post_data_ddl: tuple[DdlStatement, ...] = ()
    target_exists: bool = False

    @property
    def table_names(self) -> list[str]:
        return [table.name for table in self.tables]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "tables": [{"name": table.name, "estimated_rows": table.estimated_rows} for table in self.tables],
            "schema_ddl": [statement.to_dict() for statement in self.schema_ddl],
            "post_data_ddl": [statement.to_dict() for statement in self.post_data_ddl],
            "target_exists": self.target_exists,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferPlan":
        return cls(
            strategy=Strategy(data["strategy"]),
            tables=tuple(PlannedTable(name=item["name"], estimated_rows=item.get("estimated_rows")) for item in data["tables"]),
            schema_ddl=tuple(DdlStatement.from_dict(item) for item in data.get("schema_ddl", [])),
            post_data_ddl=tuple(DdlStatement.from_dict(item) for item in data.get("post_data_ddl", [])),
            target_exists=bool(data.get("target_exists", False)),
        )


@dataclass(slots=True)
class TableTask:
    name: str
    estimated_rows: int | None
    position: int = 0
    status: TaskStatus = TaskStatus.PENDING
    rows_transferred: int = 0
    attempts: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class CurrentTableProgress:
    name: str
    percent_complete: float
    rows_completed: int
    rows_total: int | None
    rows_per_second: float


@dataclass(frozen=True)
class ProgressSnapshot:
    phase: JobPhase
    percent_complete: float
    tables_completed: int
    tables_total: int
    rows_completed: int
    rows_total: int | None
    elapsed_seconds: float
    current_table: CurrentTableProgress | None
    eta_seconds: float | None


@dataclass(frozen=True)
class ForkResult:
    job_id: str
    success: bool
    target_database: str
    phase: JobPhase
    dry_run: bool = False
    strategy: Strategy | None = None
    plan: TransferPlan | None = None
    tables: tuple[TableTask, ...] = ()
    duration_seconds: float = 0.0
    error: ForkError | None = None

    @property
    def rows_transferred(self) -> int:
        return sum(task.rows_transferred for task in self.tables)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "success": self.success,
            "target_database": self.target_database,
            "phase": self.phase.value,
            "dry_run": self.dry_run,
            "strategy": self.strategy.value if self.strategy else None,
            "rows_transferred": self.rows_transferred,
            "duration_seconds": round(self.duration_seconds, 3),
            "tables": [
                {
                    "name": task.name,
                    "status": task.status.value,
                    "rows_transferred": task.rows_transferred,
                    "estimated_rows": task.estimated_rows,
                    "last_error": task.last_error,
                }
                for task in self.tables
            ],
            "plan": self.plan.to_dict() if self.plan else None,
            "error": None
            if self.error is None
            else {"code": self.error.code, "table": self.error.table, "message": str(self.error)},
        }
