from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from sqlalchemy import Connection, Engine, MetaData, Table, delete, insert, select, text

from pgfork.db.connections import bounded_statements
from pgfork.fork.context import RunContext
from pgfork.fork.errors import CancellationError, ForkError, ForkTimeoutError
from pgfork.fork.progress import ProgressTracker
from pgfork.fork.retry import RetryPolicy, classify_error
from pgfork.fork.types import TableTask
from pgfork.jobs.store import JobStateStore

ABORTED_MESSAGE = "aborted after another table failed"


class _Aborted(CancellationError):
    def __init__(self, table: str):
        super().__init__(ABORTED_MESSAGE, table=table)


class DataTransferWorkerPool:
    """Copies table data with at most ``max_workers`` tables in flight.

    Each table is owned by exactly one worker. The worker streams the source in
    ``chunk_size`` rows and commits every chunk on its own destination
    connection before reading the next one.
    """

    def __init__(
        self,
        *,
        job_id: str,
        source_engine: Engine,
        target_engine: Engine,
        metadata: MetaData,
        store: JobStateStore,
        tracker: ProgressTracker,
        retry_policy: RetryPolicy,
        context: RunContext,
        chunk_size: int,
        max_workers: int,
    ):
        self._job_id = job_id
        self._source = source_engine
        self._target = target_engine
        self._metadata = metadata
        self._store = store
        self._tracker = tracker
        self._retry = retry_policy
        self._context = context
        self._logger = context.logger
        self._chunk_size = chunk_size
        self._max_workers = max_workers
        self._abort = threading.Event()
        self._owners: dict[str, int] = {}
        self._owners_lock = threading.Lock()

    def run(self, tasks: list[TableTask]) -> dict[str, int]:
        if not tasks:
            return {}
        copied: dict[str, int] = {}
        errors: list[ForkError] = []
        workers = max(1, min(self._max_workers, len(tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pgfork-worker") as executor:
            futures = {executor.submit(self._run_task, task): task for task in tasks}
            for future in as_completed(futures):
                task = futures[future]
                try:
                    rows = future.result()
                except Exception as exc:
                    errors.append(classify_error(exc))
                    self._abort.set()
                    continue
                if rows is not None:
                    copied[task.name] = rows

        if errors:
            raise self._primary_error(errors)
        return copied

    def _primary_error(self, errors: list[ForkError]) -> ForkError:
        for error in errors:
            if not isinstance(error, CancellationError):
                return error
        return errors[0]

    def _claim(self, table: str) -> None:
        with self._owners_lock:
            owner = self._owners.get(table)
            if owner is not None:
                raise ForkError(f"table is already being written by worker {owner}", table=table)
            self._owners[table] = threading.get_ident()

    def _release(self, table: str) -> None:
        with self._owners_lock:
            self._owners.pop(table, None)

    def _check(self, table: str) -> None:
        if self._abort.is_set():
            raise _Aborted(table)
        self._context.check(table)

    def _run_task(self, task: TableTask) -> int | None:
        name = task.name
        if self._abort.is_set() or self._context.cancelled:
            return None
        self._claim(name)
        try:
            self._store.start_task(self._job_id, name)
            self._tracker.table_started(name)
            progress = {"rows": 0}
            try:
                rows = self._retry.run(
                    lambda: self._copy_table(name, progress),
                    description=f"copy table {name}",
                    context=self._context,
                    table=name,
                )
            except _Aborted:
                self._record_failure(name, progress["rows"], ABORTED_MESSAGE)
                self._tracker.table_finished(name, rows=progress["rows"], success=False)
                self._logger.info("Stopped copying %s after %d rows", name, progress["rows"], extra={"table": name})
                return None
            except Exception as exc:
                error = classify_error(exc)
                if error.table is None:
                    error.table = name
                self._record_failure(name, progress["rows"], str(error))
                self._tracker.table_finished(name, rows=progress["rows"], success=False)
                self._logger.error("Table %s failed: %s", name, error, extra={"table": name})
                if error is exc:
                    raise
                raise error from exc

            self._store.complete_task(self._job_id, name, rows=rows)
            self._tracker.table_finished(name, rows=rows, success=True)
            self._logger.info("Copied %d rows into %s", rows, name, extra={"table": name})
            return rows
        finally:
            self._release(name)

    def _record_failure(self, name: str, rows: int, message: str) -> None:
        try:
            self._store.fail_task(self._job_id, name, rows=rows, error=message)
        except Exception as exc:
            self._logger.error("Could not record failure of %s: %s", name, exc, extra={"table": name})

    def _copy_table(self, name: str, progress: dict[str, int]) -> int:
        table = self._metadata.tables[name]
        if progress["rows"]:
            self._logger.info("Restarting %s from the first row", name, extra={"table": name})
        progress["rows"] = 0
        self._tracker.table_reset(name)

        try:
            with self._target.connect() as target_conn:
                self._prepare_writer(target_conn)
                self._retry.run(
                    lambda: self._clear_table(target_conn, table),
                    description=f"clear table {name}",
                    context=self._context,
                    table=name,
                )
                with self._source.connect() as source_conn, bounded_statements(source_conn, self._context.remaining()):
                    result = source_conn.execution_options(stream_results=True, yield_per=self._chunk_size).execute(
                        select(table)
                    )
                    for chunk in result.partitions(self._chunk_size):
                        self._check(name)
                        rows = [dict(row._mapping) for row in chunk]
                        self._retry.run(
                            lambda: self._write_chunk(target_conn, table, rows),
                            description=f"write chunk of {len(rows)} rows into {name}",
                            context=self._context,
                            table=name,
                        )
                        progress["rows"] += len(rows)
                        self._tracker.rows_copied(name, len(rows))
        except (CancellationError, ForkTimeoutError):
            raise
        except Exception as exc:
            if self._context.expired:
                raise ForkTimeoutError(
                    "Overall fork deadline exceeded while a statement was running",
                    table=name,
                    retryable=False,
                ) from exc
            raise
        return progress["rows"]

    def _prepare_writer(self, conn: Connection) -> None:
        # Tables load in parallel and in any order; SQLite would otherwise check
        # inline foreign keys row by row when enforcement is switched on.
        if conn.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            conn.commit()

    def _clear_table(self, conn: Connection, table: Table) -> None:
        try:
            with bounded_statements(conn, self._context.remaining()):
                if conn.dialect.name == "postgresql":
                    conn.execute(text(f"TRUNCATE TABLE {conn.dialect.identifier_preparer.quote(table.name)}"))
                else:
                    conn.execute(delete(table))
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _write_chunk(self, conn: Connection, table: Table, rows: list[dict[str, Any]]) -> None:
        try:
            with bounded_statements(conn, self._context.remaining()):
                conn.execute(insert(table), rows)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
