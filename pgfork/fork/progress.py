from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from pgfork.db.models import JobPhase, TaskStatus
from pgfork.fork.types import CurrentTableProgress, ProgressSnapshot, TableTask

RATE_WINDOW_SECONDS = 30.0


def format_duration(seconds: float | None) -> str:
    """Whole seconds as ``1h2m3s``, ``5m30s`` or ``0s``."""
    if seconds is None:
        return "unknown"
    total = int(round(max(seconds, 0.0)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def snapshot_to_document(snapshot: ProgressSnapshot) -> dict[str, Any]:
    current: dict[str, Any] | None = None
    if snapshot.current_table is not None:
        table = snapshot.current_table
        current = {
            "name": table.name,
            "percent_complete": round(table.percent_complete, 1),
            "rows_completed": table.rows_completed,
            "rows_total": table.rows_total,
            "speed": f"{table.rows_per_second:.0f} rows/sec",
        }
    return {
        "phase": snapshot.phase.value,
        "overall": {
            "percent_complete": round(snapshot.percent_complete, 1),
            "tables_completed": snapshot.tables_completed,
            "tables_total": snapshot.tables_total,
            "rows_completed": snapshot.rows_completed,
            "rows_total": snapshot.rows_total,
            "duration": format_duration(snapshot.elapsed_seconds),
        },
        "current_table": current,
        "estimated_time_remaining": format_duration(snapshot.eta_seconds),
    }


class ProgressSink(Protocol):
    def publish(self, snapshot: ProgressSnapshot) -> None: ...

    def close(self) -> None: ...


class ProgressFileSink:
    """Rewrites one JSON document on a background thread so publishers never block on disk."""

    def __init__(self, path: Path, *, logger: logging.Logger | None = None):
        self._path = path
        self._logger = logger or logging.getLogger(__name__)
        self._condition = threading.Condition()
        self._pending: ProgressSnapshot | None = None
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="pgfork-progress", daemon=True)
        self._thread.start()

    def publish(self, snapshot: ProgressSnapshot) -> None:
        with self._condition:
            self._pending = snapshot
            self._condition.notify()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify()
        self._thread.join(timeout=5.0)

    def _run(self) -> None:
        while True:
            with self._condition:
                while self._pending is None and not self._closed:
                    self._condition.wait()
                snapshot, self._pending = self._pending, None
                closing = self._closed
            if snapshot is not None:
                self._write(snapshot)
            if closing and snapshot is None:
                return

    def _write(self, snapshot: ProgressSnapshot) -> None:
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(snapshot_to_document(snapshot), indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            self._logger.warning("Could not write progress file %s: %s", self._path, exc)


@dataclass
class _TableCounters:
    estimated_rows: int | None
    rows: int = 0
    status: TaskStatus = TaskStatus.PENDING
    started_at: float | None = None


class ProgressTracker:
    def __init__(
        self,
        tasks: list[TableTask],
        *,
        sink: ProgressSink | None = None,
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self._sink = sink
        self._min_interval = min_interval
        self._started_at = clock()
        self._last_publish: float | None = None
        self._phase = JobPhase.PLANNING
        self._current: str | None = None
        self._samples: deque[tuple[float, int]] = deque()
        self._tables: dict[str, _TableCounters] = {
            task.name: _TableCounters(
                estimated_rows=task.estimated_rows,
                rows=task.rows_transferred if task.status == TaskStatus.COMPLETED else 0,
                status=task.status if task.status == TaskStatus.COMPLETED else TaskStatus.PENDING,
            )
            for task in tasks
        }

    def set_phase(self, phase: JobPhase) -> None:
        with self._lock:
            self._phase = phase
        self._publish(force=True)

    def table_started(self, name: str) -> None:
        with self._lock:
            counters = self._tables[name]
            counters.status = TaskStatus.IN_PROGRESS
            counters.started_at = self._clock()
            counters.rows = 0
            self._current = name
        self._publish(force=True)

    def table_reset(self, name: str) -> None:
        with self._lock:
            counters = self._tables[name]
            counters.rows = 0
            counters.started_at = self._clock()
            self._samples.clear()

    def rows_copied(self, name: str, count: int) -> None:
        with self._lock:
            self._tables[name].rows += count
            self._current = name
            self._record_sample()
        self._publish(force=False)

    def table_finished(self, name: str, *, rows: int, success: bool) -> None:
        with self._lock:
            counters = self._tables[name]
            counters.rows = rows
            counters.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            self._record_sample()
        self._publish(force=True)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def close(self) -> None:
        self._publish(force=True)
        if self._sink is not None:
            self._sink.close()

    def _record_sample(self) -> None:
        now = self._clock()
        self._samples.append((now, sum(counters.rows for counters in self._tables.values())))
        while len(self._samples) > 2 and now - self._samples[0][0] > RATE_WINDOW_SECONDS:
            self._samples.popleft()

    def _rate(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        (first_at, first_rows), (last_at, last_rows) = self._samples[0], self._samples[-1]
        if last_at <= first_at:
            return 0.0
        return max(last_rows - first_rows, 0) / (last_at - first_at)

    def _snapshot_locked(self) -> ProgressSnapshot:
        counters = list(self._tables.values())
        tables_total = len(counters)
        tables_completed = sum(1 for item in counters if item.status == TaskStatus.COMPLETED)
        rows_completed = sum(item.rows for item in counters)
        estimates_known = all(item.estimated_rows is not None for item in counters)
        rows_total = sum(item.estimated_rows or 0 for item in counters) if estimates_known else None

        if self._phase == JobPhase.DONE:
            percent = 100.0
        elif rows_total:
            percent = min(rows_completed / rows_total * 100.0, 100.0)
        elif tables_total:
            percent = tables_completed / tables_total * 100.0
        else:
            percent = 0.0

        eta: float | None = None
        rate = self._rate()
        if self._phase == JobPhase.DONE:
            eta = 0.0
        elif rows_total and rate > 0:
            eta = max(rows_total - rows_completed, 0) / rate

        current: CurrentTableProgress | None = None
        if self._current is not None:
            item = self._tables[self._current]
            elapsed = self._clock() - item.started_at if item.started_at is not None else 0.0
            if item.estimated_rows:
                table_percent = min(item.rows / item.estimated_rows * 100.0, 100.0)
            else:
                table_percent = 100.0 if item.status == TaskStatus.COMPLETED else 0.0
            current = CurrentTableProgress(
                name=self._current,
                percent_complete=table_percent,
                rows_completed=item.rows,
                rows_total=item.estimated_rows,
                rows_per_second=item.rows / elapsed if elapsed > 0 else 0.0,
            )

        return ProgressSnapshot(
            phase=self._phase,
            percent_complete=percent,
            tables_completed=tables_completed,
            tables_total=tables_total,
            rows_completed=rows_completed,
            rows_total=rows_total,
            elapsed_seconds=self._clock() - self._started_at,
            current_table=current,
            eta_seconds=eta,
        )

    def _publish(self, *, force: bool) -> None:
        if self._sink is None:
            return
        with self._lock:
            now = self._clock()
            if not force and self._last_publish is not None and now - self._last_publish < self._min_interval:
                return
            self._last_publish = now
            snapshot = self._snapshot_locked()
        self._sink.publish(snapshot)
