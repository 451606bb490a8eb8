from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pgfork.db.models import TaskStatus
from pgfork.fork.errors import CancellationError
from pgfork.fork.types import ForkResult

METRIC_PREFIX = "pgfork"


@dataclass(frozen=True)
class ForkMetrics:
    job_id: str
    target_database: str
    status: str
    duration_seconds: float
    rows_transferred: int
    tables_processed: int
    tables_failed: int
    attempts: int
    error_count: int

    @property
    def rows_per_second(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.rows_transferred / self.duration_seconds

    @classmethod
    def from_result(cls, result: ForkResult) -> "ForkMetrics":
        if result.success:
            status = "completed"
        elif isinstance(result.error, CancellationError):
            status = "interrupted"
        else:
            status = "failed"
        failed = sum(1 for task in result.tables if task.status == TaskStatus.FAILED)
        return cls(
            job_id=result.job_id,
            target_database=result.target_database,
            status=status,
            duration_seconds=result.duration_seconds,
            rows_transferred=result.rows_transferred,
            tables_processed=sum(1 for task in result.tables if task.status == TaskStatus.COMPLETED),
            tables_failed=failed,
            attempts=sum(task.attempts for task in result.tables),
            error_count=failed + (0 if result.error is None else 1),
        )


def _gauge(name: str, help_text: str, value: float | int, labels: str) -> list[str]:
    metric = f"{METRIC_PREFIX}_{name}"
    rendered = f"{value:.6f}" if isinstance(value, float) else str(value)
    return [f"# HELP {metric} {help_text}", f"# TYPE {metric} gauge", f"{metric}{{{labels}}} {rendered}"]


def _label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def render_prometheus(metrics: ForkMetrics, *, generated_at: datetime | None = None) -> str:
    """Prometheus text exposition of one fork, suitable for a node-exporter textfile collector."""
    stamp = (generated_at or datetime.now(tz=timezone.utc)).isoformat()
    labels = f'job_id="{_label(metrics.job_id)}",target="{_label(metrics.target_database)}"'
    lines = [f"# pgfork metrics generated at {stamp}"]
    lines += _gauge("fork_duration_seconds", "Wall-clock duration of the fork.", metrics.duration_seconds, labels)
    lines += _gauge("fork_transferred_rows", "Rows copied into the target.", metrics.rows_transferred, labels)
    lines += _gauge("fork_tables_processed", "Tables completed.", metrics.tables_processed, labels)
    lines += _gauge("fork_tables_failed", "Tables left failed.", metrics.tables_failed, labels)
    lines += _gauge("fork_table_attempts", "Copy attempts across all tables.", metrics.attempts, labels)
    lines += _gauge("fork_error_count", "Errors recorded by the fork.", metrics.error_count, labels)
    lines += _gauge(
        "fork_transfer_rate_rows_per_second",
        "Average copy rate over the whole fork.",
        metrics.rows_per_second,
        labels,
    )
    lines += _gauge("fork_status", "Terminal status of the fork.", 1, f'{labels},status="{metrics.status}"')
    return "\n".join(lines) + "\n"


def write_metrics_file(path: Path, metrics: ForkMetrics, *, logger: logging.Logger | None = None) -> bool:
    log = logger or logging.getLogger(__name__)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(render_prometheus(metrics), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        log.warning("Failed to write metrics file %s: %s", path, exc, extra={"job_id": metrics.job_id})
        return False
    log.debug("Metrics written to %s", path, extra={"job_id": metrics.job_id})
    return True
