from __future__ import annotations

import argparse
import os
import shutil
import time
from pathlib import Path

import pgfork.db.session as db_session_module
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, insert

from pgfork.core.config import get_settings
from pgfork.core.logging import configure_logging
from pgfork.fork.orchestrator import fork
from pgfork.fork.types import ConnectionConfig, ForkSpec


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark the cross-server fork pipeline on SQLite files")
    parser.add_argument("--work-root", required=True, help="Scratch directory for source, destination and state")
    parser.add_argument("--tables", type=int, default=8, help="Number of source tables")
    parser.add_argument("--rows", type=int, default=50000, help="Rows per table")
    parser.add_argument("--chunk-size", type=int, default=1000, help="Rows per committed chunk")
    parser.add_argument("--max-connections", type=int, nargs="+", default=[1, 2, 4], help="Worker counts to compare")
    parser.add_argument("--verbose", action="store_true", help="Log fork progress")
    return parser.parse_args()


def configure_env(work_root: Path) -> Path:
    state_dir = work_root / "state"
    state_dir.mkdir(parents=True, exist_ok=True)
    os.environ["PGFORK_STATE_DIR"] = state_dir.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    return state_dir


def seed_source(source_root: Path, *, tables: int, rows: int) -> None:
    shutil.rmtree(source_root, ignore_errors=True)
    source_root.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{(source_root / 'bench.db').as_posix()}")
    metadata = MetaData()
    created = [
        Table(
            f"bench_{index:02d}",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("label", String(64), nullable=False),
            Column("amount", Integer, nullable=False),
        )
        for index in range(tables)
    ]
    metadata.create_all(engine)
    with engine.begin() as conn:
        for table in created:
            batch: list[dict[str, object]] = []
            for row_id in range(1, rows + 1):
                batch.append({"id": row_id, "label": f"{table.name}-{row_id}", "amount": row_id % 997})
                if len(batch) >= 5000:
                    conn.execute(insert(table), batch)
                    batch.clear()
            if batch:
                conn.execute(insert(table), batch)
    engine.dispose()


def benchmark(source_root: Path, dest_root: Path, state_dir: Path, *, chunk_size: int, workers: int) -> tuple[int, float]:
    if dest_root.exists():
        shutil.rmtree(dest_root)
    dest_root.mkdir(parents=True)
    spec = ForkSpec(
        source=ConnectionConfig(host=source_root.as_posix(), database="bench", driver="sqlite", port=0, user=""),
        destination=ConnectionConfig(host=dest_root.as_posix(), driver="sqlite", port=0, user=""),
        target_database="bench_copy",
        max_connections=workers,
        chunk_size=chunk_size,
        state_dir=state_dir,
        job_id=f"bench-{workers}",
    )
    start = time.perf_counter()
    result = fork(spec)
    elapsed = time.perf_counter() - start
    if not result.success:
        raise SystemExit(f"fork failed: {result.error}")
    return result.rows_transferred, elapsed


def main() -> None:
    args = parse_args()
    work_root = Path(args.work_root)
    state_dir = configure_env(work_root)
    if args.verbose:
        configure_logging("INFO")
    source_root = work_root / "source"
    seed_source(source_root, tables=args.tables, rows=args.rows)
    for workers in args.max_connections:
        rows, elapsed = benchmark(
            source_root,
            work_root / "dest",
            state_dir,
            chunk_size=args.chunk_size,
            workers=workers,
        )
        rate = rows / elapsed if elapsed > 0 else 0.0
        print(f"workers={workers} rows={rows} elapsed_seconds={elapsed:.3f} rows_per_second={rate:.0f}")


if __name__ == "__main__":
    main()
