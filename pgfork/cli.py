from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from dataclasses import asdict, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Sequence

import uvicorn
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from pgfork.api.app import create_app
from pgfork.core.config import Settings, get_settings
from pgfork.core.logging import configure_logging
from pgfork.core.naming import TemplateError, collect_template_vars, resolve_name
from pgfork.core.version import __version__
from pgfork.db.admin import admin_for
from pgfork.db.init_db import initialize_session_factory
from pgfork.db.models import JobPhase
from pgfork.db.session import create_state_session_factory, get_session_factory
from pgfork.fork.errors import CancellationError, ForkError, SpecValidationError
from pgfork.fork.orchestrator import fork
from pgfork.fork.progress import format_duration
from pgfork.fork.retry import classify_error
from pgfork.fork.types import ConnectionConfig, ForkResult, ForkSpec, HookConfig
from pgfork.fork.validation import validate_fork_spec
from pgfork.jobs import InvalidJobStateError, JobNotFoundError, JobService, snapshot_to_dict
from pgfork.jobs.metrics import MetricsReport

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

CONNECTION_FIELDS = ("host", "port", "user", "password", "database", "sslmode")
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1.0, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}

logger = logging.getLogger("pgfork.cli")


class ConfigurationError(ValueError):
    pass


def parse_duration(value: str) -> float:
    """Seconds from ``90``, ``90s``, ``30m``, ``2h`` or ``7d``."""
    match = _DURATION.match(value)
    if match is None:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r} (expected e.g. 90s, 30m, 2h, 7d)")
    seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: {value!r}")
    return seconds


def split_table_list(values: Sequence[str] | None) -> tuple[str, ...]:
    tables: list[str] = []
    for value in values or ():
        for name in value.split(","):
            name = name.strip()
            if name and name not in tables:
                tables.append(name)
    return tuple(tables)


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("source")
    group.add_argument("--source-uri", help="Source connection URI (postgresql://... or sqlite:///path/name.db)")
    group.add_argument("--source-host")
    group.add_argument("--source-port", type=int)
    group.add_argument("--source-user")
    group.add_argument("--source-password")
    group.add_argument("--source-database", help="Database to fork")
    group.add_argument("--source-sslmode")


def _add_dest_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("destination")
    group.add_argument("--dest-uri", help="Destination server URI")
    group.add_argument("--dest-host")
    group.add_argument("--dest-port", type=int)
    group.add_argument("--dest-user")
    group.add_argument("--dest-password")
    group.add_argument("--dest-sslmode")


def _add_fork_arguments(parser: argparse.ArgumentParser) -> None:
    _add_source_arguments(parser)
    _add_dest_arguments(parser)
    parser.add_argument("--target", help="Target database name; {{VAR}} placeholders are resolved")
    parser.add_argument("--include-table", "--include-tables", dest="include_tables", action="append", default=[])
    parser.add_argument("--exclude-table", "--exclude-tables", dest="exclude_tables", action="append", default=[])
    parser.add_argument("--schema-only", action="store_true")
    parser.add_argument("--data-only", action="store_true")
    parser.add_argument("--drop-if-exists", action="store_true")
    parser.add_argument("--max-connections", type=int)
    parser.add_argument("--chunk-size", type=int)
    parser.add_argument("--timeout", type=parse_duration, help="Overall deadline: seconds or 90s/30m/2h")
    parser.add_argument("--retry-attempts", type=int)
    parser.add_argument("--dry-run", action="store_true", help="Plan only; change nothing")
    parser.add_argument("--job-id")
    parser.add_argument("--resume", action="store_true", help="Resume the job named by --job-id")
    parser.add_argument("--state-dir", type=Path)
    parser.add_argument("--progress-file", type=Path)
    parser.add_argument("--metrics-file", type=Path, help="Write Prometheus metrics for this fork to a file")
    parser.add_argument("--pre-fork-hook", dest="pre_fork_hooks", action="append", default=[])
    parser.add_argument("--post-fork-hook", dest="post_fork_hooks", action="append", default=[])
    parser.add_argument("--on-error-hook", dest="on_error_hooks", action="append", default=[])
    parser.add_argument("--output", choices=("text", "json"), default="text")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgfork", description="Fork PostgreSQL databases")
    parser.add_argument("--log-level", help="debug, info, warning or error")
    parser.add_argument("--log-format", choices=("text", "json"))
    commands = parser.add_subparsers(dest="command", required=True)

    fork_parser = commands.add_parser("fork", help="Fork a database")
    _add_fork_arguments(fork_parser)

    validate_parser = commands.add_parser("validate", help="Validate fork options without connecting")
    _add_fork_arguments(validate_parser)

    test_parser = commands.add_parser("test-connection", help="Check that both servers are reachable")
    _add_source_arguments(test_parser)
    _add_dest_arguments(test_parser)

    jobs_parser = commands.add_parser("jobs", help="Inspect stored fork jobs")
    jobs_parser.add_argument("--state-dir", type=Path)
    jobs_commands = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_commands.add_parser("list")
    jobs_list.add_argument("--limit", type=int, default=50)
    jobs_list.add_argument("--phase", choices=[phase.value for phase in JobPhase])
    jobs_show = jobs_commands.add_parser("show")
    jobs_show.add_argument("job_id")
    jobs_delete = jobs_commands.add_parser("delete")
    jobs_delete.add_argument("job_id")
    jobs_delete.add_argument("--force", action="store_true", help="Delete even if the job looks active")
    jobs_cleanup = jobs_commands.add_parser("cleanup")
    jobs_cleanup.add_argument("--older-than", type=parse_duration, help="Age threshold, e.g. 72h")
    jobs_cleanup.add_argument("--dry-run", action="store_true")

    metrics_parser = commands.add_parser("metrics", help="Summarise stored fork jobs")
    metrics_parser.add_argument("--state-dir", type=Path)
    metrics_parser.add_argument("--period", type=parse_duration, default=parse_duration("7d"), help="Window, e.g. 1d, 7d, 30d")
    metrics_parser.add_argument("--trends", action="store_true", help="Include a per-day breakdown")
    metrics_parser.add_argument("--summary-only", action="store_true")
    metrics_parser.add_argument("--output", choices=("text", "json"), default="text")

    list_parser = commands.add_parser("list", help="List databases on the destination server")
    _add_dest_arguments(list_parser)
    list_parser.add_argument("--pattern", help="Glob pattern, e.g. 'preview_*'")
    list_parser.add_argument("--size", action="store_true", help="Show each database size in bytes")

    cleanup_parser = commands.add_parser("cleanup", help="Drop databases matching a pattern")
    _add_dest_arguments(cleanup_parser)
    cleanup_parser.add_argument("--pattern", required=True)
    cleanup_parser.add_argument("--exclude", action="append", default=[])
    cleanup_parser.add_argument("--dry-run", action="store_true")
    cleanup_parser.add_argument("--force", action="store_true", help="Required to actually drop databases")

    serve_parser = commands.add_parser("serve", help="Run the job status API")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)

    commands.add_parser("version", help="Print the version")
    return parser


def _pick(args: argparse.Namespace, settings: Settings, name: str) -> Any:
    value = getattr(args, name, None)
    if value is None:
        value = getattr(settings, name, None)
    return value


def connection_from_args(args: argparse.Namespace, settings: Settings, prefix: str) -> ConnectionConfig:
    uri = _pick(args, settings, f"{prefix}_uri")
    if uri:
        try:
            config = ConnectionConfig.from_uri(uri)
        except ValueError as exc:
            raise ConfigurationError(f"--{prefix}-uri: {exc}") from exc
    else:
        config = ConnectionConfig(host="")

    overrides: dict[str, Any] = {}
    for field_name in CONNECTION_FIELDS:
        value = _pick(args, settings, f"{prefix}_{field_name}")
        if value is not None:
            overrides[field_name] = value
    if not uri and "host" not in overrides:
        overrides["host"] = "localhost"
    return replace(config, **overrides)


def spec_from_args(args: argparse.Namespace, settings: Settings, environ: dict[str, str] | None = None) -> ForkSpec:
    target = args.target or settings.target_database
    if not target:
        raise ConfigurationError("--target is required")
    variables = collect_template_vars(environ if environ is not None else dict(os.environ))
    try:
        target = resolve_name(target, variables)
    except TemplateError as exc:
        raise ConfigurationError(f"--target: {exc}") from exc

    source = connection_from_args(args, settings, "source")
    try:
        source = source.with_database(resolve_name(source.database, variables))
    except TemplateError as exc:
        raise ConfigurationError(f"--source-database: {exc}") from exc

    return ForkSpec(
        source=source,
        destination=connection_from_args(args, settings, "dest"),
        target_database=target,
        include_tables=split_table_list(args.include_tables),
        exclude_tables=split_table_list(args.exclude_tables),
        schema_only=args.schema_only,
        data_only=args.data_only,
        drop_if_exists=args.drop_if_exists,
        max_connections=args.max_connections or settings.max_connections,
        chunk_size=args.chunk_size or settings.chunk_size,
        timeout_seconds=args.timeout or settings.timeout_seconds,
        retry_attempts=args.retry_attempts or settings.retry_attempts,
        retry_initial_delay_seconds=settings.retry_initial_delay_seconds,
        retry_max_delay_seconds=settings.retry_max_delay_seconds,
        dry_run=args.dry_run,
        job_id=args.job_id,
        resume=args.resume,
        state_dir=args.state_dir or settings.state_dir,
        progress_file=args.progress_file,
        metrics_file=args.metrics_file or settings.metrics_file,
        progress_interval_seconds=settings.progress_interval_seconds,
        hooks=HookConfig(
            pre_fork=tuple(args.pre_fork_hooks),
            post_fork=tuple(args.post_fork_hooks),
            on_error=tuple(args.on_error_hooks),
        ),
    )


def exit_code_for(result: ForkResult) -> int:
    if result.success:
        return EXIT_OK
    if isinstance(result.error, SpecValidationError):
        return EXIT_CONFIG
    if isinstance(result.error, CancellationError):
        return EXIT_CANCELLED
    return EXIT_FAILURE


def _print_result(result: ForkResult, output: str) -> None:
    if output == "json":
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if result.dry_run and result.plan is not None:
        plan = result.plan
        print(f"Dry run: {plan.strategy.value} fork into {result.target_database}")
        if plan.target_exists:
            print("  target exists and would be dropped first")
        for table in plan.tables:
            estimate = "unknown" if table.estimated_rows is None else str(table.estimated_rows)
            print(f"  table {table.name} (~{estimate} rows)")
        print(f"  {len(plan.schema_ddl)} schema statement(s), {len(plan.post_data_ddl)} post-data statement(s)")
        return

    if result.success:
        print(
            f"Fork {result.job_id} completed: {result.target_database} "
            f"({len(result.tables)} tables, {result.rows_transferred} rows, {format_duration(result.duration_seconds)})"
        )
        return

    error = result.error
    print(f"Fork {result.job_id} failed: {error}", file=sys.stderr)
    if error is not None and isinstance(error, SpecValidationError):
        for violation in error.violations:
            print(f"  {violation}", file=sys.stderr)


def _install_signal_handlers(cancel_event: threading.Event) -> dict[int, Any]:
    def _handle(signum: int, _frame: object) -> None:
        logger.warning("Received %s; cancelling after the current chunk", signal.Signals(signum).name)
        cancel_event.set()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def cmd_fork(args: argparse.Namespace, settings: Settings) -> int:
    spec = spec_from_args(args, settings)
    cancel_event = threading.Event()
    previous = _install_signal_handlers(cancel_event)
    try:
        result = fork(spec, cancel_event=cancel_event, logger=logging.getLogger("pgfork.fork"))
    finally:
        _restore_signal_handlers(previous)
    _print_result(result, args.output)
    return exit_code_for(result)


def cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    spec = spec_from_args(args, settings)
    violations = validate_fork_spec(spec)
    if args.output == "json":
        print(json.dumps({"valid": not violations, "violations": [asdict(item) for item in violations]}, indent=2))
    elif violations:
        print("Configuration is invalid:", file=sys.stderr)
        for violation in violations:
            print(f"  {violation}", file=sys.stderr)
    else:
        print(f"Configuration is valid: {spec.source.describe()} -> {spec.destination.describe(spec.target_database)}")
    return EXIT_CONFIG if violations else EXIT_OK


def cmd_test_connection(args: argparse.Namespace, settings: Settings) -> int:
    endpoints = (
        ("source", connection_from_args(args, settings, "source")),
        ("destination", connection_from_args(args, settings, "dest")),
    )
    exit_code = EXIT_OK
    for label, config in endpoints:
        admin = admin_for(config)
        try:
            version = admin.server_version()
            print(f"{label}: ok ({config.describe()}, {version})")
            if label == "source" and not admin.database_exists(config.database):
                print(f"{label}: database {config.database} does not exist", file=sys.stderr)
                exit_code = EXIT_FAILURE
        except Exception as exc:
            error = classify_error(exc)
            print(f"{label}: failed ({config.describe()}): {error.code}: {error}", file=sys.stderr)
            exit_code = EXIT_FAILURE
        finally:
            admin.close()
    return exit_code


def _job_session_factory(args: argparse.Namespace) -> sessionmaker[Session]:
    factory = create_state_session_factory(args.state_dir) if args.state_dir else get_session_factory()
    initialize_session_factory(factory)
    return factory


def cmd_jobs(args: argparse.Namespace, settings: Settings) -> int:
    service = JobService(settings, _job_session_factory(args))
    if args.jobs_command == "list":
        phase = JobPhase(args.phase) if args.phase else None
        jobs = service.list_jobs(limit=args.limit, phase=phase)
        if not jobs:
            print("No jobs found")
        for job in jobs:
            snapshot = snapshot_to_dict(job)
            target = job.spec.get("target_database", "?")
            print(f"{job.id}  {job.phase.value:<11}  {snapshot['progress'] * 100:5.1f}%  {target}  {job.updated_at}")
        return EXIT_OK

    if args.jobs_command == "show":
        try:
            job = service.get_job(args.job_id)
        except JobNotFoundError as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_FAILURE
        print(json.dumps(snapshot_to_dict(job), indent=2, default=str))
        return EXIT_OK

    if args.jobs_command == "delete":
        try:
            service.delete_job(args.job_id, force=args.force)
        except (JobNotFoundError, InvalidJobStateError) as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_FAILURE
        print(f"Deleted job {args.job_id}")
        return EXIT_OK

    max_age = timedelta(seconds=args.older_than) if args.older_than else None
    result = service.cleanup_old_jobs(max_age=max_age, dry_run=args.dry_run)
    verb = "Would delete" if result.dry_run else "Deleted"
    print(f"{verb} {len(result.deleted)} job(s)")
    for job_id in result.deleted:
        print(f"  {job_id}")
    return EXIT_OK


def _print_metrics_report(report: MetricsReport, *, summary_only: bool) -> None:
    summary = report.summary
    print(f"Fork metrics for the last {format_duration(report.period_seconds)}")
    print(f"Generated: {report.generated_at.isoformat()}")
    print(f"  Total jobs: {summary.total_jobs}")
    print(f"  Completed: {summary.completed_jobs} ({summary.success_rate:.1f}%)")
    print(f"  Failed: {summary.failed_jobs}")
    print(f"  Cancelled: {summary.cancelled_jobs}")
    print(f"  Running: {summary.running_jobs}")
    print(f"  Average duration: {format_duration(summary.average_duration_seconds)}")
    print(f"  Rows transferred: {summary.total_rows_transferred}")
    print(f"  Tables processed: {summary.total_tables_processed}")
    if summary_only:
        return

    stats = report.performance
    print("Performance:")
    print(f"  Average rate: {stats.average_rows_per_second:.1f} rows/s")
    print(f"  Median duration: {format_duration(stats.median_duration_seconds)}")
    print(f"  95th percentile duration: {format_duration(stats.p95_duration_seconds)}")
    print(f"  Error rate: {stats.error_rate:.1f}%")
    for label, metric in (
        ("Fastest", stats.fastest_job),
        ("Slowest", stats.slowest_job),
        ("Largest", stats.largest_transfer),
    ):
        if metric is not None:
            print(
                f"  {label}: {metric.job_id} ({metric.target}, {metric.rows_transferred} rows, "
                f"{format_duration(metric.duration_seconds)})"
            )

    if report.trends is not None and report.trends.daily:
        print("Daily:")
        for day in report.trends.daily:
            print(f"  {day.date}  {day.job_count} job(s)  {day.success_rate:5.1f}%  {day.rows_transferred} rows")
        if report.trends.speed_trend is not None:
            print(f"  Speed trend: {report.trends.speed_trend}")
            print(f"  Success trend: {report.trends.success_trend}")

    if report.jobs:
        print("Jobs:")
    for metric in report.jobs:
        print(
            f"  {metric.job_id}  {metric.status:<9}  {metric.target}  {metric.rows_transferred} rows  "
            f"{metric.tables_processed} table(s)  {format_duration(metric.duration_seconds)}"
        )


def cmd_metrics(args: argparse.Namespace, settings: Settings) -> int:
    service = JobService(settings, _job_session_factory(args))
    report = service.metrics_report(period=timedelta(seconds=args.period), include_trends=args.trends)
    if args.output == "json":
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        _print_metrics_report(report, summary_only=args.summary_only)
    return EXIT_OK


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    admin = admin_for(connection_from_args(args, settings, "dest"))
    try:
        for name in admin.list_databases(args.pattern):
            if args.size:
                size = admin.database_size(name)
                print(f"{name}\t{'unknown' if size is None else size}")
            else:
                print(name)
    finally:
        admin.close()
    return EXIT_OK


def cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    admin = admin_for(connection_from_args(args, settings, "dest"))
    try:
        names = admin.list_databases(args.pattern, exclude=args.exclude)
        if not names:
            print(f"No databases match {args.pattern}")
            return EXIT_OK
        if args.dry_run:
            print(f"Would drop {len(names)} database(s):")
            for name in names:
                print(f"  {name}")
            return EXIT_OK
        if not args.force:
            print(f"Refusing to drop {len(names)} database(s) without --force", file=sys.stderr)
            return EXIT_CONFIG
        failed = 0
        for name in names:
            try:
                admin.drop_database(name)
                print(f"Dropped {name}")
            except ForkError as exc:
                failed += 1
                print(f"Failed to drop {name}: {exc}", file=sys.stderr)
        return EXIT_FAILURE if failed else EXIT_OK
    finally:
        admin.close()


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    uvicorn.run(create_app(), host=args.host or settings.api_host, port=args.port or settings.api_port)
    return EXIT_OK


def cmd_version(_args: argparse.Namespace, _settings: Settings) -> int:
    print(f"pgfork {__version__}")
    return EXIT_OK


COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "fork": cmd_fork,
    "validate": cmd_validate,
    "test-connection": cmd_test_connection,
    "jobs": cmd_jobs,
    "metrics": cmd_metrics,
    "list": cmd_list,
    "cleanup": cmd_cleanup,
    "serve": cmd_serve,
    "version": cmd_version,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)
    try:
        return COMMANDS[args.command](args, settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
