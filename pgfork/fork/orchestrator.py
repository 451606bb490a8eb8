from __future__ import annotations

import logging
import threading
import time
import uuid

from sqlalchemy import MetaData
from sqlalchemy.orm import Session, sessionmaker

from pgfork.core.config import get_settings
from pgfork.db.admin import DatabaseAdmin
from pgfork.db.connections import ConnectionManager
from pgfork.db.init_db import initialize_session_factory
from pgfork.db.models import JobPhase, Strategy, TaskStatus
from pgfork.db.session import create_state_session_factory
from pgfork.fork.context import RunContext
from pgfork.fork.errors import ForkError, ResumeMismatchError, SpecValidationError, VerificationError
from pgfork.fork.hooks import HookRunner
from pgfork.fork.metrics import ForkMetrics, write_metrics_file
from pgfork.fork.planner import StrategyPlanner
from pgfork.fork.progress import ProgressFileSink, ProgressTracker
from pgfork.fork.retry import BackoffSchedule, RetryPolicy, classify_error
from pgfork.fork.schema import SchemaExtractor, count_rows
from pgfork.fork.transfer import DataTransferWorkerPool
from pgfork.fork.types import DdlKind, DdlStatement, ForkResult, ForkSpec, TableTask, TransferPlan
from pgfork.fork.validation import validate_fork_spec
from pgfork.jobs.store import PHASE_ORDER, JobStateStore
from pgfork.jobs.types import ForkJob

DROP_TARGET_KEY = "drop-target"


class ForkOrchestrator:
    """Runs one fork from validation to a terminal result.

    Every phase is safe to run again on a resumed job: DDL already recorded as
    applied is skipped and tables already completed are not copied again.
    """

    def __init__(
        self,
        spec: ForkSpec,
        *,
        session_factory: sessionmaker[Session] | None = None,
        cancel_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ):
        self._spec = spec
        self._session_factory = session_factory
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._logger = logger or logging.getLogger("pgfork.fork")
        self._job_id = spec.job_id or uuid.uuid4().hex
        self._started_at = time.monotonic()
        self._phase = JobPhase.PLANNING
        self._store: JobStateStore | None = None
        self._tracker: ProgressTracker | None = None
        self._plan: TransferPlan | None = None

    @property
    def job_id(self) -> str:
        return self._job_id

    def run(self) -> ForkResult:
        result = self._run()
        if self._spec.metrics_file is not None and not result.dry_run:
            write_metrics_file(self._spec.metrics_file, ForkMetrics.from_result(result), logger=self._logger)
        return result

    def _run(self) -> ForkResult:
        spec = self._spec
        violations = validate_fork_spec(spec)
        if violations:
            error = SpecValidationError(violations)
            self._logger.error("%s", error, extra={"job_id": self._job_id})
            return self._failed_result(error)

        context = RunContext(cancel_event=self._cancel_event, timeout_seconds=spec.timeout_seconds, logger=self._logger)
        retry = RetryPolicy(
            max_attempts=spec.retry_attempts,
            schedule=BackoffSchedule(
                initial_delay=spec.retry_initial_delay_seconds,
                max_delay=spec.retry_max_delay_seconds,
            ),
            logger=self._logger,
        )

        with ConnectionManager(spec, logger=self._logger) as connections:
            planner = StrategyPlanner(spec, connections, retry_policy=retry, context=context)
            if spec.dry_run:
                return self._dry_run(planner)
            return self._execute(connections, planner, retry, context)

    def _dry_run(self, planner: StrategyPlanner) -> ForkResult:
        try:
            plan = planner.plan()
        except Exception as exc:
            error = classify_error(exc)
            self._logger.error("Dry run failed: %s", error, extra={"job_id": self._job_id})
            return self._failed_result(error)

        self._logger.info("Dry run complete; no changes were made", extra={"job_id": self._job_id})
        tasks = tuple(
            TableTask(name=table.name, estimated_rows=table.estimated_rows, position=position)
            for position, table in enumerate(plan.tables)
        )
        return ForkResult(
            job_id=self._job_id,
            success=True,
            target_database=self._spec.target_database,
            phase=JobPhase.DONE,
            dry_run=True,
            strategy=plan.strategy,
            plan=plan,
            tables=tasks,
            duration_seconds=time.monotonic() - self._started_at,
        )

    def _execute(
        self,
        connections: ConnectionManager,
        planner: StrategyPlanner,
        retry: RetryPolicy,
        context: RunContext,
    ) -> ForkResult:
        spec = self._spec
        owns_factory = self._session_factory is None
        session_factory = self._session_factory or create_state_session_factory(
            spec.state_dir or get_settings().state_dir
        )
        hooks = HookRunner(
            spec.hooks,
            job_id=self._job_id,
            target_database=spec.target_database,
            timeout_seconds=spec.timeout_seconds,
            logger=self._logger,
        )
        job_created = False
        try:
            initialize_session_factory(session_factory)
            store = JobStateStore(session_factory, logger=self._logger)
            job = self._open_job(store)
            self._store = store
            job_created = True
            if job.phase == JobPhase.DONE:
                self._logger.info("Job %s already completed; nothing to resume", self._job_id, extra={"job_id": self._job_id})
                return self._result(success=True)

            hooks.run("pre_fork")
            metadata = self._load_plan(job, planner, connections, retry, context)
            self._tracker = self._build_tracker(self._store.load(self._job_id) or job)

            if self._plan.strategy == Strategy.SAME_SERVER:
                self._run_same_server(connections, planner, retry, context)
            else:
                self._run_cross_server(connections, planner, retry, context, metadata)

            context.check()
            hooks.run("post_fork")
            self._enter(JobPhase.DONE)
            self._logger.info(
                "Fork %s finished in %.1fs",
                self._job_id,
                time.monotonic() - self._started_at,
                extra={"job_id": self._job_id},
            )
            return self._result(success=True)
        except Exception as exc:
            error = classify_error(exc)
            self._logger.error("Fork %s failed: %s", self._job_id, error, extra={"job_id": self._job_id})
            if job_created:
                self._record_failure(error)
            hooks.run_on_error(error)
            if self._tracker is not None:
                self._tracker.set_phase(JobPhase.FAILED)
            return self._failed_result(error)
        finally:
            if self._tracker is not None:
                self._tracker.close()
            if owns_factory:
                session_factory.kw["bind"].dispose()

    def _record_failure(self, error: ForkError) -> None:
        try:
            self._store.fail_job(self._job_id, error)
        except Exception as exc:
            self._logger.error(
                "Could not record failure of job %s in the state store: %s",
                self._job_id,
                exc,
                extra={"job_id": self._job_id},
            )

    def _open_job(self, store: JobStateStore) -> ForkJob:
        spec = self._spec
        fingerprint = spec.fingerprint()
        if spec.resume:
            existing = store.load(self._job_id)
            if existing is not None:
                if existing.fingerprint != fingerprint:
                    raise ResumeMismatchError(
                        f"Job {self._job_id} was started with a different source, target or table selection"
                    )
                job = store.reopen_for_resume(self._job_id)
                self._phase = job.phase
                completed = sum(1 for task in job.tasks if task.status == TaskStatus.COMPLETED)
                self._logger.info(
                    "Resuming job %s in phase %s (%d/%d tables already completed)",
                    self._job_id,
                    job.phase.value,
                    completed,
                    len(job.tasks),
                    extra={"job_id": self._job_id},
                )
                return job
            self._logger.info("No stored state for job %s; starting a new fork", self._job_id, extra={"job_id": self._job_id})
        return store.create_job(self._job_id, spec=spec.to_dict(), fingerprint=fingerprint)

    def _load_plan(
        self,
        job: ForkJob,
        planner: StrategyPlanner,
        connections: ConnectionManager,
        retry: RetryPolicy,
        context: RunContext,
    ) -> MetaData | None:
        if job.plan is None:
            self._enter(JobPhase.PLANNING)
            self._plan = planner.plan()
            self._store.save_plan(self._job_id, self._plan)
            return planner.metadata

        self._plan = job.plan
        if self._plan.strategy == Strategy.SAME_SERVER:
            return None
        extractor = SchemaExtractor(connections.source_engine(), logger=self._logger)
        return retry.run(
            lambda: extractor.reflect(self._plan.table_names),
            description="reflect source schema",
            context=context,
        )

    def _build_tracker(self, job: ForkJob) -> ProgressTracker:
        spec = self._spec
        sink = ProgressFileSink(spec.progress_file, logger=self._logger) if spec.progress_file else None
        tracker = ProgressTracker(job.tasks, sink=sink, min_interval=spec.progress_interval_seconds)
        tracker.set_phase(self._phase)
        return tracker

    def _enter(self, phase: JobPhase) -> None:
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self._phase):
            return
        self._phase = phase
        self._store.set_phase(self._job_id, phase)
        if self._tracker is not None:
            self._tracker.set_phase(phase)
        self._logger.info("Entering phase %s", phase.value, extra={"job_id": self._job_id})

    def _applied(self) -> set[str]:
        job = self._store.load(self._job_id)
        return set() if job is None else job.applied_ddl

    def _cleanup(self, admin: DatabaseAdmin, retry: RetryPolicy, context: RunContext) -> None:
        spec = self._spec
        if not (self._plan.target_exists and spec.drop_if_exists):
            return
        if DROP_TARGET_KEY in self._applied():
            return
        self._enter(JobPhase.CLEANUP)
        self._logger.warning("Dropping existing target database %s", spec.target_database, extra={"job_id": self._job_id})
        retry.run(
            lambda: admin.drop_database(spec.target_database),
            description=f"drop database {spec.target_database}",
            context=context,
        )
        self._store.mark_ddl_applied(self._job_id, DROP_TARGET_KEY)

    def _run_same_server(
        self,
        connections: ConnectionManager,
        planner: StrategyPlanner,
        retry: RetryPolicy,
        context: RunContext,
    ) -> None:
        spec = self._spec
        admin = planner.destination_admin()
        self._cleanup(admin, retry, context)

        self._enter(JobPhase.SCHEMA)
        clone = self._plan.schema_ddl[0]
        if clone.key not in self._applied():
            # CREATE DATABASE ... TEMPLATE fails while anything is connected to the template.
            connections.dispose_source()
            context.check()
            retry.run(
                lambda: admin.clone_database(spec.source.database, spec.target_database),
                description=f"clone {spec.source.database} into {spec.target_database}",
                context=context,
            )
            self._store.mark_ddl_applied(self._job_id, clone.key)

        self._enter(JobPhase.VERIFY)
        source_engine = connections.source_engine()
        target_engine = connections.target_engine()
        current = self._store.load(self._job_id)
        for task in current.tasks:
            if task.status == TaskStatus.COMPLETED:
                continue
            context.check(task.name)
            self._store.start_task(self._job_id, task.name)
            self._tracker.table_started(task.name)
            with source_engine.connect() as source_conn, target_engine.connect() as target_conn:
                expected = count_rows(source_conn, task.name)
                actual = count_rows(target_conn, task.name)
            if expected != actual:
                error = VerificationError(f"source has {expected} rows but clone has {actual}", table=task.name)
                self._store.fail_task(self._job_id, task.name, rows=actual, error=str(error))
                self._tracker.table_finished(task.name, rows=actual, success=False)
                raise error
            self._store.complete_task(self._job_id, task.name, rows=actual)
            self._tracker.table_finished(task.name, rows=actual, success=True)

    def _run_cross_server(
        self,
        connections: ConnectionManager,
        planner: StrategyPlanner,
        retry: RetryPolicy,
        context: RunContext,
        metadata: MetaData | None,
    ) -> None:
        spec = self._spec
        admin = planner.destination_admin()
        self._cleanup(admin, retry, context)

        self._enter(JobPhase.SCHEMA)
        self._apply_ddl(self._plan.schema_ddl, admin, connections, retry, context)
        extractor = SchemaExtractor(connections.source_engine(), logger=self._logger)
        extractor.verify_destination(metadata, self._plan.table_names, connections.target_engine())

        if spec.schema_only:
            self._complete_empty_tables()
        else:
            self._enter(JobPhase.DATA)
            pending = [
                task
                for task in self._store.load(self._job_id).tasks
                if task.status in (TaskStatus.PENDING, TaskStatus.FAILED)
            ]
            self._logger.info(
                "Copying %d table(s) with up to %d connection(s)",
                len(pending),
                spec.max_connections,
                extra={"job_id": self._job_id},
            )
            pool = DataTransferWorkerPool(
                job_id=self._job_id,
                source_engine=connections.source_engine(),
                target_engine=connections.target_engine(),
                metadata=metadata,
                store=self._store,
                tracker=self._tracker,
                retry_policy=retry,
                context=context,
                chunk_size=spec.chunk_size,
                max_workers=spec.max_connections,
            )
            pool.run(pending)

        context.check()
        self._enter(JobPhase.CONSTRAINTS)
        self._apply_ddl(self._plan.post_data_ddl, admin, connections, retry, context)

        self._enter(JobPhase.VERIFY)
        self._verify_counts(connections)

    def _apply_ddl(
        self,
        statements: tuple[DdlStatement, ...],
        admin: DatabaseAdmin,
        connections: ConnectionManager,
        retry: RetryPolicy,
        context: RunContext,
    ) -> None:
        applied = self._applied()
        target = self._spec.target_database
        for statement in statements:
            if statement.key in applied:
                continue
            context.check(statement.table)
            if statement.kind == DdlKind.CREATE_DATABASE:
                retry.run(
                    lambda: self._create_target(admin, target),
                    description=f"create database {target}",
                    context=context,
                )
            else:
                retry.run(
                    lambda: self._execute_ddl(connections, statement),
                    description=f"apply {statement.key}",
                    context=context,
                    table=statement.table,
                )
            self._store.mark_ddl_applied(self._job_id, statement.key)
            self._logger.debug("Applied %s", statement.key, extra={"job_id": self._job_id, "table": statement.table})

    def _create_target(self, admin: DatabaseAdmin, name: str) -> None:
        if admin.database_exists(name):
            self._logger.info("Target database %s already exists", name, extra={"job_id": self._job_id})
            return
        admin.create_database(name)

    def _execute_ddl(self, connections: ConnectionManager, statement: DdlStatement) -> None:
        with connections.target_engine().connect() as conn:
            try:
                conn.exec_driver_sql(statement.sql)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _complete_empty_tables(self) -> None:
        for task in self._store.load(self._job_id).tasks:
            if task.status == TaskStatus.COMPLETED:
                continue
            self._store.start_task(self._job_id, task.name)
            self._store.complete_task(self._job_id, task.name, rows=0)
            self._tracker.table_started(task.name)
            self._tracker.table_finished(task.name, rows=0, success=True)

    def _verify_counts(self, connections: ConnectionManager) -> None:
        tasks = self._store.load(self._job_id).tasks
        with connections.target_engine().connect() as conn:
            for task in tasks:
                actual = count_rows(conn, task.name)
                if actual == task.rows_transferred:
                    continue
                raise VerificationError(
                    f"target has {actual} rows but {task.rows_transferred} were transferred",
                    table=task.name,
                )
        self._logger.info("Verified row counts for %d table(s)", len(tasks), extra={"job_id": self._job_id})

    def _stored_job(self, *, strict: bool) -> ForkJob | None:
        if self._store is None:
            return None
        try:
            return self._store.load(self._job_id)
        except Exception as exc:
            if strict:
                raise
            self._logger.error("Could not read job %s from the state store: %s", self._job_id, exc, extra={"job_id": self._job_id})
            return None

    def _result(self, *, success: bool, error: ForkError | None = None) -> ForkResult:
        job = self._stored_job(strict=success)
        plan = job.plan if job is not None and job.plan is not None else self._plan
        return ForkResult(
            job_id=self._job_id,
            success=success,
            target_database=self._spec.target_database,
            phase=job.phase if job is not None else (JobPhase.DONE if success else JobPhase.FAILED),
            strategy=plan.strategy if plan is not None else None,
            plan=plan,
            tables=tuple(job.tasks) if job is not None else (),
            duration_seconds=time.monotonic() - self._started_at,
            error=error,
        )

    def _failed_result(self, error: ForkError) -> ForkResult:
        result = self._result(success=False, error=error)
        if result.phase != JobPhase.FAILED:
            return ForkResult(
                job_id=result.job_id,
                success=False,
                target_database=result.target_database,
                phase=JobPhase.FAILED,
                strategy=result.strategy,
                plan=result.plan,
                tables=result.tables,
                duration_seconds=result.duration_seconds,
                error=error,
            )
        return result


def fork(
    spec: ForkSpec,
    *,
    cancel_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> ForkResult:
    """Blocking entry point: run ``spec`` to completion and return the terminal result."""
    orchestrator = ForkOrchestrator(
        spec,
        session_factory=session_factory,
        cancel_event=cancel_event,
        logger=logger,
    )
    return orchestrator.run()
