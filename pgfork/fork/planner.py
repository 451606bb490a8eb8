from __future__ import annotations

import logging

from sqlalchemy import MetaData

from pgfork.db.admin import DatabaseAdmin, admin_for
from pgfork.db.connections import ConnectionManager, inspect_server
from pgfork.db.models import Strategy
from pgfork.fork.context import RunContext
from pgfork.fork.errors import PlanningError, SchemaMismatchError
from pgfork.fork.retry import RetryPolicy
from pgfork.fork.schema import SchemaExtractor, foreign_key_relaxation, target_foreign_keys
from pgfork.fork.types import DdlKind, DdlStatement, ForkSpec, PlannedTable, TransferPlan


def select_tables(catalog: list[str], include: tuple[str, ...], exclude: tuple[str, ...]) -> list[str]:
    """Include is an allow-list when non-empty; exclude is applied after it."""
    allowed = set(include)
    selected = [name for name in catalog if name in allowed] if include else list(catalog)
    excluded = set(exclude)
    return [name for name in selected if name not in excluded]


class StrategyPlanner:
    def __init__(
        self,
        spec: ForkSpec,
        connections: ConnectionManager,
        *,
        retry_policy: RetryPolicy,
        context: RunContext,
    ):
        self._spec = spec
        self._connections = connections
        self._retry = retry_policy
        self._context = context
        self._logger = context.logger
        self.metadata: MetaData | None = None

    def source_admin(self) -> DatabaseAdmin:
        return admin_for(self._spec.source, self._connections, logger=self._logger)

    def destination_admin(self) -> DatabaseAdmin:
        return admin_for(self._spec.destination, self._connections, logger=self._logger)

    def decide_strategy(self) -> Strategy:
        spec = self._spec
        source_role = self._retry.run(
            lambda: inspect_server(self._connections.source_engine()).current_user,
            description="inspect source server",
            context=self._context,
        )
        destination_role = self._retry.run(
            self.destination_admin().current_user,
            description="inspect destination server",
            context=self._context,
        )
        source_identity = spec.source.server_identity()[:3] + (source_role or spec.source.user,)
        destination_identity = spec.destination.server_identity()[:3] + (destination_role or spec.destination.user,)
        if source_identity != destination_identity:
            return Strategy.CROSS_SERVER
        if spec.schema_only or spec.data_only or spec.has_table_filters:
            self._logger.info("Selective options requested on the same server; using cross-server transfer")
            return Strategy.CROSS_SERVER
        return Strategy.SAME_SERVER

    def _relax_target_foreign_keys(self, tables: list[str]) -> tuple[list[DdlStatement], list[DdlStatement]]:
        """A data-only load fills tables in parallel, so existing foreign keys are lifted until it finishes."""
        target_engine = self._connections.target_engine()
        foreign_keys = self._retry.run(
            lambda: target_foreign_keys(target_engine, tables),
            description="read target foreign keys",
            context=self._context,
        )
        if foreign_keys:
            self._logger.info(
                "Dropping %d foreign key(s) on the target for the data load; they are restored afterwards",
                len(foreign_keys),
            )
        return foreign_key_relaxation(foreign_keys, target_engine.dialect)

    def plan(self) -> TransferPlan:
        spec = self._spec
        source_exists = self._retry.run(
            lambda: self.source_admin().database_exists(spec.source.database),
            description="check source database",
            context=self._context,
        )
        if not source_exists:
            raise PlanningError(f"Source database '{spec.source.database}' does not exist")

        strategy = self.decide_strategy()
        target_exists = self._retry.run(
            lambda: self.destination_admin().database_exists(spec.target_database),
            description="check target database",
            context=self._context,
        )
        if spec.data_only and not target_exists:
            raise SchemaMismatchError(f"Target database '{spec.target_database}' must exist for a data-only fork")
        if target_exists and not spec.drop_if_exists and not spec.data_only:
            raise PlanningError(
                f"Target database '{spec.target_database}' already exists (use drop_if_exists to overwrite)"
            )

        extractor = SchemaExtractor(self._connections.source_engine(), logger=self._logger)
        catalog = self._retry.run(extractor.list_tables, description="list source tables", context=self._context)
        tables = select_tables(catalog, spec.include_tables, spec.exclude_tables)

        missing = sorted(set(spec.include_tables) - set(catalog))
        if missing:
            self._logger.warning("Included tables not found in source: %s", ", ".join(missing))
        if spec.has_table_filters and not tables:
            raise PlanningError("Table filters selected no tables from the source database")

        estimates = self._retry.run(
            lambda: extractor.estimate_rows(tables),
            description="estimate source row counts",
            context=self._context,
        )
        planned = tuple(PlannedTable(name=name, estimated_rows=estimates.get(name)) for name in tables)

        if strategy == Strategy.SAME_SERVER:
            clone = DdlStatement(
                key="clone",
                kind=DdlKind.CLONE,
                sql=f'CREATE DATABASE "{spec.target_database}" WITH TEMPLATE "{spec.source.database}"',
            )
            plan = TransferPlan(strategy=strategy, tables=planned, schema_ddl=(clone,), target_exists=target_exists)
        else:
            schema_ddl: list[DdlStatement] = []
            post_data_ddl: list[DdlStatement] = []
            self.metadata = self._retry.run(
                lambda: extractor.reflect(tables),
                description="reflect source schema",
                context=self._context,
            )
            if not spec.data_only:
                schema_ddl.append(
                    DdlStatement(
                        key="create-database",
                        kind=DdlKind.CREATE_DATABASE,
                        sql=f'CREATE DATABASE "{spec.target_database}"',
                    )
                )
                table_ddl, post_data_ddl = extractor.build_ddl(
                    self.metadata,
                    tables,
                    self._connections.target_engine().dialect,
                )
                schema_ddl.extend(table_ddl)
            else:
                drops, restores = self._relax_target_foreign_keys(tables)
                schema_ddl.extend(drops)
                post_data_ddl = restores
            plan = TransferPlan(
                strategy=strategy,
                tables=planned,
                schema_ddl=tuple(schema_ddl),
                post_data_ddl=tuple(post_data_ddl),
                target_exists=target_exists,
            )

        self._logger.info(
            "Planned %s fork of %d table(s) from %s into %s (%d schema statements, %d post-data statements)",
            plan.strategy.value,
            len(plan.tables),
            spec.source.describe(),
            spec.destination.describe(spec.target_database),
            len(plan.schema_ddl),
            len(plan.post_data_ddl),
        )
        return plan
