from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import Column, Engine, MetaData, Sequence, Table, func, inspect, select, table, text
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.schema import AddConstraint, CreateIndex, CreateSequence, CreateTable, ForeignKeyConstraint

from pgfork.fork.errors import SchemaMismatchError
from pgfork.fork.types import DdlKind, DdlStatement


@dataclass(frozen=True)
class SequenceInfo:
    name: str
    table: str
    column: str
    identity: bool
    start: int | None = None
    increment: int | None = None
    min_value: int | None = None
    max_value: int | None = None
    cycle: bool = False


@dataclass(frozen=True)
class ForeignKeyInfo:
    name: str
    table: str
    referred_table: str
    definition: str


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def count_rows(conn: Connection, table_name: str) -> int:
    return int(conn.execute(select(func.count()).select_from(table(table_name))).scalar_one())


def idempotent_constraint(sql: str, dialect: Dialect) -> str:
    """Let a PostgreSQL ``ADD CONSTRAINT`` run again after a crash without failing on the name."""
    if dialect.name != "postgresql":
        return sql
    return f"DO $$ BEGIN {sql}; EXCEPTION WHEN duplicate_object THEN NULL; END $$"


def target_foreign_keys(engine: Engine, tables: Iterable[str]) -> list[ForeignKeyInfo]:
    """Foreign keys in the target whose own or referenced table is one of ``tables``."""
    if engine.dialect.name != "postgresql":
        return []
    selected = set(tables)
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                """
                SELECT con.conname, rel.relname, ref.relname, pg_get_constraintdef(con.oid)
                FROM pg_constraint con
                JOIN pg_class rel ON rel.oid = con.conrelid
                JOIN pg_class ref ON ref.oid = con.confrelid
                JOIN pg_namespace n ON n.oid = rel.relnamespace
                WHERE con.contype = 'f'
                  AND n.nspname = current_schema()
                ORDER BY rel.relname, con.conname
                """
            )
        ).all()
    return [
        ForeignKeyInfo(name=row[0], table=row[1], referred_table=row[2], definition=row[3])
        for row in rows
        if row[1] in selected or row[2] in selected
    ]


def foreign_key_relaxation(
    foreign_keys: Iterable[ForeignKeyInfo],
    dialect: Dialect,
) -> tuple[list[DdlStatement], list[DdlStatement]]:
    """Statements dropping ``foreign_keys`` before a data load and restoring them after it."""
    quote = dialect.identifier_preparer.quote
    drops: list[DdlStatement] = []
    restores: list[DdlStatement] = []
    for fk in foreign_keys:
        drops.append(
            DdlStatement(
                key=f"fk-drop:{fk.table}.{fk.name}",
                kind=DdlKind.FOREIGN_KEY_DROP,
                sql=f"ALTER TABLE {quote(fk.table)} DROP CONSTRAINT IF EXISTS {quote(fk.name)}",
                table=fk.table,
            )
        )
        restores.append(
            DdlStatement(
                key=f"fk:{fk.table}.{fk.name}",
                kind=DdlKind.FOREIGN_KEY,
                sql=idempotent_constraint(
                    f"ALTER TABLE {quote(fk.table)} ADD CONSTRAINT {quote(fk.name)} {fk.definition}",
                    dialect,
                ),
                table=fk.table,
            )
        )
    return drops, restores


class SchemaExtractor:
    def __init__(self, source_engine: Engine, *, logger: logging.Logger | None = None):
        self._engine = source_engine
        self._logger = logger or logging.getLogger(__name__)

    @property
    def _is_postgres(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    def list_tables(self) -> list[str]:
        return sorted(inspect(self._engine).get_table_names())

    def estimate_rows(self, tables: Iterable[str]) -> dict[str, int | None]:
        names = list(tables)
        with self._engine.connect() as conn:
            if not self._is_postgres:
                return {name: count_rows(conn, name) for name in names}
            rows = conn.execute(
                text(
                    """
                    SELECT c.relname, c.reltuples
                    FROM pg_class c
                    JOIN pg_namespace n ON n.oid = c.relnamespace
                    WHERE n.nspname = current_schema()
                      AND c.relkind IN ('r', 'p')
                    """
                )
            ).all()
        stats = {str(name): float(reltuples) for name, reltuples in rows}
        estimates: dict[str, int | None] = {}
        for name in names:
            reltuples = stats.get(name)
            estimates[name] = None if reltuples is None or reltuples < 0 else int(round(reltuples))
        return estimates

    def reflect(self, tables: Iterable[str]) -> MetaData:
        metadata = MetaData()
        metadata.reflect(bind=self._engine, only=list(tables), resolve_fks=False)
        return metadata

    def sequences(self, tables: Iterable[str]) -> list[SequenceInfo]:
        if not self._is_postgres:
            return []
        selected = set(tables)
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT s.relname, t.relname, a.attname, d.deptype = 'i',
                           ps.start_value, ps.increment_by, ps.min_value, ps.max_value, ps.cycle
                    FROM pg_class s
                    JOIN pg_namespace sn ON sn.oid = s.relnamespace
                    JOIN pg_depend d
                      ON d.objid = s.oid
                     AND d.classid = 'pg_class'::regclass
                     AND d.refclassid = 'pg_class'::regclass
                     AND d.deptype IN ('a', 'i')
                    JOIN pg_class t ON t.oid = d.refobjid
                    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = d.refobjsubid
                    LEFT JOIN pg_sequences ps ON ps.schemaname = sn.nspname AND ps.sequencename = s.relname
                    WHERE s.relkind = 'S'
                      AND sn.nspname = current_schema()
                    ORDER BY t.relname, a.attname
                    """
                )
            ).all()
        return [
            SequenceInfo(
                name=row[0],
                table=row[1],
                column=row[2],
                identity=bool(row[3]),
                start=row[4],
                increment=row[5],
                min_value=row[6],
                max_value=row[7],
                cycle=bool(row[8]),
            )
            for row in rows
            if row[1] in selected
        ]

    def build_ddl(
        self,
        metadata: MetaData,
        tables: list[str],
        dialect: Dialect,
    ) -> tuple[list[DdlStatement], list[DdlStatement]]:
        """Compile schema DDL for ``dialect``.

        Returns the statements applied before data load (tables, then sequences)
        and those applied after it (all indexes, then foreign keys, then sequence
        positions).
        """
        selected = set(tables)
        supports_sequences = bool(dialect.supports_sequences)
        sequences = self.sequences(tables) if supports_sequences else []
        owned = {(seq.table, seq.column): seq for seq in sequences if not seq.identity}
        quote = dialect.identifier_preparer.quote

        schema_ddl: list[DdlStatement] = []
        post_data_ddl: list[DdlStatement] = []
        foreign_key_ddl: list[DdlStatement] = []
        identity_always: list[tuple[str, str]] = []

        for name in tables:
            source_table = metadata.tables[name]
            for column in source_table.columns:
                self._strip_sequence_default(column, owned.get((name, column.name)), supports_sequences)
                if column.identity is not None and column.identity.always:
                    column.identity.always = False
                    identity_always.append((name, column.name))

            in_scope, skipped = self._partition_foreign_keys(source_table, selected)
            for fkc in skipped:
                self._logger.warning(
                    "Skipping foreign key %s on %s: referenced table %s is not part of the fork",
                    fkc.name or "<unnamed>",
                    name,
                    fkc.elements[0].target_fullname.split(".")[-2],
                )
            inline_fks = [] if dialect.supports_alter else in_scope
            create = CreateTable(source_table, include_foreign_key_constraints=inline_fks, if_not_exists=True)
            schema_ddl.append(
                DdlStatement(key=f"table:{name}", kind=DdlKind.TABLE, sql=str(create.compile(dialect=dialect)).strip(), table=name)
            )

            for index in sorted(source_table.indexes, key=lambda item: item.name or ""):
                post_data_ddl.append(
                    DdlStatement(
                        key=f"index:{name}.{index.name}",
                        kind=DdlKind.INDEX,
                        sql=str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)).strip(),
                        table=name,
                    )
                )

            if dialect.supports_alter:
                for position, fkc in enumerate(in_scope):
                    foreign_key_ddl.append(
                        DdlStatement(
                            key=f"fk:{name}.{fkc.name or position}",
                            kind=DdlKind.FOREIGN_KEY,
                            sql=idempotent_constraint(str(AddConstraint(fkc).compile(dialect=dialect)).strip(), dialect),
                            table=name,
                        )
                    )

        # Every index exists before the first foreign key that may rely on it.
        post_data_ddl.extend(foreign_key_ddl)

        for seq in owned.values():
            schema_ddl.extend(self._sequence_ddl(seq, dialect))

        for seq in sequences:
            qualified_table = quote(seq.table)
            qualified_column = quote(seq.column)
            post_data_ddl.append(
                DdlStatement(
                    key=f"setval:{seq.table}.{seq.column}",
                    kind=DdlKind.SEQUENCE_SYNC,
                    sql=(
                        f"SELECT setval(pg_get_serial_sequence({_literal(qualified_table)}, {_literal(seq.column)}), "
                        f"COALESCE(MAX({qualified_column}), 0) + 1, false) FROM {qualified_table}"
                    ),
                    table=seq.table,
                )
            )

        for table_name, column_name in identity_always:
            post_data_ddl.append(
                DdlStatement(
                    key=f"identity:{table_name}.{column_name}",
                    kind=DdlKind.SEQUENCE,
                    sql=f"ALTER TABLE {quote(table_name)} ALTER COLUMN {quote(column_name)} SET GENERATED ALWAYS",
                    table=table_name,
                )
            )

        if sequences and not supports_sequences:
            self._logger.warning("Destination dialect %s has no sequences; sequence state is not copied", dialect.name)
        return schema_ddl, post_data_ddl

    def verify_destination(self, metadata: MetaData, tables: list[str], target_engine: Engine) -> None:
        inspector = inspect(target_engine)
        existing = set(inspector.get_table_names())
        for name in tables:
            if name not in existing:
                raise SchemaMismatchError("table does not exist in the target database", table=name)
            target_columns = {column["name"] for column in inspector.get_columns(name)}
            missing = [column.name for column in metadata.tables[name].columns if column.name not in target_columns]
            if missing:
                raise SchemaMismatchError(
                    f"target table is missing required columns: {', '.join(missing)}",
                    table=name,
                )

    def _strip_sequence_default(self, column: Column, seq: SequenceInfo | None, supports_sequences: bool) -> None:
        default = column.server_default
        if default is None:
            return
        expression = str(getattr(default, "arg", "")).lower()
        if "nextval(" not in expression:
            return
        if seq is None and supports_sequences:
            self._logger.warning(
                "Column %s.%s uses a sequence that is not owned by it; the default is dropped",
                column.table.name,
                column.name,
            )
        column.server_default = None
        column.autoincrement = False

    def _partition_foreign_keys(
        self,
        source_table: Table,
        selected: set[str],
    ) -> tuple[list[ForeignKeyConstraint], list[ForeignKeyConstraint]]:
        in_scope: list[ForeignKeyConstraint] = []
        skipped: list[ForeignKeyConstraint] = []
        for fkc in sorted(source_table.foreign_key_constraints, key=lambda item: item.name or ""):
            referred = fkc.elements[0].target_fullname.split(".")[-2]
            (in_scope if referred in selected else skipped).append(fkc)
        return in_scope, skipped

    def _sequence_ddl(self, seq: SequenceInfo, dialect: Dialect) -> list[DdlStatement]:
        quote = dialect.identifier_preparer.quote
        sequence = Sequence(
            seq.name,
            start=seq.start,
            increment=seq.increment,
            minvalue=seq.min_value,
            maxvalue=seq.max_value,
            cycle=seq.cycle,
        )
        create = str(CreateSequence(sequence, if_not_exists=True).compile(dialect=dialect)).strip()
        return [
            DdlStatement(key=f"sequence:{seq.name}", kind=DdlKind.SEQUENCE, sql=create, table=seq.table),
            DdlStatement(
                key=f"sequence-owner:{seq.name}",
                kind=DdlKind.SEQUENCE,
                sql=f"ALTER SEQUENCE {quote(seq.name)} OWNED BY {quote(seq.table)}.{quote(seq.column)}",
                table=seq.table,
            ),
            DdlStatement(
                key=f"sequence-default:{seq.table}.{seq.column}",
                kind=DdlKind.SEQUENCE,
                sql=(
                    f"ALTER TABLE {quote(seq.table)} ALTER COLUMN {quote(seq.column)} "
                    f"SET DEFAULT nextval({_literal(quote(seq.name))}::regclass)"
                ),
                table=seq.table,
            ),
        ]
