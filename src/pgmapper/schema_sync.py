from __future__ import annotations

import logging
from typing import Any, Iterable

from pgmapper.catalog import Catalog, ColumnDescriptor, FkAction, ModelDescriptor
from pgmapper.errors import SchemaSyncError
from pgmapper.psql_client import PgConnection

logger = logging.getLogger(__name__)


class SchemaSynchronizer:
    """
    Create missing tables and columns for every model in a catalog.

    Additive only: existing columns are never altered or dropped. Tables are
    created by repeated passes; a table whose REFERENCES target does not exist
    yet fails and is retried on the next pass. A pass that creates nothing
    aborts with SchemaSyncError.

    Run once, single-threaded, before serving traffic.
    """

    _TABLES_QUERY = """
        SELECT table_schema, table_name
        FROM information_schema.tables
        WHERE table_type = 'BASE TABLE';
    """
    _COLUMNS_QUERY = """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = $1 AND table_name = $2
        ORDER BY ordinal_position;
    """

    def __init__(self, catalog: Catalog, connection: PgConnection):
        self.catalog = catalog
        self.connection = connection

    def ensure_schema(self) -> set[tuple[str, str]]:
        """
        Returns:
            Set of (schema, table) entries that were created.
        """
        self._ensure_schemas()
        existing = self._existing_tables()
        pending = [m for m in self.catalog if (m.schema, m.table) not in existing]
        created = self._create_tables(pending)

        for model in self.catalog:
            if (model.schema, model.table) in created:
                continue
            self._add_missing_columns(model)
        return created

    # ---------- Inventory ----------
    def _ensure_schemas(self) -> None:
        for schema in sorted({m.schema for m in self.catalog}):
            result = self.connection.execute(f'CREATE SCHEMA IF NOT EXISTS "{schema}"')
            if not result.ok:
                logger.warning("Failed to ensure schema %s: %s", schema, result.error_message)

    def _existing_tables(self) -> set[tuple[str, str]]:
        result = self.connection.execute(self._TABLES_QUERY)
        if not result.ok:
            logger.error("Failed to list tables: %s", result.error_message)
            raise SchemaSyncError(f"Failed to list tables: {result.error_message}")
        return {(row[0], row[1]) for row in result.rows}

    # ---------- Tables ----------
    def _create_tables(self, pending: Iterable[ModelDescriptor]) -> set[tuple[str, str]]:
        pending = list(pending)
        created: set[tuple[str, str]] = set()
        pass_num = 0

        while pending:
            pass_num += 1
            deferred = []
            for model in pending:
                result = self.connection.execute(self.create_table_sql(model))
                if result.ok:
                    logger.info("Created table %s.%s", model.schema, model.table)
                    created.add((model.schema, model.table))
                    self._ensure_indexes(model)
                else:
                    logger.debug(
                        "Deferring table %s.%s to next pass (pass %d): %s",
                        model.schema,
                        model.table,
                        pass_num,
                        result.error_message,
                    )
                    deferred.append(model)

            if len(deferred) == len(pending):
                names = [(m.schema, m.table) for m in deferred]
                logger.error("Table creation made no progress on pass %d; pending: %s", pass_num, names)
                raise SchemaSyncError("Table creation made no progress", names)
            pending = deferred

        return created

    def create_table_sql(self, model: ModelDescriptor) -> str:
        col_bits = ", ".join(self.column_sql(model, c) for c in model.columns)
        return f"CREATE TABLE {model.qualified_table} ({col_bits})"

    def _ensure_indexes(self, model: ModelDescriptor) -> None:
        for c in model.columns:
            if not c.index or c.primary_key:
                continue
            idx_name = f"{model.table}_{c.name}_idx"
            result = self.connection.execute(
                f'CREATE INDEX IF NOT EXISTS "{idx_name}" ON {model.qualified_table} ("{c.name}")'
            )
            if result.ok:
                logger.info("Created index %s on %s.%s(%s)", idx_name, model.schema, model.table, c.name)
            else:
                logger.warning("Failed to create index %s: %s", idx_name, result.error_message)

    # ---------- Columns ----------
    def _add_missing_columns(self, model: ModelDescriptor) -> list[str]:
        result = self.connection.execute_params(self._COLUMNS_QUERY, [model.schema, model.table])
        if not result.ok:
            logger.warning("Failed to read columns of %s.%s: %s", model.schema, model.table, result.error_message)
            return []

        existing = {row[0] for row in result.rows}
        added = []
        for c in model.columns:
            if c.name in existing:
                continue
            text = f"ALTER TABLE {model.qualified_table} ADD COLUMN {self.column_sql(model, c)}"
            altered = self.connection.execute(text)
            if altered.ok:
                logger.info("Added column %s.%s.%s", model.schema, model.table, c.name)
                added.append(c.name)
            else:
                logger.warning(
                    "Could not add column %s.%s.%s: %s",
                    model.schema,
                    model.table,
                    c.name,
                    altered.error_message,
                )

        extras = sorted(existing - {c.name for c in model.columns})
        if extras:
            logger.warning("Table %s.%s has extra columns not in catalog: %s", model.schema, model.table, extras)
        return added

    def column_sql(self, model: ModelDescriptor, c: ColumnDescriptor) -> str:
        bits = [f'"{c.name}"', c.type]
        if c.default is not None:
            bits.append(f"DEFAULT {self._default_sql(c)}")
        if c.primary_key:
            bits.append("PRIMARY KEY")
        elif c.unique:
            bits.append("UNIQUE")
        if not c.nullable:
            bits.append("NOT NULL")
        for check in c.checks:
            bits.append(f'CONSTRAINT "{check.name}" CHECK ({check.condition})')
        if c.choices:
            con_name = f"{model.table}_{c.name}_enum_check"
            bits.append(f'CONSTRAINT "{con_name}" CHECK ("{c.name}" IN ({self._enum_values_sql(c.choices)}))')

        fk = c.foreign_key
        if fk is not None:
            target = self.catalog.require(fk.model)
            frag = f"REFERENCES {target.qualified_table} ({fk.column})"
            if fk.on_delete is not FkAction.NO_ACTION:
                frag += f" ON DELETE {fk.on_delete.value}"
            if fk.on_update is not FkAction.NO_ACTION:
                frag += f" ON UPDATE {fk.on_update.value}"
            bits.append(frag)
        return " ".join(bits)

    def _literal_sql(self, value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float)):
            return str(value)
        return self.connection.escape(str(value))

    def _default_sql(self, c: ColumnDescriptor) -> str:
        if c.default_is_expression:
            return str(c.default)
        return self._literal_sql(c.default)

    def _enum_values_sql(self, values: Iterable[Any]) -> str:
        return ", ".join(self._literal_sql(v) for v in values)


def ensure_schema(catalog: Catalog, connection: PgConnection) -> set[tuple[str, str]]:
    """
    Convenience wrapper:

        ensure_schema(catalog, PgConnection.connect(database="app"))
    """
    return SchemaSynchronizer(catalog, connection).ensure_schema()
