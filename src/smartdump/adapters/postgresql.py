import itertools
import re
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from smartdump.adapters.base import StoreAdapter
from smartdump.config import DatabaseType, validate_conditions
from smartdump.constants import DEFAULT_FETCH_SIZE, DEFAULT_POSTGRESQL_SCHEMA
from smartdump.exceptions import ConnectionError, DumpError, SchemaIntrospectionError
from smartdump.logging import get_logger, log_query_execution
from smartdump.models import ForeignKey, Row, Table
from smartdump.utils.connection import parse_database_url

logger = get_logger(__name__)

_IDENTIFIER = r'(?:"(?:[^"]|"")*"|[^\s(."]+)'
REFERENCES_PATTERN = re.compile(rf"REFERENCES\s+{_IDENTIFIER}(?:\.{_IDENTIFIER})?\(")

SERIAL_TYPES = {
    "smallint": "smallserial",
    "integer": "serial",
    "bigint": "bigserial",
}

_cursor_ids = itertools.count(1)


class PostgreSQLAdapter(StoreAdapter):
    """PostgreSQL-specific store adapter."""

    def __init__(self, schema: str | None = None, fetch_size: int | None = None):
        self._conn: Any = None
        self._schema_name = schema or DEFAULT_POSTGRESQL_SCHEMA
        self.fetch_size = fetch_size or DEFAULT_FETCH_SIZE

    def connect(self, url: str) -> None:
        """
        Open the connection in autocommit mode.

        A non-default schema goes first on the search_path, ahead of public.
        """
        config = parse_database_url(url)
        if config.db_type != DatabaseType.POSTGRESQL:
            raise ConnectionError(url, f"Expected PostgreSQL URL, got {config.db_type.value}")

        logger.debug("Connecting to PostgreSQL", url=config.masked_url)
        try:
            self._conn = psycopg2.connect(**config.driver_kwargs("dbname"))
            self._conn.autocommit = True
            if self._schema_name != DEFAULT_POSTGRESQL_SCHEMA:
                with self._conn.cursor() as cur:
                    cur.execute("SET search_path TO %s, public", (self._schema_name,))
        except psycopg2.Error as e:
            logger.error("PostgreSQL connection failed", error=str(e), exc_info=True)
            raise ConnectionError(url, str(e))

        logger.info(
            "PostgreSQL connection established",
            database=config.database,
            schema=self._schema_name,
        )

    def close(self) -> None:
        """Close PostgreSQL connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("PostgreSQL connection closed")

    @property
    def default_schema(self) -> str:
        return self._schema_name

    def begin_transaction(self) -> None:
        """Begin a read-only snapshot transaction with REPEATABLE READ isolation."""
        self._conn.autocommit = False
        with self._conn.cursor() as cur:
            cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
        logger.debug("Snapshot transaction started")

    def end_transaction(self) -> None:
        """End the snapshot transaction."""
        if self._conn:
            self._conn.rollback()  # read-only, so rollback is fine
            self._conn.autocommit = True
            logger.debug("Snapshot transaction ended")

    def list_tables(self, schema: str | None = None) -> list[Table]:
        schema = schema or self._schema_name
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT table_name
                    FROM information_schema.tables
                    WHERE table_schema = %s
                      AND table_type = 'BASE TABLE'
                    ORDER BY table_name
                    """,
                    (schema,),
                )
                return [Table(schema=schema, name=row[0]) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error("Failed to list tables", schema=schema, error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e))

    def get_primary_key_columns(self, table: Table) -> list[str]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT kcu.column_name
                    FROM information_schema.table_constraints tc
                    JOIN information_schema.key_column_usage kcu
                        ON tc.constraint_name = kcu.constraint_name
                        AND tc.table_schema = kcu.table_schema
                        AND tc.table_name = kcu.table_name
                    WHERE tc.constraint_type = 'PRIMARY KEY'
                      AND tc.table_schema = %s
                      AND tc.table_name = %s
                    ORDER BY kcu.ordinal_position
                    """,
                    (table.schema, table.name),
                )
                return [row[0] for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error("Failed to fetch primary key", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        """Fetch the foreign keys declared on a table.

        Uses pg_catalog instead of information_schema to correctly handle
        composite foreign keys. The information_schema approach produces a
        cross product between source and target columns for multi-column FKs.
        """
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        c.conname AS constraint_name,
                        target_ns.nspname AS target_schema,
                        target_cls.relname AS target_table,
                        a_source.attname AS source_column,
                        a_target.attname AS target_column
                    FROM pg_constraint c
                    JOIN pg_class source_cls ON c.conrelid = source_cls.oid
                    JOIN pg_namespace source_ns ON source_cls.relnamespace = source_ns.oid
                    JOIN pg_class target_cls ON c.confrelid = target_cls.oid
                    JOIN pg_namespace target_ns ON target_cls.relnamespace = target_ns.oid
                    CROSS JOIN LATERAL unnest(c.conkey, c.confkey)
                        WITH ORDINALITY AS u(source_attnum, target_attnum, ord)
                    JOIN pg_attribute a_source
                        ON a_source.attrelid = c.conrelid
                        AND a_source.attnum = u.source_attnum
                    JOIN pg_attribute a_target
                        ON a_target.attrelid = c.confrelid
                        AND a_target.attnum = u.target_attnum
                    WHERE c.contype = 'f'
                      AND source_ns.nspname = %s
                      AND source_cls.relname = %s
                    ORDER BY c.conname, u.ord
                    """,
                    (table.schema, table.name),
                )
                rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error("Failed to fetch foreign keys", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

        # Group by constraint name for multi-column FKs
        fk_data: dict[str, dict] = {}
        for constraint_name, target_schema, target_table, source_col, target_col in rows:
            if constraint_name not in fk_data:
                fk_data[constraint_name] = {
                    "referenced_table": Table(schema=target_schema, name=target_table),
                    "columns": {},
                }
            fk_data[constraint_name]["columns"][source_col] = target_col

        foreign_keys = []
        for name, data in fk_data.items():
            referenced_pk = self.get_primary_key_columns(data["referenced_table"])
            foreign_keys.append(
                ForeignKey(
                    schema=table.schema,
                    name=name,
                    table=table,
                    referenced_table=data["referenced_table"],
                    columns=data["columns"],
                    targets_primary_key=sorted(data["columns"].values()) == sorted(referenced_pk),
                )
            )
        return foreign_keys

    def read_table(self, table: Table, conditions: str | None = None) -> Iterator[Row]:
        """
        Scan a table.

        Inside a transaction, a named cursor streams rows from the server
        `fetch_size` at a time so other queries can run between fetches.
        """
        # Conditions are normally validated when parsed; check again before execution
        if conditions:
            validate_conditions(conditions)

        query = self.build_select(table, conditions)
        log_query_execution(logger, query, ())

        try:
            if self._conn.autocommit:
                cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            else:
                cursor_name = f"smartdump_scan_{next(_cursor_ids)}"
                cursor = self._conn.cursor(
                    name=cursor_name, cursor_factory=psycopg2.extras.RealDictCursor
                )
                cursor.itersize = self.fetch_size

            with cursor as cur:
                cur.execute(query)
                row_count = 0
                for row in cur:
                    row_count += 1
                    yield dict(row)
                logger.debug("Scanned table", table=str(table), row_count=row_count)
        except psycopg2.Error as e:
            logger.error("Failed to read table", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read rows: {e}", table=table) from e

    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        query, params = self.build_key_lookup(table, key)
        try:
            with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error("Failed to read row", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read row: {e}", table=table) from e
        return self.single_row(table, key, rows)

    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        """
        Rebuild a CREATE TABLE statement from the catalog.

        Columns keep their declared types, defaults and NOT NULL flags. Sequence
        defaults become serial types and identity columns become
        `GENERATED BY DEFAULT AS IDENTITY`, so dumped key values can be inserted.
        Primary key, unique and check constraints follow the columns. Foreign
        keys are left to get_add_foreign_keys_sql: PostgreSQL rejects a
        REFERENCES clause naming a table that does not exist yet.
        """
        relation = self.get_table_identifier(table)
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        a.attname,
                        pg_catalog.format_type(a.atttypid, a.atttypmod),
                        a.attnotnull,
                        pg_catalog.pg_get_expr(d.adbin, d.adrelid),
                        a.attidentity
                    FROM pg_catalog.pg_attribute a
                    LEFT JOIN pg_catalog.pg_attrdef d
                        ON d.adrelid = a.attrelid AND d.adnum = a.attnum
                    WHERE a.attrelid = %s::regclass
                      AND a.attnum > 0
                      AND NOT a.attisdropped
                    ORDER BY a.attnum
                    """,
                    (relation,),
                )
                columns = cur.fetchall()
        except psycopg2.Error as e:
            logger.error("Failed to read table definition", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

        if not columns:
            raise SchemaIntrospectionError(f"Table '{table}' has no columns")

        lines = []
        for name, data_type, not_null, default, identity in columns:
            line = f"{self.quote_identifier(name)} "
            if default and default.startswith("nextval(") and data_type in SERIAL_TYPES:
                line += SERIAL_TYPES[data_type]
            else:
                line += data_type
                if identity in ("a", "d"):
                    line += " GENERATED BY DEFAULT AS IDENTITY"
                elif default is not None:
                    line += f" DEFAULT {default}"
            if not_null:
                line += " NOT NULL"
            lines.append(line)

        for name, _, definition in self._get_constraints(table, ("p", "u", "c")):
            lines.append(f"CONSTRAINT {self.quote_identifier(name)} {definition}")

        body = ",\n".join(f"    {line}" for line in lines)
        return f"CREATE TABLE {self._output_identifier(table, include_schema_name)} (\n{body}\n);"

    def get_add_foreign_keys_sql(
        self, table: Table, foreign_keys: Sequence[ForeignKey], include_schema_name: bool
    ) -> list[str]:
        """
        Get one ALTER TABLE ... ADD CONSTRAINT statement per given foreign key.

        REFERENCES targets follow the same schema qualification choice as the
        altered table.
        """
        if not foreign_keys:
            return []

        by_name = {fk.name: fk for fk in foreign_keys}
        identifier = self._output_identifier(table, include_schema_name)

        statements = []
        for name, _, definition in self._get_constraints(table, ("f",)):
            if name not in by_name:
                continue
            referenced = by_name[name].referenced_table
            definition = self._rewrite_references(definition, referenced, include_schema_name)
            statements.append(
                f"ALTER TABLE {identifier} ADD CONSTRAINT {self.quote_identifier(name)} "
                f"{definition};"
            )
        return statements

    def _get_constraints(self, table: Table, types: Sequence[str]) -> list[tuple[str, str, str]]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT conname, contype, pg_catalog.pg_get_constraintdef(oid, true)
                    FROM pg_catalog.pg_constraint
                    WHERE conrelid = %s::regclass
                      AND contype = ANY(%s)
                    ORDER BY contype, conname
                    """,
                    (self.get_table_identifier(table), list(types)),
                )
                return cur.fetchall()
        except psycopg2.Error as e:
            logger.error("Failed to read constraints", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

    def _output_identifier(self, table: Table, include_schema_name: bool) -> str:
        if include_schema_name:
            return self.get_table_identifier(table)
        return self.quote_identifier(table.name)

    def _rewrite_references(
        self, definition: str, referenced: Table, include_schema_name: bool
    ) -> str:
        if include_schema_name:
            target = self.get_table_identifier(referenced)
        else:
            target = self.quote_identifier(referenced.name)
        return REFERENCES_PATTERN.sub(
            lambda _: f"REFERENCES {target}(", definition, count=1
        )

    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        return f"DROP TABLE IF EXISTS {table_identifier} CASCADE;"

    def get_disable_foreign_keys_sql(self) -> str:
        # Skips FK triggers for the session; requires superuser or replication rights
        return "SET session_replication_role = replica;"

    def get_enable_foreign_keys_sql(self) -> str:
        return "SET session_replication_role = DEFAULT;"

    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        columns, values = self.format_row(row)
        conflict = ", ".join(self.quote_identifier(column) for column in key_columns)
        updates = [
            f"{self.quote_identifier(column)} = EXCLUDED.{self.quote_identifier(column)}"
            for column in row
            if column not in key_columns
        ]
        action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        return (
            f"INSERT INTO {table_identifier} ({columns}) VALUES ({values}) "
            f"ON CONFLICT ({conflict}) {action};"
        )

    def quote_value(self, value: Any) -> str:
        """Quote a value using psycopg2's own adaptation."""
        if value is None:
            return "NULL"
        with self._conn.cursor() as cur:
            literal = cur.mogrify("%s", (value,))
        encoding = psycopg2.extensions.encodings.get(self._conn.encoding, "utf-8")
        return literal.decode(encoding)
