import datetime
import math
import re
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from smartdump.adapters.base import StoreAdapter
from smartdump.config import DatabaseType, validate_conditions
from smartdump.constants import DEFAULT_SQLITE_SCHEMA
from smartdump.exceptions import ConnectionError, DumpError, SchemaIntrospectionError
from smartdump.logging import get_logger, log_query_execution
from smartdump.models import ForeignKey, Row, Table
from smartdump.utils.connection import parse_database_url

logger = get_logger(__name__)

_NAME = r'(?:"(?:[^"]|"")*"|\[[^\]]*\]|`(?:[^`]|``)*`|[^\s(.]+)'
CREATE_TABLE_PATTERN = re.compile(
    rf"^CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?:{_NAME}\s*\.\s*)?{_NAME}",
    re.IGNORECASE,
)


class SQLiteAdapter(StoreAdapter):
    """
    SQLite store adapter.

    Schemas are SQLite database names: `main` for the opened file, or the
    name of an attached database. Foreign keys can only reference tables of
    their own schema.
    """

    def __init__(self, schema: str | None = None, connection: sqlite3.Connection | None = None):
        self._conn: sqlite3.Connection | None = connection
        self._schema_name = schema or DEFAULT_SQLITE_SCHEMA
        self._owns_transaction = False

    def connect(self, url: str) -> None:
        """Open the SQLite database file named by the URL."""
        config = parse_database_url(url)

        if config.db_type != DatabaseType.SQLITE:
            raise ConnectionError(url, f"Expected SQLite URL, got {config.db_type.value}")

        if config.database != ":memory:" and not Path(config.database).is_file():
            raise ConnectionError(url, f"Database file not found: {config.database}")

        logger.debug("Opening SQLite database", database=config.database)

        try:
            # autocommit mode; transactions are started explicitly
            self._conn = sqlite3.connect(config.database, isolation_level=None)
        except sqlite3.Error as e:
            logger.error("SQLite connection failed", error=str(e), exc_info=True)
            raise ConnectionError(url, str(e))

        logger.info("SQLite database opened", database=config.database)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("SQLite connection closed")

    @property
    def default_schema(self) -> str:
        return self._schema_name

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ConnectionError("sqlite://", "not connected")
        return self._conn

    def begin_transaction(self) -> None:
        """
        Begin a deferred transaction.

        SQLite takes its read snapshot at the first read, and keeps it until
        the transaction ends.
        """
        if not self.connection.in_transaction:
            self.connection.execute("BEGIN")
            self._owns_transaction = True
            logger.debug("Snapshot transaction started")

    def end_transaction(self) -> None:
        if self._conn is not None and self._owns_transaction:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            self._owns_transaction = False
            logger.debug("Snapshot transaction ended")

    def _query(self, query: str, params: Sequence[Any] = ()) -> list[Row]:
        cursor = self.connection.execute(query, tuple(params))
        columns = [description[0] for description in cursor.description or ()]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def list_tables(self, schema: str | None = None) -> list[Table]:
        schema = schema or self._schema_name
        try:
            rows = self._query(
                f"SELECT name FROM {self.quote_identifier(schema)}.sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
        except sqlite3.Error as e:
            logger.error("Failed to list tables", schema=schema, error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e))
        return [Table(schema=schema, name=row["name"]) for row in rows]

    def _pragma(self, pragma: str, table: Table) -> list[Row]:
        try:
            return self._query(
                f"PRAGMA {self.quote_identifier(table.schema)}.{pragma}"
                f"({self.quote_identifier(table.name)})"
            )
        except sqlite3.Error as e:
            logger.error(f"PRAGMA {pragma} failed", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

    def get_primary_key_columns(self, table: Table) -> list[str]:
        columns = [row for row in self._pragma("table_info", table) if row["pk"] > 0]
        return [row["name"] for row in sorted(columns, key=lambda row: row["pk"])]

    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        """
        Get the table's foreign keys, in declaration order.

        SQLite foreign keys are unnamed; they are named `<table>_fk_<n>` after
        their position. A foreign key declared without target columns
        references the primary key of its table.
        """
        fk_rows = sorted(self._pragma("foreign_key_list", table), key=lambda r: (r["id"], r["seq"]))

        grouped: dict[int, list[Row]] = {}
        for row in fk_rows:
            grouped.setdefault(row["id"], []).append(row)

        foreign_keys = []
        for position, (fk_id, rows) in enumerate(sorted(grouped.items())):
            referenced_table = Table(schema=table.schema, name=rows[0]["table"])
            referenced_pk = self.get_primary_key_columns(referenced_table)

            if any(row["to"] is None for row in rows):
                targets = referenced_pk
            else:
                targets = [row["to"] for row in rows]

            if len(targets) != len(rows):
                raise SchemaIntrospectionError(
                    f"Foreign key #{fk_id} of '{table}' does not match the columns "
                    f"of '{referenced_table}'"
                )

            columns = {row["from"]: target for row, target in zip(rows, targets)}
            foreign_keys.append(
                ForeignKey(
                    schema=table.schema,
                    name=f"{table.name}_fk_{position}",
                    table=table,
                    referenced_table=referenced_table,
                    columns=columns,
                    targets_primary_key=sorted(targets) == sorted(referenced_pk),
                )
            )
        return foreign_keys

    def read_table(self, table: Table, conditions: str | None = None) -> Iterator[Row]:
        if conditions:
            validate_conditions(conditions)

        query = self.build_select(table, conditions)
        log_query_execution(logger, query, ())

        try:
            cursor = self.connection.execute(query)
        except sqlite3.Error as e:
            logger.error("Failed to read table", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read rows: {e}", table=table) from e

        columns = [description[0] for description in cursor.description]
        row_count = 0
        try:
            for values in cursor:
                row_count += 1
                yield dict(zip(columns, values))
        finally:
            cursor.close()
        logger.debug("Scanned table", table=str(table), row_count=row_count)

    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        query, params = self.build_key_lookup(table, key)
        try:
            rows = self._query(query, params)
        except sqlite3.Error as e:
            logger.error("Failed to read row", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read row: {e}", table=table) from e
        return self.single_row(table, key, rows)

    def get_placeholder(self) -> str:
        return "?"

    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        """
        Get the table's original CREATE TABLE statement, renamed for the output.

        Only the created table's name follows `include_schema_name`: SQLite
        does not accept schema-qualified REFERENCES targets.
        """
        try:
            rows = self._query(
                f"SELECT sql FROM {self.quote_identifier(table.schema)}.sqlite_master "
                "WHERE type = 'table' AND name = ?",
                (table.name,),
            )
        except sqlite3.Error as e:
            logger.error("Failed to read table definition", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

        if not rows or not rows[0]["sql"]:
            raise SchemaIntrospectionError(f"No definition found for table '{table}'")

        if include_schema_name:
            identifier = self.get_table_identifier(table)
        else:
            identifier = self.quote_identifier(table.name)

        sql, count = CREATE_TABLE_PATTERN.subn(
            lambda _: f"CREATE TABLE {identifier}", rows[0]["sql"].strip(), count=1
        )
        if count != 1:
            raise SchemaIntrospectionError(f"Unexpected definition for table '{table}'")
        return sql + ";"

    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        return f"DROP TABLE IF EXISTS {table_identifier};"

    def get_disable_foreign_keys_sql(self) -> str:
        return "PRAGMA foreign_keys = OFF;"

    def get_enable_foreign_keys_sql(self) -> str:
        return "PRAGMA foreign_keys = ON;"

    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        columns, values = self.format_row(row)
        conflict = ", ".join(self.quote_identifier(column) for column in key_columns)
        updates = [
            f"{self.quote_identifier(column)} = excluded.{self.quote_identifier(column)}"
            for column in row
            if column not in key_columns
        ]
        action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        return (
            f"INSERT INTO {table_identifier} ({columns}) VALUES ({values}) "
            f"ON CONFLICT ({conflict}) {action};"
        )

    def quote_value(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if math.isinf(value):
                # Out of double range; SQLite reads these back as +-Inf
                return "9e999" if value > 0 else "-9e999"
            if math.isnan(value):
                return "NULL"
            return repr(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return "X'" + bytes(value).hex() + "'"
        if isinstance(value, datetime.datetime):
            value = value.isoformat(sep=" ")
        elif isinstance(value, (datetime.date, datetime.time)):
            value = value.isoformat()
        return "'" + str(value).replace("'", "''") + "'"
