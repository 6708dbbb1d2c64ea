import datetime
import decimal
import re
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import mysql.connector

from smartdump.adapters.base import StoreAdapter
from smartdump.config import DatabaseType, validate_conditions
from smartdump.exceptions import ConnectionError, DumpError, SchemaIntrospectionError
from smartdump.logging import get_logger, log_query_execution
from smartdump.models import ForeignKey, Row, Table
from smartdump.utils.connection import parse_database_url

logger = get_logger(__name__)

_BACKTICKED = r"`(?:[^`]|``)*`"
REFERENCES_PATTERN = re.compile(rf"REFERENCES ({_BACKTICKED})(?:\.({_BACKTICKED}))? \(")

STRING_ESCAPES = {
    "\\": "\\\\",
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "'": "\\'",
    '"': '\\"',
    "\x1a": "\\Z",
}


def _unquote(identifier: str) -> str:
    return identifier[1:-1].replace("``", "`")


class MySQLAdapter(StoreAdapter):
    """
    MySQL-specific store adapter.

    The schema of a table is its MySQL database. Unqualified table names
    resolve to the database named in the connection URL.
    """

    def __init__(self, schema: str | None = None):
        self._conn: Any = None
        self._schema_name = schema

    def connect(self, url: str) -> None:
        """Open the connection in autocommit mode."""
        config = parse_database_url(url)
        if config.db_type != DatabaseType.MYSQL:
            raise ConnectionError(url, f"Expected MySQL URL, got {config.db_type.value}")

        logger.debug("Connecting to MySQL", url=config.masked_url)
        try:
            self._conn = mysql.connector.connect(**config.driver_kwargs("database"))
            self._conn.autocommit = True
        except mysql.connector.Error as e:
            logger.error("MySQL connection failed", error=str(e), exc_info=True)
            raise ConnectionError(url, str(e))

        if self._schema_name is None:
            self._schema_name = config.database

        logger.info(
            "MySQL connection established",
            database=config.database,
            schema=self._schema_name,
        )

    def close(self) -> None:
        """Close MySQL connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("MySQL connection closed")

    @property
    def default_schema(self) -> str:
        if self._schema_name is None:
            raise SchemaIntrospectionError("not connected, default schema is unknown")
        return self._schema_name

    def begin_transaction(self) -> None:
        """Begin a read-only transaction with a consistent snapshot."""
        self._conn.start_transaction(consistent_snapshot=True, readonly=True)
        logger.debug("Snapshot transaction started")

    def end_transaction(self) -> None:
        if self._conn:
            self._conn.rollback()
            logger.debug("Snapshot transaction ended")

    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[tuple]:
        cursor = self._conn.cursor(buffered=True)
        try:
            cursor.execute(query, tuple(params))
            return cursor.fetchall()
        finally:
            cursor.close()

    def list_tables(self, schema: str | None = None) -> list[Table]:
        schema = schema or self.default_schema
        try:
            rows = self._fetch_all(
                """
                SELECT TABLE_NAME
                FROM information_schema.TABLES
                WHERE TABLE_SCHEMA = %s
                  AND TABLE_TYPE = 'BASE TABLE'
                ORDER BY TABLE_NAME
                """,
                (schema,),
            )
        except mysql.connector.Error as e:
            logger.error("Failed to list tables", schema=schema, error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e))
        return [Table(schema=schema, name=row[0]) for row in rows]

    def get_primary_key_columns(self, table: Table) -> list[str]:
        try:
            rows = self._fetch_all(
                """
                SELECT COLUMN_NAME
                FROM information_schema.KEY_COLUMN_USAGE
                WHERE CONSTRAINT_NAME = 'PRIMARY'
                  AND TABLE_SCHEMA = %s
                  AND TABLE_NAME = %s
                ORDER BY ORDINAL_POSITION
                """,
                (table.schema, table.name),
            )
        except mysql.connector.Error as e:
            logger.error("Failed to fetch primary key", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))
        return [row[0] for row in rows]

    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        try:
            rows = self._fetch_all(
                """
                SELECT
                    CONSTRAINT_SCHEMA,
                    CONSTRAINT_NAME,
                    COLUMN_NAME,
                    REFERENCED_TABLE_SCHEMA,
                    REFERENCED_TABLE_NAME,
                    REFERENCED_COLUMN_NAME
                FROM information_schema.KEY_COLUMN_USAGE
                WHERE TABLE_SCHEMA = %s
                  AND TABLE_NAME = %s
                  AND REFERENCED_TABLE_NAME IS NOT NULL
                ORDER BY CONSTRAINT_NAME, ORDINAL_POSITION
                """,
                (table.schema, table.name),
            )
        except mysql.connector.Error as e:
            logger.error("Failed to fetch foreign keys", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

        fk_data: dict[tuple[str, str], dict] = {}
        for fk_schema, fk_name, column, ref_schema, ref_table, ref_column in rows:
            key = (fk_schema, fk_name)
            if key not in fk_data:
                fk_data[key] = {
                    "referenced_table": Table(schema=ref_schema, name=ref_table),
                    "columns": {},
                }
            fk_data[key]["columns"][column] = ref_column

        foreign_keys = []
        for (fk_schema, fk_name), data in fk_data.items():
            referenced_pk = self.get_primary_key_columns(data["referenced_table"])
            foreign_keys.append(
                ForeignKey(
                    schema=fk_schema,
                    name=fk_name,
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

        The cursor is buffered: MySQL cannot run other queries on a connection
        while an unbuffered result set is pending, and the closure reads
        referenced rows in the middle of the scan.
        """
        if conditions:
            validate_conditions(conditions)

        query = self.build_select(table, conditions)
        log_query_execution(logger, query, ())

        try:
            cursor = self._conn.cursor(dictionary=True, buffered=True)
            cursor.execute(query)
        except mysql.connector.Error as e:
            logger.error("Failed to read table", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read rows: {e}", table=table) from e

        try:
            row_count = 0
            for row in cursor:
                row_count += 1
                yield dict(row)
            logger.debug("Scanned table", table=str(table), row_count=row_count)
        finally:
            cursor.close()

    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        query, params = self.build_key_lookup(table, key)
        try:
            cursor = self._conn.cursor(dictionary=True, buffered=True)
            try:
                cursor.execute(query, tuple(params))
                rows = [dict(row) for row in cursor.fetchall()]
            finally:
                cursor.close()
        except mysql.connector.Error as e:
            logger.error("Failed to read row", table=str(table), error=str(e), exc_info=True)
            raise DumpError(f"Failed to read row: {e}", table=table) from e
        return self.single_row(table, key, rows)

    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        """
        Get the table's SHOW CREATE TABLE output.

        MySQL never puts the schema in front of the created table, and only
        qualifies REFERENCES targets living in another schema. Both are
        rewritten to follow `include_schema_name`.
        """
        try:
            rows = self._fetch_all(f"SHOW CREATE TABLE {self.get_table_identifier(table)}")
        except mysql.connector.Error as e:
            logger.error("Failed to read table definition", table=str(table), error=str(e))
            raise SchemaIntrospectionError(str(e))

        sql = rows[0][1]
        if isinstance(sql, (bytes, bytearray)):
            sql = sql.decode("utf-8")
        if not sql.startswith("CREATE TABLE"):
            raise SchemaIntrospectionError(f"Unexpected definition for '{table}': {sql[:50]}")

        def rewrite(match: re.Match) -> str:
            if match.group(2) is None:
                schema, name = table.schema, _unquote(match.group(1))
            else:
                schema, name = _unquote(match.group(1)), _unquote(match.group(2))
            if include_schema_name:
                target = self.get_table_identifier(Table(schema=schema, name=name))
            else:
                target = self.quote_identifier(name)
            return f"REFERENCES {target} ("

        sql = REFERENCES_PATTERN.sub(rewrite, sql) + ";"

        if include_schema_name:
            sql = "CREATE TABLE " + self.quote_identifier(table.schema) + "." + sql[13:]
        return sql

    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        return f"DROP TABLE IF EXISTS {table_identifier};"

    def get_disable_foreign_keys_sql(self) -> str:
        return "SET FOREIGN_KEY_CHECKS = 0;"

    def get_enable_foreign_keys_sql(self) -> str:
        return "SET FOREIGN_KEY_CHECKS = 1;"

    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        # MySQL finds the conflicting key itself; key_columns only limits the update list
        columns, values = self.format_row(row)
        updates = [
            f"{self.quote_identifier(column)} = VALUES({self.quote_identifier(column)})"
            for column in row
            if column not in key_columns
        ]
        if not updates:
            first = self.quote_identifier(next(iter(row)))
            updates = [f"{first} = {first}"]
        return (
            f"INSERT INTO {table_identifier} ({columns}) VALUES ({values}) "
            f"ON DUPLICATE KEY UPDATE {', '.join(updates)};"
        )

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def quote_value(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return str(int(value))
        if isinstance(value, (int, float, decimal.Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return "X'" + bytes(value).hex() + "'" if value else "''"
        if isinstance(value, (datetime.date, datetime.time, datetime.timedelta)):
            value = str(value)
        elif isinstance(value, set):
            value = ",".join(sorted(value))
        return "'" + "".join(STRING_ESCAPES.get(char, char) for char in str(value)) + "'"
