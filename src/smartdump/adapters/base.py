from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from smartdump.exceptions import RowCountError
from smartdump.models import ForeignKey, Row, Table


class StoreAdapter(ABC):
    """
    Abstract base class for database engine adapters.

    Each adapter implements engine-specific logic for:
    - Connection management
    - Schema introspection (primary keys, foreign keys, DDL)
    - Row access (full-table scans, reads by unique key)
    - Transaction control for snapshot consistency
    - SQL text generation and value quoting for the dump
    """

    @abstractmethod
    def connect(self, url: str) -> None:
        """
        Establish database connection.

        Raises:
            ConnectionError: If connection fails
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @property
    @abstractmethod
    def default_schema(self) -> str:
        """Schema that unqualified table names resolve to."""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """
        Begin a transaction that gives all subsequent reads one consistent
        snapshot, read-only where the engine supports it.
        """
        pass

    @abstractmethod
    def end_transaction(self) -> None:
        """
        End the snapshot transaction.

        May commit or roll back; nothing was written, so both are equivalent.
        """
        pass

    @contextmanager
    def snapshot_transaction(self):
        """
        Context manager for consistent snapshot reads.

        Usage:
            with adapter.snapshot_transaction():
                rows = adapter.read_table(table)
        """
        self.begin_transaction()
        try:
            yield
        finally:
            self.end_transaction()

    @abstractmethod
    def list_tables(self, schema: str | None = None) -> list[Table]:
        """
        List the base tables of a schema (the default schema if None).

        Raises:
            SchemaIntrospectionError: If introspection fails
        """
        pass

    @abstractmethod
    def get_primary_key_columns(self, table: Table) -> list[str]:
        """
        Get the primary key column names of a table, in key order.

        An empty list means the table has no primary key.
        """
        pass

    @abstractmethod
    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        """Get the foreign keys declared on a table, in a stable order."""
        pass

    @abstractmethod
    def read_table(self, table: Table, conditions: str | None = None) -> Iterator[Row]:
        """
        Scan a table.

        Args:
            table: Table to read
            conditions: Optional SQL appended to `SELECT * FROM <table>`,
                e.g. `WHERE user_id = 123 ORDER BY id DESC LIMIT 10`

        Yields:
            dict mapping column names to values for each row, in column order
        """
        pass

    @abstractmethod
    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        """
        Read the single row whose columns equal `key`.

        `key` must be a primary or unique key of the table.

        Raises:
            RowCountError: If zero or more than one row matches
        """
        pass

    @abstractmethod
    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        """
        Get one CREATE TABLE statement for the table.

        Foreign key REFERENCES clauses follow the same schema qualification
        choice as the created table's name, where the engine allows it.
        """
        pass

    def get_add_foreign_keys_sql(
        self, table: Table, foreign_keys: Sequence[ForeignKey], include_schema_name: bool
    ) -> list[str]:
        """
        Get statements adding foreign keys left out of get_create_table_sql.

        They run after every table is created and filled. Only `foreign_keys`
        are added; the caller leaves out those whose referenced table is not
        part of the dump. Engines that keep foreign keys inside CREATE TABLE
        return nothing.
        """
        return []

    @abstractmethod
    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        """Get a statement dropping the (already quoted) table if it exists."""
        pass

    @abstractmethod
    def get_disable_foreign_keys_sql(self) -> str:
        """Get a statement disabling foreign key checks for the session."""
        pass

    @abstractmethod
    def get_enable_foreign_keys_sql(self) -> str:
        """Get a statement re-enabling foreign key checks for the session."""
        pass

    @abstractmethod
    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        """
        Get an INSERT that updates the existing row on key conflict.

        The existing row must be updated in place, never deleted and re-inserted.

        Args:
            table_identifier: The quoted table name
            row: The row to upsert
            key_columns: The table's primary key columns (the conflict target)
        """
        pass

    @abstractmethod
    def quote_value(self, value: Any) -> str:
        """Quote a scalar (or None) as a SQL literal for this engine."""
        pass

    def quote_identifier(self, name: str) -> str:
        """
        Quote an identifier (schema, table or column name).

        Default implementation uses double quotes (SQL standard).
        Override for database-specific quoting.
        """
        return '"' + name.replace('"', '""') + '"'

    def get_table_identifier(self, table: Table) -> str:
        """Get the schema-qualified, quoted identifier of a table."""
        return f"{self.quote_identifier(table.schema)}.{self.quote_identifier(table.name)}"

    def get_placeholder(self) -> str:
        """
        Get the parameter placeholder for this database.

        Default is %s (psycopg2 style). Override for others.
        """
        return "%s"

    def build_select(self, table: Table, conditions: str | None = None) -> str:
        """Build `SELECT * FROM <table> [conditions]`."""
        query = f"SELECT * FROM {self.get_table_identifier(table)}"
        if conditions:
            query += f" {conditions}"
        return query

    def build_key_lookup(self, table: Table, key: Mapping[str, Any]) -> tuple[str, list[Any]]:
        """Build a parameterized query selecting the rows matching `key`."""
        placeholder = self.get_placeholder()
        conditions = " AND ".join(
            f"{self.quote_identifier(column)} = {placeholder}" for column in key
        )
        return f"{self.build_select(table)} WHERE {conditions}", list(key.values())

    def format_row(self, row: Mapping[str, Any]) -> tuple[str, str]:
        """Render a row as its quoted column list and its literal value list."""
        columns = ", ".join(self.quote_identifier(column) for column in row)
        values = ", ".join(self.quote_value(value) for value in row.values())
        return columns, values

    def single_row(self, table: Table, key: Mapping[str, Any], rows: list[Row]) -> Row:
        """Return the only row of `rows`, or raise RowCountError."""
        if len(rows) != 1:
            raise RowCountError(table, key, len(rows))
        return rows[0]

    def __enter__(self):
        """Support using adapter as context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close connection when exiting context."""
        self.close()
        return False
