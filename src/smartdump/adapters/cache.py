from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from smartdump.adapters.base import StoreAdapter
from smartdump.logging import get_logger
from smartdump.models import ForeignKey, Row, Table

logger = get_logger(__name__)


class AdapterCache(StoreAdapter):
    """
    Wraps a StoreAdapter to memoize its schema lookups.

    Primary key columns and foreign keys are fetched at most once per table
    for the lifetime of the cache. Every other call is forwarded unchanged.
    A cache is meant to live for one dump: it never notices schema changes.
    """

    def __init__(self, adapter: StoreAdapter):
        self._adapter = adapter
        self._primary_key_columns: dict[Table, list[str]] = {}
        self._foreign_keys: dict[Table, list[ForeignKey]] = {}
        self.hits = 0
        self.misses = 0

    @property
    def adapter(self) -> StoreAdapter:
        """The wrapped adapter."""
        return self._adapter

    def get_primary_key_columns(self, table: Table) -> list[str]:
        if table in self._primary_key_columns:
            self.hits += 1
            return self._primary_key_columns[table]

        self.misses += 1
        columns = self._adapter.get_primary_key_columns(table)
        self._primary_key_columns[table] = columns
        logger.debug("Cached primary key", table=str(table), columns=columns)
        return columns

    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        if table in self._foreign_keys:
            self.hits += 1
            return self._foreign_keys[table]

        self.misses += 1
        foreign_keys = self._adapter.get_foreign_keys(table)
        self._foreign_keys[table] = foreign_keys
        logger.debug("Cached foreign keys", table=str(table), fk_count=len(foreign_keys))
        return foreign_keys

    # Delegated operations

    def connect(self, url: str) -> None:
        self._adapter.connect(url)

    def close(self) -> None:
        self._adapter.close()

    @property
    def default_schema(self) -> str:
        return self._adapter.default_schema

    def begin_transaction(self) -> None:
        self._adapter.begin_transaction()

    def end_transaction(self) -> None:
        self._adapter.end_transaction()

    @contextmanager
    def snapshot_transaction(self):
        with self._adapter.snapshot_transaction():
            yield

    def list_tables(self, schema: str | None = None) -> list[Table]:
        return self._adapter.list_tables(schema)

    def read_table(self, table: Table, conditions: str | None = None) -> Iterator[Row]:
        return self._adapter.read_table(table, conditions)

    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        return self._adapter.read_row(table, key)

    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        return self._adapter.get_create_table_sql(table, include_schema_name)

    def get_add_foreign_keys_sql(
        self, table: Table, foreign_keys: Sequence[ForeignKey], include_schema_name: bool
    ) -> list[str]:
        return self._adapter.get_add_foreign_keys_sql(table, foreign_keys, include_schema_name)

    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        return self._adapter.get_drop_table_if_exists_sql(table_identifier)

    def get_disable_foreign_keys_sql(self) -> str:
        return self._adapter.get_disable_foreign_keys_sql()

    def get_enable_foreign_keys_sql(self) -> str:
        return self._adapter.get_enable_foreign_keys_sql()

    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        return self._adapter.get_upsert_sql(table_identifier, row, key_columns)

    def quote_value(self, value: Any) -> str:
        return self._adapter.quote_value(value)

    def quote_identifier(self, name: str) -> str:
        return self._adapter.quote_identifier(name)

    def get_table_identifier(self, table: Table) -> str:
        return self._adapter.get_table_identifier(table)

    def get_placeholder(self) -> str:
        return self._adapter.get_placeholder()
