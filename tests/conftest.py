"""Shared pytest fixtures for smartdump tests."""

import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from smartdump.adapters.base import StoreAdapter
from smartdump.adapters.sqlite import SQLiteAdapter
from smartdump.models import ForeignKey, Row, Table

CUSTOMERS = Table("public", "customers")
ORDERS = Table("public", "orders")
EMPLOYEES = Table("public", "employees")

SHOP_DDL = """
CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER REFERENCES customers(id), note TEXT);
CREATE TABLE employees (id INTEGER PRIMARY KEY, name TEXT, manager_id INTEGER REFERENCES employees(id));
CREATE TABLE order_lines (order_id INTEGER NOT NULL REFERENCES orders(id), line_no INTEGER NOT NULL, product TEXT, PRIMARY KEY (order_id, line_no));
CREATE TABLE shipments (id INTEGER PRIMARY KEY, order_id INTEGER, line_no INTEGER, FOREIGN KEY (order_id, line_no) REFERENCES order_lines(order_id, line_no));
CREATE TABLE audit_log (message TEXT);
"""

SHOP_DATA = """
INSERT INTO customers (id, name) VALUES (1, 'Alice'), (2, 'Bob'), (3, 'O''Brien');
INSERT INTO orders (id, customer_id, note) VALUES (10, 1, 'first'), (11, NULL, 'guest'), (12, 3, NULL);
INSERT INTO employees (id, name, manager_id) VALUES (1, 'Ada', 2), (2, 'Bea', 1), (3, 'Cy', NULL);
INSERT INTO order_lines (order_id, line_no, product) VALUES (10, 1, 'widget'), (10, 2, 'gadget'), (12, 1, 'gizmo');
INSERT INTO shipments (id, order_id, line_no) VALUES (100, 10, 2);
INSERT INTO audit_log (message) VALUES ('created');
"""


def make_fk(
    table: Table,
    referenced_table: Table,
    columns: dict[str, str],
    name: str | None = None,
    targets_primary_key: bool = True,
) -> ForeignKey:
    """Build a ForeignKey declared on `table`."""
    return ForeignKey(
        schema=table.schema,
        name=name or f"fk_{table.name}_{referenced_table.name}",
        table=table,
        referenced_table=referenced_table,
        columns=columns,
        targets_primary_key=targets_primary_key,
    )


class MockAdapter(StoreAdapter):
    """In-memory store adapter for testing without a real database."""

    def __init__(
        self,
        data: dict[Table, list[Row]],
        primary_keys: dict[Table, list[str]],
        foreign_keys: dict[Table, list[ForeignKey]] | None = None,
    ):
        self.data = data
        self.primary_keys = primary_keys
        self.foreign_keys = foreign_keys or {}
        self.calls: list[str] = []
        self.read_row_calls: list[tuple[Table, dict[str, Any]]] = []
        self.begin_count = 0
        self.end_count = 0
        self.in_transaction = False

    def connect(self, url: str) -> None:
        self.calls.append("connect")

    def close(self) -> None:
        self.calls.append("close")

    @property
    def default_schema(self) -> str:
        return "public"

    def begin_transaction(self) -> None:
        self.begin_count += 1
        self.in_transaction = True

    def end_transaction(self) -> None:
        self.end_count += 1
        self.in_transaction = False

    def list_tables(self, schema: str | None = None) -> list[Table]:
        schema = schema or self.default_schema
        return sorted((t for t in self.data if t.schema == schema), key=lambda t: t.name)

    def get_primary_key_columns(self, table: Table) -> list[str]:
        self.calls.append(f"get_primary_key_columns:{table}")
        return list(self.primary_keys.get(table, []))

    def get_foreign_keys(self, table: Table) -> list[ForeignKey]:
        self.calls.append(f"get_foreign_keys:{table}")
        return list(self.foreign_keys.get(table, []))

    def read_table(self, table: Table, conditions: str | None = None) -> Iterator[Row]:
        for row in list(self.data.get(table, [])):
            yield dict(row)

    def read_row(self, table: Table, key: Mapping[str, Any]) -> Row:
        self.read_row_calls.append((table, dict(key)))
        rows = [
            dict(row)
            for row in self.data.get(table, [])
            if all(row.get(column) == value for column, value in key.items())
        ]
        return self.single_row(table, key, rows)

    def get_create_table_sql(self, table: Table, include_schema_name: bool) -> str:
        if include_schema_name:
            name = self.get_table_identifier(table)
        else:
            name = self.quote_identifier(table.name)
        return f"CREATE TABLE {name} (...);"

    def get_drop_table_if_exists_sql(self, table_identifier: str) -> str:
        return f"DROP TABLE IF EXISTS {table_identifier};"

    def get_disable_foreign_keys_sql(self) -> str:
        return "SET FOREIGN_KEY_CHECKS = 0;"

    def get_enable_foreign_keys_sql(self) -> str:
        return "SET FOREIGN_KEY_CHECKS = 1;"

    def get_upsert_sql(
        self, table_identifier: str, row: Mapping[str, Any], key_columns: Sequence[str]
    ) -> str:
        columns, values = self.format_row(row)
        return (
            f"UPSERT INTO {table_identifier} ({columns}) VALUES ({values}) "
            f"KEY ({', '.join(key_columns)});"
        )

    def quote_value(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return str(int(value))
        if isinstance(value, (int, float)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"


@pytest.fixture
def shop_adapter() -> MockAdapter:
    """customers(id) and orders(id, customer_id -> customers.id)."""
    return MockAdapter(
        data={
            CUSTOMERS: [
                {"id": 1, "name": "Alice"},
                {"id": 2, "name": "Bob"},
            ],
            ORDERS: [
                {"id": 10, "customer_id": 1},
            ],
        },
        primary_keys={CUSTOMERS: ["id"], ORDERS: ["id"]},
        foreign_keys={ORDERS: [make_fk(ORDERS, CUSTOMERS, {"customer_id": "id"})]},
    )


@pytest.fixture
def employees_adapter() -> MockAdapter:
    """Self-referencing employees: 1 -> 2 -> 1, and 3 without manager."""
    return MockAdapter(
        data={
            EMPLOYEES: [
                {"id": 1, "name": "Ada", "manager_id": 2},
                {"id": 2, "name": "Bea", "manager_id": 1},
                {"id": 3, "name": "Cy", "manager_id": None},
            ],
        },
        primary_keys={EMPLOYEES: ["id"]},
        foreign_keys={EMPLOYEES: [make_fk(EMPLOYEES, EMPLOYEES, {"manager_id": "id"})]},
    )


@pytest.fixture
def shop_db() -> Iterator[sqlite3.Connection]:
    """Create an in-memory SQLite shop database with test data."""
    conn = sqlite3.connect(":memory:", isolation_level=None)
    conn.executescript(SHOP_DDL + SHOP_DATA)
    yield conn
    conn.close()


@pytest.fixture
def sqlite_adapter(shop_db: sqlite3.Connection) -> SQLiteAdapter:
    """SQLiteAdapter over the in-memory shop database."""
    return SQLiteAdapter(connection=shop_db)


@pytest.fixture
def shop_db_file(tmp_path: Path) -> Path:
    """Create the shop database as a file, for URL-based tests."""
    path = tmp_path / "shop.db"
    conn = sqlite3.connect(path)
    conn.executescript(SHOP_DDL + SHOP_DATA)
    conn.close()
    return path


@pytest.fixture
def shop_db_url(shop_db_file: Path) -> str:
    return f"sqlite:///{shop_db_file}"
