from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

Row = dict[str, Any]
"""A table row: column name to scalar-or-None value, in column order."""

PrimaryKeyId = dict[str, Any]
"""Primary key column name to value, in primary key column order."""


@dataclass(frozen=True)
class Table:
    """Identifies a database table by schema and name."""

    schema: str
    name: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class ForeignKey:
    """
    A foreign key constraint declared on `table`, referencing `referenced_table`.

    `columns` maps each local column to the referenced column, in constraint
    order. `targets_primary_key` is True when the referenced columns are the
    referenced table's primary key, False when they are some other unique key.
    It is informational: traversal checks the lookup key itself.
    """

    schema: str
    name: str
    table: Table
    referenced_table: Table
    columns: Mapping[str, str] = field(hash=False)
    targets_primary_key: bool

    def __hash__(self) -> int:
        """Hash for use in sets and as dict keys."""
        return hash((self.schema, self.name, self.table))

    @property
    def local_columns(self) -> tuple[str, ...]:
        return tuple(self.columns.keys())

    @property
    def referenced_columns(self) -> tuple[str, ...]:
        return tuple(self.columns.values())

    @property
    def is_self_referential(self) -> bool:
        """Check if this FK references the table it is declared on."""
        return self.table == self.referenced_table

    def lookup_key(self, row: Mapping[str, Any]) -> dict[str, Any] | None:
        """
        Build the referenced table's unique key value for `row`.

        Returns None if any local column is NULL: the row does not reference
        anything through this foreign key.
        """
        key: dict[str, Any] = {}
        for column, referenced_column in self.columns.items():
            value = row[column]
            if value is None:
                return None
            key[referenced_column] = value
        return key

    def describe(self) -> str:
        """Human-readable form, e.g. `orders(customer_id) -> customers(id)`."""
        return (
            f"{self.table}({', '.join(self.local_columns)}) -> "
            f"{self.referenced_table}({', '.join(self.referenced_columns)})"
        )


def format_key(key: Mapping[str, Any]) -> str:
    """Format a key mapping as `col=value, col2=value2` for messages."""
    return ", ".join(f"{column}={value!r}" for column, value in key.items())
