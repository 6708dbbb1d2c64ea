from collections.abc import Hashable, Mapping
from typing import Any

from smartdump.models import PrimaryKeyId, Table

RowIdentity = tuple[str, str, tuple[tuple[str, Hashable], ...]]


def _hashable(value: Any) -> Hashable:
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def row_identity(table: Table, primary_key_id: Mapping[str, Any]) -> RowIdentity:
    """
    Canonical identity of a row: schema, table name and the ordered key pairs.

    Key order is significant. Primary key columns always come from the schema
    in the same order, so ids built for one table always agree.
    """
    return (
        table.schema,
        table.name,
        tuple((column, _hashable(value)) for column, value in primary_key_id.items()),
    )


class Workset:
    """
    The set of rows a dump must export.

    Tables keep their first-discovery order, and so do the primary key ids
    recorded for each table. A (table, primary key id) pair is recorded at
    most once.
    """

    def __init__(self) -> None:
        self._rows: dict[Table, list[PrimaryKeyId]] = {}
        self._seen: set[RowIdentity] = set()

    def add_table(self, table: Table) -> None:
        """Record a table for export, even if none of its rows are recorded."""
        self._rows.setdefault(table, [])

    def add_row(self, table: Table, primary_key_id: Mapping[str, Any]) -> bool:
        """
        Record a row for export.

        Returns:
            True if the row was not recorded before, and its foreign keys must
            now be followed; False if it was already recorded.
        """
        self.add_table(table)

        identity = row_identity(table, primary_key_id)
        if identity in self._seen:
            return False

        self._seen.add(identity)
        self._rows[table].append(dict(primary_key_id))
        return True

    def get_tables(self) -> list[Table]:
        return list(self._rows)

    def get_primary_key_ids(self, table: Table) -> list[PrimaryKeyId]:
        """Get the ids recorded for a table in discovery order (empty if unknown)."""
        return list(self._rows.get(table, []))

    def contains(self, table: Table, primary_key_id: Mapping[str, Any]) -> bool:
        return row_identity(table, primary_key_id) in self._seen

    def row_count(self, table: Table | None = None) -> int:
        """Number of recorded rows, for one table or overall."""
        if table is not None:
            return len(self._rows.get(table, []))
        return len(self._seen)

    def __len__(self) -> int:
        return len(self._seen)
