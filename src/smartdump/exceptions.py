from collections.abc import Mapping
from typing import Any

from smartdump.constants import MAX_SIMILAR_SUGGESTIONS
from smartdump.models import ForeignKey, Table, format_key

__all__ = [
    "SmartDumpError",
    "ConnectionError",
    "UnsupportedDatabaseError",
    "InvalidURLError",
    "SchemaIntrospectionError",
    "TableNotFoundError",
    "NoPrimaryKeyError",
    "InvalidConditionsError",
    "RowCountError",
    "BrokenForeignKeyError",
    "ConsistencyError",
    "DumpError",
]


class SmartDumpError(Exception):
    """Base exception for all smartdump errors."""

    pass


class ConnectionError(SmartDumpError):
    """Failed to connect to database."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        masked_url = self._mask_password(url)
        super().__init__(f"Cannot connect to {masked_url}: {reason}")

    @staticmethod
    def _mask_password(url: str) -> str:
        """Mask password in database URL for safe display."""
        import re

        # Match password in URL: ://user:password@host
        return re.sub(r"(://[^:]+:)(.+)(@[^@]+)$", r"\1****\3", url)


class UnsupportedDatabaseError(SmartDumpError):
    """Database type is not supported."""

    def __init__(self, db_type: str):
        self.db_type = db_type
        super().__init__(
            f"Unsupported database type: '{db_type}'. Supported types: postgresql, mysql, sqlite"
        )


class InvalidURLError(SmartDumpError):
    """Database URL is malformed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid database URL: {reason}")


class SchemaIntrospectionError(SmartDumpError):
    """Failed to introspect database schema."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to introspect schema: {reason}")


class TableNotFoundError(SmartDumpError):
    """Requested table does not exist in the database."""

    def __init__(self, table: Table, available_tables: list[Table] | None = None):
        self.table = table
        self.available_tables = available_tables
        msg = f"Table '{table}' not found in database"
        if available_tables:
            suggestions = self._find_similar(table, available_tables)
            if suggestions:
                msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(msg)

    @staticmethod
    def _find_similar(
        target: Table, candidates: list[Table], max_results: int = MAX_SIMILAR_SUGGESTIONS
    ) -> list[str]:
        """Find similar table names using simple substring matching."""
        target_lower = target.name.lower()
        similar = []
        for candidate in candidates:
            name_lower = candidate.name.lower()
            if target_lower in name_lower or name_lower in target_lower:
                similar.append(str(candidate))
            elif len(set(target_lower) & set(name_lower)) > len(target_lower) // 2:
                similar.append(str(candidate))
        return similar[:max_results]


class NoPrimaryKeyError(SmartDumpError):
    """Table has no primary key, so its rows cannot be identified."""

    def __init__(self, table: Table):
        self.table = table
        super().__init__(
            f"Table '{table}' has no primary key. Every dumped table needs a primary key "
            f"to identify its rows."
        )


class InvalidConditionsError(SmartDumpError):
    """Per-table conditions contain unsafe SQL."""

    def __init__(self, conditions: str, reason: str):
        self.conditions = conditions
        self.reason = reason
        super().__init__(f"Invalid table conditions '{conditions}': {reason}")


class RowCountError(SmartDumpError):
    """A read by unique key did not match exactly one row."""

    def __init__(self, table: Table, key: Mapping[str, Any], count: int):
        self.table = table
        self.key = dict(key)
        self.count = count
        super().__init__(
            f"Expected exactly one row in '{table}' for ({format_key(key)}), found {count}"
        )


class BrokenForeignKeyError(SmartDumpError):
    """A non-NULL foreign key value has no matching row in the referenced table."""

    def __init__(self, foreign_key: ForeignKey, key: Mapping[str, Any]):
        self.foreign_key = foreign_key
        self.key = dict(key)
        local_values = {
            column: self.key[referenced_column]
            for column, referenced_column in foreign_key.columns.items()
        }
        super().__init__(
            f"Broken foreign key '{foreign_key.name}': a row in '{foreign_key.table}' "
            f"({format_key(local_values)}) references '{foreign_key.referenced_table}' "
            f"({format_key(self.key)}), but no such row exists"
        )


class ConsistencyError(SmartDumpError):
    """A row already recorded for the dump could not be read back exactly once."""

    def __init__(self, table: Table, key: Mapping[str, Any], count: int):
        self.table = table
        self.key = dict(key)
        self.count = count
        super().__init__(
            f"Internal consistency violation: row ({format_key(key)}) in '{table}' "
            f"was read {count} time(s) instead of once. The snapshot transaction is not "
            f"isolated, or the key used to identify rows is not unique."
        )


class DumpError(SmartDumpError):
    """General dump error."""

    def __init__(self, reason: str, table: Table | str | None = None):
        self.reason = reason
        self.table = table
        msg = f"Dump failed: {reason}"
        if table:
            msg = f"Dump failed for table '{table}': {reason}"
        super().__init__(msg)
