import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum

from smartdump.constants import MAX_CONDITIONS_LENGTH
from smartdump.models import Table


class DatabaseType(Enum):
    """Supported database types."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


# Keywords that never belong in a SELECT suffix (WHERE / ORDER BY / LIMIT)
DANGEROUS_SQL_KEYWORDS = {
    "DROP",
    "DELETE",
    "TRUNCATE",
    "INSERT",
    "UPDATE",
    "ALTER",
    "CREATE",
    "RENAME",
    "GRANT",
    "REVOKE",
    "COMMIT",
    "ROLLBACK",
    "SAVEPOINT",
    "EXECUTE",
    "EXEC",
    "CALL",
    "SHUTDOWN",
    "COPY",
    "LOAD",
    "UNION",
    "INTO",
}

DANGEROUS_FUNCTIONS = {
    "pg_sleep",
    "pg_read_file",
    "pg_read_binary_file",
    "pg_ls_dir",
    "lo_import",
    "lo_export",
    "dblink",
    "dblink_exec",
    "sleep",
    "benchmark",
    "load_file",
}


def validate_conditions(conditions: str) -> None:
    """
    Reject per-table conditions that could do more than filter, order or limit rows.

    Conditions are appended verbatim to `SELECT * FROM <table>`, e.g.
    `WHERE customer_id = 12 ORDER BY id DESC LIMIT 10`. Quoted literals are
    ignored, so `WHERE status = 'DELETE'` is accepted.

    Raises:
        InvalidConditionsError: If the conditions contain unsafe SQL
    """
    from smartdump.exceptions import InvalidConditionsError

    if not conditions or not conditions.strip():
        raise InvalidConditionsError(conditions, "conditions cannot be empty")

    if len(conditions) > MAX_CONDITIONS_LENGTH:
        raise InvalidConditionsError(
            conditions, f"conditions too long (max {MAX_CONDITIONS_LENGTH} characters)"
        )

    # fullwidth characters would otherwise slip past the keyword checks
    normalized = unicodedata.normalize("NFKC", conditions)

    normalized = re.sub(r"'(?:[^']*'')*[^']*'", "''", normalized)
    normalized = re.sub(r'"[^"]*"', '""', normalized)
    normalized = re.sub(r"`[^`]*`", "``", normalized)

    if re.search(r"\$\$|\$[a-zA-Z_][a-zA-Z0-9_]*\$", normalized):
        raise InvalidConditionsError(conditions, "dollar quoting is not allowed")

    if ";" in normalized:
        raise InvalidConditionsError(conditions, "statement separator ';' is not allowed")

    if "--" in normalized or "/*" in normalized or "*/" in normalized or "#" in normalized:
        raise InvalidConditionsError(conditions, "comments are not allowed")

    normalized_upper = normalized.upper()
    for keyword in sorted(DANGEROUS_SQL_KEYWORDS):
        if re.search(r"\b" + re.escape(keyword) + r"\b", normalized_upper):
            raise InvalidConditionsError(conditions, f"keyword '{keyword}' is not allowed")

    normalized_lower = normalized.lower()
    for func_name in sorted(DANGEROUS_FUNCTIONS):
        if re.search(r"\b" + re.escape(func_name) + r"\s*\(", normalized_lower):
            raise InvalidConditionsError(conditions, f"function '{func_name}()' is not allowed")

    if re.search(r"\(\s*SELECT\b", normalized_upper):
        raise InvalidConditionsError(conditions, "subqueries are not allowed")


@dataclass
class DumpOptions:
    """
    Controls which statements a dump contains.

    `add_drop_table` only applies when `add_create_table` is set. `merge`
    emits upserts instead of INSERTs and suppresses both CREATE TABLE and
    DROP TABLE, whatever their flags say.

    Setting `include_schema_name_in_output` to False allows importing the dump
    into a schema other than the source one. If the dumped tables span several
    schemas, they are then all created in the importing session's schema.
    """

    add_create_table: bool = True
    add_drop_table: bool = False
    include_schema_name_in_output: bool = False
    merge: bool = False

    @property
    def emits_create_table(self) -> bool:
        return self.add_create_table and not self.merge

    @property
    def emits_drop_table(self) -> bool:
        return self.add_create_table and self.add_drop_table and not self.merge


@dataclass(frozen=True)
class TargetTable:
    """A table requested for dumping, optionally narrowed by a SQL suffix."""

    table: Table
    conditions: str | None = None

    @classmethod
    def parse(cls, spec: str, default_schema: str) -> "TargetTable":
        """
        Parse a table specification.

        Formats:
        - "orders" -> orders in the default schema
        - "billing.orders" -> orders in schema billing
        - "orders:WHERE customer_id = 12 LIMIT 10" -> with conditions

        Raises:
            ValueError: If the specification is malformed
            InvalidConditionsError: If the conditions contain unsafe SQL
        """
        from smartdump.input_validators import IdentifierValidationError, validate_table_name

        if not spec or not spec.strip():
            raise ValueError("Table specification cannot be empty")

        name_part, sep, conditions = spec.partition(":")
        name_part = name_part.strip()
        conditions = conditions.strip()

        if sep and not conditions:
            raise ValueError(f"Invalid table specification {spec!r}: empty conditions after ':'")

        if "." in name_part:
            schema, _, name = name_part.partition(".")
            schema = schema.strip()
            name = name.strip()
        else:
            schema, name = default_schema, name_part

        try:
            validate_table_name(name)
            if "." in name_part:
                validate_table_name(schema)
        except IdentifierValidationError as e:
            raise ValueError(f"Invalid table specification {spec!r}: {e}")

        if conditions:
            validate_conditions(conditions)

        return cls(table=Table(schema=schema, name=name), conditions=conditions or None)

    def __str__(self) -> str:
        if self.conditions:
            return f"{self.table}:{self.conditions}"
        return str(self.table)


@dataclass
class DumpConfig:
    """Configuration for one dump operation."""

    database_url: str
    targets: list[TargetTable]
    options: DumpOptions = field(default_factory=DumpOptions)
    output_file: str | None = None
    schema: str | None = None  # default schema for unqualified table names
    verbose: bool = False
    no_progress: bool = False
    dry_run: bool = False
