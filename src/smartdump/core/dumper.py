import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

from smartdump.adapters.base import StoreAdapter
from smartdump.adapters.cache import AdapterCache
from smartdump.config import DumpOptions, TargetTable
from smartdump.core.workset import Workset
from smartdump.exceptions import (
    BrokenForeignKeyError,
    ConsistencyError,
    NoPrimaryKeyError,
    RowCountError,
    TableNotFoundError,
)
from smartdump.logging import get_logger, log_dump_complete, log_dump_start
from smartdump.models import ForeignKey, PrimaryKeyId, Row, Table
from smartdump.utils.connection import get_adapter_for_url

logger = get_logger(__name__)

# Type alias for progress callback functions.
#
# Signature: (stage: str, message: str, current: int, total: int) -> None
#
# Args:
#     stage: "workset" while requested tables are scanned, "dump" while
#         tables are emitted
#     message: Human-readable status message
#     current: Current table number (1-based)
#     total: Number of tables in the stage
ProgressCallback = Callable[[str, str, int, int], None]


class Dumper:
    """
    Dumps requested tables together with every row they depend on.

    Requested tables are dumped in full (or as narrowed by their conditions).
    Other tables only receive the rows needed to satisfy the foreign keys of
    dumped rows, followed transitively.

    Flow:
    1. Validate the requested tables (existence, primary key)
    2. Begin a snapshot transaction
    3. Scan requested tables and follow foreign keys into a Workset
    4. Emit DDL and one INSERT (or upsert) per Workset row, re-reading each row
    5. End the transaction
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        progress_callback: ProgressCallback | None = None,
    ):
        if not isinstance(adapter, AdapterCache):
            adapter = AdapterCache(adapter)
        self.adapter = adapter
        self.progress_callback = progress_callback
        self.stats: dict[str, int] = {}

    def _log(self, stage: str, message: str, current: int = 0, total: int = 0) -> None:
        """Send progress update to callback if configured."""
        if self.progress_callback:
            self.progress_callback(stage, message, current, total)

    def dump(
        self,
        tables: Sequence[TargetTable | Table],
        options: DumpOptions | None = None,
    ) -> Iterator[str]:
        """
        Dump the given tables and all the rows they reference.

        Requested tables are validated immediately. Everything else happens
        lazily, inside one snapshot transaction, as the returned iterator is
        consumed. The transaction ends when the iterator is exhausted, closed,
        or raises.

        Args:
            tables: Tables to dump in full, optionally with row conditions
            options: Which statements to emit (defaults to DumpOptions())

        Returns:
            Iterator of SQL statements. The first one disables foreign key
            checks and the last one re-enables them.

        Raises:
            TableNotFoundError: If a requested table does not exist
            NoPrimaryKeyError: If a requested table has no primary key
        """
        targets = [self._as_target(table) for table in tables]
        self.validate_targets(targets)
        return self._dump(targets, options or DumpOptions())

    @staticmethod
    def _as_target(table: TargetTable | Table) -> TargetTable:
        if isinstance(table, Table):
            return TargetTable(table=table)
        return table

    def validate_targets(self, targets: Sequence[TargetTable]) -> None:
        """Reject requested tables that do not exist or have no primary key."""
        tables_by_schema: dict[str, list[Table]] = {}
        for target in targets:
            table = target.table
            if table.schema not in tables_by_schema:
                tables_by_schema[table.schema] = self.adapter.list_tables(table.schema)

            available = tables_by_schema[table.schema]
            if table not in available:
                raise TableNotFoundError(table, available)

            if not self.adapter.get_primary_key_columns(table):
                raise NoPrimaryKeyError(table)

    def _dump(self, targets: list[TargetTable], options: DumpOptions) -> Iterator[str]:
        start_time = time.time()
        self.stats = {}

        with self.adapter.snapshot_transaction():
            workset = self.generate_workset(targets)

            yield self.adapter.get_disable_foreign_keys_sql()

            tables = workset.get_tables()
            deferred = []
            for index, table in enumerate(tables, 1):
                self._log("dump", f"Dumping {table}", index, len(tables))
                yield from self._dump_table(workset, table, options)
                if options.emits_create_table:
                    deferred.extend(self._get_add_foreign_keys_sql(table, tables, options))

            yield from deferred
            yield self.adapter.get_enable_foreign_keys_sql()

        log_dump_complete(
            logger,
            total_rows=sum(self.stats.values()),
            table_count=len(self.stats),
            duration_ms=int((time.time() - start_time) * 1000),
        )

    def _dump_table(self, workset: Workset, table: Table, options: DumpOptions) -> Iterator[str]:
        if options.include_schema_name_in_output:
            identifier = self.adapter.get_table_identifier(table)
        else:
            identifier = self.adapter.quote_identifier(table.name)

        if options.emits_drop_table:
            yield self.adapter.get_drop_table_if_exists_sql(identifier)

        if options.emits_create_table:
            yield self.adapter.get_create_table_sql(table, options.include_schema_name_in_output)

        table_logger = logger.with_context(table=str(table))
        key_columns = self._primary_key_columns(table)
        row_count = 0
        for primary_key_id in workset.get_primary_key_ids(table):
            row = self._reread_row(table, primary_key_id)
            if options.merge:
                yield self.adapter.get_upsert_sql(identifier, row, key_columns)
            else:
                yield self.get_insert_sql(identifier, row)
            row_count += 1

        self.stats[str(table)] = row_count
        table_logger.debug("Table dumped", row_count=row_count)

    def _get_add_foreign_keys_sql(
        self, table: Table, dumped_tables: list[Table], options: DumpOptions
    ) -> list[str]:
        # A foreign key into a table outside the dump (e.g. NULL on every
        # dumped row) would name a table the dump never creates
        foreign_keys = [
            fk
            for fk in self.adapter.get_foreign_keys(table)
            if fk.referenced_table in dumped_tables
        ]
        return self.adapter.get_add_foreign_keys_sql(
            table, foreign_keys, options.include_schema_name_in_output
        )

    def get_insert_sql(self, table_identifier: str, row: Mapping[str, Any]) -> str:
        """
        Build the INSERT statement for a row.

        Args:
            table_identifier: The quoted table name
            row: Column names to values, in column order
        """
        columns, values = self.adapter.format_row(row)
        return f"INSERT INTO {table_identifier} ({columns}) VALUES ({values});"

    def generate_workset(self, targets: Sequence[TargetTable]) -> Workset:
        """
        Build the Workset for the requested tables.

        Every requested table is part of the Workset, even without rows. Reads
        happen in the caller's transaction.
        """
        with logger.timed_operation("workset generation", table_count=len(targets)):
            workset = Workset()
            for target in targets:
                workset.add_table(target.table)

            for index, target in enumerate(targets, 1):
                self._log("workset", f"Scanning {target}", index, len(targets))
                for row in self.adapter.read_table(target.table, target.conditions):
                    self.add_row_to_workset(workset, target.table, row)

            logger.info(
                "Workset built",
                table_count=len(workset.get_tables()),
                row_count=len(workset),
            )
        return workset

    def add_row_to_workset(self, workset: Workset, table: Table, row: Row) -> None:
        """
        Record a row and, transitively, every row it references.

        Traversal is depth-first with an explicit stack, so long foreign key
        chains do not grow the call stack. Rows are recorded in the same order
        as a recursive traversal would record them. A row already in the
        Workset stops the traversal, which also ends cycles.
        """
        stack: list[tuple[Table, Row]] = [(table, row)]

        while stack:
            table, row = stack.pop()

            if not workset.add_row(table, self._primary_key_id(table, row)):
                continue

            referenced_rows = []
            for foreign_key in self.adapter.get_foreign_keys(table):
                key = foreign_key.lookup_key(row)
                if key is None:
                    # NULL in a foreign key column: nothing referenced
                    continue
                if self._is_recorded(workset, foreign_key, key):
                    continue
                referenced_rows.append(
                    (foreign_key.referenced_table, self._read_referenced_row(foreign_key, key))
                )

            stack.extend(reversed(referenced_rows))

    def _primary_key_columns(self, table: Table) -> list[str]:
        columns = self.adapter.get_primary_key_columns(table)
        if not columns:
            raise NoPrimaryKeyError(table)
        return columns

    def _primary_key_id(self, table: Table, row: Row) -> PrimaryKeyId:
        return {column: row[column] for column in self._primary_key_columns(table)}

    def _is_recorded(self, workset: Workset, foreign_key: ForeignKey, key: dict[str, Any]) -> bool:
        """
        Check whether the referenced row is already recorded, without reading it.

        Only possible when `key` is made of the referenced primary key columns;
        a lookup through another unique key has to read the row first.
        """
        columns = self._primary_key_columns(foreign_key.referenced_table)
        if set(key) != set(columns):
            return False
        return workset.contains(foreign_key.referenced_table, {c: key[c] for c in columns})

    def _read_referenced_row(self, foreign_key: ForeignKey, key: dict[str, Any]) -> Row:
        try:
            return self.adapter.read_row(foreign_key.referenced_table, key)
        except RowCountError as e:
            if e.count == 0:
                logger.error(
                    "Broken foreign key",
                    foreign_key=foreign_key.name,
                    table=str(foreign_key.table),
                    referenced_table=str(foreign_key.referenced_table),
                )
                raise BrokenForeignKeyError(foreign_key, key) from e
            raise ConsistencyError(foreign_key.referenced_table, key, e.count) from e

    def _reread_row(self, table: Table, primary_key_id: PrimaryKeyId) -> Row:
        try:
            return self.adapter.read_row(table, primary_key_id)
        except RowCountError as e:
            raise ConsistencyError(table, primary_key_id, e.count) from e


def smart_dump(
    database_url: str,
    tables: Sequence[str],
    options: DumpOptions | None = None,
    schema: str | None = None,
    progress_callback: ProgressCallback | None = None,
) -> Iterator[str]:
    """
    Convenience function for dumping tables from a database URL.

    Connects on first iteration and disconnects once the statements are
    exhausted or the iterator is closed.

    Args:
        database_url: Database connection URL
        tables: Table specifications, e.g. ["orders", "billing.invoices:WHERE paid = 0"]
        options: Which statements to emit
        schema: Default schema for unqualified table names
        progress_callback: Optional callback for progress updates

    Example:
        for statement in smart_dump("sqlite:///./shop.db", ["orders"]):
            print(statement)
    """
    adapter = get_adapter_for_url(database_url, schema=schema)
    adapter.connect(database_url)
    try:
        targets = [TargetTable.parse(spec, adapter.default_schema) for spec in tables]
        log_dump_start(logger, database_url, targets)
        yield from Dumper(adapter, progress_callback).dump(targets, options)
    finally:
        adapter.close()
