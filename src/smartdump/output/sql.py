from collections.abc import Iterable
from datetime import datetime
from typing import TextIO

from smartdump import __version__


class SQLWriter:
    """
    Writes dump statements to a text stream as they are produced.

    Each statement is written on its own line after a short comment header.
    Nothing is buffered beyond the statement being written.
    """

    def __init__(self, stream: TextIO, include_header: bool = True):
        self.stream = stream
        self.include_header = include_header

    def write_header(self, database: str | None = None, tables: Iterable[object] = ()) -> None:
        """Write the comment header."""
        self.stream.write(f"-- Generated by smartdump {__version__}\n")
        self.stream.write(f"-- Date: {datetime.now().isoformat(timespec='seconds')}\n")
        if database:
            self.stream.write(f"-- Database: {database}\n")
        requested = ", ".join(str(table) for table in tables)
        if requested:
            self.stream.write(f"-- Requested tables: {requested}\n")
        self.stream.write("\n")

    def write(
        self,
        statements: Iterable[str],
        database: str | None = None,
        tables: Iterable[object] = (),
    ) -> int:
        """
        Write every statement, then flush.

        Returns:
            Number of statements written
        """
        if self.include_header:
            self.write_header(database, tables)

        count = 0
        for statement in statements:
            self.stream.write(statement)
            self.stream.write("\n")
            count += 1

        self.stream.flush()
        return count
