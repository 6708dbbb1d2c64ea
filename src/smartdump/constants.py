DEFAULT_POSTGRESQL_SCHEMA = "public"
"""Schema used for unqualified table names on PostgreSQL."""

DEFAULT_SQLITE_SCHEMA = "main"
"""Schema used for unqualified table names on SQLite."""

DEFAULT_POSTGRESQL_PORT = 5432
"""Default port number for PostgreSQL connections."""

DEFAULT_MYSQL_PORT = 3306
"""Default port number for MySQL connections."""

DEFAULT_FETCH_SIZE = 1000
"""Rows fetched per round trip when scanning a full table."""

MAX_SIMILAR_SUGGESTIONS = 3
"""Maximum number of similar suggestions to show in error messages."""

MAX_CONDITIONS_LENGTH = 10000
"""Maximum length of the per-table conditions suffix."""
