from smartdump.adapters.base import StoreAdapter
from smartdump.adapters.cache import AdapterCache
from smartdump.adapters.mysql import MySQLAdapter
from smartdump.adapters.postgresql import PostgreSQLAdapter
from smartdump.adapters.sqlite import SQLiteAdapter

__all__ = [
    "StoreAdapter",
    "AdapterCache",
    "MySQLAdapter",
    "PostgreSQLAdapter",
    "SQLiteAdapter",
]
