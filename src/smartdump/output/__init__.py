from smartdump.output.sql import SQLWriter

__all__ = [
    "SQLWriter",
]
