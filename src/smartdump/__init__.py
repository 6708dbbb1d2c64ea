"""
smartdump - Referentially-consistent partial database dumps.

Dumps the requested tables in full, plus every row elsewhere in the database
that is reachable through foreign keys from those rows, as a stream of SQL
statements.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
