"""
Database handles for the stores the pipeline touches.

- PostgresDatabase: asyncpg pool for the canonical store and source systems
- SqliteDatabase: aiosqlite connection for local runs and tests
"""
from authz_sync.clients.database import (
    Database,
    PostgresDatabase,
    SqliteDatabase,
    affected_rows,
    chunked,
    values_table,
)

__all__ = [
    "Database",
    "PostgresDatabase",
    "SqliteDatabase",
    "affected_rows",
    "chunked",
    "values_table",
]
