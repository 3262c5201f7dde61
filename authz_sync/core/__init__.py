"""Core building blocks: source adapters, canonical schema, run ledger."""
from .sources import (
    SOURCES,
    DirectoryAdapter,
    LegacyRoleAdapter,
    SecurityAdminAdapter,
    SourceAdapter,
    get_adapter,
)
from .schema import REVIEW_TABLES, create_canonical_schema, staging_ddl
from .run_ledger import RunLedger

__all__ = [
    "SOURCES",
    "DirectoryAdapter",
    "LegacyRoleAdapter",
    "SecurityAdminAdapter",
    "SourceAdapter",
    "get_adapter",
    "REVIEW_TABLES",
    "create_canonical_schema",
    "staging_ddl",
    "RunLedger",
]
