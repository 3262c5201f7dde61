"""
Staging deduplication.

Keeps exactly one staging row per natural key using a ROW_NUMBER window:
latest changed_at, then latest created_at, then ascending identifier,
with the physical row id as the final tie-break. Running it again on
deduplicated data deletes nothing.
"""
from typing import Dict

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.sources import SourceAdapter
from authz_sync.errors import PartialWriteFailure

logger = structlog.get_logger(__name__)

_DEDUP_SQL = """
    DELETE FROM {table}
    WHERE {rowid} IN (
        SELECT rid FROM (
            SELECT {rowid} AS rid,
                   ROW_NUMBER() OVER (
                       PARTITION BY {partition}
                       ORDER BY changed_at DESC NULLS LAST,
                                created_at DESC NULLS LAST,
                                {tiebreak},
                                {rowid} ASC
                   ) AS rn
            FROM {table}
        ) ranked
        WHERE rn > 1
    )
"""


def dedup_sql(table: str, partition: str, tiebreak: str, rowid: str) -> str:
    """Render the window-function dedup statement for one staging table."""
    return _DEDUP_SQL.format(table=table, partition=partition, tiebreak=tiebreak, rowid=rowid)


class Deduplicator:
    """Collapses duplicate staging rows to one per natural key."""
    
    def __init__(self, canonical: Database):
        self.canonical = canonical
    
    async def deduplicate(self, adapter: SourceAdapter) -> Dict[str, int]:
        """
        Remove duplicate staging rows for a source.
        
        Args:
            adapter: Source adapter owning the staging tables
            
        Returns:
            Rows removed per entity
            
        Raises:
            PartialWriteFailure: a dedup delete failed
        """
        statements = {
            "user_role": dedup_sql(
                adapter.staging_grant_table,
                partition="system, subject_id, role_id",
                tiebreak="subject_id ASC, username ASC",
                rowid=self.canonical.rowid,
            ),
            "role_function": dedup_sql(
                adapter.staging_role_function_table,
                partition="system, role_id, screen_id",
                tiebreak="screen_id ASC",
                rowid=self.canonical.rowid,
            ),
        }
        
        removed: Dict[str, int] = {}
        for entity, sql in statements.items():
            try:
                removed[entity] = await self.canonical.execute(sql)
            except Exception as e:
                logger.error(
                    "dedup_failed",
                    source=adapter.name,
                    entity=entity,
                    counts_so_far=removed,
                    error=str(e),
                )
                raise PartialWriteFailure(adapter.name, "dedup", e, removed) from e
        
        logger.info(
            "staging_deduplicated",
            source=adapter.name,
            user_role=removed["user_role"],
            role_function=removed["role_function"],
        )
        return removed
