"""
Staging loader.

Replaces a source's staging content with the current extraction. The
truncate and all batched inserts share one transaction on the canonical
store, so a failed extraction leaves the previous staging content intact
and never commits a partial load.
"""
from contextlib import aclosing
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.sources import SourceAdapter
from authz_sync.engine.extractor import Extractor
from authz_sync.errors import PartialWriteFailure, SourceUnavailable
from authz_sync.models import RoleFunction, SourceGrant

logger = structlog.get_logger(__name__)

_GRANT_COLUMNS = (
    "system, subject_id, username, company_code, role_id, role_name, "
    "created_by, created_at, changed_by, changed_at"
)
_ROLE_FUNCTION_COLUMNS = (
    "system, role_id, role_name, screen_id, screen_name, "
    "created_by, created_at, changed_by, changed_at"
)


def _placeholders(n: int) -> str:
    return ", ".join(f"${i}" for i in range(1, n + 1))


class StagingLoader:
    """Truncates and bulk-loads per-source staging tables."""
    
    def __init__(self, canonical: Database, batch_size: int = 1000):
        """
        Initialize staging loader.
        
        Args:
            canonical: Canonical store handle (owns the staging tables)
            batch_size: Rows per bulk insert
        """
        self.canonical = canonical
        self.batch_size = batch_size
    
    @staticmethod
    def grant_row(grant: SourceGrant, actor: str, as_of: datetime) -> Tuple:
        return (
            grant.system,
            grant.subject_id,
            grant.username,
            grant.company_code,
            grant.role_id,
            grant.role_name,
            actor,
            grant.created_at or as_of,
            actor if grant.changed_at else None,
            grant.changed_at,
        )
    
    @staticmethod
    def role_function_row(mapping: RoleFunction, actor: str, as_of: datetime) -> Tuple:
        return (
            mapping.system,
            mapping.role_id,
            mapping.role_name,
            mapping.screen_id,
            mapping.screen_name,
            actor,
            mapping.created_at or as_of,
            actor if mapping.changed_at else None,
            mapping.changed_at,
        )
    
    async def _insert_stream(
        self,
        session,
        sql: str,
        stream: AsyncIterator,
        to_row: Callable[[Any], Tuple],
    ) -> int:
        """Insert mapped rows from an async stream in batches, closing it on exit."""
        loaded = 0
        batch: List[Tuple] = []
        async with aclosing(stream) as items:
            async for item in items:
                batch.append(to_row(item))
                if len(batch) >= self.batch_size:
                    loaded += await session.executemany(sql, batch)
                    batch = []
        if batch:
            loaded += await session.executemany(sql, batch)
        return loaded
    
    async def load(
        self,
        adapter: SourceAdapter,
        extractor: Extractor,
        as_of: datetime,
    ) -> Dict[str, int]:
        """
        Replace staging content with the current extraction.
        
        Args:
            adapter: Source adapter (staging table names, actor tag)
            extractor: Extractor bound to the source handle
            as_of: Shared run timestamp
            
        Returns:
            Row counts: truncated, loaded per entity, grants skipped for a
            missing subject id
            
        Raises:
            SourceUnavailable: extraction failed (staging rolled back)
            PartialWriteFailure: a staging write failed (staging rolled back)
        """
        grant_sql = (
            f"INSERT INTO {adapter.staging_grant_table} ({_GRANT_COLUMNS}) "
            f"VALUES ({_placeholders(10)})"
        )
        role_function_sql = (
            f"INSERT INTO {adapter.staging_role_function_table} ({_ROLE_FUNCTION_COLUMNS}) "
            f"VALUES ({_placeholders(9)})"
        )

        counts: Dict[str, int] = {}
        try:
            async with self.canonical.transaction() as session:
                counts["truncated"] = await session.execute(
                    f"DELETE FROM {adapter.staging_grant_table}"
                )
                counts["truncated"] += await session.execute(
                    f"DELETE FROM {adapter.staging_role_function_table}"
                )
                counts["user_role"] = await self._insert_stream(
                    session,
                    grant_sql,
                    extractor.grants(as_of),
                    lambda grant: self.grant_row(grant, adapter.actor, as_of),
                )
                counts["user_role_no_subject"] = extractor.grants_without_subject
                counts["role_function"] = await self._insert_stream(
                    session,
                    role_function_sql,
                    extractor.role_functions(as_of),
                    lambda mapping: self.role_function_row(mapping, adapter.actor, as_of),
                )
        except SourceUnavailable:
            raise
        except Exception as e:
            logger.error(
                "staging_load_failed",
                source=adapter.name,
                counts_so_far=counts,
                error=str(e),
            )
            raise PartialWriteFailure(adapter.name, "load", e, counts) from e
        
        logger.info(
            "staging_loaded",
            source=adapter.name,
            truncated=counts["truncated"],
            user_role=counts["user_role"],
            role_function=counts["role_function"],
        )
        return counts
