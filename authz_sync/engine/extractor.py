"""
Read-only extraction from a source system.

Streams source-native rows through the adapter's column mapping. Any
query or mapping error is wrapped in SourceUnavailable and aborts the run.
Grants held by accounts without a subject id (service or technical
accounts) cannot be matched to the registry; they are skipped and counted.
"""
from contextlib import aclosing
from datetime import datetime
from typing import AsyncIterator

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.sources import SourceAdapter
from authz_sync.errors import SourceUnavailable
from authz_sync.models import RoleFunction, SourceGrant

logger = structlog.get_logger(__name__)


class Extractor:
    """Lazy extraction of grants and role-functions from one source."""

    def __init__(self, adapter: SourceAdapter, source_db: Database):
        """
        Initialize extractor.

        Args:
            adapter: Source adapter with queries and column mapping
            source_db: Read-only handle on the source schema
        """
        self.adapter = adapter
        self.source_db = source_db
        self.grants_without_subject = 0

    async def grants(self, as_of: datetime) -> AsyncIterator[SourceGrant]:
        """Yield SourceGrant rows mapped from the source schema."""
        count = 0
        self.grants_without_subject = 0
        try:
            async with aclosing(self.source_db.iterate(
                self.adapter.grant_sql, *self.adapter.grant_params(as_of)
            )) as rows:
                async for row in rows:
                    count += 1
                    grant = self.adapter.map_grant(row)
                    if grant.subject_id is None:
                        self.grants_without_subject += 1
                        continue
                    yield grant
        except Exception as e:
            logger.error(
                "extract_failed",
                source=self.adapter.name,
                entity="user_role",
                rows_before_failure=count,
                error=str(e),
            )
            raise SourceUnavailable(self.adapter.name, "extract.user_role", e) from e

        if self.grants_without_subject:
            logger.info(
                "unknown_subjects_skipped",
                source=self.adapter.name,
                reason="no_subject_id",
                rows=self.grants_without_subject,
            )
        logger.info("extracted", source=self.adapter.name, entity="user_role", rows=count)

    async def role_functions(self, as_of: datetime) -> AsyncIterator[RoleFunction]:
        """Yield RoleFunction rows mapped from the source schema."""
        count = 0
        try:
            async with aclosing(self.source_db.iterate(
                self.adapter.role_function_sql, *self.adapter.role_function_params(as_of)
            )) as rows:
                async for row in rows:
                    count += 1
                    yield self.adapter.map_role_function(row)
        except Exception as e:
            logger.error(
                "extract_failed",
                source=self.adapter.name,
                entity="role_function",
                rows_before_failure=count,
                error=str(e),
            )
            raise SourceUnavailable(self.adapter.name, "extract.role_function", e) from e

        logger.info("extracted", source=self.adapter.name, entity="role_function", rows=count)
