"""
Staging to canonical merge.

Reconciles the canonical store with a source's deduplicated staging
content. Per entity, two set-based deltas:

- delete-stale: canonical rows owned by the source whose natural key is
  no longer staged, or (grants only) whose subject left the registry
- insert-new: staged rows whose natural key is absent from canonical,
  restricted to subjects present in the registry

The predicates are disjoint, and all statements run in one transaction so
they are evaluated against the same snapshot of staging and canonical.
"""
from typing import Dict, List, Tuple

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.sources import SourceAdapter
from authz_sync.errors import PartialWriteFailure

logger = structlog.get_logger(__name__)

_UNKNOWN_SUBJECTS_SQL = """
    SELECT COUNT(*) AS cnt
    FROM {stg} t
    WHERE NOT EXISTS (
        SELECT 1 FROM employee e WHERE e.subject_id = t.subject_id
    )
"""

_DELETE_STALE_GRANTS_SQL = """
    DELETE FROM user_role
    WHERE created_by = $1
      AND (
        NOT EXISTS (
            SELECT 1 FROM {stg} t
            WHERE t.system = user_role.system
              AND t.subject_id = user_role.subject_id
              AND t.role_id = user_role.role_id
        )
        OR NOT EXISTS (
            SELECT 1 FROM employee e
            WHERE e.subject_id = user_role.subject_id
        )
      )
"""

_INSERT_NEW_GRANTS_SQL = """
    INSERT INTO user_role (
        system, subject_id, username, company_code,
        role_id, role_name, created_by, created_at
    )
    SELECT t.system, t.subject_id, t.username, t.company_code,
           t.role_id, t.role_name, t.created_by, t.created_at
    FROM {stg} t
    WHERE EXISTS (
        SELECT 1 FROM employee e WHERE e.subject_id = t.subject_id
    )
      AND NOT EXISTS (
        SELECT 1 FROM user_role r
        WHERE r.system = t.system
          AND r.subject_id = t.subject_id
          AND r.role_id = t.role_id
    )
"""

_DELETE_STALE_ROLE_FUNCTIONS_SQL = """
    DELETE FROM role_function
    WHERE created_by = $1
      AND NOT EXISTS (
        SELECT 1 FROM {stg} t
        WHERE t.system = role_function.system
          AND t.role_id = role_function.role_id
          AND t.screen_id = role_function.screen_id
    )
"""

_INSERT_NEW_ROLE_FUNCTIONS_SQL = """
    INSERT INTO role_function (
        system, role_id, role_name, screen_id, screen_name, created_by, created_at
    )
    SELECT t.system, t.role_id, t.role_name, t.screen_id, t.screen_name,
           t.created_by, t.created_at
    FROM {stg} t
    WHERE NOT EXISTS (
        SELECT 1 FROM role_function rf
        WHERE rf.system = t.system
          AND rf.role_id = t.role_id
          AND rf.screen_id = t.screen_id
    )
"""


class Merger:
    """Applies insert/delete deltas from staging to the canonical store."""

    def __init__(self, canonical: Database):
        self.canonical = canonical

    def statements(self, adapter: SourceAdapter) -> List[Tuple[str, str, tuple]]:
        """Ordered (count key, sql, args) for one source's merge."""
        grants = adapter.staging_grant_table
        role_functions = adapter.staging_role_function_table
        return [
            ("user_role_deleted", _DELETE_STALE_GRANTS_SQL.format(stg=grants), (adapter.actor,)),
            ("user_role_inserted", _INSERT_NEW_GRANTS_SQL.format(stg=grants), ()),
            (
                "role_function_deleted",
                _DELETE_STALE_ROLE_FUNCTIONS_SQL.format(stg=role_functions),
                (adapter.actor,),
            ),
            ("role_function_inserted", _INSERT_NEW_ROLE_FUNCTIONS_SQL.format(stg=role_functions), ()),
        ]

    async def merge(self, adapter: SourceAdapter) -> Dict[str, int]:
        """
        Reconcile canonical grants and role-functions for a source.

        Args:
            adapter: Source adapter owning the staging tables

        Returns:
            Rows affected per delta, plus staged rows skipped for unknown subjects

        Raises:
            PartialWriteFailure: a merge statement failed (merge rolled back)
        """
        counts: Dict[str, int] = {}
        try:
            async with self.canonical.transaction(isolation="repeatable_read") as session:
                rows = await session.fetch(
                    _UNKNOWN_SUBJECTS_SQL.format(stg=adapter.staging_grant_table)
                )
                counts["user_role_unknown_subject"] = int(rows[0]["cnt"]) if rows else 0

                for key, sql, args in self.statements(adapter):
                    counts[key] = await session.execute(sql, *args)
        except Exception as e:
            logger.error(
                "merge_failed",
                source=adapter.name,
                counts_so_far=counts,
                error=str(e),
            )
            raise PartialWriteFailure(adapter.name, "merge", e, counts) from e

        if counts["user_role_unknown_subject"]:
            logger.info(
                "unknown_subjects_skipped",
                source=adapter.name,
                rows=counts["user_role_unknown_subject"],
            )

        logger.info(
            "canonical_merged",
            source=adapter.name,
            user_role_deleted=counts["user_role_deleted"],
            user_role_inserted=counts["user_role_inserted"],
            role_function_deleted=counts["role_function_deleted"],
            role_function_inserted=counts["role_function_inserted"],
        )
        return counts
