"""
Access-revocation remediation.

Deletes canonical grants (and the matching security-administration
authorizations) for review decisions the system owner revoked, then marks
those decisions remediated. A decision is only ever considered while its
remediated flag is unset, and a run that deletes nothing leaves every
flag untouched so the decision is retried on the next run.

Each remediator works in three phases so several of them can share one
canonical commit:

1. revoke_in_source: collect pending keys, delete in the security-administration store
2. revoke_in_canonical: delete canonical grants inside the caller's transaction
3. mark: flag records remediated inside the same transaction
"""
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from authz_sync.clients.database import Database, chunked, values_table
from authz_sync.core.schema import REVIEW_TABLES
from authz_sync.core.sources import SOURCES, SecurityAdminAdapter
from authz_sync.errors import RemediationFailure
from authz_sync.models import ApprovalStatus, ReviewDecision

logger = structlog.get_logger(__name__)

MARKING_MODES = ("per_decision", "batch")

# SQLite builds may cap bound parameters at 999.
DEFAULT_CHUNK_SIZE = 300

_PENDING_PREDICATE = (
    "{alias}approval_status = '{revoked}' AND COALESCE({alias}remediated, FALSE) = FALSE"
)


def pending_predicate(alias: str = "") -> str:
    """SQL predicate for revoked decisions not yet remediated."""
    prefix = f"{alias}." if alias else ""
    return _PENDING_PREDICATE.format(alias=prefix, revoked=ApprovalStatus.REVOKED.value)


class RemediationPlan:
    """Keys pending remediation in one run and what was deleted for them."""

    def __init__(self, pending: int, keys: List[Tuple]):
        self.keys = keys
        self.matched: Set[Tuple] = set()
        self.counts = {"pending": pending, "source_deleted": 0, "canonical_deleted": 0, "marked": 0}

    @property
    def deleted(self) -> int:
        return self.counts["source_deleted"] + self.counts["canonical_deleted"]


class BaseRemediator:
    """Shared phases, source-side deletion and marking for remediation classes."""

    # Prefix of log events and failure steps
    job = ""

    def __init__(
        self,
        canonical: Database,
        security_admin: Database,
        adapter: SecurityAdminAdapter = SOURCES["SC"],
        marking: str = "per_decision",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize remediator.

        Args:
            canonical: Canonical store handle
            security_admin: Writable handle on the security-administration store
            adapter: Adapter carrying the security-administration delete SQL
            marking: "per_decision" or "batch" marking granularity
            chunk_size: Keys per bulk statement
        """
        if marking not in MARKING_MODES:
            raise ValueError(f"Invalid marking mode: {marking}. Use one of {MARKING_MODES}")
        self.canonical = canonical
        self.security_admin = security_admin
        self.adapter = adapter
        self.marking = marking
        self.chunk_size = chunk_size

    async def _pending_keys(self, as_of: datetime) -> Tuple[int, List[Tuple]]:
        """(pending record count, distinct keys to revoke)."""
        raise NotImplementedError

    def _source_queries(self) -> Tuple[Callable, Callable]:
        """(match query builder, revoke query builder) for the source store."""
        raise NotImplementedError

    async def _delete_in_canonical(self, session, as_of: datetime) -> Tuple[Set[Tuple], int]:
        """Delete pending grants in canonical; return (keys that matched, rows deleted)."""
        raise NotImplementedError

    async def _mark_keys(self, session, keys: Sequence[Tuple], as_of: datetime) -> int:
        raise NotImplementedError

    def _failure(self, step: str, counts: Dict[str, int], error: Exception) -> RemediationFailure:
        logger.error(
            f"{self.job}_remediation_failed",
            step=step,
            counts_so_far=counts,
            error=str(error),
        )
        return RemediationFailure(f"{self.job}.{step}", error)

    async def _delete_in_source(
        self,
        keys: Sequence[Tuple],
        match_query: Callable[[Sequence], Tuple[str, List]],
        revoke_query: Callable[[Sequence], Tuple[str, List]],
    ) -> Tuple[Set[Tuple], int]:
        """
        Delete matching rows in the security-administration store.

        Returns:
            (keys that had rows to delete, rows deleted)
        """
        matched: Set[Tuple] = set()
        deleted = 0
        for batch in chunked(keys, self.chunk_size):
            sql, args = match_query(batch)
            for row in await self.security_admin.fetch(sql, *args):
                matched.add(tuple(row.values()))
            sql, args = revoke_query(batch)
            deleted += await self.security_admin.execute(sql, *args)
        return matched, deleted

    def _keys_to_mark(self, pending: Iterable[Tuple], matched: Set[Tuple], deleted: int) -> List[Tuple]:
        """Select which pending keys get marked remediated."""
        if deleted == 0:
            return []
        if self.marking == "batch":
            return sorted(set(pending))
        return sorted(set(pending) & matched)

    async def revoke_in_source(self, as_of: datetime) -> RemediationPlan:
        """Collect pending keys and delete their rows in the security-administration store."""
        plan: Optional[RemediationPlan] = None
        step = "pending"
        try:
            pending, keys = await self._pending_keys(as_of)
            plan = RemediationPlan(pending, keys)
            if not keys:
                logger.info(f"{self.job}_remediation_noop", reason="nothing_pending")
                return plan

            step = "source_delete"
            match_query, revoke_query = self._source_queries()
            plan.matched, plan.counts["source_deleted"] = await self._delete_in_source(
                keys, match_query, revoke_query
            )
        except Exception as e:
            raise self._failure(step, plan.counts if plan else {}, e) from e
        return plan

    async def revoke_in_canonical(self, session, plan: RemediationPlan, as_of: datetime) -> None:
        """Delete the plan's grants in canonical inside ``session``."""
        try:
            matched, plan.counts["canonical_deleted"] = await self._delete_in_canonical(session, as_of)
        except Exception as e:
            raise self._failure("canonical_delete", plan.counts, e) from e
        plan.matched |= matched

    async def mark(self, session, plan: RemediationPlan, as_of: datetime) -> None:
        """Flag records remediated inside ``session`` under the zero-deletion guard."""
        try:
            to_mark = self._keys_to_mark(plan.keys, plan.matched, plan.deleted)
            plan.counts["marked"] = await self._mark_keys(session, to_mark, as_of)
        except Exception as e:
            raise self._failure("mark", plan.counts, e) from e

    def log_outcome(self, plan: RemediationPlan) -> None:
        if not plan.keys:
            return
        if plan.deleted == 0:
            logger.info(
                f"{self.job}_remediation_nothing_deleted",
                pending=plan.counts["pending"],
                reason="flags left unset for retry",
            )
        else:
            logger.info(f"{self.job}_remediation_complete", **plan.counts)

    async def remediate(self, as_of: datetime) -> Dict[str, int]:
        """
        Delete pending grants from both stores and mark records remediated.

        Canonical deletes and marks commit together; a failure rolls both back.

        Args:
            as_of: Run timestamp written to remediated_at

        Returns:
            Counts: pending, source_deleted, canonical_deleted, marked

        Raises:
            RemediationFailure: a delete or mark failed; nothing was marked
        """
        plan = await self.revoke_in_source(as_of)
        if plan.keys:
            async with self.canonical.transaction() as session:
                await self.revoke_in_canonical(session, plan, as_of)
                await self.mark(session, plan, as_of)
            self.log_outcome(plan)
        return plan.counts


class ReviewRemediator(BaseRemediator):
    """Revokes access rejected in user access review."""

    job = "review"

    def __init__(self, *args, review_tables: Sequence[str] = REVIEW_TABLES, **kwargs):
        super().__init__(*args, **kwargs)
        self.review_tables = tuple(review_tables)

    async def pending(self) -> List[ReviewDecision]:
        """Revoked decisions not yet remediated, across all review tables."""
        decisions: List[ReviewDecision] = []
        for table in self.review_tables:
            rows = await self.canonical.fetch(f"""
                SELECT uar_id, subject_id, username, role_id, system, division_id,
                       approval_status, remediated, remediated_at
                FROM {table}
                WHERE {pending_predicate()}
                ORDER BY uar_id, subject_id, role_id
            """)
            decisions.extend(ReviewDecision(**row) for row in rows)
        return decisions

    async def _pending_keys(self, as_of: datetime) -> Tuple[int, List[Tuple]]:
        decisions = await self.pending()
        return len(decisions), sorted({d.grant_key for d in decisions})

    def _source_queries(self) -> Tuple[Callable, Callable]:
        return self.adapter.matched_grants_query, self.adapter.revoke_grants_query

    async def _delete_in_canonical(self, session, as_of: datetime) -> Tuple[Set[Tuple], int]:
        matched: Set[Tuple] = set()
        for table in self.review_tables:
            rows = await session.fetch(f"""
                SELECT DISTINCT u.subject_id, u.role_id, u.system
                FROM {table} u
                WHERE {pending_predicate('u')}
                  AND EXISTS (
                    SELECT 1 FROM user_role r
                    WHERE r.subject_id = u.subject_id
                      AND r.role_id = u.role_id
                      AND r.system = u.system
                  )
            """)
            matched.update((row["subject_id"], row["role_id"], row["system"]) for row in rows)

        deleted = 0
        for table in self.review_tables:
            deleted += await session.execute(f"""
                DELETE FROM user_role
                WHERE EXISTS (
                    SELECT 1 FROM {table} u
                    WHERE u.subject_id = user_role.subject_id
                      AND u.role_id = user_role.role_id
                      AND u.system = user_role.system
                      AND {pending_predicate('u')}
                )
            """)
        return matched, deleted

    async def _mark_keys(self, session, keys: Sequence[Tuple], as_of: datetime) -> int:
        """Flag pending decisions for ``keys`` as remediated in every review table."""
        marked = 0
        for table in self.review_tables:
            for batch in chunked(keys, self.chunk_size):
                values, args = values_table(batch, offset=1)
                marked += await session.execute(f"""
                    UPDATE {table}
                    SET remediated = TRUE, remediated_at = $1
                    WHERE {pending_predicate()}
                      AND EXISTS (
                        SELECT 1 FROM {values} AS k
                        WHERE k.column1 = {table}.subject_id
                          AND k.column2 = {table}.role_id
                          AND k.column3 = {table}.system
                      )
                """, as_of, *args)
        return marked
