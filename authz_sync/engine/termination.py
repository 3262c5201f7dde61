"""
Termination remediation batch.

Removes every grant held by employees whose termination is effective on
or before the run date, in both the security-administration store and
the canonical store, then marks the termination records remediated.
Runnable on its own or as part of RemediationEngine.
"""
from datetime import datetime
from typing import Callable, List, Sequence, Set, Tuple

from authz_sync.clients.database import chunked, values_table
from authz_sync.engine.remediator import BaseRemediator
from authz_sync.models import TerminationRecord


def _due(param: str, alias: str = "") -> str:
    """SQL predicate for terminations effective by ``param`` and not remediated."""
    prefix = f"{alias}." if alias else ""
    return f"{prefix}valid_to <= {param} AND COALESCE({prefix}remediated, FALSE) = FALSE"


class TerminationRemediator(BaseRemediator):
    """Revokes all access of terminated employees."""

    job = "termination"

    async def pending(self, as_of: datetime) -> List[TerminationRecord]:
        """Terminations effective by ``as_of`` and not yet remediated."""
        rows = await self.canonical.fetch(f"""
            SELECT subject_id, valid_to, remediated, remediated_at
            FROM employee_termination
            WHERE {_due('$1')}
            ORDER BY valid_to, subject_id
        """, as_of.date())
        return [TerminationRecord(**row) for row in rows]

    async def _pending_keys(self, as_of: datetime) -> Tuple[int, List[Tuple]]:
        records = await self.pending(as_of)
        return len(records), sorted({(r.subject_id,) for r in records})

    def _source_queries(self) -> Tuple[Callable, Callable]:
        # Subject queries take bare subject ids
        def match(batch):
            return self.adapter.matched_subjects_query([key[0] for key in batch])

        def revoke(batch):
            return self.adapter.revoke_subjects_query([key[0] for key in batch])

        return match, revoke

    async def _delete_in_canonical(self, session, as_of: datetime) -> Tuple[Set[Tuple], int]:
        cutoff = as_of.date()
        rows = await session.fetch(f"""
            SELECT DISTINCT t.subject_id
            FROM employee_termination t
            WHERE {_due('$1', 't')}
              AND EXISTS (
                SELECT 1 FROM user_role r WHERE r.subject_id = t.subject_id
              )
        """, cutoff)
        matched = {(row["subject_id"],) for row in rows}

        deleted = await session.execute(f"""
            DELETE FROM user_role
            WHERE EXISTS (
                SELECT 1 FROM employee_termination t
                WHERE t.subject_id = user_role.subject_id
                  AND {_due('$1', 't')}
            )
        """, cutoff)
        return matched, deleted

    async def _mark_keys(self, session, keys: Sequence[Tuple], as_of: datetime) -> int:
        """Flag due terminations of the given subjects as remediated."""
        marked = 0
        for batch in chunked(keys, self.chunk_size):
            values, args = values_table(batch, offset=2)
            marked += await session.execute(f"""
                UPDATE employee_termination
                SET remediated = TRUE, remediated_at = $1
                WHERE {_due('$2')}
                  AND EXISTS (
                    SELECT 1 FROM {values} AS k
                    WHERE k.column1 = employee_termination.subject_id
                  )
            """, as_of, as_of.date(), *args)
        return marked
