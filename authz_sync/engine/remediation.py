"""
Remediation job.

Runs access-revocation and termination remediation as one scheduled job,
independent of the sync pipeline, recording the outcome in the run ledger.
Security-administration deletes run first for every selected class; the
canonical deletes and all remediated marks then share one transaction, so
a failed delete in either store leaves every record unmarked.
"""
import asyncio
import time
import uuid
from datetime import datetime
from typing import Optional

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.run_ledger import RunLedger
from authz_sync.engine.remediator import DEFAULT_CHUNK_SIZE, ReviewRemediator
from authz_sync.engine.termination import TerminationRemediator
from authz_sync.errors import RunTimeout
from authz_sync.models import RemediationSummary, RunStatus, StepResult

logger = structlog.get_logger(__name__)


class RemediationEngine:
    """Revokes access for rejected reviews and terminated employees."""

    def __init__(
        self,
        canonical: Database,
        security_admin: Database,
        ledger: Optional[RunLedger] = None,
        marking: str = "per_decision",
        timeout_seconds: float = 0.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize remediation engine.

        Args:
            canonical: Canonical store handle
            security_admin: Writable security-administration store handle
            ledger: Optional run ledger
            marking: "per_decision" or "batch" marking granularity
            timeout_seconds: Wall-clock budget for the run, 0 disables
            chunk_size: Keys per bulk statement
        """
        self.reviews = ReviewRemediator(
            canonical, security_admin, marking=marking, chunk_size=chunk_size
        )
        self.terminations = TerminationRemediator(
            canonical, security_admin, marking=marking, chunk_size=chunk_size
        )
        self.canonical = canonical
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds

    async def _apply(self, summary: RemediationSummary, name: str, counts: dict) -> None:
        summary.source_deleted += counts["source_deleted"]
        summary.canonical_deleted += counts["canonical_deleted"]
        if self.ledger:
            await self.ledger.record_step(
                summary.run_id, StepResult(step=name, source="SC+canonical", rows=counts)
            )

    async def _run(self, summary: RemediationSummary, reviews: bool, terminations: bool) -> None:
        remediators = []
        if reviews:
            remediators.append(self.reviews)
        if terminations:
            remediators.append(self.terminations)

        plans = [(r, await r.revoke_in_source(summary.as_of)) for r in remediators]

        # Canonical deletes of every class commit with all marks or not at all
        if any(plan.keys for _, plan in plans):
            async with self.canonical.transaction() as session:
                for remediator, plan in plans:
                    if plan.keys:
                        await remediator.revoke_in_canonical(session, plan, summary.as_of)
                for remediator, plan in plans:
                    if plan.keys:
                        await remediator.mark(session, plan, summary.as_of)

        for remediator, plan in plans:
            remediator.log_outcome(plan)
            if remediator is self.reviews:
                summary.decisions_pending = plan.counts["pending"]
                summary.decisions_marked = plan.counts["marked"]
            else:
                summary.terminations_pending = plan.counts["pending"]
                summary.terminations_marked = plan.counts["marked"]
            await self._apply(summary, remediator.job, plan.counts)

    async def run(
        self,
        as_of: datetime,
        reviews: bool = True,
        terminations: bool = True,
        run_id: Optional[str] = None,
    ) -> RemediationSummary:
        """
        Run remediation.

        Args:
            as_of: Run timestamp; termination cut-off and remediated_at value
            reviews: Include access-revocation remediation
            terminations: Include termination remediation
            run_id: Optional run ID (generated if not provided)

        Returns:
            RemediationSummary with deletion and marking counts

        Raises:
            RemediationFailure, RunTimeout: run aborted
        """
        if run_id is None:
            run_id = f"remediation_{as_of:%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:8]}"
        job = "remediation" if reviews and terminations else (
            "review_remediation" if reviews else "termination_remediation"
        )

        summary = RemediationSummary(run_id=run_id, as_of=as_of)
        started = time.monotonic()
        logger.info("remediation_started", run_id=run_id, job=job, as_of=as_of.isoformat())
        if self.ledger:
            await self.ledger.start_run(run_id, job, as_of)

        try:
            if self.timeout_seconds > 0:
                try:
                    await asyncio.wait_for(
                        self._run(summary, reviews, terminations), self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    raise RunTimeout(job, self.timeout_seconds) from None
            else:
                await self._run(summary, reviews, terminations)
        except Exception as e:
            logger.error(
                "remediation_run_failed",
                run_id=run_id,
                job=job,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            if self.ledger:
                await self.ledger.finish_run(run_id, RunStatus.FAILED, error=str(e))
            raise

        summary.duration_seconds = round(time.monotonic() - started, 3)
        if self.ledger:
            await self.ledger.finish_run(run_id, RunStatus.SUCCEEDED)
        logger.info(
            "remediation_complete",
            run_id=run_id,
            job=job,
            decisions_marked=summary.decisions_marked,
            terminations_marked=summary.terminations_marked,
            canonical_deleted=summary.canonical_deleted,
            source_deleted=summary.source_deleted,
            duration_seconds=summary.duration_seconds,
        )
        return summary
