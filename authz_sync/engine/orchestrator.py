"""
Sync orchestrator.

Runs Extractor -> StagingLoader -> Deduplicator -> Merger for one source
at a time. Each step commits on its own; a failure aborts the remaining
steps and is re-raised after logging. Re-running after a failure is safe:
truncate and dedup are idempotent and the merge recomputes its deltas
from current state.
"""
import asyncio
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.run_ledger import RunLedger
from authz_sync.core.sources import SourceAdapter, get_adapter
from authz_sync.engine.deduplicator import Deduplicator
from authz_sync.engine.extractor import Extractor
from authz_sync.engine.loader import StagingLoader
from authz_sync.engine.merger import Merger
from authz_sync.errors import RunTimeout
from authz_sync.models import RunStatus, StepResult, SyncSummary

logger = structlog.get_logger(__name__)


class SyncOrchestrator:
    """Sequences the sync pipeline per source."""

    def __init__(
        self,
        canonical: Database,
        source_dbs: Dict[str, Database],
        ledger: Optional[RunLedger] = None,
        batch_size: int = 1000,
        timeout_seconds: float = 0.0,
    ):
        """
        Initialize orchestrator.

        Args:
            canonical: Canonical store handle (staging, registry, canonical tables)
            source_dbs: Read-only source handles keyed by adapter name
            ledger: Optional run ledger for step counts and terminal status
            batch_size: Rows per staging insert batch
            timeout_seconds: Wall-clock budget per source run, 0 disables
        """
        self.canonical = canonical
        self.source_dbs = {name.upper(): db for name, db in source_dbs.items()}
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds
        self.loader = StagingLoader(canonical, batch_size)
        self.deduplicator = Deduplicator(canonical)
        self.merger = Merger(canonical)

    def _source_db(self, adapter: SourceAdapter) -> Database:
        try:
            return self.source_dbs[adapter.name]
        except KeyError:
            raise ValueError(f"No connection configured for source {adapter.name}") from None

    async def _step(
        self,
        summary: SyncSummary,
        name: str,
        action: Callable[[], Awaitable[Dict[str, int]]],
    ) -> StepResult:
        """Run one step, log its row counts and record them."""
        started = time.monotonic()
        rows = await action()
        result = StepResult(
            step=name,
            source=summary.source,
            rows=rows,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        summary.steps.append(result)
        logger.info(
            "sync_step_complete",
            run_id=summary.run_id,
            source=summary.source,
            step=name,
            rows=rows,
            duration_seconds=result.duration_seconds,
        )
        if self.ledger:
            await self.ledger.record_step(summary.run_id, result)
        return result

    async def _run_steps(self, adapter: SourceAdapter, summary: SyncSummary, progress: Dict[str, str]) -> None:
        extractor = Extractor(adapter, self._source_db(adapter))

        progress["step"] = "extract_load"
        await self._step(
            summary, "extract_load",
            lambda: self.loader.load(adapter, extractor, summary.as_of),
        )

        progress["step"] = "dedup"
        await self._step(summary, "dedup", lambda: self.deduplicator.deduplicate(adapter))

        progress["step"] = "merge"
        await self._step(summary, "merge", lambda: self.merger.merge(adapter))

    async def run_source(
        self,
        source: Union[str, SourceAdapter],
        as_of: datetime,
        run_id: Optional[str] = None,
    ) -> SyncSummary:
        """
        Sync one source into the canonical store.

        Args:
            source: Adapter or adapter name
            as_of: Run timestamp shared by every row written
            run_id: Optional run ID (generated if not provided)

        Returns:
            SyncSummary with per-step row counts

        Raises:
            SourceUnavailable, PartialWriteFailure, RunTimeout: run aborted
        """
        adapter = get_adapter(source) if isinstance(source, str) else source
        if run_id is None:
            run_id = f"sync_{adapter.name.lower()}_{as_of:%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:8]}"

        summary = SyncSummary(run_id=run_id, source=adapter.name, as_of=as_of)
        progress = {"step": "start"}
        started = time.monotonic()

        logger.info("sync_started", run_id=run_id, source=adapter.name, as_of=as_of.isoformat())
        if self.ledger:
            await self.ledger.start_run(run_id, "sync", as_of, source=adapter.name)

        try:
            if self.timeout_seconds > 0:
                try:
                    await asyncio.wait_for(
                        self._run_steps(adapter, summary, progress), self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    raise RunTimeout(f"sync {adapter.name}", self.timeout_seconds) from None
            else:
                await self._run_steps(adapter, summary, progress)
        except Exception as e:
            summary.duration_seconds = round(time.monotonic() - started, 3)
            logger.error(
                "sync_failed",
                run_id=run_id,
                source=adapter.name,
                step=progress["step"],
                counts_so_far=summary.counts(),
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
            "sync_complete",
            run_id=run_id,
            source=adapter.name,
            counts=summary.counts(),
            duration_seconds=summary.duration_seconds,
        )
        return summary

    async def run_sources(
        self,
        sources: Iterable[Union[str, SourceAdapter]],
        as_of: datetime,
    ) -> List[SyncSummary]:
        """Sync sources one after another, stopping at the first failure."""
        summaries = []
        for source in sources:
            summaries.append(await self.run_source(source, as_of))
        return summaries
