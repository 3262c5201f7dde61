"""
SQLite-based run ledger.

Records every sync and remediation run with its per-step row counts and
terminal status, for observability dashboards and scheduler alerting.
"""
import json
from datetime import datetime
from typing import Dict, List, Optional

import aiosqlite
import structlog

from authz_sync.models import RunStatus, StepResult

logger = structlog.get_logger(__name__)


class RunLedger:
    """SQLite-based record of runs and their step counts."""

    def __init__(self, db_path: str = "authz_sync_runs.db"):
        """
        Initialize run ledger.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_run (
                run_id TEXT PRIMARY KEY,
                job TEXT NOT NULL,
                source TEXT,
                as_of TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                error_message TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_step (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step TEXT NOT NULL,
                source TEXT NOT NULL,
                rows TEXT NOT NULL,
                duration_seconds REAL,
                created_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_step_run
            ON sync_step(run_id)
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_run_job_started
            ON sync_run(job, started_at)
        """)

        await self._conn.commit()
        logger.info("run_ledger_initialized", db_path=self.db_path)

    async def start_run(
        self,
        run_id: str,
        job: str,
        as_of: datetime,
        source: Optional[str] = None,
    ) -> None:
        """Record a run as started."""
        now = datetime.now().isoformat()

        await self._conn.execute("""
            INSERT INTO sync_run (run_id, job, source, as_of, status, started_at)
            VALUES (?, ?, ?, ?, 'running', ?)
            ON CONFLICT(run_id)
            DO UPDATE SET status = 'running', error_message = NULL,
                          started_at = excluded.started_at, finished_at = NULL
        """, (run_id, job, source, as_of.isoformat(), now))
        await self._conn.commit()

    async def record_step(self, run_id: str, result: StepResult) -> None:
        """Record row counts for a completed step."""
        now = datetime.now().isoformat()

        await self._conn.execute("""
            INSERT INTO sync_step (run_id, step, source, rows, duration_seconds, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            run_id,
            result.step,
            result.source,
            json.dumps(result.rows, sort_keys=True),
            result.duration_seconds,
            now,
        ))
        await self._conn.commit()

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
    ) -> None:
        """Record the terminal status of a run."""
        now = datetime.now().isoformat()

        await self._conn.execute("""
            UPDATE sync_run
            SET status = ?, error_message = ?, finished_at = ?
            WHERE run_id = ?
        """, (status.value, error, now, run_id))
        await self._conn.commit()

    async def get_run(self, run_id: str) -> Optional[Dict]:
        """Get a run record."""
        cursor = await self._conn.execute("""
            SELECT run_id, job, source, as_of, status, error_message, started_at, finished_at
            FROM sync_run
            WHERE run_id = ?
        """, (run_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_steps(self, run_id: str) -> List[StepResult]:
        """Get step counts for a run in execution order."""
        cursor = await self._conn.execute("""
            SELECT step, source, rows, duration_seconds
            FROM sync_step
            WHERE run_id = ?
            ORDER BY id
        """, (run_id,))
        rows = await cursor.fetchall()
        return [
            StepResult(
                step=row["step"],
                source=row["source"],
                rows=json.loads(row["rows"]),
                duration_seconds=row["duration_seconds"] or 0.0,
            )
            for row in rows
        ]

    async def recent_runs(self, limit: int = 20, job: Optional[str] = None) -> List[Dict]:
        """List most recent runs, newest first."""
        if job:
            cursor = await self._conn.execute("""
                SELECT run_id, job, source, as_of, status, error_message, started_at, finished_at
                FROM sync_run
                WHERE job = ?
                ORDER BY started_at DESC
                LIMIT ?
            """, (job, limit))
        else:
            cursor = await self._conn.execute("""
                SELECT run_id, job, source, as_of, status, error_message, started_at, finished_at
                FROM sync_run
                ORDER BY started_at DESC
                LIMIT ?
            """, (limit,))
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("run_ledger_closed")
