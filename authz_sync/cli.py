"""
CLI for the authorization sync and remediation jobs.

Commands:
- sync: Reconcile one or more sources into the canonical store
- remediate: Revoke rejected review access and terminated employees' access
- status: Show step counts and outcome of a run
- runs: List recent runs
- init-schema: Create canonical and staging tables
- list-sources: Show configured source systems
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

import structlog
import typer

from authz_sync.clients.database import PostgresDatabase
from authz_sync.config import Settings, get_settings
from authz_sync.core.run_ledger import RunLedger
from authz_sync.core.schema import create_canonical_schema
from authz_sync.core.sources import SOURCES, get_adapter
from authz_sync.engine.orchestrator import SyncOrchestrator
from authz_sync.engine.remediation import RemediationEngine
from authz_sync.errors import SyncError

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="authz-sync",
    help="Authorization sync and remediation batch jobs",
)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog over stdlib logging."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def parse_as_of(value: Optional[str]) -> datetime:
    """Parse --as-of as YYYY-MM-DD or ISO datetime; default is now."""
    if not value:
        return datetime.now().replace(microsecond=0)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid --as-of: {value}. Use YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS")


def _postgres(settings: Settings, dsn: str, name: str, read_only: bool = False) -> PostgresDatabase:
    return PostgresDatabase(
        dsn,
        name=name,
        read_only=read_only,
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
        command_timeout=settings.command_timeout,
        connect_retries=settings.connect_retries,
    )


async def _close_all(*handles) -> None:
    for handle in handles:
        if handle is not None:
            await handle.close()


@app.callback()
def main() -> None:
    """Configure logging from settings before any command runs."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)


@app.command()
def sync(
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="Source to sync (LDAP, SC, TMMIN); repeatable"),
    all_sources: bool = typer.Option(False, "--all", "-a", help="Sync every source with a configured DSN"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Run timestamp (default: now)"),
):
    """
    Reconcile source role assignments into the canonical store.

    Runs extract, staging load, dedup and merge per source. Stops at the
    first failing source and exits non-zero.
    """
    settings = get_settings()
    run_at = parse_as_of(as_of)

    if all_sources:
        names = []
        for name in SOURCES:
            if settings.source_dsn(name):
                names.append(name)
            else:
                typer.echo(f"Skipping {name}: no DSN configured")
    elif source:
        try:
            names = [get_adapter(name).name for name in source]
        except KeyError as e:
            raise typer.BadParameter(str(e))
        for name in names:
            if not settings.source_dsn(name):
                raise typer.BadParameter(f"No DSN configured for source {name}")
    else:
        raise typer.BadParameter("Use --source NAME or --all")

    if not names:
        typer.echo("No sources to sync")
        raise typer.Exit(1)

    async def run():
        canonical = _postgres(settings, settings.canonical_dsn, "canonical")
        source_dbs: Dict[str, PostgresDatabase] = {
            name: _postgres(settings, settings.source_dsn(name), name.lower(), read_only=True)
            for name in names
        }
        ledger = RunLedger(settings.ledger_db_path)

        try:
            await canonical.connect()
            for db in source_dbs.values():
                await db.connect()
            await ledger.initialize()

            orchestrator = SyncOrchestrator(
                canonical,
                source_dbs,
                ledger=ledger,
                batch_size=settings.load_batch_size,
                timeout_seconds=settings.run_timeout_seconds,
            )
            summaries = await orchestrator.run_sources(names, run_at)

            for summary in summaries:
                typer.echo(f"\n{summary.source} ({summary.run_id})")
                for step in summary.steps:
                    counts = ", ".join(f"{k}={v}" for k, v in step.rows.items())
                    typer.echo(f"  {step.step}: {counts}")
                typer.echo(f"  Duration: {summary.duration_seconds:.2f} seconds")
        finally:
            await _close_all(ledger, canonical, *source_dbs.values())

    try:
        asyncio.run(run())
    except SyncError as e:
        typer.echo(f"Sync failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def remediate(
    reviews_only: bool = typer.Option(False, "--reviews-only", help="Only revoke rejected review access"),
    terminations_only: bool = typer.Option(False, "--terminations-only", help="Only remediate terminations"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Run timestamp (default: now)"),
):
    """
    Revoke access rejected in review and held by terminated employees.

    Deletes from the security-administration store and the canonical
    store, then marks the originating records remediated.
    """
    if reviews_only and terminations_only:
        raise typer.BadParameter("--reviews-only and --terminations-only are exclusive")

    settings = get_settings()
    if not settings.security_admin_dsn:
        raise typer.BadParameter("AUTHZ_SYNC_SECURITY_ADMIN_DSN is required for remediation")
    run_at = parse_as_of(as_of)

    async def run():
        canonical = _postgres(settings, settings.canonical_dsn, "canonical")
        security_admin = _postgres(settings, settings.security_admin_dsn, "sc")
        ledger = RunLedger(settings.ledger_db_path)

        try:
            await canonical.connect()
            await security_admin.connect()
            await ledger.initialize()

            engine = RemediationEngine(
                canonical,
                security_admin,
                ledger=ledger,
                marking=settings.remediation_marking,
                timeout_seconds=settings.run_timeout_seconds,
            )
            summary = await engine.run(
                run_at,
                reviews=not terminations_only,
                terminations=not reviews_only,
            )

            typer.echo("\n" + "=" * 50)
            typer.echo("REMEDIATION SUMMARY")
            typer.echo("=" * 50)
            typer.echo(f"Run ID: {summary.run_id}")
            typer.echo(f"As of: {summary.as_of}")
            typer.echo(f"Decisions: {summary.decisions_pending} pending, {summary.decisions_marked} marked")
            typer.echo(f"Terminations: {summary.terminations_pending} pending, {summary.terminations_marked} marked")
            typer.echo(f"Deleted: {summary.source_deleted} in SC, {summary.canonical_deleted} in canonical")
            typer.echo(f"Duration: {summary.duration_seconds:.2f} seconds")
        finally:
            await _close_all(ledger, canonical, security_admin)

    try:
        asyncio.run(run())
    except SyncError as e:
        typer.echo(f"Remediation failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def status(
    run_id: str = typer.Option(..., "--run-id", "-r", help="Run ID to check"),
):
    """
    Show outcome and per-step row counts of a run.
    """
    async def run():
        settings = get_settings()
        ledger = RunLedger(settings.ledger_db_path)
        await ledger.initialize()

        try:
            record = await ledger.get_run(run_id)
            if not record:
                typer.echo(f"Run not found: {run_id}")
                raise typer.Exit(1)

            typer.echo(f"\nRun: {record['run_id']} ({record['job']} {record['source'] or ''})")
            typer.echo(f"Status: {record['status']}")
            typer.echo(f"Started: {record['started_at']}  Finished: {record['finished_at'] or '-'}")
            if record["error_message"]:
                typer.echo(f"Error: {record['error_message']}")

            for step in await ledger.get_steps(run_id):
                counts = ", ".join(f"{k}={v}" for k, v in step.rows.items())
                typer.echo(f"  {step.step}: {counts}")
        finally:
            await ledger.close()

    asyncio.run(run())


@app.command()
def runs(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    job: Optional[str] = typer.Option(None, "--job", "-j", help="Filter by job name"),
):
    """
    List recent runs, newest first.
    """
    async def run():
        settings = get_settings()
        ledger = RunLedger(settings.ledger_db_path)
        await ledger.initialize()

        try:
            for record in await ledger.recent_runs(limit, job):
                typer.echo(
                    f"{record['started_at']}  {record['status']:<9}  "
                    f"{record['job']:<24} {record['source'] or '':<6} {record['run_id']}"
                )
        finally:
            await ledger.close()

    asyncio.run(run())


@app.command("init-schema")
def init_schema():
    """
    Create canonical and staging tables if they don't exist.
    """
    settings = get_settings()

    async def run():
        canonical = _postgres(settings, settings.canonical_dsn, "canonical")
        await canonical.connect()
        try:
            count = await create_canonical_schema(canonical)
            typer.echo(f"Executed {count} DDL statements")
        finally:
            await canonical.close()

    asyncio.run(run())


@app.command("list-sources")
def list_sources():
    """
    List source systems and whether a DSN is configured.
    """
    settings = get_settings()
    typer.echo("\nSources:")
    for name, adapter in SOURCES.items():
        configured = "configured" if settings.source_dsn(name) else "no DSN"
        typer.echo(f"  {name:<6} - {adapter.description} ({configured})")


if __name__ == "__main__":
    app()
