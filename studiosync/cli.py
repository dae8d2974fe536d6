"""StudioSync operator CLI.

Commands:
- init-db: Initialize database schema
- start: Create an import job (and enqueue it for the worker)
- status: Show a job's status and per-data-type progress
- resume: Resume a paused or failed job
- pause: Pause a pending or running job
- force-cancel: Cancel every active job of an organization
- run-job: Process one job in the foreground
- watchdog: Fail stalled jobs once
- schedule-check: Evaluate scheduled imports once
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime

import typer
from rich.console import Console
from rich.table import Table

from studiosync.config import get_config
from studiosync.core.errors import StudioSyncError
from studiosync.core.logging import configure_logging
from studiosync.core.queue import enqueue_import_job, get_queue
from studiosync.db.connection import close_db, get_session_factory, init_db
from studiosync.jobs.control import ImportController
from studiosync.jobs.import_worker import ImportWorker
from studiosync.jobs.progress import DATA_TYPE_ORDER
from studiosync.jobs.scheduler import ImportScheduler
from studiosync.jobs.store import JobStore
from studiosync.jobs.types import ImportJob, JobStatus
from studiosync.jobs.watchdog import Watchdog
from studiosync.source.client import SourceAPIClient

app = typer.Typer(
    name="studiosync",
    help="StudioSync - Resumable studio data imports",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "cyan",
    JobStatus.RUNNING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.PAUSED: "yellow",
    JobStatus.CANCELLED: "dim",
}


def _store() -> JobStore:
    return JobStore(
        get_session_factory(),
        retry_attempts=get_config().worker.storage_retry_attempts,
    )


async def _enqueue(job_id: str) -> None:
    queue = await get_queue()
    try:
        await enqueue_import_job(queue, job_id)
    finally:
        await queue.aclose()


def _controller(enqueue: bool) -> ImportController:
    return ImportController(_store(), dispatch=_enqueue if enqueue else None)


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got '{value}'")


def _run(coro) -> None:
    """Run a command coroutine, rendering pipeline errors and closing the engine."""

    async def _main():
        try:
            await coro
        finally:
            await close_db()

    try:
        asyncio.run(_main())
    except StudioSyncError as e:
        console.print(f"[bold red]✗[/bold red] {e.message}")
        raise typer.Exit(code=1)


def _print_job(job: ImportJob) -> None:
    style = STATUS_STYLES.get(job.status, "white")
    console.print(f"[bold]Import {job.id}[/bold]")
    console.print(f"  Organization: {job.organization_id}")
    console.print(f"  Status: [{style}]{job.status.value}[/{style}]")
    console.print(f"  Range: {job.start_date.isoformat()} → {job.end_date.isoformat()}")
    if job.current_data_type:
        console.print(f"  Position: {job.current_data_type} @ {job.current_offset}")
    if job.error:
        console.print(f"  Error: {job.error}", style="dim")

    table = Table(title="Progress")
    table.add_column("Data type", style="cyan")
    table.add_column("Current", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Done")

    for name in DATA_TYPE_ORDER:
        if name not in job.data_types:
            continue
        entry = job.progress.for_type(name)
        table.add_row(
            name,
            str(entry.current),
            str(entry.total),
            str(entry.imported),
            str(entry.updated),
            str(entry.skipped),
            "✓" if entry.completed else "",
        )
    console.print(table)
    console.print(f"  API calls: {job.progress.api_call_count}")


@app.command(name="init-db")
def init_db_cmd(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    if drop:
        console.print("[yellow]Dropping existing tables...[/yellow]")

    _run(init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def start(
    data_types: list[str] | None = typer.Argument(
        None, help="Data types to import (clients, classes, visits, sales)"
    ),
    start_date: str = typer.Option(..., "--from", help="First day (YYYY-MM-DD)"),
    end_date: str = typer.Option(..., "--to", help="Last day, inclusive (YYYY-MM-DD)"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    enqueue: bool = typer.Option(True, "--enqueue/--no-enqueue", help="Hand the job to the worker"),
):
    """Create an import job."""
    org_id = org_id or get_config().org_id
    first, last = _parse_date(start_date), _parse_date(end_date)
    types = data_types or list(DATA_TYPE_ORDER)

    async def _start():
        job = await _controller(enqueue).start(org_id, types, first, last)
        console.print(f"[bold green]✓[/bold green] Import created: {job.id}")
        console.print(f"  Data types: {', '.join(job.data_types)}")
        if not enqueue:
            console.print(f"[yellow]Not enqueued.[/yellow] Run: studiosync run-job {job.id}")

    _run(_start())


@app.command()
def status(job_id: str = typer.Argument(..., help="Import job ID")):
    """Show a job's status and progress."""

    async def _status():
        job = await _controller(False).get(job_id)
        _print_job(job)

    _run(_status())


@app.command()
def resume(
    job_id: str = typer.Argument(..., help="Import job ID"),
    enqueue: bool = typer.Option(True, "--enqueue/--no-enqueue", help="Hand the job to the worker"),
):
    """Resume a paused or failed job from its checkpoint."""

    async def _resume():
        job = await _controller(enqueue).resume(job_id)
        console.print(
            f"[bold green]✓[/bold green] Resumed {job.id} "
            f"at {job.current_data_type or 'start'} @ {job.current_offset}"
        )

    _run(_resume())


@app.command()
def pause(job_id: str = typer.Argument(..., help="Import job ID")):
    """Pause a job. A running job stops at its next page boundary."""

    async def _pause():
        job = await _controller(False).pause(job_id)
        console.print(f"[bold green]✓[/bold green] Paused {job.id}")

    _run(_pause())


@app.command(name="force-cancel")
def force_cancel(
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
):
    """Cancel every pending, running or paused job of an organization."""
    org_id = org_id or get_config().org_id

    async def _cancel():
        cancelled = await _controller(False).force_cancel_all(org_id)
        if not cancelled:
            console.print("[yellow]No active imports[/yellow]")
            return
        for job_id in cancelled:
            console.print(f"  [red]✗[/red] {job_id}")
        console.print(f"[bold green]✓[/bold green] Cancelled {len(cancelled)} import(s)")

    _run(_cancel())


@app.command(name="run-job")
def run_job(job_id: str = typer.Argument(..., help="Import job ID")):
    """Process one job in the foreground.

    SIGTERM/SIGINT leave the job resumable instead of failing it.
    """
    configure_logging()
    config = get_config()

    async def _run_job():
        store = _store()
        async with SourceAPIClient(config.source) as client:
            worker = ImportWorker(
                store,
                get_session_factory(),
                client,
                heartbeat_interval=config.worker.heartbeat_interval_seconds,
                page_size=config.source.page_size,
            )
            worker.install_signal_handlers()
            final = await worker.process_job(job_id)
            await worker.wait_idle()

        if final is None:
            console.print("[yellow]Job stopped without a final status[/yellow]")
            return
        job = await store.get(job_id)
        if job is not None:
            _print_job(job)

    _run(_run_job())


@app.command()
def watchdog(
    threshold: int | None = typer.Option(None, "--threshold", help="Stall threshold in minutes"),
):
    """Fail running jobs whose heartbeat is stale."""
    config = get_config()

    async def _sweep():
        dog = Watchdog(
            _store(), threshold_minutes=threshold or config.worker.stall_threshold_minutes
        )
        failed = await dog.sweep()
        if failed:
            for job_id in failed:
                console.print(f"  [red]✗[/red] {job_id} marked failed")
        else:
            console.print("[green]No stalled imports[/green]")

    _run(_sweep())


@app.command(name="schedule-check")
def schedule_check(
    enqueue: bool = typer.Option(True, "--enqueue/--no-enqueue", help="Hand jobs to the worker"),
):
    """Evaluate every enabled scheduled import once."""
    config = get_config()

    async def _check():
        scheduler = ImportScheduler(
            get_session_factory(),
            _controller(enqueue),
            min_gap_minutes=config.scheduler.min_gap_minutes,
        )
        created = await scheduler.check()
        for job_id in created:
            console.print(f"  [green]✓[/green] Started {job_id}")
        console.print(f"[bold]Scheduled imports started:[/bold] {len(created)}")

    _run(_check())


if __name__ == "__main__":
    app()
