"""CLI commands for running and monitoring the analysis pipeline."""

from __future__ import annotations

import asyncio
import json
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from aularis.bootstrap import Application, build_application
from aularis.configuration.settings import Settings, load_settings
from aularis.errors import AularisError, format_error_for_cli
from aularis.logging_config import setup_logging
from aularis.orchestrator.models import BatchJob, QueueStatus
from aularis.orchestrator.scheduler import upcoming_fire_times

console = Console()
pipeline_app = typer.Typer(help="Aularis analysis pipeline")


def _print_error(exc: AularisError) -> None:
    console.print(f"[red]{escape(format_error_for_cli(exc))}[/red]")


def _load(config: Optional[Path]) -> Settings:
    """Load settings and configure logging, exiting on configuration errors."""
    try:
        settings = load_settings(Path(config).expanduser() if config else None)
    except AularisError as exc:
        _print_error(exc)
        raise typer.Exit(1)
    setup_logging(settings.log_level, settings.log_dir)
    return settings


def _build(settings: Settings) -> Application:
    try:
        return build_application(settings)
    except AularisError as exc:
        _print_error(exc)
        raise typer.Exit(1)


def _format_duration(seconds: Optional[float]) -> str:
    """Format duration in human-readable format."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    else:
        return f"{seconds / 3600:.1f}h"


def _format_timestamp(timestamp_str: Optional[str]) -> str:
    """Format ISO timestamp as a relative age."""
    if not timestamp_str:
        return "never"
    try:
        dt = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return timestamp_str
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = (datetime.now(timezone.utc) - dt).total_seconds()
    if seconds < 60:
        return f"{int(seconds)}s ago"
    elif seconds < 3600:
        return f"{int(seconds / 60)}m ago"
    elif seconds < 86400:
        return f"{int(seconds / 3600)}h ago"
    return f"{int(seconds / 86400)}d ago"


def _ratio(counter: dict) -> str:
    return f"{counter['processed']} / {counter['total']}"


def _print_job(job: BatchJob) -> None:
    status_color = {"completed": "green", "failed": "red"}.get(job.status.value, "yellow")
    lines = [
        f"Job:       {job.job_id}",
        f"Trigger:   {job.trigger.value}",
        f"Scope:     {job.scope}",
        f"Status:    [{status_color}]{job.status.value}[/{status_color}]",
        f"Duration:  {_format_duration(job.duration_seconds)}",
        "",
    ]
    for counter, value in job.counters.items():
        lines.append(f"  {counter:<20} {value:>6}")
    if job.errors:
        lines.append("")
        lines.append(f"[red]Errors ({len(job.errors)}):[/red]")
        lines.extend(f"  - {escape(error)}" for error in job.errors[:10])
    console.print(Panel("\n".join(lines), title="[bold]Batch run[/bold]", border_style="blue"))


@pipeline_app.command("run")
def run_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    no_scheduler: bool = typer.Option(False, "--no-scheduler", help="Only consume the queue"),
) -> None:
    """Run the consumer pool and batch timers until interrupted."""
    settings = _load(config)

    async def _serve() -> None:
        app = _build(settings)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            app.start(with_scheduler=not no_scheduler)
            console.print("[bold green]Aularis pipeline started[/bold green]")
            console.print("Press Ctrl+C to stop\n")
            await stop.wait()
            console.print("\n[bold yellow]Shutting down...[/bold yellow]")
        finally:
            await app.close()
        console.print("[bold green]Pipeline stopped[/bold green]")

    try:
        asyncio.run(_serve())
    except AularisError as exc:
        _print_error(exc)
        raise typer.Exit(1)


@pipeline_app.command("trigger")
def trigger_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit the run to one tenant"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Do not wait for queued analyses"),
) -> None:
    """Run one batch now: mark, sync, enqueue and optionally drain."""
    settings = _load(config)

    async def _trigger() -> BatchJob:
        app = _build(settings)
        try:
            app.start(with_scheduler=False)
            return await app.scheduler.trigger_manual_update(tenant_id=tenant, wait=not no_wait)
        finally:
            await app.close()

    try:
        job = asyncio.run(_trigger())
    except AularisError as exc:
        _print_error(exc)
        raise typer.Exit(1)
    _print_job(job)
    if job.fatal_error:
        raise typer.Exit(1)


@pipeline_app.command("scan")
def scan_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit the scan to one tenant"),
) -> None:
    """Mark and enqueue eligible items without syncing remote content."""
    settings = _load(config)

    async def _scan() -> BatchJob:
        app = _build(settings)
        try:
            return await app.orchestrator.scan_pending(tenant_id=tenant)
        finally:
            await app.close()

    try:
        job = asyncio.run(_scan())
    except AularisError as exc:
        _print_error(exc)
        raise typer.Exit(1)
    _print_job(job)


@pipeline_app.command("state")
def state_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Show the shared process state of the current or last run."""
    settings = _load(config)
    app = _build(settings)
    try:
        report = app.status_report()
    finally:
        asyncio.run(app.close())

    if format_output == "json":
        console.print_json(json.dumps(report, default=str))
        return

    process = report["process"]
    progress = process["progress"]
    timing = process["timing"]
    queue = report["queue"]
    active = "[green]active[/green]" if process["is_active"] else "[dim]idle[/dim]"

    sections = [
        "[bold cyan]Process[/bold cyan]",
        f"  State:        {active} ({process['process_type'] or '-'})",
        f"  Step:         {escape(process['current_step'])}",
        f"  Progress:     {progress['percentage']:>3}%",
        f"  Tenants:      {_ratio(progress['tenants'])}",
        f"  Courses:      {_ratio(progress['courses'])}",
        f"  Analyses:     {_ratio(progress['analyses'])}",
        f"  Tenant:       {progress['current_tenant'] or '-'}",
        f"  Started:      {_format_timestamp(timing['start_time'])}",
        f"  Elapsed:      {timing['elapsed_time']}",
        f"  ETA:          {timing['estimated_completion'] or '-'}",
        "",
        "[bold cyan]Queue[/bold cyan]",
        f"  Pending:      {queue['pending']:>5}",
        f"  Processing:   {queue['processing']:>5}",
        f"  Completed:    {queue['completed']:>5}",
        f"  Failed:       {queue['failed']:>5}",
    ]
    if process["errors"]:
        sections.append("")
        sections.append("[bold red]Recent errors[/bold red]")
        sections.extend(f"  {escape(error)}" for error in process["errors"])

    console.print(Panel("\n".join(sections), title="[bold]Aularis State[/bold]", border_style="blue"))


@pipeline_app.command("queue-status")
def queue_status_command(
    tenant: str = typer.Argument(..., help="Tenant identifier"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    status: Optional[str] = typer.Option(None, "--status", help="List entries in this status"),
    limit: int = typer.Option(20, "--limit", help="Entries to list"),
) -> None:
    """Show queue counts for one tenant."""
    status_filter = None
    if status:
        try:
            status_filter = QueueStatus(status.lower())
        except ValueError:
            console.print(f"[red]Invalid status: {escape(status)}[/red]")
            console.print(f"Valid: {', '.join(s.value for s in QueueStatus)}")
            raise typer.Exit(1)

    settings = _load(config)
    app = _build(settings)
    try:
        counts = app.queue.get_status(tenant)
        entries = app.queue.list_entries(tenant, status_filter, limit) if status_filter else []
    finally:
        asyncio.run(app.close())

    table = Table(title=f"Queue for tenant {tenant}")
    table.add_column("Status", style="cyan")
    table.add_column("Entries", justify="right")
    for key, value in counts.to_dict().items():
        if key != "in_progress":
            table.add_row(key, str(value))
    console.print(table)
    console.print(f"In progress: {'yes' if counts.in_progress else 'no'}")

    if entries:
        detail = Table(title=f"{status_filter.value.capitalize()} entries")
        detail.add_column("ID", justify="right")
        detail.add_column("Activity")
        detail.add_column("Kind")
        detail.add_column("Attempts", justify="right")
        detail.add_column("Updated")
        detail.add_column("Last error", style="red")
        for entry in entries:
            detail.add_row(
                str(entry.id),
                entry.activity_id,
                entry.kind.value,
                f"{entry.attempts}/{entry.max_attempts}",
                _format_timestamp(entry.updated_at.isoformat()),
                escape((entry.last_error or "")[:60]),
            )
        console.print(detail)


@pipeline_app.command("cleanup")
def cleanup_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    older_than: Optional[float] = typer.Option(
        None, "--older-than", help="Delete completed entries older than this many hours"
    ),
) -> None:
    """Delete completed queue entries past retention."""
    settings = _load(config)
    app = _build(settings)
    try:
        deleted = app.queue.cleanup(older_than)
    finally:
        asyncio.run(app.close())
    console.print(f"[green]Deleted {deleted} completed entries[/green]")


@pipeline_app.command("jobs")
def jobs_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    limit: int = typer.Option(10, "--limit", help="Number of runs to show"),
) -> None:
    """List recent batch runs."""
    settings = _load(config)
    app = _build(settings)
    try:
        jobs = app.orchestrator.recent_jobs(limit)
    finally:
        asyncio.run(app.close())

    if not jobs:
        console.print("[yellow]No batch runs recorded[/yellow]")
        return

    table = Table(title="Recent batch runs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Trigger")
    table.add_column("Scope")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Enqueued", justify="right")
    table.add_column("Errors", justify="right")
    for job in jobs:
        table.add_row(
            job.job_id[:12],
            job.trigger.value,
            job.scope,
            job.status.value,
            _format_timestamp(job.started_at.isoformat()),
            _format_duration(job.duration_seconds),
            str(job.counters.get("enqueued", 0)),
            str(len(job.errors)),
        )
    console.print(table)


@pipeline_app.command("schedule")
def schedule_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    count: int = typer.Option(3, "--count", help="Fire times per expression"),
) -> None:
    """Show the next fire times of the configured batch triggers."""
    settings = _load(config)
    schedule = settings.schedule

    table = Table(title=f"Batch schedule ({schedule.timezone})")
    table.add_column("Expression", style="cyan")
    table.add_column("Next fire times")
    for expression in schedule.cron_expressions:
        try:
            times = upcoming_fire_times(expression, schedule.timezone, count)
        except AularisError as exc:
            _print_error(exc)
            raise typer.Exit(1)
        table.add_row(expression, "\n".join(t.strftime("%Y-%m-%d %H:%M %Z") for t in times))
    console.print(table)
    if not schedule.enabled:
        console.print("[yellow]Scheduling is disabled; timers will not fire[/yellow]")


__all__ = ["pipeline_app"]
