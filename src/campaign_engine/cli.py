"""Command-line interface using Typer."""

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from campaign_engine import __version__
from campaign_engine.logging import setup_logging

# Setup logging
setup_logging()

app = typer.Typer(
    name="campaign-engine",
    help="Campaign Engine - bulk ad campaign creation CLI",
    add_completion=False,
)

# Subcommand groups
jobs_app = typer.Typer(help="Creation job commands")
queue_app = typer.Typer(help="Request queue commands")
credentials_app = typer.Typer(help="Credential pool commands")
failures_app = typer.Typer(help="Failure ledger commands")
app.add_typer(jobs_app, name="jobs")
app.add_typer(queue_app, name="queue")
app.add_typer(credentials_app, name="credentials")
app.add_typer(failures_app, name="failures")

console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "queued": "dim",
    "in_progress": "yellow",
    "creating": "yellow",
    "processing": "yellow",
    "completed": "green",
    "created": "green",
    "failed": "red",
    "rolled_back": "magenta",
    "cancelled": "magenta",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _engine() -> Any:
    from campaign_engine.services.engine import build_engine

    return build_engine()


def _run(coro: Any) -> Any:
    from campaign_engine.utils.async_utils import run_async

    return run_async(coro)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Campaign Engine v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Campaign Engine - create campaigns, ad sets and ads in bulk."""
    pass


@app.command()
def worker() -> None:
    """Start a Celery worker (for development)."""
    console.print("[bold blue]Starting Celery worker...[/bold blue]")

    import subprocess
    import sys

    subprocess.run(
        [
            sys.executable,
            "-m",
            "celery",
            "-A",
            "campaign_engine.worker",
            "worker",
            "--beat",
            "--loglevel=info",
        ],
        check=True,
    )


@app.command("init-db")
def init_db() -> None:
    """Create all tables from the ORM models (development only; use Alembic otherwise)."""
    from campaign_engine.db.session import create_tables

    create_tables()
    console.print("[bold green]✓ Tables created[/bold green]")


# =============================================================================
# JOBS COMMANDS
# =============================================================================


def _print_job(view: Any) -> None:
    job = view.job
    console.print(Panel.fit(
        f"[cyan]Owner:[/cyan] {job.owner}\n"
        f"[cyan]Account:[/cyan] {job.target_account} ({job.account_group})\n"
        f"[cyan]Parent:[/cyan] {job.parent_name} {job.parent_entity_id or ''}\n"
        f"[cyan]Status:[/cyan] {_styled(job.status.value)}\n"
        f"[cyan]Children:[/cyan] {job.children_created}/{job.requested_children}\n"
        f"[cyan]Retries:[/cyan] {job.retry_count}/{job.retry_budget}\n"
        f"[cyan]Progress:[/cyan] {view.progress:.0%}\n"
        f"[cyan]Last error:[/cyan] {job.last_error or 'None'}"
        + (f"\n[cyan]Rollback:[/cyan] {job.rollback_reason}" if job.rollback_triggered else ""),
        title=f"Job {job.id}",
        border_style="blue",
    ))

    table = Table(title="Slots")
    table.add_column("#", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Remote ID")
    table.add_column("Retries", justify="right")
    for slot in view.slots:
        table.add_row(
            str(slot.slot_number),
            slot.entity_type.value,
            (slot.entity_name or "")[:40],
            _styled(slot.status.value),
            slot.remote_entity_id or "-",
            str(slot.retry_count),
        )
    console.print(table)


@jobs_app.command("create")
def jobs_create(
    request_file: Path = typer.Argument(..., help="JSON file with 'parent' and 'children'"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner of the job"),
    account: str = typer.Option(..., "--account", "-a", help="Target ad account id"),
    retry_budget: Optional[int] = typer.Option(None, "--retry-budget", help="Job retry budget"),
    background: bool = typer.Option(
        False, "--background", "-b", help="Drive on a Celery worker instead of inline"
    ),
) -> None:
    """Verify an account and create a campaign with its children.

    Example:
        campaign-engine jobs create launch.json --owner alice --account act_123
    """
    try:
        payload = json.loads(request_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Could not read {request_file}: {e}[/bold red]")
        raise typer.Exit(code=1)

    from campaign_engine.services.errors import PayloadValidationError

    engine = _engine()
    try:
        job_id = _run(
            engine.orchestrator.start_job(
                owner,
                account,
                payload.get("parent", {}),
                payload.get("children", []),
                retry_budget=retry_budget,
            )
        )
    except PayloadValidationError as e:
        console.print(f"[bold red]{e}[/bold red]")
        for error in e.errors:
            console.print(f"  [dim]{'.'.join(map(str, error['loc']))}:[/dim] {error['msg']}")
        raise typer.Exit(code=1)

    console.print(f"[green]Job created: {job_id}[/green]")
    if background:
        from campaign_engine.jobs.tasks import drive_job_task

        task = drive_job_task.delay(job_id)
        console.print(f"[dim]Drive enqueued: {task.id}[/dim]")
    else:
        _run(engine.orchestrator.drive_job(job_id))
    _print_job(engine.orchestrator.get_job_status(job_id))


@jobs_app.command("status")
def jobs_status(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Show a job with its slots."""
    from campaign_engine.services.errors import JobNotFoundError

    try:
        _print_job(_engine().orchestrator.get_job_status(job_id))
    except JobNotFoundError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)


@jobs_app.command("drive")
def jobs_drive(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Drive a job again. Created slots are never re-created."""
    engine = _engine()
    status = _run(engine.orchestrator.drive_job(job_id))
    console.print(f"Job {job_id}: {_styled(status.value)}")


@jobs_app.command("cancel")
def jobs_cancel(
    job_id: int = typer.Argument(..., help="Job ID"),
    rollback: bool = typer.Option(False, "--rollback", help="Delete what the job created"),
) -> None:
    """Cancel a job between slots."""
    job = _run(_engine().orchestrator.cancel_job(job_id, rollback=rollback))
    console.print(f"Job {job_id}: {_styled(job.status.value)}")


@jobs_app.command("rollback")
def jobs_rollback(
    job_id: int = typer.Argument(..., help="Job ID"),
    reason: str = typer.Option("Manual rollback", "--reason", "-r", help="Rollback reason"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list what would be deleted"),
) -> None:
    """Delete every entity a job created."""
    engine = _engine()
    if dry_run:
        table = Table(title=f"Rollback preview for job {job_id}")
        table.add_column("Type", style="cyan")
        table.add_column("Name")
        table.add_column("Remote ID")
        for slot in engine.rollback.preview(job_id):
            table.add_row(slot.entity_type.value, slot.entity_name or "", slot.remote_entity_id)
        console.print(table)
        return

    report = _run(engine.rollback.rollback(job_id, reason))
    if report.already_rolled_back:
        console.print(f"[yellow]Job {job_id} was already rolled back[/yellow]")
        return
    if not report.triggered:
        console.print(f"[dim]Nothing to roll back for job {job_id}[/dim]")
        return
    console.print(
        f"[bold]Rolled back job {job_id}:[/bold] "
        f"{len(report.deleted)} deleted, {len(report.queued)} queued, {len(report.errors)} errors"
    )
    for error in report.errors:
        console.print(f"  [red]{error.get('entity_id', '?')}: {error['error']}[/red]")


@jobs_app.command("list")
def jobs_list(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Filter by owner"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
) -> None:
    """List creation jobs."""
    from campaign_engine.domain.enums import JobStatus

    engine = _engine()
    job_ids = engine.jobs.list_ids(JobStatus(status) if status else None, owner)
    if not job_ids:
        console.print("[dim]No jobs found[/dim]")
        return

    table = Table(title="Creation Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Owner", style="cyan")
    table.add_column("Account")
    table.add_column("Parent")
    table.add_column("Status")
    table.add_column("Children", justify="right")
    for job_id in job_ids:
        job = engine.jobs.get(job_id)
        table.add_row(
            str(job.id),
            job.owner,
            job.target_account,
            job.parent_name[:30],
            _styled(job.status.value),
            f"{job.children_created}/{job.requested_children}",
        )
    console.print(table)


# =============================================================================
# QUEUE COMMANDS
# =============================================================================


@queue_app.command("status")
def queue_status() -> None:
    """Show credential usage and queue depth."""
    status = _engine().get_queue_status()
    pool = status["pool"]

    table = Table(title="Credential Usage")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Group")
    table.add_column("Active")
    table.add_column("Used", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Resets")
    for row in status["per_credential_usage"]:
        table.add_row(
            str(row["id"]),
            row["name"],
            row["account_group"],
            "✓" if row["active"] else "✗",
            f"{row['calls_used']}/{row['calls_limit']}",
            f"{row['usage_percentage']}%",
            row["window_reset_at"].strftime("%H:%M:%S") if row["window_reset_at"] else "-",
        )
    console.print(table)

    counts = ", ".join(f"{k}={v}" for k, v in status["queue_counts"].items() if v)
    console.print(
        f"[cyan]Queue depth:[/cyan] {status['queue_depth']}  [dim]{counts}[/dim]\n"
        f"[cyan]Available credentials:[/cyan] "
        f"{pool['available_credentials']}/{pool['active_credentials']}"
    )
    if pool["minutes_until_reset"] is not None:
        console.print(f"[cyan]Next reset in:[/cyan] {pool['minutes_until_reset']} min")


@queue_app.command("process")
def queue_process() -> None:
    """Run one queue tick now."""
    engine = _engine()
    report = _run(engine.processor.process_due())
    console.print(
        f"Selected {report.selected}: "
        f"[green]{report.completed} completed[/green], "
        f"[yellow]{report.requeued} requeued[/yellow], "
        f"[red]{report.failed} failed[/red], {report.skipped} skipped, "
        f"{report.reclaimed} reclaimed"
    )


@queue_app.command("cancel")
def queue_cancel(request_id: int = typer.Argument(..., help="Queued request ID")) -> None:
    """Cancel a request that has not been picked up yet."""
    if _engine().queue.cancel(request_id):
        console.print(f"[green]Cancelled queued request {request_id}[/green]")
    else:
        console.print(f"[bold red]Queued request {request_id} is not queued[/bold red]")
        raise typer.Exit(code=1)


# =============================================================================
# CREDENTIALS COMMANDS
# =============================================================================


@credentials_app.command("add")
def credentials_add(
    name: str = typer.Option(..., "--name", "-n", help="Credential name"),
    token: str = typer.Option(..., "--token", "-t", prompt=True, hide_input=True),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Account group"),
    kind: str = typer.Option("system_user", "--kind", "-k", help="default, system_user or backup_app"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Calls per window"),
) -> None:
    """Add a credential to the pool."""
    from campaign_engine.domain.enums import CredentialKind

    credential_id = _engine().pool.add_credential(
        name, token, account_group=group, kind=CredentialKind(kind), calls_limit=limit
    )
    console.print(f"[green]Credential added: {credential_id}[/green]")


@credentials_app.command("list")
def credentials_list(
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Account group"),
) -> None:
    """List credentials and their usage."""
    rows = _engine().pool.usage_snapshot(group)
    if not rows:
        console.print("[dim]No credentials configured[/dim]")
        return
    table = Table(title="Credentials")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Group")
    table.add_column("Active")
    table.add_column("Usage", justify="right")
    table.add_column("Deactivated because")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["name"],
            row["kind"],
            row["account_group"],
            "✓" if row["active"] else "✗",
            f"{row['calls_used']}/{row['calls_limit']}",
            row["deactivated_reason"] or "",
        )
    console.print(table)


@credentials_app.command("activate")
def credentials_activate(credential_id: int = typer.Argument(..., help="Credential ID")) -> None:
    """Put a deactivated credential back into rotation."""
    _engine().pool.activate(credential_id)
    console.print(f"[green]Credential {credential_id} activated[/green]")


@credentials_app.command("register-account")
def credentials_register_account(
    account: str = typer.Argument(..., help="Ad account id"),
    group: str = typer.Argument(..., help="Credential group serving the account"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
) -> None:
    """Route an ad account to a credential group."""
    _engine().pool.register_account(account, group, name)
    console.print(f"[green]{account} -> {group}[/green]")


@credentials_app.command("generate-key")
def credentials_generate_key() -> None:
    """Generate a master key for token encryption."""
    from campaign_engine.services.encryption import generate_master_key

    console.print(Panel.fit(
        f"{generate_master_key()}\n\n[dim]Set it as ENCRYPTION_MASTER_KEY[/dim]",
        title="Encryption master key",
        border_style="yellow",
    ))


# =============================================================================
# FAILURES COMMANDS
# =============================================================================


@failures_app.command("list")
def failures_list(
    owner: str = typer.Option(..., "--owner", "-o", help="Owner"),
    campaign: Optional[str] = typer.Option(None, "--campaign", "-c", help="Campaign id"),
) -> None:
    """List failure ledger entries awaiting recovery."""
    entries = _engine().failures.list_pending(owner, campaign)
    if not entries:
        console.print("[dim]No pending failures[/dim]")
        return
    table = Table(title="Pending Failures")
    table.add_column("ID", style="dim")
    table.add_column("Job")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            str(entry.id),
            str(entry.job_id or "-"),
            entry.entity_type.value,
            entry.ad_name or entry.adset_name or entry.campaign_name or "",
            _styled(entry.status.value),
            entry.user_friendly_reason[:60],
        )
    console.print(table)


@failures_app.command("recovered")
def failures_recovered(
    failure_id: int = typer.Argument(..., help="Failure record ID"),
    adset_id: Optional[str] = typer.Option(None, "--adset-id", help="Ad set created by hand"),
    ad_id: Optional[str] = typer.Option(None, "--ad-id", help="Ad created by hand"),
) -> None:
    """Mark a failure as recovered."""
    entry = _engine().failures.mark_recovered(failure_id, adset_id=adset_id, ad_id=ad_id)
    console.print(f"[green]Failure {entry.id} marked recovered[/green]")


if __name__ == "__main__":
    app()
