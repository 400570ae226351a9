"""Jobs Commands - Queue inspection and admin actions"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..client.endpoints import LabelOpsClient, LabelOpsError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_chain_panel,
    create_job_panel,
    create_jobs_table,
    create_performance_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job queue inspection and admin commands")


@app.command("stats")
def job_stats():
    """📊 Show queue overview by status and type"""
    try:
        with LabelOpsClient() as client:
            stats = client.job_stats()

        console.print(create_stats_panel(stats))
        performance = stats.get("performance_24h") or {}
        if performance:
            console.print(create_performance_table(performance))

    except LabelOpsError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(
        None, "--status", "-s", help="Filter by status (comma separated)"
    ),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    chain: str | None = typer.Option(None, "--chain", "-c", help="Filter by chain id"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Number of jobs"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs in the queue"""
    limit = limit or int(config.get("display.jobs_per_page", 20))

    try:
        with LabelOpsClient() as client:
            data = client.list_jobs(
                status=status,
                job_type=job_type,
                correlation_id=chain,
                limit=limit,
                offset=offset,
            )

        jobs = data.get("jobs", [])
        total = data.get("total", len(jobs))

        if not jobs:
            console.print(
                Panel(
                    "📭 [yellow]No jobs found![/yellow]\n\n"
                    f"• Status: {status or 'any'}\n"
                    f"• Type: {job_type or 'any'}\n"
                    f"• Chain: {chain or 'any'}",
                    title="Empty Results",
                    border_style="yellow",
                )
            )
            return

        console.print(create_jobs_table(jobs))
        console.print(
            f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs"
        )
        if offset + limit < total:
            console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except LabelOpsError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("failed")
def list_failed(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs"),
):
    """🚨 Show the most recent failed jobs with their errors"""
    try:
        with LabelOpsClient() as client:
            jobs = client.list_failed_jobs(limit=limit)

        if not jobs:
            print_success("No failed jobs")
            return

        console.print(create_jobs_table(jobs, title="Failed Jobs"))
        for job in jobs:
            error = (job.get("result") or {}).get("error")
            if error:
                console.print(f"[cyan]{str(job['id'])[:8]}[/cyan] [red]{error}[/red]")

    except LabelOpsError as e:
        print_error(f"Failed to list failed jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID to show")):
    """🔍 Show detailed information about a job"""
    try:
        with LabelOpsClient() as client:
            job = client.get_job(job_id)

        console.print(create_job_panel(job))
        if job.get("progress"):
            console.print(f"\n📈 [bold]Progress:[/bold] {job['progress']}")
        if job.get("result"):
            console.print(f"\n🧾 [bold]Result:[/bold] {job['result']}")

    except LabelOpsError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("retry")
def retry_job(job_id: str = typer.Argument(..., help="Job ID to retry")):
    """🔁 Return a job to pending (attempts are kept)"""
    try:
        with LabelOpsClient() as client:
            job = client.retry_job(job_id)

        print_success(
            f"Job {job_id} is pending again "
            f"(attempt {job.get('attempts', 0)}/{job.get('max_attempts', 0)} used)"
        )

    except LabelOpsError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID to cancel"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🛑 Cancel a pending or processing job"""
    if not yes and not Confirm.ask(f"Cancel job {job_id}?"):
        console.print("Operation cancelled.")
        return

    try:
        with LabelOpsClient() as client:
            client.cancel_job(job_id)
        print_success(f"Job {job_id} cancelled")

    except LabelOpsError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("chain")
def show_chain(correlation_id: str = typer.Argument(..., help="Chain id")):
    """🔗 Show progress of a continuation chain"""
    try:
        with LabelOpsClient() as client:
            chain = client.chain_progress(correlation_id)
            jobs = client.list_jobs(correlation_id=correlation_id, limit=100)

        console.print(create_chain_panel(chain))
        if jobs.get("jobs"):
            console.print(create_jobs_table(jobs["jobs"], title="Chain Jobs"))

    except LabelOpsError as e:
        print_error(f"Failed to get chain: {e}")
        raise typer.Exit(1) from None


@app.command("cancel-chain")
def cancel_chain(
    correlation_id: str = typer.Argument(..., help="Chain id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🛑 Cancel every active job of a chain"""
    if not yes and not Confirm.ask(f"Cancel all active jobs of chain {correlation_id}?"):
        console.print("Operation cancelled.")
        return

    try:
        with LabelOpsClient() as client:
            data = client.cancel_chain(correlation_id)
        cancelled = data.get("cancelled_count", 0)
        if cancelled:
            print_success(f"Cancelled {cancelled} job(s)")
        else:
            print_info("No active jobs in this chain")

    except LabelOpsError as e:
        print_error(f"Failed to cancel chain: {e}")
        raise typer.Exit(1) from None
