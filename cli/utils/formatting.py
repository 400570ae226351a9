"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _progress_label(job: dict[str, Any]) -> str:
    percentage = job.get("progress_percentage")
    if percentage is None:
        return "-"
    return f"{percentage:.0f}%"


def create_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="center", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("Chain", justify="left", style="dim", no_wrap=True)
    table.add_column("Created", justify="left", style="blue")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            job.get("job_type", ""),
            format_status(job.get("status", "")),
            str(job.get("priority", 0)),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            _progress_label(job),
            str(job.get("correlation_id", ""))[:8],
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for the queue overview"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"• {format_status(status)}: {count}" for status, count in by_status.items()
    )
    type_lines = "\n".join(
        f"• [magenta]{job_type}[/magenta]: {count}"
        for job_type, count in stats.get("by_type", {}).items()
    )

    content = (
        f"📊 [bold blue]Queue Overview[/bold blue]\n\n"
        f"• Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]\n"
        f"• Failed (last hour): [red]{stats.get('failed_last_hour', 0)}[/red]\n\n"
        f"[bold]By status[/bold]\n{status_lines or '-'}\n\n"
        f"[bold]By type[/bold]\n{type_lines or '-'}"
    )

    return Panel(content, title="Job Stats", border_style="green")


def create_performance_table(performance: dict[str, Any]) -> Table:
    """Create table of completed job durations over the last day"""
    table = Table(title="Completed in the last 24h", box=box.SIMPLE)
    table.add_column("Type", style="magenta")
    table.add_column("Count", justify="right", style="cyan")
    table.add_column("Avg duration (s)", justify="right", style="yellow")

    for job_type, metrics in performance.items():
        table.add_row(
            job_type,
            str(metrics.get("count", 0)),
            f"{metrics.get('avg_duration_seconds', 0):.1f}",
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create detail panel for a single job"""
    content = (
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id', 'unknown')}[/cyan]\n"
        f"📝 [bold]Type:[/bold] [magenta]{job.get('job_type', 'unknown')}[/magenta]\n"
        f"✅ [bold]Status:[/bold] {format_status(job.get('status', 'unknown'))}\n"
        f"🔁 [bold]Attempts:[/bold] {job.get('attempts', 0)}/{job.get('max_attempts', 0)}\n"
        f"⬆️ [bold]Priority:[/bold] {job.get('priority', 0)}\n"
        f"🔗 [bold]Chain:[/bold] {job.get('correlation_id', '-')}\n"
        f"↪️ [bold]Continuation of:[/bold] {job.get('continuation_of') or '-'}\n"
        f"🔒 [bold]Locked by:[/bold] {job.get('locked_by') or '-'}\n"
        f"💓 [bold]Heartbeat:[/bold] {job.get('heartbeat_at') or '-'}\n"
        f"📅 [bold]Created:[/bold] [blue]{job.get('created_at', '-')}[/blue]\n"
        f"🏁 [bold]Completed:[/bold] [blue]{job.get('completed_at') or '-'}[/blue]"
    )
    border = STATUS_STYLES.get(job.get("status", ""), "blue")
    if border == "dim":
        border = "white"
    return Panel(content, title="Job", border_style=border)


def create_chain_panel(chain: dict[str, Any]) -> Panel:
    """Create panel summarising a continuation chain"""
    by_status = ", ".join(
        f"{status}={count}" for status, count in chain.get("by_status", {}).items()
    )
    if chain.get("chain_complete"):
        state = "[green]complete[/green]"
    elif chain.get("active"):
        state = "[blue]running[/blue]"
    else:
        state = "[yellow]stopped[/yellow]"

    content = (
        f"🔗 [bold]Chain:[/bold] [cyan]{chain.get('correlation_id')}[/cyan]\n"
        f"📦 [bold]Jobs:[/bold] {chain.get('job_count', 0)} ({by_status or '-'})\n"
        f"🔢 [bold]Processed:[/bold] {chain.get('processed', 0)}\n"
        f"📍 [bold]State:[/bold] {state}\n"
        f"🧾 [bold]Last job:[/bold] {chain.get('last_job_id') or '-'}"
    )
    return Panel(content, title="Chain Progress", border_style="cyan")


def create_invocation_panel(result: dict[str, Any]) -> Panel:
    """Create panel for one worker invocation"""
    stop_reason = result.get("stop_reason", "unknown")
    border = "red" if stop_reason == "store_unavailable" else "green"
    content = (
        f"⚙️ [bold]Worker:[/bold] [cyan]{result.get('worker')}[/cyan]\n"
        f"• Processed: {result.get('processed', 0)}\n"
        f"• Completed: [green]{result.get('completed', 0)}[/green]\n"
        f"• Failed: [red]{result.get('failed', 0)}[/red]\n"
        f"• Cancelled: {result.get('cancelled', 0)}\n"
        f"• Reclaimed: [yellow]{result.get('reclaimed', 0)}[/yellow]\n"
        f"• Duration: {result.get('duration_ms', 0)}ms\n"
        f"• Stop reason: [bold]{stop_reason}[/bold]"
    )
    return Panel(content, title="Worker Invocation", border_style=border)
