"""LabelOps CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from . import __version__
from .client.endpoints import LabelOpsClient, LabelOpsError
from .commands import config, jobs, submit, workers
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="labelops",
    help="🏷️ LabelOps - job queue operator CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(workers.app, name="workers")
app.add_typer(submit.app, name="submit")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check system status and connectivity"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with LabelOpsClient(base_url) as client:
            health = client.health_check()

    except LabelOpsError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the LabelOps API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]labelops config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    database = health.get("database") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
            f"• Queue depth: [cyan]{queue.get('queue_depth', '-')}[/cyan]\n"
            f"• Active workers: [cyan]{queue.get('active_workers', '-')}[/cyan]\n"
            f"• Stale jobs: [yellow]{queue.get('stale_jobs_count', '-')}[/yellow]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if health.get("ok") else "red",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    console.print(
        Panel(
            f"🏷️ [bold cyan]LabelOps CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def quickstart():
    """🚀 Quick start guide and setup"""
    console.print(
        Panel(
            "🏷️ [bold cyan]LabelOps Quick Start[/bold cyan]\n\n"
            "[bold]1. Point the CLI at the API[/bold]\n"
            "   [dim]labelops config set api.base_url http://localhost:8000[/dim]\n"
            "   [dim]labelops config set api.cron_secret <secret>[/dim]\n\n"
            "[bold]2. Check Status[/bold]\n"
            "   [dim]labelops status[/dim]\n\n"
            "[bold]3. Queue Work[/bold]\n"
            "   [dim]labelops submit ingest my-project rows.csv[/dim]\n\n"
            "[bold]4. Run Workers[/bold]\n"
            "   [dim]labelops workers poll --interval 30[/dim]\n\n"
            "[bold]5. Watch the Queue[/bold]\n"
            "   [dim]labelops jobs stats[/dim]\n\n"
            "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
            title="Quick Start Guide",
            border_style="green",
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    🏷️ LabelOps CLI

    Inspect the job queue, retry or cancel jobs, queue ingestion and
    evaluation work, and trigger workers by hand.
    """
    if version:
        console.print(f"LabelOps CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
