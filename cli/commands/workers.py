"""Workers Commands - Trigger worker invocations by hand or on a timer"""

import time

import typer
from rich.console import Console

from ..client.endpoints import LabelOpsClient, LabelOpsError
from ..utils.config_manager import config
from ..utils.formatting import create_invocation_panel, print_error, print_info

console = Console()
app = typer.Typer(name="workers", help="Worker trigger commands")

WORKERS = ("ingestion", "vectorization", "evaluation", "cleanup")


@app.command("list")
def list_workers():
    """📋 List the named workers"""
    for worker in WORKERS:
        console.print(f"• [cyan]{worker}[/cyan]")


@app.command("trigger")
def trigger_worker(
    worker: str = typer.Argument(..., help=f"Worker name ({', '.join(WORKERS)})"),
):
    """▶️ Run one invocation of a worker"""
    try:
        with LabelOpsClient() as client:
            result = client.trigger_worker(worker)
        console.print(create_invocation_panel(result))

    except LabelOpsError as e:
        print_error(f"Failed to trigger {worker}: {e}")
        raise typer.Exit(1) from None


@app.command("poll")
def poll_workers(
    workers: list[str] = typer.Argument(None, help="Workers to poll (default: all)"),
    interval: int | None = typer.Option(
        None, "--interval", "-i", help="Seconds between rounds"
    ),
    rounds: int = typer.Option(0, "--rounds", "-n", help="Stop after N rounds (0 = forever)"),
):
    """⏱️ Trigger workers on a fixed interval, like a scheduler would"""
    names = workers or list(WORKERS)
    interval = interval or int(config.get("poll.interval_seconds", 60))
    print_info(f"Polling {', '.join(names)} every {interval}s (Ctrl+C to stop)")

    completed_rounds = 0
    try:
        with LabelOpsClient() as client:
            while True:
                for worker in names:
                    try:
                        result = client.trigger_worker(worker)
                    except LabelOpsError as e:
                        # Keep polling; the next round may find the service back
                        print_error(f"{worker}: {e}")
                        continue
                    console.print(
                        f"[cyan]{worker}[/cyan] processed={result.get('processed', 0)} "
                        f"failed={result.get('failed', 0)} "
                        f"stop={result.get('stop_reason')}"
                    )

                completed_rounds += 1
                if rounds and completed_rounds >= rounds:
                    break
                time.sleep(interval)

    except KeyboardInterrupt:
        console.print("\nPolling stopped.")
